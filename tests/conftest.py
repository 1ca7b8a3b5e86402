"""Test configuration and fixtures."""

import asyncio
import os
import socket

import pytest
import pytest_asyncio
from aiohttp.test_utils import TestServer

from func_oci import BlobStore, ContainerizeConfig, RetryPolicy, check_registry_connectivity
from tests.helpers import FakeRegistry, make_link_project, make_project


def is_port_open(host, port):
    """Check if a port is open."""
    try:
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
            sock.settimeout(1)
            result = sock.connect_ex((host, port))
            return result == 0
    except Exception:
        return False


@pytest.fixture
def store(tmp_path):
    """Empty blob store in a temporary directory."""
    return BlobStore(tmp_path / "store")


@pytest.fixture
def project(tmp_path):
    """Small function project without unsafe entries."""
    return make_project(tmp_path)


@pytest.fixture
def link_project(tmp_path):
    """Project tree containing valid and escaping symlinks."""
    return make_link_project(tmp_path)


@pytest.fixture
def fast_config():
    """Engine config with near-instant retries."""
    return ContainerizeConfig(retry=RetryPolicy(attempts=3, delay=0.01, backoff=1.0))


@pytest_asyncio.fixture
async def fake_registry():
    """In-process registry speaking the distribution API over HTTP."""
    registry = FakeRegistry()
    server = TestServer(registry.app, host="127.0.0.1")
    await server.start_server()
    registry.host = f"{server.host}:{server.port}"
    yield registry
    await server.close()


@pytest.fixture(scope="session")
def registry_port():
    """Get registry port for testing."""
    return int(os.getenv("REGISTRY_PORT", "15000"))


@pytest_asyncio.fixture
async def registry_url(registry_port):
    """Get real registry URL and ensure it's available."""
    url = f"http://localhost:{registry_port}"

    # Wait for registry to be available (for CI)
    max_attempts = 30
    for attempt in range(max_attempts):
        try:
            if is_port_open("localhost", registry_port):
                result = await check_registry_connectivity(url)
                if result:
                    return url
        except Exception:
            pass

        if attempt < max_attempts - 1:
            await asyncio.sleep(1)

    pytest.skip(f"Registry not available at {url}")


# Pytest configuration
def pytest_configure(config):
    """Configure pytest markers and settings."""
    config.addinivalue_line(
        "markers", "integration: mark test as integration test requiring registry"
    )
    config.addinivalue_line("markers", "unit: mark test as unit test (default)")


def pytest_collection_modifyitems(config, items):
    """Skip integration tests unless a real registry is available."""
    skip_integration = pytest.mark.skip(reason="Registry not available")

    for item in items:
        if (
            "integration" in item.keywords
            and os.getenv("REGISTRY_AVAILABLE", "false").lower() != "true"
        ):
            item.add_marker(skip_integration)
