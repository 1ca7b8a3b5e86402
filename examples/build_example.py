"""Example usage of the daemonless OCI builder."""

import asyncio
import logging
import os
import sys

# Add parent directory to path
sys.path.insert(0, "src")

from func_oci import (
    BlobStore,
    BuildRequest,
    ContainerizeConfig,
    OCIBuilder,
    OCIError,
    Platform,
    RegistryError,
    RuntimeOverrides,
    ValidationError,
    check_registry_connectivity,
)

# Set up logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


async def main():
    """Build the current directory for two platforms and push it."""
    registry_url = "http://localhost:15000"
    project = sys.argv[1] if len(sys.argv) > 1 else "."

    builder = OCIBuilder(
        BlobStore(os.path.join(project, ".func", "blobs")),
        config=ContainerizeConfig.from_env(),
        insecure_registries=["localhost:15000"],
    )
    request = BuildRequest(
        root=project,
        platforms=[Platform.parse("linux/amd64"), Platform.parse("linux/arm64/v8")],
        ignore_patterns=[".func/", "__pycache__/", "*.pyc"],
        overrides=RuntimeOverrides(cmd=("/func/run.sh",), working_dir="/func"),
        layout_path=os.path.join(project, ".func", "image"),
        tag="latest",
    )

    try:
        if await check_registry_connectivity(registry_url):
            logger.info("✓ Registry is accessible")
            request.push_to = "localhost:15000/func/example:latest"
    except RegistryError as e:
        logger.warning(f"Registry unavailable, building locally only: {e}")

    try:
        result = await builder.build(request)
        logger.info(f"Built {result.reference}")
        for image in result.index.images:
            logger.info(f"  {image.platform}: {image.manifest.digest}")

    except ValidationError as e:
        for rejection in e.rejections:
            logger.error(f"Rejected {rejection.path}: {rejection.reason}")
    except RegistryError as e:
        logger.error(f"Registry error: {e}")
    except OCIError as e:
        logger.error(f"Build error: {e}")


if __name__ == "__main__":
    asyncio.run(main())
