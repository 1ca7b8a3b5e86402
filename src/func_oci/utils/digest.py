"""Digest calculation and validation utilities."""

import hashlib
import re
from typing import BinaryIO, Union

# Regex pattern for valid digest format (algorithm:hex)
DIGEST_PATTERN = re.compile(r"^[a-z0-9]+:[a-f0-9]+$")

DEFAULT_ALGORITHM = "sha256"
SUPPORTED_ALGORITHMS = ("sha256", "sha512")


def calculate_digest(
    data: Union[bytes, bytearray], algorithm: str = DEFAULT_ALGORITHM
) -> str:
    """Calculate digest of data.

    Args:
        data: Data to hash
        algorithm: Hash algorithm (default: sha256)

    Returns:
        Digest string in format "algorithm:hex"

    Raises:
        ValueError: If algorithm is not supported
        ValueError: If data is not bytes-like
    """
    if not isinstance(data, (bytes, bytearray)):
        raise ValueError("Data must be bytes or bytearray")

    if algorithm not in SUPPORTED_ALGORITHMS:
        raise ValueError(f"Unsupported algorithm: {algorithm}")

    hasher = hashlib.new(algorithm)
    hasher.update(data)
    return f"{algorithm}:{hasher.hexdigest()}"


def calculate_stream_digest(
    stream: BinaryIO, algorithm: str = DEFAULT_ALGORITHM, chunk_size: int = 1 << 20
) -> str:
    """Calculate digest of a binary stream without loading it into memory."""
    hasher = hashlib.new(algorithm)
    while chunk := stream.read(chunk_size):
        hasher.update(chunk)
    return f"{algorithm}:{hasher.hexdigest()}"


def validate_digest(digest: str) -> bool:
    """Validate digest format.

    Args:
        digest: Digest string to validate

    Returns:
        True if valid digest format
    """
    if not isinstance(digest, str):
        return False

    if not DIGEST_PATTERN.match(digest):
        return False

    algorithm, encoded = digest.split(":", 1)
    if algorithm not in SUPPORTED_ALGORITHMS:
        return False
    return len(encoded) == hashlib.new(algorithm).digest_size * 2


def split_digest(digest: str) -> tuple[str, str]:
    """Split a digest into ``(algorithm, hex)``.

    Raises:
        ValueError: If digest format is invalid
    """
    if not validate_digest(digest):
        raise ValueError(f"Invalid digest format: {digest}")
    algorithm, encoded = digest.split(":", 1)
    return algorithm, encoded


def verify_digest(data: Union[bytes, bytearray], expected_digest: str) -> bool:
    """Verify data matches expected digest.

    Args:
        data: Data to verify
        expected_digest: Expected digest string

    Returns:
        True if data matches digest

    Raises:
        ValueError: If digest format is invalid
    """
    algorithm, _ = split_digest(expected_digest)
    actual_digest = calculate_digest(data, algorithm)
    return actual_digest == expected_digest


class HashingWriter:
    """File-like writer that hashes everything passing through it.

    Bytes are forwarded to ``target`` when one is given.
    """

    def __init__(self, target=None, algorithm: str = DEFAULT_ALGORITHM) -> None:
        self._target = target
        self._hasher = hashlib.new(algorithm)
        self.algorithm = algorithm
        self.size = 0

    def write(self, data) -> int:
        self._hasher.update(data)
        self.size += len(data)
        if self._target is not None:
            self._target.write(data)
        return len(data)

    def flush(self) -> None:
        if self._target is not None:
            self._target.flush()

    @property
    def digest(self) -> str:
        return f"{self.algorithm}:{self._hasher.hexdigest()}"
