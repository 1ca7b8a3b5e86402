"""Utility functions for the func-oci engine."""

from .digest import calculate_digest, split_digest, validate_digest, verify_digest

__all__ = ["calculate_digest", "split_digest", "validate_digest", "verify_digest"]
