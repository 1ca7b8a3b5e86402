"""Content-addressable blob storage."""
