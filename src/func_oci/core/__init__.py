"""Core types, media types and the registry client."""
