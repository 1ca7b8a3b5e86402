"""Image config, manifest and index assembly."""
