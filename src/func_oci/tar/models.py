"""Data models for project walking and layer construction."""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from typing import List, Optional, Union

from ..core.types import Descriptor


class EntryType(enum.Enum):
    """Kinds of filesystem entries a layer may contain."""

    REGULAR = "regular"
    DIRECTORY = "directory"
    SYMLINK = "symlink"


@dataclass(frozen=True)
class FileEntry:
    """A validated project entry."""

    path: str  # Relative POSIX path, no ".." segments
    mode: int
    type: EntryType
    source: str  # Absolute path on the host
    link_target: Optional[str] = None
    size: int = 0


@dataclass(frozen=True)
class PathRejection:
    """A project entry that must not be packaged."""

    path: str
    reason: str


WalkResult = Union[FileEntry, PathRejection]


@dataclass(frozen=True)
class LinkCheck:
    """Outcome of validating a single symlink."""

    valid: bool
    reason: str = ""


@dataclass
class Layer:
    """A built layer blob."""

    descriptor: Descriptor  # Addresses the compressed blob
    diff_id: str  # Digest of the uncompressed tar stream
    entries: List[FileEntry] = field(default_factory=list)
