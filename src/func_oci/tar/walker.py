"""Project tree walking with symlink-escape prevention.

Every entry under the project root is classified as either a ``FileEntry``
that may be packaged, or a ``PathRejection``. Rejections are returned as
values; callers decide whether they are fatal (``collect_entries`` makes
them so).
"""

from __future__ import annotations

import fnmatch
import functools
import logging
import ntpath
import os
import posixpath
import re
import stat
from collections import deque
from collections.abc import Iterable, Sequence

from ..exceptions import ValidationError
from .models import EntryType, FileEntry, LinkCheck, PathRejection, WalkResult

logger = logging.getLogger(__name__)

ALWAYS_IGNORED = (".git/",)


def _is_absolute_target(target: str) -> bool:
    # Windows drive ("c:/x", "c:x") and UNC targets depend on the host layout too
    return (
        posixpath.isabs(target)
        or ntpath.isabs(target)
        or bool(ntpath.splitdrive(target)[0])
    )


def check_link_target(root: str, link_path: str, target: str) -> LinkCheck:
    """Classify a symlink by where its target resolves.

    Absolute targets are rejected from the raw string alone. Relative targets
    are joined to the link's own directory and resolved with
    ``os.path.realpath``, so links reached through other links are followed
    to their final location. The result must be the root itself or lie below
    it.

    Args:
        root: Project root directory
        link_path: Path of the symlink (absolute, or relative to the cwd)
        target: Raw link target as returned by ``os.readlink``

    Returns:
        LinkCheck describing whether the link may be packaged
    """
    if _is_absolute_target(target):
        return LinkCheck(False, f"absolute link target {target!r} is not allowed")

    root = os.path.realpath(root)
    link_dir = os.path.dirname(os.path.abspath(link_path))
    resolved = os.path.realpath(os.path.join(link_dir, target))
    relative = os.path.relpath(resolved, root)

    if relative == os.pardir:
        return LinkCheck(
            False, f"link target {target!r} resolves to the project root's parent"
        )
    if relative.startswith(os.pardir + os.sep):
        return LinkCheck(
            False, f"link target {target!r} resolves outside the project root"
        )
    return LinkCheck(True)


def validate_link(root: str, path: str) -> LinkCheck:
    """Validate a filesystem entry for inclusion.

    Regular files and directories are always valid; symlinks are checked
    with ``check_link_target``.
    """
    try:
        info = os.lstat(path)
    except OSError as e:
        return LinkCheck(False, f"cannot stat entry: {e.strerror}")

    if not stat.S_ISLNK(info.st_mode):
        return LinkCheck(True)

    try:
        target = os.readlink(path)
    except OSError as e:
        return LinkCheck(False, f"cannot read link: {e.strerror}")
    return check_link_target(root, path, target)


@functools.lru_cache(maxsize=256)
def _anchored_pattern(pattern: str) -> re.Pattern:
    """Translate a slash-containing glob into a regex over relative paths.

    ``*`` and ``?`` stop at ``/``. ``**/`` matches zero or more directories,
    a trailing ``/**`` matches everything below a directory.
    """
    parts = []
    i = 0
    while i < len(pattern):
        if pattern.startswith("**/", i):
            parts.append("(?:[^/]+/)*")
            i += 3
        elif pattern.startswith("**", i):
            parts.append(".*")
            i += 2
        elif pattern[i] == "*":
            parts.append("[^/]*")
            i += 1
        elif pattern[i] == "?":
            parts.append("[^/]")
            i += 1
        elif pattern[i] == "[":
            end = pattern.find("]", i + 1)
            if end == -1:
                parts.append(re.escape("["))
                i += 1
            else:
                body = pattern[i + 1 : end]
                if body.startswith("!"):
                    body = "^" + body[1:]
                parts.append(f"[{body}]")
                i = end + 1
        else:
            parts.append(re.escape(pattern[i]))
            i += 1
    return re.compile("".join(parts) + r"\Z")


def is_ignored(path: str, is_dir: bool, patterns: Iterable[str]) -> bool:
    """Check a relative POSIX path against gitignore-style patterns.

    A pattern without ``/`` matches the entry name at any depth. A pattern
    containing ``/`` is anchored at the root, its ``*`` does not cross
    directories, and a leading ``**/`` also matches at the top level. A
    trailing ``/`` restricts the pattern to directories. Negation is not
    supported.
    """
    name = path.rsplit("/", 1)[-1]
    for raw in patterns:
        pattern = raw.strip()
        if not pattern or pattern.startswith("#"):
            continue

        dir_only = pattern.endswith("/")
        pattern = pattern.rstrip("/")
        if dir_only and not is_dir:
            continue

        if "/" in pattern:
            if _anchored_pattern(pattern.lstrip("/")).match(path):
                return True
        elif fnmatch.fnmatchcase(name, pattern):
            return True
    return False


def _classify(
    root: str, rel_path: str, entry: os.DirEntry, patterns: Sequence[str]
) -> WalkResult | None:
    try:
        info = entry.stat(follow_symlinks=False)
    except OSError as e:
        if is_ignored(rel_path, False, patterns):
            return None
        return PathRejection(rel_path, f"unreadable entry: {e.strerror}")

    mode = info.st_mode
    is_dir = stat.S_ISDIR(mode)
    if is_ignored(rel_path, is_dir, patterns):
        return None

    if is_dir:
        return FileEntry(rel_path, stat.S_IMODE(mode), EntryType.DIRECTORY, entry.path)

    if stat.S_ISLNK(mode):
        try:
            target = os.readlink(entry.path)
        except OSError as e:
            return PathRejection(rel_path, f"cannot read link: {e.strerror}")
        check = check_link_target(root, entry.path, target)
        if not check.valid:
            return PathRejection(rel_path, check.reason)
        return FileEntry(
            rel_path,
            stat.S_IMODE(mode),
            EntryType.SYMLINK,
            entry.path,
            link_target=target,
        )

    if stat.S_ISREG(mode):
        if not os.access(entry.path, os.R_OK):
            return PathRejection(rel_path, "unreadable file: permission denied")
        return FileEntry(
            rel_path,
            stat.S_IMODE(mode),
            EntryType.REGULAR,
            entry.path,
            size=info.st_size,
        )

    logger.warning("Skipping special file %s (mode %o)", rel_path, mode)
    return None


def walk_project(root: str, ignore_patterns: Sequence[str] = ()) -> list[WalkResult]:
    """Walk the project tree and classify every entry.

    The traversal uses an explicit worklist and never follows symlinked
    directories. Ignored directories are pruned.

    Args:
        root: Project root directory
        ignore_patterns: gitignore-style patterns supplied by the caller

    Returns:
        One ``FileEntry`` or ``PathRejection`` per visited node

    Raises:
        NotADirectoryError: If root is not a directory
    """
    root = os.path.abspath(root)
    if not os.path.isdir(root):
        raise NotADirectoryError(f"Project root is not a directory: {root}")

    patterns = [*ALWAYS_IGNORED, *ignore_patterns]
    results: list[WalkResult] = []
    pending: deque[str] = deque([""])

    while pending:
        rel_dir = pending.popleft()
        abs_dir = os.path.join(root, *rel_dir.split("/")) if rel_dir else root
        try:
            with os.scandir(abs_dir) as it:
                children = sorted(it, key=lambda e: e.name)
        except OSError as e:
            results.append(
                PathRejection(rel_dir or ".", f"unreadable directory: {e.strerror}")
            )
            continue

        for child in children:
            rel_path = f"{rel_dir}/{child.name}" if rel_dir else child.name
            result = _classify(root, rel_path, child, patterns)
            if result is None:
                continue
            results.append(result)
            if isinstance(result, FileEntry) and result.type is EntryType.DIRECTORY:
                pending.append(rel_path)

    return results


def collect_entries(root: str, ignore_patterns: Sequence[str] = ()) -> list[FileEntry]:
    """Return the packageable entries of a project, sorted by path.

    Raises:
        ValidationError: If any entry was rejected; nothing is returned then
    """
    results = walk_project(root, ignore_patterns)
    rejections = [r for r in results if isinstance(r, PathRejection)]
    if rejections:
        for rejection in rejections:
            logger.error("Rejected %s: %s", rejection.path, rejection.reason)
        raise ValidationError(rejections)

    entries = sorted(
        (r for r in results if isinstance(r, FileEntry)), key=lambda e: e.path
    )
    logger.debug("Collected %d entries from %s", len(entries), root)
    return entries
