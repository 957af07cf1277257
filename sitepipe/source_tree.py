"""Source file enumeration for Sitepipe.

SourceTree walks a directory and selects files by glob, always skipping
partials: any path component that starts with the private prefix marks a
template fragment that is only ever included, never built directly.

Glob syntax understood by matches():
- ``**`` matches any number of directories, including none.
- ``*`` and ``?`` never cross a ``/``.
- ``[abc]`` / ``[!abc]`` character classes.
- ``{a,b}`` alternation (not nested).
"""

from __future__ import annotations

import os
import re
from collections.abc import Iterable, Iterator
from functools import lru_cache
from pathlib import Path, PurePath

from .models import Category, FileEntry

PRIVATE_PREFIX = "_"


def _translate(pattern: str) -> str:
    parts: list[str] = []
    i, n = 0, len(pattern)
    while i < n:
        if pattern.startswith("**/", i):
            parts.append("(?:.*/)?")
            i += 3
            continue
        if pattern.startswith("**", i):
            parts.append(".*")
            i += 2
            continue
        c = pattern[i]
        if c == "*":
            parts.append("[^/]*")
        elif c == "?":
            parts.append("[^/]")
        elif c == "[":
            end = pattern.find("]", i + 1)
            if end == -1:
                parts.append(re.escape(c))
            else:
                body = pattern[i + 1 : end].replace("\\", "\\\\")
                if body.startswith("!"):
                    body = "^" + body[1:]
                parts.append(f"[{body}]")
                i = end + 1
                continue
        elif c == "{":
            end = pattern.find("}", i + 1)
            if end == -1:
                parts.append(re.escape(c))
            else:
                options = pattern[i + 1 : end].split(",")
                parts.append("(?:" + "|".join(_translate(o) for o in options) + ")")
                i = end + 1
                continue
        else:
            parts.append(re.escape(c))
        i += 1
    return "".join(parts)


@lru_cache(maxsize=256)
def translate_glob(pattern: str) -> re.Pattern[str]:
    """Compile a glob pattern into a regular expression.

    Examples:
        >>> bool(translate_glob("**/*.html").fullmatch("about.html"))
        True

        >>> bool(translate_glob("**/*.{png,jpg}").fullmatch("img/a/b.jpg"))
        True
    """
    return re.compile(_translate(pattern))


def matches(pattern: str, path: str | PurePath) -> bool:
    """Check whether a relative path matches a glob pattern."""
    if isinstance(path, PurePath):
        path = path.as_posix()
    return translate_glob(pattern).fullmatch(path) is not None


def matches_any(patterns: Iterable[str], path: str | PurePath) -> bool:
    return any(matches(p, path) for p in patterns)


def is_private_path(path: PurePath, prefix: str = PRIVATE_PREFIX) -> bool:
    """Check if any path component starts with the private prefix.

    Args:
        path: Relative path to check.
        prefix: Private-marker prefix.

    Returns:
        True if the path names a partial or lives inside a private directory.
    """
    return any(part.startswith(prefix) for part in path.parts)


class SourceTree:
    """Enumerates buildable files under a root directory.

    Nothing is cached: each call walks the filesystem again, so a restarted
    enumeration always reflects the current state of the tree.

    Attributes:
        root: Directory to enumerate.
        private_prefix: Prefix marking partials and private directories.
    """

    def __init__(self, root: Path, private_prefix: str = PRIVATE_PREFIX):
        self.root = root
        self.private_prefix = private_prefix

    def selects(self, rel: PurePath, pattern: str, exclude: Iterable[str] = ()) -> bool:
        """Decide whether a relative path belongs to a file set.

        Exclusion is evaluated first, then the private marker, then the
        include pattern.
        """
        if matches_any(exclude, rel):
            return False
        if is_private_path(rel, self.private_prefix):
            return False
        return matches(pattern, rel)

    def iter_paths(self, pattern: str, exclude: Iterable[str] = ()) -> Iterator[Path]:
        """Yield matching paths relative to root, sorted by relative path."""
        exclude = tuple(exclude)
        if not self.root.is_dir():
            return
        selected: list[Path] = []
        for dirpath, dirnames, filenames in os.walk(self.root):
            base = Path(dirpath).relative_to(self.root)
            dirnames[:] = [d for d in dirnames if not self._prune(base / d, exclude)]
            selected.extend(
                base / name for name in filenames if self.selects(base / name, pattern, exclude)
            )
        yield from sorted(selected, key=lambda p: p.as_posix())

    def list(
        self,
        pattern: str,
        exclude: Iterable[str] = (),
        category: Category = Category.MARKUP,
    ) -> Iterator[FileEntry]:
        """Lazily enumerate FileEntry objects matching a glob.

        Args:
            pattern: Include glob, relative to root.
            exclude: Exclusion globs, evaluated before the include glob.
            category: Category stamped on every entry.

        Yields:
            FileEntry objects with contents read at enumeration time.
            A missing root yields nothing.
        """
        for rel in self.iter_paths(pattern, exclude):
            try:
                contents = (self.root / rel).read_bytes()
            except FileNotFoundError:
                # Removed between walk and read.
                continue
            yield FileEntry(root=self.root, path=rel, category=category, contents=contents)

    def _prune(self, rel_dir: Path, exclude: tuple[str, ...]) -> bool:
        if rel_dir.name.startswith(self.private_prefix):
            return True
        return matches_any(exclude, rel_dir.as_posix() + "/")
