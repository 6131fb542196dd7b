from __future__ import annotations

import fnmatch
import json
import tomllib
from abc import ABC, abstractmethod
from pathlib import Path, PurePosixPath
from typing import Any


class WorkspaceError(OSError):
    """Raised when an artifact cannot be read or parsed."""


def _normalize(path: str) -> str:
    normalized = path.replace("\\", "/").strip()
    while normalized.startswith("./"):
        normalized = normalized[2:]
    return normalized.lstrip("/")


def _pattern_parts(pattern: str) -> tuple[str, ...]:
    normalized = _normalize(pattern)
    if not normalized:
        return ()
    parts = PurePosixPath(normalized).parts
    if not parts:
        raise WorkspaceError(f"Pattern does not name any artifact: {pattern!r}")
    if ".." in parts:
        raise WorkspaceError(f"Pattern escapes workspace: {pattern}")
    return parts


def _match_parts(path: tuple[str, ...], pattern: tuple[str, ...]) -> bool:
    """Segment-wise glob match where ``*`` stops at ``/`` and ``**`` spans directories."""
    if not pattern:
        return not path
    head, rest = pattern[0], pattern[1:]
    if head == "**":
        return any(_match_parts(path[index:], rest) for index in range(len(path) + 1))
    return bool(path) and fnmatch.fnmatchcase(path[0], head) and _match_parts(path[1:], rest)


def _parse_structured(path: str, text: str) -> Any:
    suffix = PurePosixPath(path).suffix.lower()
    try:
        if suffix == ".toml":
            return tomllib.loads(text)
        return json.loads(text)
    except (json.JSONDecodeError, tomllib.TOMLDecodeError) as exc:
        raise WorkspaceError(f"Cannot parse structured artifact {path}: {exc}") from exc


class Workspace(ABC):
    """Read-only, path-addressable view of produced artifacts."""

    @abstractmethod
    def glob(self, pattern: str) -> list[str]:
        """Return sorted workspace-relative paths of files matching ``pattern``."""

    @abstractmethod
    def read_text(self, path: str) -> str:
        """Return the text of an artifact. Raises ``WorkspaceError`` when missing."""

    def exists(self, pattern: str) -> bool:
        return bool(self.glob(pattern))

    def read_structured(self, path: str) -> Any:
        return _parse_structured(path, self.read_text(path))


class FilesystemWorkspace(Workspace):
    def __init__(self, root: Path) -> None:
        self.root = root.resolve()

    def _resolve(self, path: str) -> Path:
        candidate = (self.root / _normalize(path)).resolve()
        if candidate != self.root and self.root not in candidate.parents:
            raise WorkspaceError(f"Path escapes workspace: {path}")
        return candidate

    def glob(self, pattern: str) -> list[str]:
        parts = _pattern_parts(pattern)
        if not parts:
            return []
        try:
            matches = {
                match.relative_to(self.root).as_posix()
                for match in self.root.glob("/".join(parts))
                if match.is_file()
            }
        except (ValueError, IndexError) as exc:
            raise WorkspaceError(f"Invalid pattern {pattern!r}: {exc}") from exc
        return sorted(matches)

    def read_text(self, path: str) -> str:
        target = self._resolve(path)
        try:
            return target.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as exc:
            raise WorkspaceError(f"Cannot read artifact {path}: {exc}") from exc


class InMemoryWorkspace(Workspace):
    """Dictionary-backed workspace used by tests and dry runs."""

    def __init__(self, files: dict[str, str] | None = None) -> None:
        self.files: dict[str, str] = {}
        for path, content in (files or {}).items():
            self.write(path, content)

    def write(self, path: str, content: str) -> None:
        self.files[_normalize(path)] = content

    def remove(self, path: str) -> None:
        self.files.pop(_normalize(path), None)

    def glob(self, pattern: str) -> list[str]:
        parts = _pattern_parts(pattern)
        if not parts:
            return []
        return sorted(
            path for path in self.files if _match_parts(PurePosixPath(path).parts, parts)
        )

    def read_text(self, path: str) -> str:
        normalized = _normalize(path)
        if normalized not in self.files:
            raise WorkspaceError(f"Artifact not found: {path}")
        return self.files[normalized]
