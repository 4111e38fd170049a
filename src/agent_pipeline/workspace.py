# workspace.py
# Capability-scoped filesystem for agent actions.
#
# Every path an agent supplies is resolved against the workspace root and
# must stay inside it. Two backends: LocalFileSystem (disk) and
# InMemoryFileSystem (tests and dry runs).

import os
import posixpath
from dataclasses import dataclass


class WorkspaceError(Exception):
    """Raised for path escapes and I/O failures. Messages carry absolute paths."""


@dataclass(frozen=True)
class Entry:
    name: str
    is_dir: bool


# ---------------------------------------------------------------------------
# Backends
# ---------------------------------------------------------------------------


class LocalFileSystem:
    def read_text(self, path: str) -> str:
        with open(path, "r", encoding="utf-8") as fh:
            return fh.read()

    def write_text(self, path: str, data: str) -> None:
        os.makedirs(os.path.dirname(path), exist_ok=True)
        with open(path, "w", encoding="utf-8") as fh:
            fh.write(data)

    def list_entries(self, path: str) -> list[Entry]:
        with os.scandir(path) as it:
            return [Entry(name=e.name, is_dir=e.is_dir()) for e in it]

    def is_dir(self, path: str) -> bool:
        return os.path.isdir(path)

    def exists(self, path: str) -> bool:
        return os.path.exists(path)


class InMemoryFileSystem:
    """Dict-backed filesystem. Keys are normalized absolute POSIX paths."""

    def __init__(self, files: dict[str, str] | None = None) -> None:
        self._files: dict[str, str] = {}
        self._dirs: set[str] = {"/"}
        for path, content in (files or {}).items():
            self.write_text(path, content)

    @staticmethod
    def _norm(path: str) -> str:
        return posixpath.normpath(posixpath.join("/", path))

    def _ensure_dir(self, path: str) -> None:
        current = self._norm(path)
        while current not in self._dirs:
            self._dirs.add(current)
            current = posixpath.dirname(current)

    def read_text(self, path: str) -> str:
        key = self._norm(path)
        if key not in self._files:
            raise FileNotFoundError(f"No such file or directory: '{key}'")
        return self._files[key]

    def write_text(self, path: str, data: str) -> None:
        key = self._norm(path)
        if key in self._dirs:
            raise IsADirectoryError(f"Is a directory: '{key}'")
        self._ensure_dir(posixpath.dirname(key))
        self._files[key] = data

    def list_entries(self, path: str) -> list[Entry]:
        key = self._norm(path)
        if key not in self._dirs:
            raise NotADirectoryError(f"Not a directory: '{key}'")
        prefix = key.rstrip("/") + "/"
        names: dict[str, bool] = {}
        for candidate in list(self._dirs) + list(self._files):
            if candidate != key and candidate.startswith(prefix):
                first = candidate[len(prefix):].split("/")[0]
                names[first] = names.get(first, False) or f"{prefix}{first}" in self._dirs
        return [Entry(name=name, is_dir=is_dir) for name, is_dir in names.items()]

    def is_dir(self, path: str) -> bool:
        return self._norm(path) in self._dirs

    def exists(self, path: str) -> bool:
        key = self._norm(path)
        return key in self._dirs or key in self._files


# ---------------------------------------------------------------------------
# Workspace
# ---------------------------------------------------------------------------


class Workspace:
    """
    Root-scoped view over a filesystem backend.

    resolve() is the only way paths enter the backend, so an agent can never
    read or write outside `root`.
    """

    def __init__(self, root: str, fs: LocalFileSystem | InMemoryFileSystem | None = None) -> None:
        self.fs = fs if fs is not None else LocalFileSystem()
        if isinstance(self.fs, InMemoryFileSystem):
            self._path = posixpath
            self.root = posixpath.normpath(posixpath.join("/", root))
        else:
            self._path = os.path
            self.root = os.path.realpath(root)

    def resolve(self, target: str) -> str:
        joined = self._path.normpath(self._path.join(self.root, target))
        if isinstance(self.fs, LocalFileSystem):
            joined = os.path.realpath(joined)
        if joined != self.root and not joined.startswith(self.root.rstrip(self._path.sep) + self._path.sep):
            raise WorkspaceError(f"Path {joined} is outside the workspace root {self.root}")
        return joined

    def relative(self, path: str) -> str:
        return self._path.relpath(path, self.root).replace(self._path.sep, "/")

    def read_text(self, target: str) -> tuple[str, str]:
        """Return (contents, resolved_path)."""
        resolved = self.resolve(target)
        try:
            return self.fs.read_text(resolved), resolved
        except (OSError, UnicodeDecodeError) as exc:
            raise WorkspaceError(f"Failed to read file at {resolved}: {exc}") from exc

    def write_text(self, target: str, data: str) -> str:
        resolved = self.resolve(target)
        try:
            self.fs.write_text(resolved, data)
        except OSError as exc:
            raise WorkspaceError(f"Failed to write file at {resolved}: {exc}") from exc
        return resolved

    def list_entries(self, resolved: str) -> list[Entry]:
        try:
            return self.fs.list_entries(resolved)
        except OSError as exc:
            raise WorkspaceError(f"Failed to list directory {resolved}: {exc}") from exc

    def is_dir(self, resolved: str) -> bool:
        return self.fs.is_dir(resolved)

    def exists(self, resolved: str) -> bool:
        return self.fs.exists(resolved)
