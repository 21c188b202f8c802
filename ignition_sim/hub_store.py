"""Repositories of named blobs, kept in memory or mirrored to a directory."""

from __future__ import annotations

import re
import threading
from pathlib import Path

_SEGMENT = re.compile(r"^[A-Za-z0-9_][A-Za-z0-9._-]*$")
REPO_MARKER = ".ignition-repo"


class BlobValidationError(ValueError):
    pass


class RepoExistsError(BlobValidationError):
    pass


class RepoNotFoundError(KeyError):
    pass


def _validate_segments(value: str, what: str) -> list[str]:
    if not isinstance(value, str) or not value:
        raise BlobValidationError(f"{what} must be a non-empty string")
    parts = value.split("/")
    for part in parts:
        if not _SEGMENT.match(part) or part == REPO_MARKER:
            raise BlobValidationError(f"Invalid {what}: {value!r}")
    return parts


def validate_repo_id(repo_id: str) -> str:
    _validate_segments(repo_id, "repository id")
    return repo_id


def validate_blob_path(path: str) -> str:
    _validate_segments(path, "file path")
    return path


class BlobStore:
    def __init__(self, root: str | Path | None = None):
        self.root = Path(root) if root is not None else None
        self._lock = threading.RLock()
        self._repos: dict[str, dict[str, bytes]] = {}
        if self.root is not None:
            self.root.mkdir(parents=True, exist_ok=True)
            for marker in self.root.rglob(REPO_MARKER):
                self._repos[marker.parent.relative_to(self.root).as_posix()] = {}

    def _repo_dir(self, repo_id: str) -> Path:
        assert self.root is not None
        return self.root.joinpath(*repo_id.split("/"))

    def has_repo(self, repo_id: str) -> bool:
        with self._lock:
            return repo_id in self._repos

    def repo_count(self) -> int:
        with self._lock:
            return len(self._repos)

    def create_repo(self, repo_id: str) -> None:
        validate_repo_id(repo_id)
        with self._lock:
            if repo_id in self._repos:
                raise RepoExistsError(f"Repository already exists: {repo_id}")
            if self.root is not None:
                repo_dir = self._repo_dir(repo_id)
                repo_dir.mkdir(parents=True, exist_ok=True)
                (repo_dir / REPO_MARKER).touch()
            self._repos[repo_id] = {}

    def put(self, repo_id: str, path: str, data: bytes) -> None:
        validate_blob_path(path)
        with self._lock:
            if repo_id not in self._repos:
                raise RepoNotFoundError(repo_id)
            if self.root is None:
                self._repos[repo_id][path] = bytes(data)
                return
            target = self._repo_dir(repo_id).joinpath(*path.split("/"))
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_bytes(data)

    def get(self, repo_id: str, path: str) -> bytes:
        with self._lock:
            if repo_id not in self._repos:
                raise RepoNotFoundError(repo_id)
            if self.root is None:
                try:
                    return self._repos[repo_id][path]
                except KeyError:
                    raise KeyError(f"{repo_id}/{path}") from None
            validate_blob_path(path)
            target = self._repo_dir(repo_id).joinpath(*path.split("/"))
            if not target.is_file():
                raise KeyError(f"{repo_id}/{path}")
            return target.read_bytes()

    def list_files(self, repo_id: str) -> list[str]:
        with self._lock:
            if repo_id not in self._repos:
                raise RepoNotFoundError(repo_id)
            if self.root is None:
                return sorted(self._repos[repo_id])
            repo_dir = self._repo_dir(repo_id)
            return sorted(
                p.relative_to(repo_dir).as_posix()
                for p in repo_dir.rglob("*")
                if p.is_file() and p.name != REPO_MARKER
            )
