"""
Dialectic Core — Storage Adapter

Blob storage behind one small interface, plus the canonical path layout
for everything a session produces:

    projects/{project_id}/
        sessions/{session_id}/iteration_{n}/
            0_seed_inputs/user_prompt.md
            {stage}/{model}_{id8}_{document_key}.md
            {stage}/raw_responses/{model}_{id8}_{document_key}_raw.json
            {stage}/documents/{document_key}_{model}.md
        exports/{project_slug}_export.zip

Backends:
    LocalFileStorage  — files under a root directory (default)
    InMemoryStorage   — dict-backed, for tests and the inline worker
"""

from __future__ import annotations

import logging
import re
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from dialectic.errors import NotFoundError, PersistenceError

logger = logging.getLogger("dialectic.storage")


@dataclass
class UploadResult:
    path: str
    size_bytes: int
    content_type: str


def _to_bytes(data: bytes | str) -> bytes:
    return data.encode("utf-8") if isinstance(data, str) else data


class StorageAdapter:
    """Abstract blob storage."""

    def upload(self, path: str, data: bytes | str,
               content_type: str = "text/markdown") -> UploadResult:
        raise NotImplementedError

    def download(self, path: str) -> bytes:
        raise NotImplementedError

    def exists(self, path: str) -> bool:
        raise NotImplementedError

    def list(self, prefix: str) -> list[str]:
        raise NotImplementedError

    def remove(self, paths: list[str]) -> int:
        raise NotImplementedError

    def download_text(self, path: str) -> str:
        return self.download(path).decode("utf-8")


class InMemoryStorage(StorageAdapter):

    def __init__(self):
        self._objects: dict[str, tuple[bytes, str]] = {}
        self._lock = threading.Lock()

    def upload(self, path, data, content_type="text/markdown"):
        payload = _to_bytes(data)
        with self._lock:
            self._objects[_clean(path)] = (payload, content_type)
        return UploadResult(path=_clean(path), size_bytes=len(payload), content_type=content_type)

    def download(self, path):
        with self._lock:
            obj = self._objects.get(_clean(path))
        if obj is None:
            raise NotFoundError(f"Storage object '{path}' not found")
        return obj[0]

    def exists(self, path):
        with self._lock:
            return _clean(path) in self._objects

    def list(self, prefix):
        prefix = _clean(prefix)
        with self._lock:
            return sorted(p for p in self._objects if p.startswith(prefix))

    def remove(self, paths):
        removed = 0
        with self._lock:
            for p in paths:
                if self._objects.pop(_clean(p), None) is not None:
                    removed += 1
        return removed


class LocalFileStorage(StorageAdapter):
    """Objects as files under `root`. Paths may not escape the root."""

    def __init__(self, root: str | Path = "./storage"):
        self.root = Path(root).resolve()
        self.root.mkdir(parents=True, exist_ok=True)

    def _resolve(self, path: str) -> Path:
        target = (self.root / _clean(path)).resolve()
        if target != self.root and self.root not in target.parents:
            raise PersistenceError(f"Storage path '{path}' escapes the storage root")
        return target

    def upload(self, path, data, content_type="text/markdown"):
        payload = _to_bytes(data)
        target = self._resolve(path)
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_bytes(payload)
        except OSError as e:
            logger.error("Upload failed for %s: %s", path, e)
            raise PersistenceError(f"Failed to store '{path}'", details=str(e)) from e
        return UploadResult(path=_clean(path), size_bytes=len(payload), content_type=content_type)

    def download(self, path):
        target = self._resolve(path)
        if not target.is_file():
            raise NotFoundError(f"Storage object '{path}' not found")
        return target.read_bytes()

    def exists(self, path):
        return self._resolve(path).is_file()

    def list(self, prefix):
        base = self._resolve(prefix)
        if base.is_file():
            return [_clean(prefix)]
        if not base.is_dir():
            return []
        return sorted(
            p.relative_to(self.root).as_posix() for p in base.rglob("*") if p.is_file()
        )

    def remove(self, paths):
        removed = 0
        for p in paths:
            target = self._resolve(p)
            if target.is_file():
                target.unlink()
                removed += 1
        return removed


def create_storage(config: dict[str, Any] | None = None) -> StorageAdapter:
    from dialectic.config import get_config_value
    backend = get_config_value("storage.backend", config, "local")
    if backend == "memory":
        return InMemoryStorage()
    return LocalFileStorage(get_config_value("storage.root", config, "./storage"))


# ═══════════════════════════════════════════════════════════════════
# Canonical Paths
# ═══════════════════════════════════════════════════════════════════

def _clean(path: str) -> str:
    return path.strip().lstrip("/")


def sanitize(segment: str) -> str:
    """Lower-case, filesystem-safe path segment."""
    s = re.sub(r"[^a-zA-Z0-9._-]+", "_", segment.strip().lower())
    return s.strip("_") or "unnamed"


def project_root(project_id: str) -> str:
    return f"projects/{project_id}"


def session_root(project_id: str, session_id: str) -> str:
    return f"{project_root(project_id)}/sessions/{session_id}"


def iteration_root(project_id: str, session_id: str, iteration: int) -> str:
    return f"{session_root(project_id, session_id)}/iteration_{iteration}"


def stage_dir(project_id: str, session_id: str, iteration: int, stage_slug: str) -> str:
    return f"{iteration_root(project_id, session_id, iteration)}/{sanitize(stage_slug)}"


def seed_prompt_path(project_id: str, session_id: str, iteration: int) -> str:
    return f"{iteration_root(project_id, session_id, iteration)}/0_seed_inputs/user_prompt.md"


def contribution_file_name(model_name: str, contribution_id: str, document_key: str,
                           edit_version: int = 1, extension: str = "md") -> str:
    stem = f"{sanitize(model_name)}_{contribution_id[:8]}_{sanitize(document_key or 'contribution')}"
    if edit_version > 1:
        stem += f"_edit_v{edit_version}"
    return f"{stem}.{extension}"


def raw_response_path(project_id: str, session_id: str, iteration: int, stage_slug: str,
                      model_name: str, contribution_id: str, document_key: str) -> str:
    name = contribution_file_name(model_name, contribution_id, document_key, extension="json")
    return (f"{stage_dir(project_id, session_id, iteration, stage_slug)}/raw_responses/"
            f"{name[:-len('.json')]}_raw.json")


def rendered_document_path(project_id: str, session_id: str, iteration: int,
                           stage_slug: str, document_key: str, model_name: str) -> str:
    return (f"{stage_dir(project_id, session_id, iteration, stage_slug)}/documents/"
            f"{sanitize(document_key)}_{sanitize(model_name)}.md")


def export_path(project_id: str, project_name: str) -> str:
    return f"{project_root(project_id)}/exports/{sanitize(project_name)}_export.zip"
