"""Resource store implementations.

The store is the only shared mutable state between workers. `load` returns
``None`` for a missing record and `save` returns ``False`` when the record was
deleted in the meantime, so both are safe to call from failure handlers.
"""

from __future__ import annotations

import json
import os
import tempfile
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Dict, Iterable, Iterator, List, Optional, Protocol

from filelock import FileLock

from .models import ManagedResource, ProgressEvent, ServerRecord, utc_now
from .utils.logging import get_logger

logger = get_logger(__name__)


class ResourceStore(Protocol):
    def load(self, resource_id: str) -> Optional[ManagedResource]:
        ...

    def add(self, resource: ManagedResource) -> ManagedResource:
        ...

    def save(self, resource: ManagedResource, fields: Optional[Iterable[str]] = None) -> bool:
        ...

    def delete(self, resource_id: str) -> bool:
        ...

    def find(self, server_id: str, resource_type: Optional[str] = None) -> List[ManagedResource]:
        ...

    def load_server(self, server_id: str) -> Optional[ServerRecord]:
        ...

    def save_server(self, server: ServerRecord) -> None:
        ...

    def append_event(self, event: ProgressEvent) -> None:
        ...

    def events_for(self, resource_id: str) -> List[ProgressEvent]:
        ...


def _merge(existing: Dict[str, Any], resource: ManagedResource, fields: Optional[Iterable[str]]) -> Dict[str, Any]:
    payload = resource.to_dict()
    if fields is None:
        merged = payload
    else:
        merged = dict(existing)
        for name in fields:
            if name not in payload:
                raise ValueError(f"Unknown resource field: {name}")
            merged[name] = payload[name]
    merged["updated_at"] = utc_now()
    return merged


class _DocumentStore:
    """Shared logic over a dict document: resources, servers, events."""

    def __init__(self) -> None:
        self._lock = threading.RLock()

    @contextmanager
    def _locked(self) -> Iterator[None]:
        with self._lock:
            yield

    # Subclasses provide the document and persist it after mutations.
    def _read(self) -> Dict[str, Any]:
        raise NotImplementedError

    def _write(self, document: Dict[str, Any]) -> None:
        raise NotImplementedError

    def load(self, resource_id: str) -> Optional[ManagedResource]:
        with self._locked():
            data = self._read()["resources"].get(str(resource_id))
        return ManagedResource.from_dict(data) if data else None

    def add(self, resource: ManagedResource) -> ManagedResource:
        with self._locked():
            document = self._read()
            if resource.id in document["resources"]:
                raise ValueError(f"Resource {resource.id} already exists")
            resource.updated_at = utc_now()
            document["resources"][resource.id] = resource.to_dict()
            self._write(document)
        return resource

    def save(self, resource: ManagedResource, fields: Optional[Iterable[str]] = None) -> bool:
        with self._locked():
            document = self._read()
            existing = document["resources"].get(resource.id)
            if existing is None:
                logger.debug("Skipping save of deleted resource %s", resource.id)
                return False
            merged = _merge(existing, resource, fields)
            document["resources"][resource.id] = merged
            self._write(document)
        resource.updated_at = merged["updated_at"]
        return True

    def delete(self, resource_id: str) -> bool:
        with self._locked():
            document = self._read()
            removed = document["resources"].pop(str(resource_id), None)
            if removed is not None:
                self._write(document)
        return removed is not None

    def find(self, server_id: str, resource_type: Optional[str] = None) -> List[ManagedResource]:
        with self._locked():
            rows = list(self._read()["resources"].values())
        return [
            ManagedResource.from_dict(row)
            for row in rows
            if row["server_id"] == str(server_id)
            and (resource_type is None or row["resource_type"] == resource_type)
        ]

    def load_server(self, server_id: str) -> Optional[ServerRecord]:
        with self._locked():
            data = self._read()["servers"].get(str(server_id))
        return ServerRecord.from_dict(data) if data else None

    def save_server(self, server: ServerRecord) -> None:
        with self._locked():
            document = self._read()
            document["servers"][server.id] = server.to_dict()
            self._write(document)

    def delete_server(self, server_id: str) -> bool:
        with self._locked():
            document = self._read()
            removed = document["servers"].pop(str(server_id), None)
            if removed is not None:
                self._write(document)
        return removed is not None

    def append_event(self, event: ProgressEvent) -> None:
        with self._locked():
            document = self._read()
            document["events"].append(event.to_dict())
            self._write(document)

    def events_for(self, resource_id: str) -> List[ProgressEvent]:
        with self._locked():
            rows = list(self._read()["events"])
        return [ProgressEvent.from_dict(row) for row in rows if row["resource_id"] == str(resource_id)]


def _empty_document() -> Dict[str, Any]:
    return {"servers": {}, "resources": {}, "events": []}


class InMemoryResourceStore(_DocumentStore):
    """Process-local store; records are copied in and out like a database."""

    def __init__(self) -> None:
        super().__init__()
        self._document = _empty_document()

    def _read(self) -> Dict[str, Any]:
        return json.loads(json.dumps(self._document))

    def _write(self, document: Dict[str, Any]) -> None:
        self._document = document


class JsonResourceStore(_DocumentStore):
    """Single JSON document on disk, replaced atomically on every write.

    Every read-modify-write holds `<path>.lock`, so worker processes sharing
    the file serialise their updates.
    """

    def __init__(self, path: str) -> None:
        super().__init__()
        self.path = Path(path)
        self._file_lock = FileLock(str(self.path) + ".lock")

    @contextmanager
    def _locked(self) -> Iterator[None]:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with self._lock, self._file_lock:
            yield

    def _read(self) -> Dict[str, Any]:
        if not self.path.is_file():
            return _empty_document()
        with self.path.open("r", encoding="utf-8") as handle:
            document = json.load(handle)
        for key, default in _empty_document().items():
            document.setdefault(key, default)
        return document

    def _write(self, document: Dict[str, Any]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(dir=str(self.path.parent), prefix=".resources-", suffix=".json")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                json.dump(document, handle, indent=2, ensure_ascii=False)
            os.replace(tmp_path, self.path)
        except BaseException:
            Path(tmp_path).unlink(missing_ok=True)
            raise
