from __future__ import annotations
import json
import logging
import math
import threading
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, List, Optional, Type, TypeVar
from pydantic import BaseModel, Field

from ..errors import ReconstructionError, StorageQuotaExceeded, VersionConflict
from ..observability.metrics import record_kv_eviction, record_kv_write
from .backends import Slot, SlotBackend

logger = logging.getLogger(__name__)

META_SUFFIX = "#meta"
CHUNK_MARK = "#chunk#"

M = TypeVar("M", bound=BaseModel)


def chunk_slot(key: str, index: int) -> str:
    return f"{key}{CHUNK_MARK}{index}"


def meta_slot(key: str) -> str:
    return f"{key}{META_SUFFIX}"


class StoredBlob(BaseModel):
    key: str
    payload: bytes
    chunked: bool = False
    chunk_count: Optional[int] = None
    size_bytes: int
    created_at: datetime
    updated_at: datetime
    tags: Dict[str, str] = Field(default_factory=dict)
    version: int = 1

    @property
    def text(self) -> str:
        return self.payload.decode("utf-8")


class EntryInfo(BaseModel):
    key: str
    chunked: bool
    chunk_count: Optional[int] = None
    size_bytes: int
    created_at: datetime
    updated_at: datetime
    version: int


class PutResult(BaseModel):
    key: str
    chunked: bool
    chunk_count: Optional[int] = None
    size_bytes: int
    version: int


class StoreStats(BaseModel):
    entry_count: int
    total_bytes: int
    largest_entry: Optional[str] = None
    largest_entry_bytes: int = 0


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _info_from_attrs(attrs: Dict[str, str]) -> EntryInfo:
    chunked = attrs.get("chunked") == "1"
    return EntryInfo(
        key=attrs["key"],
        chunked=chunked,
        chunk_count=int(attrs["chunk_count"]) if chunked else None,
        size_bytes=int(attrs["size"]),
        created_at=datetime.fromisoformat(attrs["created_at"]),
        updated_at=datetime.fromisoformat(attrs["updated_at"]),
        version=int(attrs["version"]),
    )


class BoundedKVStore:
    """
    Key-value store over fixed-capacity slots.

    Payloads up to one slot live under the key itself. Larger payloads are
    cut into `key#chunk#<i>` slots and described by a `key#meta` slot that is
    written after all of its chunks. Each chunk slot carries the version of
    the write that produced it, so a read never stitches two writes together.
    """

    def __init__(
        self,
        backend: SlotBackend,
        *,
        total_budget_bytes: int,
        max_entries: int,
        max_age_s: int,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._backend = backend
        self.max_slot_bytes = backend.capacity
        self.total_budget_bytes = total_budget_bytes
        self.max_entries = max_entries
        self.max_age = timedelta(seconds=max_age_s)
        self._clock = clock
        self._lock = threading.RLock()

    # ---------- reads ----------
    def get(self, key: str) -> Optional[StoredBlob]:
        """Whole payload or None, never a chunked entry halfway through an overwrite."""
        self._check_key(key)
        with self._lock:
            slot = self._backend.read(key)
            if slot is not None:
                info = _info_from_attrs(slot.attrs)
                return self._blob(info, slot.attrs, slot.data)

            meta = self._backend.read_attrs(meta_slot(key))
            if meta is None:
                return None
            return self._assemble(key, meta)

    def get_text(self, key: str) -> Optional[str]:
        blob = self.get(key)
        return blob.text if blob else None

    def get_model(self, key: str, model: Type[M]) -> Optional[M]:
        blob = self.get(key)
        if blob is None:
            return None
        return model.model_validate_json(blob.payload)

    def keys(self, prefix: str = "") -> List[str]:
        with self._lock:
            return sorted(e.key for e in self._entries() if e.key.startswith(prefix))

    def stats(self) -> StoreStats:
        with self._lock:
            entries = self._entries()
        largest = max(entries, key=lambda e: e.size_bytes, default=None)
        return StoreStats(
            entry_count=len(entries),
            total_bytes=sum(e.size_bytes for e in entries),
            largest_entry=largest.key if largest else None,
            largest_entry_bytes=largest.size_bytes if largest else 0,
        )

    # ---------- writes ----------
    def put(
        self,
        key: str,
        payload: bytes | str,
        tags: Optional[Dict[str, str]] = None,
        *,
        if_version: Optional[int] = None,
    ) -> PutResult:
        """
        Full overwrite of `key`. With `if_version`, the write only happens when
        the stored version matches (0 means the key must not exist yet).
        """
        self._check_key(key)
        if isinstance(payload, str):
            payload = payload.encode("utf-8")

        with self._lock:
            self.evict()
            existing = self._describe(key)
            current = existing.version if existing else 0
            if if_version is not None and current != if_version:
                raise VersionConflict(key, if_version, current)
            self._ensure_budget(key, len(payload))

            now = self._clock()
            version = current + 1
            attrs = {
                "key": key,
                "size": str(len(payload)),
                "version": str(version),
                "created_at": (existing.created_at if existing else now).isoformat(),
                "updated_at": now.isoformat(),
                "tags": json.dumps(tags or {}, ensure_ascii=False),
                "chunked": "0",
            }

            if len(payload) <= self.max_slot_bytes:
                self._backend.write(key, Slot(payload, attrs))
                if existing and existing.chunked:
                    self._drop_chunks(key, 0, existing.chunk_count or 0)
                    self._backend.remove(meta_slot(key))
                count = None
            else:
                size = self.max_slot_bytes
                count = math.ceil(len(payload) / size)
                for i in range(count):
                    part = payload[i * size:(i + 1) * size]
                    self._backend.write(
                        chunk_slot(key, i),
                        Slot(part, {"key": key, "index": str(i), "version": str(version)}),
                    )
                attrs.update(chunked="1", chunk_count=str(count))
                self._backend.write(meta_slot(key), Slot(b"", attrs))
                if existing and existing.chunked:
                    self._drop_chunks(key, count, existing.chunk_count or 0)
                elif existing:
                    self._backend.remove(key)

        record_kv_write(count is not None)
        logger.debug("kv put %s (%d bytes, chunks=%s, v%d)", key, len(payload), count, version)
        return PutResult(
            key=key, chunked=count is not None, chunk_count=count,
            size_bytes=len(payload), version=version,
        )

    def put_text(self, key: str, text: str, tags: Optional[Dict[str, str]] = None) -> PutResult:
        return self.put(key, text.encode("utf-8"), tags)

    def put_model(
        self,
        key: str,
        model: BaseModel,
        tags: Optional[Dict[str, str]] = None,
        *,
        if_version: Optional[int] = None,
    ) -> PutResult:
        return self.put(key, model.model_dump_json().encode("utf-8"), tags, if_version=if_version)

    def delete(self, key: str) -> bool:
        self._check_key(key)
        with self._lock:
            if self._backend.remove(key):
                return True
            meta = self._backend.read_attrs(meta_slot(key))
            if meta is None:
                return False
            info = _info_from_attrs(meta)
            self._drop_chunks(key, 0, info.chunk_count or 0)
            self._backend.remove(meta_slot(key))
            return True

    def evict(self, *, free_bytes: int = 0) -> int:
        """
        Delete aged entries, oldest first. Runs when the entry count is above
        the ceiling, or when `free_bytes` must be reclaimed for a write.
        """
        with self._lock:
            entries = self._entries()
            excess = len(entries) - self.max_entries
            if excess <= 0 and free_bytes <= 0:
                return 0
            cutoff = self._clock() - self.max_age
            aged = sorted((e for e in entries if e.updated_at < cutoff), key=lambda e: e.updated_at)

            removed = 0
            freed = 0
            for e in aged:
                if excess - removed <= 0 and freed >= free_bytes:
                    break
                self.delete(e.key)
                removed += 1
                freed += e.size_bytes

        if removed:
            record_kv_eviction(removed)
            logger.info("kv evicted %d aged entries (%d bytes)", removed, freed)
        return removed

    # ---------- internals ----------
    @staticmethod
    def _check_key(key: str) -> None:
        if not key or "#" in key:
            raise ValueError(f"invalid storage key {key!r}")

    def _blob(self, info: EntryInfo, attrs: Dict[str, str], payload: bytes) -> StoredBlob:
        return StoredBlob(
            key=info.key,
            payload=payload,
            chunked=info.chunked,
            chunk_count=info.chunk_count,
            size_bytes=info.size_bytes,
            created_at=info.created_at,
            updated_at=info.updated_at,
            tags=json.loads(attrs.get("tags") or "{}"),
            version=info.version,
        )

    def _assemble(self, key: str, meta: Dict[str, str]) -> StoredBlob:
        info = _info_from_attrs(meta)
        count = info.chunk_count or 0
        parts: List[bytes] = []
        for i in range(count):
            part = self._backend.read(chunk_slot(key, i))
            if part is None:
                raise ReconstructionError(key, f"slot {i} of {count} is missing")
            if part.attrs.get("version") != str(info.version):
                raise ReconstructionError(
                    key, f"slot {i} belongs to version {part.attrs.get('version')}, not {info.version}"
                )
            parts.append(part.data)
        payload = b"".join(parts)
        if len(payload) != info.size_bytes:
            raise ReconstructionError(key, f"rebuilt {len(payload)} bytes, expected {info.size_bytes}")
        return self._blob(info, meta, payload)

    def _describe(self, key: str) -> Optional[EntryInfo]:
        attrs = self._backend.read_attrs(key)
        if attrs is None:
            attrs = self._backend.read_attrs(meta_slot(key))
        return _info_from_attrs(attrs) if attrs else None

    def _entries(self) -> List[EntryInfo]:
        out: List[EntryInfo] = []
        for name in self._backend.names():
            if "#" in name and not name.endswith(META_SUFFIX):
                continue
            attrs = self._backend.read_attrs(name)
            if attrs is not None:
                out.append(_info_from_attrs(attrs))
        return out

    def _ensure_budget(self, key: str, size: int) -> None:
        def required() -> int:
            others = sum(e.size_bytes for e in self._entries() if e.key != key)
            return others + size

        need = required()
        if need <= self.total_budget_bytes:
            return
        self.evict(free_bytes=need - self.total_budget_bytes)
        need = required()
        if need > self.total_budget_bytes:
            raise StorageQuotaExceeded(key, need, self.total_budget_bytes)

    def _drop_chunks(self, key: str, start: int, stop: int) -> None:
        for i in range(start, stop):
            self._backend.remove(chunk_slot(key, i))
