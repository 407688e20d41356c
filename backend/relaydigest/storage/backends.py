from __future__ import annotations
import json
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional, Protocol
from urllib.parse import quote, unquote


@dataclass
class Slot:
    data: bytes
    attrs: Dict[str, str] = field(default_factory=dict)


class SlotBackend(Protocol):
    """Fixed-capacity named slots. Each write replaces the whole slot."""

    capacity: int

    def read(self, name: str) -> Optional[Slot]: ...
    def read_attrs(self, name: str) -> Optional[Dict[str, str]]: ...
    def write(self, name: str, slot: Slot) -> None: ...
    def remove(self, name: str) -> bool: ...
    def names(self) -> List[str]: ...


def _check_capacity(name: str, slot: Slot, capacity: int) -> None:
    if len(slot.data) > capacity:
        raise ValueError(f"slot {name!r} holds {len(slot.data)} bytes, capacity is {capacity}")


class MemorySlotBackend:
    def __init__(self, capacity: int) -> None:
        self.capacity = capacity
        self._slots: Dict[str, Slot] = {}
        self._lock = threading.Lock()

    def read(self, name: str) -> Optional[Slot]:
        with self._lock:
            s = self._slots.get(name)
            return Slot(s.data, dict(s.attrs)) if s else None

    def read_attrs(self, name: str) -> Optional[Dict[str, str]]:
        with self._lock:
            s = self._slots.get(name)
            return dict(s.attrs) if s else None

    def write(self, name: str, slot: Slot) -> None:
        _check_capacity(name, slot, self.capacity)
        with self._lock:
            self._slots[name] = Slot(bytes(slot.data), dict(slot.attrs))

    def remove(self, name: str) -> bool:
        with self._lock:
            return self._slots.pop(name, None) is not None

    def names(self) -> List[str]:
        with self._lock:
            return list(self._slots.keys())


class FileSlotBackend:
    """
    One `<name>.bin` data file plus one `<name>.attrs.json` sidecar per slot.
    The sidecar is written last, so a slot without one is treated as absent.
    """

    def __init__(self, root: Path | str, capacity: int) -> None:
        self.capacity = capacity
        self._root = Path(root).expanduser()
        self._root.mkdir(parents=True, exist_ok=True)

    def _paths(self, name: str) -> tuple[Path, Path]:
        stem = quote(name, safe="")
        return self._root / f"{stem}.bin", self._root / f"{stem}.attrs.json"

    def read(self, name: str) -> Optional[Slot]:
        data_path, attrs_path = self._paths(name)
        if not attrs_path.exists() or not data_path.exists():
            return None
        attrs = json.loads(attrs_path.read_text(encoding="utf-8"))
        return Slot(data_path.read_bytes(), attrs)

    def read_attrs(self, name: str) -> Optional[Dict[str, str]]:
        """Sidecar only; the data file is not opened."""
        data_path, attrs_path = self._paths(name)
        if not attrs_path.exists() or not data_path.exists():
            return None
        return json.loads(attrs_path.read_text(encoding="utf-8"))

    def write(self, name: str, slot: Slot) -> None:
        _check_capacity(name, slot, self.capacity)
        data_path, attrs_path = self._paths(name)
        tmp = data_path.with_suffix(".bin.tmp")
        tmp.write_bytes(slot.data)
        tmp.replace(data_path)
        attrs_path.write_text(json.dumps(slot.attrs, ensure_ascii=False), encoding="utf-8")

    def remove(self, name: str) -> bool:
        data_path, attrs_path = self._paths(name)
        existed = attrs_path.exists()
        for p in (attrs_path, data_path):
            if p.exists():
                p.unlink()
        return existed

    def names(self) -> List[str]:
        out = []
        for p in self._root.glob("*.attrs.json"):
            out.append(unquote(p.name[: -len(".attrs.json")]))
        return out
