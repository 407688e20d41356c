from __future__ import annotations
from typing import Any, Dict, List


class Issues:
    """
    Problems noticed while handling one request. Created per invocation and
    passed down explicitly; the route returns them in its status object.
    """

    def __init__(self) -> None:
        self._items: List[Dict[str, Any]] = []

    def add(self, code: str, message: str, **ids: Any) -> None:
        entry: Dict[str, Any] = {"code": code, "message": message}
        entry.update({k: v for k, v in ids.items() if v is not None})
        self._items.append(entry)

    def as_list(self) -> List[Dict[str, Any]]:
        return [dict(i) for i in self._items]

    def __len__(self) -> int:
        return len(self._items)

    def __bool__(self) -> bool:
        return bool(self._items)
