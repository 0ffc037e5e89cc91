from __future__ import annotations

from collections import OrderedDict


class BoundedMessageMap:
    """Delivered message id -> bottle id, evicting the least recently used entry."""

    def __init__(self, maxsize: int = 1000) -> None:
        self.maxsize = max(1, int(maxsize))
        self._data: OrderedDict[str, int] = OrderedDict()

    @staticmethod
    def _key(handle) -> str:
        return str(getattr(handle, "id", handle))

    def remember(self, handle, bottle_id: int) -> None:
        key = self._key(handle)
        self._data[key] = int(bottle_id)
        self._data.move_to_end(key)
        while len(self._data) > self.maxsize:
            self._data.popitem(last=False)

    def lookup(self, handle) -> int | None:
        key = self._key(handle)
        if key not in self._data:
            return None
        self._data.move_to_end(key)
        return self._data[key]

    def forget_bottle(self, bottle_id: int) -> None:
        for key in [k for k, v in self._data.items() if v == int(bottle_id)]:
            del self._data[key]

    def clear(self) -> None:
        self._data.clear()

    def __len__(self) -> int:
        return len(self._data)

    def __contains__(self, handle) -> bool:
        return self._key(handle) in self._data
