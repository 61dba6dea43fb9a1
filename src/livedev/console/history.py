"""Bounded invocation history replayed to new observers"""

from typing import Any, Dict, Iterator, List, Optional

Invocation = Dict[str, Any]


class InvocationHistory:
    """The most recent invocations, oldest first"""

    def __init__(self, limit: int = 25):
        self.limit = limit
        self._items: List[Invocation] = []

    def __iter__(self) -> Iterator[Invocation]:
        return iter(list(self._items))

    def __len__(self) -> int:
        return len(self._items)

    def find(self, invocation_id: str) -> Optional[Invocation]:
        for item in reversed(self._items):
            if item["id"] == invocation_id:
                return item
        return None

    def upsert(self, invocation: Invocation) -> Invocation:
        """Replace the entry with the same id, or append and trim"""
        for index in range(len(self._items) - 1, -1, -1):
            if self._items[index]["id"] == invocation["id"]:
                self._items[index] = invocation
                return invocation
        self._items.append(invocation)
        if len(self._items) > self.limit:
            del self._items[: len(self._items) - self.limit]
        return invocation

    def clear(self, source: str = "all") -> int:
        """Forget invocations of one function, or all of them for "all"

        Returns the number of entries removed.
        """
        before = len(self._items)
        if source == "all":
            self._items = []
        else:
            self._items = [item for item in self._items if item.get("source") != source]
        return before - len(self._items)
