from __future__ import annotations

import logging
from typing import Any, Callable

log = logging.getLogger(__name__)


class Signal:
    """Explicit observer list owned by the emitting object.

    Subscribers connect at construction and disconnect at teardown; emit()
    calls them in connection order. A failing slot is logged and does not
    stop the remaining slots.
    """

    def __init__(self, name: str) -> None:
        self.name = name
        self._slots: list[Callable[..., Any]] = []

    def connect(self, slot: Callable[..., Any]) -> Callable[..., Any]:
        if slot not in self._slots:
            self._slots.append(slot)
        return slot

    def disconnect(self, slot: Callable[..., Any]) -> bool:
        try:
            self._slots.remove(slot)
        except ValueError:
            return False
        return True

    def __len__(self) -> int:
        return len(self._slots)

    def emit(self, *args: Any, **kwargs: Any) -> None:
        for slot in list(self._slots):
            try:
                slot(*args, **kwargs)
            except Exception:
                log.exception("slot %r failed while handling signal %s", slot, self.name)
