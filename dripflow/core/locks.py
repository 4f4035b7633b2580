from contextlib import contextmanager
from dataclasses import dataclass
from threading import Lock
from typing import Iterator


@dataclass
class _KeyState:
    lock: Lock
    holders: int = 0


class KeyedLock:
    """One mutex per key, dropped again once nobody holds or waits on it."""

    def __init__(self) -> None:
        self._states: dict[str, _KeyState] = {}
        self._guard = Lock()

    @contextmanager
    def hold(self, key: str) -> Iterator[None]:
        with self._guard:
            state = self._states.setdefault(key, _KeyState(lock=Lock()))
            state.holders += 1
        state.lock.acquire()
        try:
            yield
        finally:
            state.lock.release()
            with self._guard:
                state.holders -= 1
                if state.holders == 0:
                    self._states.pop(key, None)

    def active_keys(self) -> int:
        with self._guard:
            return len(self._states)


# Serialises check-then-act sequences (activation guard, attach/detach, step edits) per campaign.
campaign_locks = KeyedLock()
