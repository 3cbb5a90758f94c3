"""Local viewer preferences behind the room's auto-join behavior."""

from __future__ import annotations

import abc
from typing import Dict

AUTO_JOIN_LIVE_KEY = "prefs:autoJoinLive"


def joined_event_key(event_id: str) -> str:
    return f"joined:event:{event_id}"


class PreferenceStore(abc.ABC):
    """Small persistent flag store (device storage on a client)."""

    @abc.abstractmethod
    async def get_flag(self, key: str, default: bool) -> bool:
        ...

    @abc.abstractmethod
    async def set_flag(self, key: str, value: bool) -> None:
        ...

    async def auto_join_live(self) -> bool:
        return await self.get_flag(AUTO_JOIN_LIVE_KEY, True)

    async def set_auto_join_live(self, value: bool) -> None:
        await self.set_flag(AUTO_JOIN_LIVE_KEY, value)

    async def joined_event(self, event_id: str) -> bool:
        return await self.get_flag(joined_event_key(event_id), False)

    async def set_joined_event(self, event_id: str, value: bool) -> None:
        await self.set_flag(joined_event_key(event_id), value)


class InMemoryPreferenceStore(PreferenceStore):
    def __init__(self, initial: Dict[str, bool] | None = None) -> None:
        self._flags: Dict[str, bool] = dict(initial or {})

    async def get_flag(self, key: str, default: bool) -> bool:
        return self._flags.get(key, default)

    async def set_flag(self, key: str, value: bool) -> None:
        self._flags[key] = bool(value)
