"""Session Router – Session Registry.

Arena of live sessions keyed by ``(tenant_id, slot_id)``. Each entry is owned
by exactly one ConnectionSupervisor; every other component reads immutable
:class:`SessionSnapshot` values.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING

import structlog

if TYPE_CHECKING:
    from app.sessions.supervisor import ConnectionSupervisor

logger = structlog.get_logger()

SessionKey = tuple[str, int]


class SessionState(str, Enum):
    IDLE = "idle"
    PAIRING = "pairing"
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"
    TERMINATED = "terminated"


@dataclass(frozen=True)
class SessionSnapshot:
    tenant_id: str
    slot_id: int
    state: SessionState
    bound_address: str | None = None
    pairing_code: str | None = None

    @property
    def key(self) -> SessionKey:
        return (self.tenant_id, self.slot_id)

    @property
    def connected(self) -> bool:
        return self.state is SessionState.CONNECTED

    @property
    def connectivity(self) -> str:
        """Channel-level status: connected | pairing | disconnected."""
        if self.state is SessionState.CONNECTED:
            return "connected"
        if self.state is SessionState.PAIRING:
            return "pairing"
        return "disconnected"


class SessionRegistry:
    def __init__(self) -> None:
        self._entries: dict[SessionKey, "ConnectionSupervisor"] = {}

    def register(self, supervisor: "ConnectionSupervisor") -> None:
        self._entries[supervisor.key] = supervisor

    def unregister(self, key: SessionKey, owner: "ConnectionSupervisor | None" = None) -> bool:
        """Drop ``key``. With ``owner`` given, only if that supervisor still owns it."""
        current = self._entries.get(key)
        if current is None or (owner is not None and current is not owner):
            return False
        del self._entries[key]
        logger.info("registry.unregistered", tenant_id=key[0], slot=key[1])
        return True

    def get(self, key: SessionKey) -> "ConnectionSupervisor | None":
        return self._entries.get(key)

    def snapshot(self, key: SessionKey) -> SessionSnapshot | None:
        supervisor = self._entries.get(key)
        return supervisor.snapshot() if supervisor else None

    def snapshots(self, tenant_id: str | None = None) -> list[SessionSnapshot]:
        return [
            supervisor.snapshot()
            for key, supervisor in sorted(self._entries.items())
            if tenant_id is None or key[0] == tenant_id
        ]

    def connected(self, tenant_id: str) -> list[SessionSnapshot]:
        return [snap for snap in self.snapshots(tenant_id) if snap.connected]

    def __contains__(self, key: object) -> bool:
        return key in self._entries

    def __len__(self) -> int:
        return len(self._entries)
