from __future__ import annotations

from dataclasses import dataclass, field
from threading import Lock
from types import MappingProxyType
from typing import Dict, Mapping, Tuple

from .models import DeviceRecord, Reading


@dataclass(frozen=True)
class Snapshot:
    entries: Mapping[str, Tuple[DeviceRecord, Reading]] = field(default_factory=lambda: MappingProxyType({}))
    health: Mapping[str, DeviceRecord] = field(default_factory=lambda: MappingProxyType({}))
    cycle: int = 0
    completed_at: float = 0.0
    duration: float = 0.0


class SnapshotStore:
    """Latest published poll cycle.

    One writer builds a fresh ``Snapshot`` per cycle and swaps the reference;
    readers get whatever was last published and never wait on a poll.
    """

    def __init__(self) -> None:
        self._lock = Lock()
        self._current = Snapshot()

    def publish(
        self,
        entries: Dict[str, Tuple[DeviceRecord, Reading]],
        health: Dict[str, DeviceRecord],
        cycle: int,
        completed_at: float,
        duration: float,
    ) -> Snapshot:
        snap = Snapshot(
            entries=MappingProxyType({k: (rec.copy(), r) for k, (rec, r) in entries.items()}),
            health=MappingProxyType({k: rec.copy() for k, rec in health.items()}),
            cycle=cycle,
            completed_at=completed_at,
            duration=duration,
        )
        with self._lock:
            self._current = snap
        return snap

    def current(self) -> Snapshot:
        return self._current

    def get_snapshot(self) -> Mapping[str, Tuple[str, Reading]]:
        snap = self._current
        return MappingProxyType({k: (rec.alias, r) for k, (rec, r) in snap.entries.items()})
