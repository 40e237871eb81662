from __future__ import annotations

from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Dict, Optional, Union

from .errors import ErrorKind


class DeviceState(str, Enum):
    DISCOVERED = "discovered"
    REACHABLE = "reachable"
    UNREACHABLE = "unreachable"


@dataclass(frozen=True)
class Reading:
    current_amperes: float
    voltage_volts: float
    power_watts: float
    energy_joules_total: float
    observed_at: float


@dataclass(frozen=True)
class Success:
    reading: Reading
    sysinfo: Dict[str, Any] = field(default_factory=dict)

    ok = True


@dataclass(frozen=True)
class Failure:
    kind: ErrorKind
    detail: str = ""

    ok = False


PollOutcome = Union[Success, Failure]


@dataclass(frozen=True)
class DeviceCandidate:
    """A sighting of a device reported by discovery or a directory.

    ``address`` is ``None`` when the source only knows the device's identity
    (the cloud directory has no LAN addresses).
    """

    device_id: str
    alias: str = ""
    address: Optional[str] = None
    model: str = ""
    hw_ver: str = ""
    schema: Optional[str] = None
    source: str = ""


@dataclass
class DeviceRecord:
    device_id: str
    alias: str
    address: str
    model: str = ""
    hw_ver: str = ""
    schema: str = ""
    state: DeviceState = DeviceState.DISCOVERED
    consecutive_failures: int = 0
    consecutive_successes: int = 0
    last_success_at: Optional[float] = None
    last_error: Optional[ErrorKind] = None
    schema_pinned: bool = False
    last_seen_generation: int = 0
    polls_total: int = 0
    errors_total: int = 0

    def copy(self) -> "DeviceRecord":
        return replace(self)
