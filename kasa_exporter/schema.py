from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple

from .errors import SchemaError
from .models import Reading


@dataclass(frozen=True)
class EmeterSchema:
    tag: str
    current: str
    voltage: str
    power: str
    energy: str
    scale_current: float
    scale_voltage: float
    scale_power: float
    scale_energy: float

    def fields(self) -> List[str]:
        return [self.current, self.voltage, self.power, self.energy]


# First generation plugs report base units and kWh, later hardware reports
# integer milli-units and Wh.
SCHEMAS: Dict[str, EmeterSchema] = {
    "emeter_v1": EmeterSchema(
        tag="emeter_v1",
        current="current",
        voltage="voltage",
        power="power",
        energy="total",
        scale_current=1.0,
        scale_voltage=1.0,
        scale_power=1.0,
        scale_energy=3600.0 * 1000.0,
    ),
    "emeter_v2": EmeterSchema(
        tag="emeter_v2",
        current="current_ma",
        voltage="voltage_mv",
        power="power_mw",
        energy="total_wh",
        scale_current=0.001,
        scale_voltage=0.001,
        scale_power=0.001,
        scale_energy=3600.0,
    ),
}

DEFAULT_SCHEMA = "emeter_v2"

# (model prefix, hardware major version) -> schema tag. None matches any version.
MODEL_TABLE: List[Tuple[str, Optional[int], str]] = [
    ("HS110", 1, "emeter_v1"),
    ("HS110", None, "emeter_v2"),
    ("HS300", None, "emeter_v2"),
    ("KP115", None, "emeter_v2"),
    ("KP125", None, "emeter_v2"),
    ("EP25", None, "emeter_v2"),
]


def _hw_major(hw_ver: str) -> Optional[int]:
    head = str(hw_ver or "").strip().split(".", 1)[0]
    try:
        return int(head)
    except ValueError:
        return None


def resolve_schema(model: str, hw_ver: str = "") -> str:
    m = str(model or "").strip().upper()
    major = _hw_major(hw_ver)
    for prefix, version, tag in MODEL_TABLE:
        if not m.startswith(prefix):
            continue
        if version is None or version == major:
            return tag
    return DEFAULT_SCHEMA


def get_schema(tag: str) -> EmeterSchema:
    try:
        return SCHEMAS[tag]
    except KeyError:
        raise SchemaError(f"unknown schema {tag!r}") from None


def _number(realtime: Dict[str, Any], key: str) -> float:
    v = realtime.get(key)
    if isinstance(v, bool) or not isinstance(v, (int, float)):
        raise SchemaError(f"missing or non-numeric field {key!r}")
    return float(v)


def to_reading(realtime: Any, tag: str, observed_at: float) -> Reading:
    if not isinstance(realtime, dict):
        raise SchemaError("realtime block is not an object")
    s = get_schema(tag)
    return Reading(
        current_amperes=_number(realtime, s.current) * s.scale_current,
        voltage_volts=_number(realtime, s.voltage) * s.scale_voltage,
        power_watts=_number(realtime, s.power) * s.scale_power,
        energy_joules_total=_number(realtime, s.energy) * s.scale_energy,
        observed_at=observed_at,
    )
