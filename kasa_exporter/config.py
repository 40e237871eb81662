from __future__ import annotations

import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import yaml

from .device import DEFAULT_PORT, format_address, parse_address
from .errors import ConfigError
from .models import DeviceCandidate
from .schema import SCHEMAS

CONFIG_ENV = "KASA_EXPORTER_CONFIG"


@dataclass
class ExporterConfig:
    listen_address: str = "0.0.0.0:9233"
    telemetry_path: str = "/metrics"

    poll_interval_seconds: float = 15.0
    connect_timeout_seconds: float = 2.0
    read_timeout_seconds: float = 3.0
    max_parallel: int = 8
    unreachable_after_failures: int = 3
    reachable_after_successes: int = 1
    stale_seconds: float = 300.0
    ready_grace_seconds: Optional[float] = None

    discovery_enabled: bool = True
    discovery_interval_seconds: float = 300.0
    discovery_timeout_seconds: float = 3.0
    broadcast_address: str = "255.255.255.255"
    discovery_port: int = DEFAULT_PORT
    remove_after_cycles: int = 3

    cloud_enabled: bool = False
    cloud_username: str = ""
    cloud_password: str = ""
    cloud_app_type: str = "kasa_exporter"
    cloud_endpoint: str = "https://wap.tplinkcloud.com/"
    cloud_timeout_seconds: float = 10.0

    devices: List[DeviceCandidate] = field(default_factory=list)


def parse_listen_address(s: str) -> Tuple[str, int]:
    s = s.strip()
    if s.startswith(":"):
        return "", int(s[1:])
    if ":" in s:
        host, port_s = s.rsplit(":", 1)
        return host.strip("[]"), int(port_s)
    return "", int(s)


def find_config_path(explicit: Optional[str] = None) -> Optional[str]:
    path = explicit or os.environ.get(CONFIG_ENV, "").strip() or None
    if path:
        return path
    for c in (Path.cwd() / "config.yaml", Path("/config/config.yaml")):
        if c.is_file():
            return str(c)
    return None


def load_config_file(path: str) -> Dict[str, Any]:
    try:
        with open(path, "r", encoding="utf-8") as f:
            raw = f.read()
    except OSError as e:
        raise ConfigError(f"cannot read config {path}: {e}") from e

    try:
        if path.lower().endswith(".json"):
            data = json.loads(raw)
        else:
            data = yaml.safe_load(raw)
    except (ValueError, yaml.YAMLError) as e:
        raise ConfigError(f"cannot parse config {path}: {e}") from e

    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigError("config root must be a mapping/object")
    return data


def _section(cfg: Dict[str, Any], name: str) -> Dict[str, Any]:
    v = cfg.get(name, {})
    if v is None:
        return {}
    if not isinstance(v, dict):
        raise ConfigError(f"'{name}' must be a mapping/object")
    return v


def _num(sec: Dict[str, Any], key: str, default: float, minimum: float = 0.0, cast=float):
    raw = sec.get(key, default)
    try:
        v = cast(raw)
    except (TypeError, ValueError):
        raise ConfigError(f"{key}: expected a number, got {raw!r}") from None
    if v < minimum:
        raise ConfigError(f"{key}: must be >= {minimum}, got {v}")
    return v


def to_device_candidates(cfg: Dict[str, Any]) -> List[DeviceCandidate]:
    devices = cfg.get("devices", [])
    if devices is None:
        return []
    if not isinstance(devices, list):
        raise ConfigError("'devices' must be a list")

    out: List[DeviceCandidate] = []
    for item in devices:
        if not isinstance(item, dict):
            raise ConfigError("each device entry must be an object")
        missing = [k for k in ("device_id", "address") if not item.get(k)]
        if missing:
            raise ConfigError(f"device entry missing required fields: {', '.join(missing)}")

        try:
            host, port = parse_address(str(item["address"]))
        except ValueError:
            raise ConfigError(f"device {item['device_id']}: bad address {item['address']!r}") from None

        schema = item.get("schema")
        if schema is not None and schema not in SCHEMAS:
            raise ConfigError(f"device {item['device_id']}: unknown schema {schema!r}, expected one of {', '.join(sorted(SCHEMAS))}")

        out.append(
            DeviceCandidate(
                device_id=str(item["device_id"]),
                alias=str(item.get("alias", "")).strip(),
                address=format_address(host, port),
                model=str(item.get("model", "")),
                hw_ver=str(item.get("hw_ver", "")),
                schema=schema,
                source="static",
            )
        )
    return out


def parse_config(cfg: Dict[str, Any]) -> ExporterConfig:
    web = _section(cfg, "web")
    poll = _section(cfg, "poll")
    disc = _section(cfg, "discovery")
    cloud = _section(cfg, "cloud")

    c = ExporterConfig()
    c.listen_address = str(web.get("listen_address", c.listen_address))
    c.telemetry_path = str(web.get("telemetry_path", c.telemetry_path))

    c.poll_interval_seconds = _num(poll, "interval_seconds", c.poll_interval_seconds, 0.1)
    c.connect_timeout_seconds = _num(poll, "connect_timeout_seconds", c.connect_timeout_seconds, 0.01)
    c.read_timeout_seconds = _num(poll, "read_timeout_seconds", c.read_timeout_seconds, 0.01)
    c.max_parallel = _num(poll, "max_parallel", c.max_parallel, 1, int)
    c.unreachable_after_failures = _num(poll, "unreachable_after_failures", c.unreachable_after_failures, 1, int)
    c.reachable_after_successes = _num(poll, "reachable_after_successes", c.reachable_after_successes, 1, int)
    c.stale_seconds = _num(poll, "stale_seconds", c.stale_seconds, 1.0)
    if poll.get("ready_grace_seconds") is not None:
        c.ready_grace_seconds = _num(poll, "ready_grace_seconds", 0.0, 0.0)

    c.discovery_enabled = bool(disc.get("enabled", c.discovery_enabled))
    c.discovery_interval_seconds = _num(disc, "interval_seconds", c.discovery_interval_seconds, 1.0)
    c.discovery_timeout_seconds = _num(disc, "timeout_seconds", c.discovery_timeout_seconds, 0.1)
    c.broadcast_address = str(disc.get("broadcast_address", c.broadcast_address))
    c.discovery_port = _num(disc, "port", c.discovery_port, 1, int)
    c.remove_after_cycles = _num(disc, "remove_after_cycles", c.remove_after_cycles, 1, int)

    c.cloud_enabled = bool(cloud.get("enabled", c.cloud_enabled))
    c.cloud_username = str(cloud.get("username") or os.environ.get("KASA_CLOUD_USERNAME", ""))
    c.cloud_password = str(cloud.get("password") or os.environ.get("KASA_CLOUD_PASSWORD", ""))
    c.cloud_app_type = str(cloud.get("app_type", c.cloud_app_type))
    c.cloud_endpoint = str(cloud.get("endpoint", c.cloud_endpoint))
    c.cloud_timeout_seconds = _num(cloud, "timeout_seconds", c.cloud_timeout_seconds, 0.1)
    if c.cloud_enabled and not (c.cloud_username and c.cloud_password):
        raise ConfigError("cloud.enabled requires username and password (or KASA_CLOUD_USERNAME/KASA_CLOUD_PASSWORD)")

    c.devices = to_device_candidates(cfg)
    if not c.devices and not c.discovery_enabled:
        raise ConfigError("no devices configured and discovery disabled")

    try:
        parse_listen_address(c.listen_address)
    except ValueError:
        raise ConfigError(f"bad listen_address {c.listen_address!r}") from None
    return c
