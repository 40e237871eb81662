from __future__ import annotations

import logging
import signal
from threading import Thread
from typing import Any, List, Optional

import click
from prometheus_client import CollectorRegistry
from prometheus_client.platform_collector import PlatformCollector
from prometheus_client.process_collector import ProcessCollector

from .app import make_app, make_http_server
from .collector import KasaCollector
from .config import ExporterConfig, find_config_path, load_config_file, parse_config, parse_listen_address
from .directory import CloudDirectory, StaticDirectory
from .discovery import DiscoverySource
from .errors import ConfigError
from .poller import PollingOrchestrator
from .snapshot import SnapshotStore


def setup_logging(level: str) -> None:
    lvl = getattr(logging, level.upper(), logging.INFO)
    logging.basicConfig(level=lvl, format="%(asctime)s %(levelname)s %(message)s")


def build_sources(cfg: ExporterConfig) -> List[Any]:
    # Discovery goes last so a live address wins over a configured one.
    sources: List[Any] = []
    if cfg.devices:
        sources.append(StaticDirectory(cfg.devices))
    if cfg.cloud_enabled:
        sources.append(
            CloudDirectory(
                username=cfg.cloud_username,
                password=cfg.cloud_password,
                app_type=cfg.cloud_app_type,
                endpoint=cfg.cloud_endpoint,
                timeout=cfg.cloud_timeout_seconds,
            )
        )
    if cfg.discovery_enabled:
        sources.append(
            DiscoverySource(
                timeout=cfg.discovery_timeout_seconds,
                broadcast_address=cfg.broadcast_address,
                port=cfg.discovery_port,
            )
        )
    return sources


def build_orchestrator(cfg: ExporterConfig, store: SnapshotStore) -> PollingOrchestrator:
    return PollingOrchestrator(
        store=store,
        sources=build_sources(cfg),
        poll_interval_seconds=cfg.poll_interval_seconds,
        discovery_interval_seconds=cfg.discovery_interval_seconds,
        connect_timeout_seconds=cfg.connect_timeout_seconds,
        read_timeout_seconds=cfg.read_timeout_seconds,
        max_parallel=cfg.max_parallel,
        unreachable_after_failures=cfg.unreachable_after_failures,
        reachable_after_successes=cfg.reachable_after_successes,
        stale_seconds=cfg.stale_seconds,
        remove_after_cycles=cfg.remove_after_cycles,
        ready_grace_seconds=cfg.ready_grace_seconds,
    )


def load_exporter_config(config_file: Optional[str]) -> ExporterConfig:
    path = find_config_path(config_file)
    if path is None:
        logging.info("config_file=none, using defaults with discovery")
        return parse_config({})
    logging.info("config_file=%s", path)
    return parse_config(load_config_file(path))


@click.command()
@click.option("--config.file", "config_file", default=None, help="Path to a YAML or JSON config file.")
@click.option("--web.listen-address", "listen_address", default=None, help="Address to expose metrics on.")
@click.option("--web.telemetry-path", "telemetry_path", default=None, help="Path under which to expose metrics.")
@click.option("--log.level", "log_level", default="INFO", envvar="LOG_LEVEL", show_default=True)
def main(config_file, listen_address, telemetry_path, log_level):
    setup_logging(log_level)

    try:
        cfg = load_exporter_config(config_file)
    except ConfigError as e:
        raise click.ClickException(str(e))

    listen = listen_address or cfg.listen_address
    path = telemetry_path or cfg.telemetry_path
    try:
        host, port = parse_listen_address(listen)
    except ValueError:
        raise click.BadParameter(f"bad listen address {listen!r}", param_hint="--web.listen-address")

    store = SnapshotStore()
    orchestrator = build_orchestrator(cfg, store)

    registry = CollectorRegistry()
    ProcessCollector(registry=registry)
    PlatformCollector(registry=registry)
    registry.register(KasaCollector(store))

    httpd = make_http_server(host, port, make_app(registry, path, orchestrator))

    def _sig(*_):
        Thread(target=httpd.shutdown, daemon=True).start()

    signal.signal(signal.SIGTERM, _sig)
    signal.signal(signal.SIGINT, _sig)

    orchestrator.start()

    logging.info(
        "listening=%s:%s telemetry_path=%s static_devices=%d discovery=%d cloud=%d poll_interval=%.1fs stale=%.0fs parallel=%d",
        host if host else "0.0.0.0",
        port,
        path,
        len(cfg.devices),
        1 if cfg.discovery_enabled else 0,
        1 if cfg.cloud_enabled else 0,
        cfg.poll_interval_seconds,
        cfg.stale_seconds,
        cfg.max_parallel,
    )

    try:
        httpd.serve_forever()
    finally:
        orchestrator.stop()
        httpd.server_close()
