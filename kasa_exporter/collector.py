from __future__ import annotations

import sys

from prometheus_client.core import CounterMetricFamily, GaugeMetricFamily

from . import __version__
from .snapshot import SnapshotStore

LABELS = ["device_alias", "device_id"]


class KasaCollector:
    def __init__(self, store: SnapshotStore) -> None:
        self.store = store

    def collect(self):
        snap = self.store.current()

        cur = GaugeMetricFamily("device_electric_current_amperes", "Current reading from device.", labels=LABELS)
        vol = GaugeMetricFamily("device_electric_potential_volts", "Voltage reading from device.", labels=LABELS)
        powm = GaugeMetricFamily("device_electric_power_watts", "Power reading from device.", labels=LABELS)
        energy = CounterMetricFamily("device_electric_energy_joules", "Total energy consumed.", labels=LABELS)
        observed = GaugeMetricFamily("device_reading_timestamp_seconds", "Unix timestamp of the published reading.", labels=LABELS)

        up = GaugeMetricFamily("kasa_device_up", "Device reachable as of the last poll cycle (1 ok, 0 not).", labels=LABELS)
        failures = GaugeMetricFamily("kasa_device_consecutive_failures", "Consecutive failed polls per device.", labels=LABELS)
        last_ok = GaugeMetricFamily("kasa_device_last_success_timestamp", "Unix timestamp of the last successful poll (-1 never).", labels=LABELS)
        errors = CounterMetricFamily("kasa_device_errors", "Failed polls per device.", labels=LABELS)
        polls = CounterMetricFamily("kasa_device_polls", "Polls per device.", labels=LABELS)

        known = GaugeMetricFamily("kasa_devices_known", "Devices in the known-device set.")
        cycle_dur = GaugeMetricFamily("kasa_poll_cycle_duration_seconds", "Duration of the last poll cycle over all devices.")
        cycle_ts = GaugeMetricFamily("kasa_poll_cycle_timestamp_seconds", "Unix timestamp of the last completed poll cycle.")
        cycles = CounterMetricFamily("kasa_poll_cycles", "Completed poll cycles.")
        build = GaugeMetricFamily("kasa_exporter_build_info", "Exporter build information.", labels=["version", "python"])

        for device_id, (rec, reading) in snap.entries.items():
            labels = [rec.alias, device_id]
            cur.add_metric(labels, reading.current_amperes)
            vol.add_metric(labels, reading.voltage_volts)
            powm.add_metric(labels, reading.power_watts)
            energy.add_metric(labels, reading.energy_joules_total)
            observed.add_metric(labels, reading.observed_at)

        for device_id, rec in snap.health.items():
            labels = [rec.alias, device_id]
            up.add_metric(labels, 1.0 if device_id in snap.entries else 0.0)
            failures.add_metric(labels, float(rec.consecutive_failures))
            last_ok.add_metric(labels, float(rec.last_success_at) if rec.last_success_at else -1.0)
            errors.add_metric(labels, float(rec.errors_total))
            polls.add_metric(labels, float(rec.polls_total))

        known.add_metric([], float(len(snap.health)))
        cycle_dur.add_metric([], float(snap.duration))
        cycle_ts.add_metric([], float(snap.completed_at) if snap.completed_at > 0 else -1.0)
        cycles.add_metric([], float(snap.cycle))
        build.add_metric([__version__, sys.version.split()[0]], 1.0)

        yield cur
        yield vol
        yield powm
        yield energy
        yield observed
        yield up
        yield failures
        yield last_ok
        yield errors
        yield polls
        yield known
        yield cycle_dur
        yield cycle_ts
        yield cycles
        yield build
