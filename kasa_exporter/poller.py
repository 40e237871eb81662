from __future__ import annotations

import logging
import math
import time
from concurrent.futures import ThreadPoolExecutor, wait
from threading import Event, Lock, Thread
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

from .device import POLL_QUERY, DeviceClient
from .errors import DirectoryError, ErrorKind
from .models import DeviceCandidate, DeviceRecord, DeviceState, Failure, PollOutcome, Reading
from .schema import resolve_schema
from .snapshot import Snapshot, SnapshotStore

log = logging.getLogger(__name__)


class PollingOrchestrator:
    """Owns the known-device set and drives discovery and poll cycles.

    Records are only touched under ``_lock``, which is never held across
    network I/O. Readers see devices through the ``SnapshotStore``.
    """

    def __init__(
        self,
        client: Optional[Any] = None,
        store: Optional[SnapshotStore] = None,
        sources: Optional[List[Any]] = None,
        poll_interval_seconds: float = 15.0,
        discovery_interval_seconds: float = 300.0,
        connect_timeout_seconds: float = 2.0,
        read_timeout_seconds: float = 3.0,
        max_parallel: int = 8,
        unreachable_after_failures: int = 3,
        reachable_after_successes: int = 1,
        stale_seconds: float = 300.0,
        remove_after_cycles: int = 3,
        ready_grace_seconds: Optional[float] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.client = client or DeviceClient(clock=clock)
        self.store = store or SnapshotStore()
        self.sources = list(sources or [])

        self.poll_interval_seconds = float(poll_interval_seconds)
        self.discovery_interval_seconds = float(discovery_interval_seconds)
        self.connect_timeout_seconds = float(connect_timeout_seconds)
        self.read_timeout_seconds = float(read_timeout_seconds)
        self.max_parallel = max(1, int(max_parallel))
        self.unreachable_after_failures = max(1, int(unreachable_after_failures))
        self.reachable_after_successes = max(1, int(reachable_after_successes))
        self.stale_seconds = float(stale_seconds)
        self.remove_after_cycles = max(1, int(remove_after_cycles))
        if ready_grace_seconds is None:
            ready_grace_seconds = max(30.0, 3.0 * self.poll_interval_seconds)
        self.ready_grace_seconds = float(ready_grace_seconds)
        self.clock = clock

        self._records: Dict[str, DeviceRecord] = {}
        self._readings: Dict[str, Reading] = {}
        self._lock = Lock()
        self._poll_lock = Lock()
        self.stop_event = Event()

        self.generation = 0
        self.cycles = 0
        self.last_cycle_ts = 0.0

        self.executor = ThreadPoolExecutor(max_workers=self.max_parallel, thread_name_prefix="kasa-poll")

    def devices(self) -> Dict[str, DeviceRecord]:
        with self._lock:
            return {k: r.copy() for k, r in self._records.items()}

    def ingest_candidates(self, candidates: Iterable[DeviceCandidate]) -> Tuple[int, int]:
        added = removed = 0
        with self._lock:
            gen = self.generation
            for c in candidates:
                rec = self._records.get(c.device_id)
                if rec is None:
                    if not c.address:
                        log.debug("candidate skipped device_id=%s source=%s reason=no_address", c.device_id, c.source)
                        continue
                    rec = DeviceRecord(
                        device_id=c.device_id,
                        alias=c.alias or c.device_id,
                        address=c.address,
                        model=c.model,
                        hw_ver=c.hw_ver,
                    )
                    self._records[c.device_id] = rec
                    added += 1
                    log.info("device added device_id=%s alias=%s address=%s source=%s", c.device_id, rec.alias, rec.address, c.source)
                elif c.address and c.address != rec.address:
                    log.info("device moved device_id=%s old=%s new=%s", c.device_id, rec.address, c.address)
                    rec.address = c.address

                if c.alias:
                    rec.alias = c.alias
                if c.model:
                    rec.model = c.model
                if c.hw_ver:
                    rec.hw_ver = c.hw_ver
                self._update_schema(rec, c.schema)
                rec.last_seen_generation = gen

            for device_id in [k for k, r in self._records.items() if gen - r.last_seen_generation >= self.remove_after_cycles]:
                del self._records[device_id]
                self._readings.pop(device_id, None)
                removed += 1
                log.info("device removed device_id=%s reason=not_seen cycles=%d", device_id, self.remove_after_cycles)
        return added, removed

    def _update_schema(self, rec: DeviceRecord, explicit: Optional[str]) -> None:
        if explicit:
            rec.schema = explicit
            rec.schema_pinned = True
        elif not rec.schema_pinned and rec.model and rec.hw_ver:
            rec.schema = resolve_schema(rec.model, rec.hw_ver)

    def discovery_cycle(self) -> bool:
        candidates: List[DeviceCandidate] = []
        complete = True
        for src in self.sources:
            name = getattr(src, "name", type(src).__name__)
            try:
                found = src.fetch()
            except DirectoryError as e:
                log.warning("source failed source=%s error=%s", name, e)
                complete = False
                continue
            except Exception:
                log.exception("source crashed source=%s", name)
                complete = False
                continue
            log.debug("source ok source=%s devices=%d", name, len(found))
            candidates.extend(found)

        if complete:
            with self._lock:
                self.generation += 1
        self.ingest_candidates(candidates)
        return complete

    def _cycle_deadline(self, n: int) -> float:
        waves = max(1, math.ceil(n / float(self.max_parallel)))
        # sendall and the reply read each get up to read_timeout
        return waves * (self.connect_timeout_seconds + 2.0 * self.read_timeout_seconds) + 1.0

    def _fan_out(self, targets: List[Tuple[str, str, Optional[str]]]) -> Dict[str, PollOutcome]:
        results: Dict[str, PollOutcome] = {}
        if not targets:
            return results

        futs = {
            self.executor.submit(
                self.client.query,
                address,
                POLL_QUERY,
                self.connect_timeout_seconds,
                self.read_timeout_seconds,
                schema,
            ): device_id
            for device_id, address, schema in targets
        }
        done, not_done = wait(futs, timeout=self._cycle_deadline(len(targets)))

        for fut in done:
            device_id = futs[fut]
            try:
                results[device_id] = fut.result()
            except Exception as e:
                log.exception("device query crashed device_id=%s", device_id)
                results[device_id] = Failure(ErrorKind.PROTOCOL, str(e))
        for fut in not_done:
            fut.cancel()
            results[futs[fut]] = Failure(ErrorKind.TIMEOUT, "poll cycle deadline exceeded")
        return results

    def _fold(self, rec: DeviceRecord, outcome: PollOutcome) -> None:
        rec.polls_total += 1

        if outcome.ok:
            reported = outcome.sysinfo.get("deviceId")
            if reported and str(reported) != rec.device_id:
                outcome = Failure(ErrorKind.UNEXPECTED_SCHEMA, f"address {rec.address} answered as {reported}")

        if outcome.ok:
            rec.consecutive_failures = 0
            rec.consecutive_successes += 1
            rec.last_success_at = outcome.reading.observed_at
            rec.last_error = None
            self._readings[rec.device_id] = outcome.reading

            info = outcome.sysinfo
            if info.get("alias"):
                rec.alias = str(info["alias"])
            if info.get("model"):
                rec.model = str(info["model"])
                rec.hw_ver = str(info.get("hw_ver", rec.hw_ver))
                self._update_schema(rec, None)

            if rec.state == DeviceState.DISCOVERED:
                rec.state = DeviceState.REACHABLE
            elif rec.state == DeviceState.UNREACHABLE and rec.consecutive_successes >= self.reachable_after_successes:
                rec.state = DeviceState.REACHABLE
                log.info("device reachable device_id=%s alias=%s", rec.device_id, rec.alias)
            return

        rec.errors_total += 1
        rec.consecutive_successes = 0
        rec.consecutive_failures += 1
        rec.last_error = outcome.kind

        if rec.state != DeviceState.UNREACHABLE and rec.consecutive_failures >= self.unreachable_after_failures:
            rec.state = DeviceState.UNREACHABLE
            log.warning(
                "device unreachable device_id=%s alias=%s address=%s failures=%d error=%s detail=%s",
                rec.device_id,
                rec.alias,
                rec.address,
                rec.consecutive_failures,
                outcome.kind.value,
                outcome.detail,
            )
        else:
            log.debug("poll failed device_id=%s address=%s error=%s detail=%s", rec.device_id, rec.address, outcome.kind.value, outcome.detail)

    def _snapshot_entries(self, now: float) -> Dict[str, Tuple[DeviceRecord, Reading]]:
        entries: Dict[str, Tuple[DeviceRecord, Reading]] = {}
        for device_id, rec in self._records.items():
            if rec.state != DeviceState.REACHABLE:
                continue
            reading = self._readings.get(device_id)
            if reading is None:
                continue
            if now - reading.observed_at > self.stale_seconds:
                continue
            entries[device_id] = (rec, reading)
        return entries

    def refresh_cycle(self) -> Optional[Snapshot]:
        if not self._poll_lock.acquire(blocking=False):
            log.debug("poll cycle skipped, previous cycle still running")
            return None
        try:
            t0 = time.monotonic()
            with self._lock:
                # Unpinned devices get their schema from the sysinfo in each reply.
                targets = [
                    (r.device_id, r.address, r.schema if r.schema_pinned else None) for r in self._records.values()
                ]

            outcomes = self._fan_out(targets)

            now = self.clock()
            with self._lock:
                for device_id, outcome in outcomes.items():
                    rec = self._records.get(device_id)
                    if rec is not None:
                        self._fold(rec, outcome)
                self.cycles += 1
                self.last_cycle_ts = now
                snap = self.store.publish(
                    self._snapshot_entries(now),
                    self._records,
                    cycle=self.cycles,
                    completed_at=now,
                    duration=time.monotonic() - t0,
                )
            log.debug("poll cycle done cycle=%d devices=%d published=%d duration=%.3fs", snap.cycle, len(targets), len(snap.entries), snap.duration)
            return snap
        finally:
            self._poll_lock.release()

    def last_cycle_age(self) -> Optional[float]:
        if self.last_cycle_ts <= 0:
            return None
        return max(0.0, self.clock() - self.last_cycle_ts)

    def is_ready(self) -> bool:
        age = self.last_cycle_age()
        return age is not None and age <= self.ready_grace_seconds

    def _run_every(self, interval: float, fn: Callable[[], Any], what: str) -> None:
        while not self.stop_event.is_set():
            start = time.monotonic()
            try:
                fn()
            except Exception:
                log.exception("%s failed", what)
            sleep_s = max(0.0, interval - (time.monotonic() - start))
            self.stop_event.wait(timeout=sleep_s)

    def _discover_forever(self) -> None:
        if self.stop_event.wait(timeout=self.discovery_interval_seconds):
            return
        self._run_every(self.discovery_interval_seconds, self.discovery_cycle, "discovery cycle")

    def start(self, initial_discovery: bool = True) -> None:
        if initial_discovery:
            self.discovery_cycle()
        if self.sources:
            Thread(target=self._discover_forever, name="kasa-discovery", daemon=True).start()
        Thread(
            target=self._run_every,
            args=(self.poll_interval_seconds, self.refresh_cycle, "poll cycle"),
            name="kasa-poller",
            daemon=True,
        ).start()

    def stop(self) -> None:
        self.stop_event.set()
        self.executor.shutdown(wait=False, cancel_futures=True)
