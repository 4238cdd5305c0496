"""Durable upload retry queue with exponential backoff.

An upload whose first attempt failed is stored as a PendingUpload in a
JSON file. A periodic sweep re-attempts every entry whose backoff has
elapsed: attempts=k waits 2^(k-1) minutes after its last attempt. An
entry is evicted once its attempt count reaches MAX_UPLOAD_ATTEMPTS; the
local file stays on disk.

Threading: ``sweep`` runs on a background worker while ``enqueue`` runs on
the event loop. Every mutation is a read-modify-write of the whole
collection under the store lock, and network attempts happen outside it.
"""

from __future__ import annotations

import json
import logging
import os
import threading
import time
import uuid
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import asdict, dataclass, field
from datetime import datetime
from pathlib import Path
from typing import TYPE_CHECKING, Any

from .constants import (
    MAX_UPLOAD_ATTEMPTS,
    RETRY_BASE_DELAY_MS,
    RETRY_STARTUP_DELAY,
    RETRY_SWEEP_INTERVAL,
)

if TYPE_CHECKING:
    from .activity_log import ActivityLog
    from .config import ConfigManager
    from .scheduler import Scheduler, TimerHandle
    from .uploader import UploadDispatcher

log = logging.getLogger(__name__)


def backoff_delay_ms(attempts: int) -> int:
    """Minimum wait after the last attempt before retry number *attempts*+1."""
    return (2 ** (attempts - 1)) * RETRY_BASE_DELAY_MS


def _format_ms(epoch_ms: int) -> str:
    return datetime.fromtimestamp(epoch_ms / 1000).strftime("%Y-%m-%d %H:%M:%S")


@dataclass(slots=True)
class PendingUpload:
    """A file whose delivery failed and is waiting for another attempt."""

    id: str
    file_name: str
    file_path: str
    content_type: str
    attempts: int = 1
    last_attempt_time: int = 0  # epoch milliseconds
    last_error: str | None = None

    @property
    def next_attempt_time(self) -> int:
        return self.last_attempt_time + backoff_delay_ms(self.attempts)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> PendingUpload:
        attempts = int(data["attempts"])
        if attempts < 1:
            raise ValueError(f"attempts must be >= 1, got {attempts}")
        last_error = data.get("last_error")
        return cls(
            id=str(data["id"]),
            file_name=str(data["file_name"]),
            file_path=str(data["file_path"]),
            content_type=str(data["content_type"]),
            attempts=attempts,
            last_attempt_time=int(data["last_attempt_time"]),
            last_error=None if last_error is None else str(last_error),
        )


class RetryQueueStore:
    """JSON-file persistence for the ordered PendingUpload collection."""

    VERSION = 1

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)
        self._lock = threading.RLock()
        self._entries: list[PendingUpload] = self._load()

    def _load(self) -> list[PendingUpload]:
        if not self.path.exists():
            return []
        try:
            with open(self.path, encoding="utf-8") as f:
                raw = json.load(f)
            items = raw["pending_uploads"] if isinstance(raw, dict) else raw
            if not isinstance(items, list):
                raise ValueError("pending_uploads is not a list")
        except (OSError, ValueError, KeyError, TypeError) as exc:
            corrupt = self.path.with_name(self.path.name + ".corrupt")
            log.error(
                "Retry queue %s is unreadable (%s); moving it to %s and starting empty",
                self.path, exc, corrupt,
            )
            try:
                os.replace(self.path, corrupt)
            except OSError:
                log.warning("Could not move aside corrupt retry queue %s", self.path, exc_info=True)
            return []

        entries: list[PendingUpload] = []
        for item in items:
            try:
                entries.append(PendingUpload.from_dict(item))
            except (KeyError, TypeError, ValueError) as exc:
                log.error("Dropping malformed retry queue entry %r: %s", item, exc)
        return entries

    def _write(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        data = {
            "version": self.VERSION,
            "pending_uploads": [entry.to_dict() for entry in self._entries],
        }
        tmp = self.path.with_name(self.path.name + ".tmp")
        with open(tmp, "w", encoding="utf-8") as f:
            json.dump(data, f, indent=2, ensure_ascii=False)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp, self.path)

    def read(self) -> list[PendingUpload]:
        """Return a snapshot copy of the queue."""
        with self._lock:
            return [PendingUpload(**entry.to_dict()) for entry in self._entries]

    @property
    def size(self) -> int:
        with self._lock:
            return len(self._entries)

    @contextmanager
    def transaction(self) -> Iterator[list[PendingUpload]]:
        """Yield the live list for mutation; persist it on clean exit.

        If the block raises, in-memory state is rolled back and nothing
        is written.
        """
        with self._lock:
            backup = [PendingUpload(**entry.to_dict()) for entry in self._entries]
            try:
                yield self._entries
                self._write()
            except BaseException:
                self._entries[:] = backup
                raise


@dataclass(slots=True)
class SweepReport:
    retried: int = 0
    succeeded: int = 0
    failed: int = 0
    waiting: int = 0  # backoff not yet elapsed
    evicted: list[PendingUpload] = field(default_factory=list)
    skipped: bool = False  # uploads disabled or another sweep running


class RetryQueue:
    """Re-attempts failed uploads with exponential backoff."""

    def __init__(
        self,
        store: RetryQueueStore,
        dispatcher: UploadDispatcher,
        config: ConfigManager,
        activity_log: ActivityLog,
        scheduler: Scheduler | None = None,
        clock: Callable[[], float] = time.time,
        max_attempts: int = MAX_UPLOAD_ATTEMPTS,
    ) -> None:
        self._store = store
        self._dispatcher = dispatcher
        self._config = config
        self._activity = activity_log
        self._scheduler = scheduler
        self._clock = clock
        self.max_attempts = max_attempts

        self._sweep_lock = threading.Lock()
        self._sweep_in_progress = False
        self._startup_timer: TimerHandle | None = None
        self._periodic_timer: TimerHandle | None = None

    def now_ms(self) -> int:
        return int(self._clock() * 1000)

    @property
    def pending(self) -> list[PendingUpload]:
        return self._store.read()

    @property
    def size(self) -> int:
        return self._store.size

    # ── Enqueue ─────────────────────────────────────────

    def enqueue(
        self,
        file_name: str,
        file_path: str | Path,
        content_type: str,
        initial_error: str | None,
    ) -> PendingUpload | None:
        """Store an upload whose first attempt just failed.

        Returns None without storing anything if uploads are disabled.
        """
        if not self._config.recording().uploads_enabled:
            log.info("Uploads disabled, not queueing %s", file_name)
            return None

        entry = PendingUpload(
            id=uuid.uuid4().hex,
            file_name=file_name,
            file_path=str(file_path),
            content_type=content_type,
            attempts=1,
            last_attempt_time=self.now_ms(),
            last_error=initial_error,
        )
        with self._store.transaction() as entries:
            if any(e.file_path == entry.file_path for e in entries):
                log.warning("%s already has a pending upload; queueing another", entry.file_path)
            entries.append(entry)

        self._activity.log(
            f"Upload of {file_name} failed ({initial_error or 'unknown error'}); "
            f"will retry after {_format_ms(entry.next_attempt_time)}"
        )
        return entry

    # ── Eligibility ─────────────────────────────────────

    def is_eligible(self, entry: PendingUpload, now_ms: int) -> bool:
        return entry.attempts < self.max_attempts and now_ms >= entry.next_attempt_time

    # ── Sweep ───────────────────────────────────────────

    def sweep(self, now_ms: int | None = None) -> SweepReport:
        """Retry every eligible entry once and apply the outcomes.

        Returns immediately with ``skipped`` set if another sweep holds
        the lock, so no entry is ever attempted twice concurrently.
        """
        report = SweepReport()
        if not self._sweep_lock.acquire(blocking=False):
            log.info("Retry sweep already running, skipping")
            report.skipped = True
            return report
        try:
            return self._sweep(report, self.now_ms() if now_ms is None else now_ms)
        finally:
            self._sweep_lock.release()

    def _sweep(self, report: SweepReport, now_ms: int) -> SweepReport:
        destination = self._config.recording().uploader_endpoint
        snapshot = self._store.read()
        if not snapshot:
            return report
        if not destination:
            log.info("Uploads disabled, leaving %d queued upload(s) untouched", len(snapshot))
            report.skipped = True
            return report

        for entry in snapshot:
            if not self.is_eligible(entry, now_ms):
                report.waiting += 1
                continue

            report.retried += 1
            try:
                result = self._dispatcher.attempt(
                    entry.file_name, entry.content_type, entry.file_path, destination,
                )
                success, error = result.success, result.error
            except Exception as exc:
                log.exception("Uploader raised while retrying %s", entry.file_name)
                success, error = False, str(exc)

            # A store write failure rolls back this entry only; keep sweeping
            try:
                if success:
                    self._apply_success(entry)
                else:
                    evicted = self._apply_failure(entry, now_ms, error)
                    if evicted is not None:
                        report.evicted.append(evicted)
            except OSError as exc:
                log.exception("Could not record retry outcome for %s", entry.file_name)
                self._activity.error(f"Could not update retry queue for {entry.file_name}: {exc}")
                report.failed += 1
                continue
            if success:
                report.succeeded += 1
            else:
                report.failed += 1
        return report

    def _apply_success(self, entry: PendingUpload) -> None:
        with self._store.transaction() as entries:
            entries[:] = [e for e in entries if e.id != entry.id]
        self._activity.log(
            f"Retry upload succeeded for {entry.file_name} (attempt {entry.attempts + 1})"
        )

    def _apply_failure(
        self, entry: PendingUpload, now_ms: int, error: str | None,
    ) -> PendingUpload | None:
        updated: PendingUpload | None = None
        with self._store.transaction() as entries:
            for i, current in enumerate(entries):
                if current.id == entry.id:
                    current.attempts += 1
                    current.last_attempt_time = now_ms
                    current.last_error = error
                    updated = PendingUpload(**current.to_dict())
                    if current.attempts >= self.max_attempts:
                        del entries[i]
                    break

        if updated is None:
            # Removed by someone else while the attempt was in flight
            return None
        if updated.attempts >= self.max_attempts:
            self._activity.error(
                f"Giving up on upload of {updated.file_name} after {updated.attempts} "
                f"attempts ({error}); file kept at {updated.file_path}"
            )
            return updated
        self._activity.warning(
            f"Retry of {updated.file_name} failed ({error}); attempt {updated.attempts} "
            f"of {self.max_attempts}, next after {_format_ms(updated.next_attempt_time)}"
        )
        return None

    # ── Scheduling ──────────────────────────────────────

    def start(self) -> None:
        """Sweep shortly after startup, then on a fixed period."""
        if self._scheduler is None:
            raise RuntimeError("RetryQueue.start() needs a scheduler")
        self.stop()
        backlog = self._store.size
        if backlog:
            log.info("Retry queue has %d pending upload(s) from a previous run", backlog)
        self._startup_timer = self._scheduler.call_later(RETRY_STARTUP_DELAY, self.request_sweep)
        self._periodic_timer = self._scheduler.call_repeating(RETRY_SWEEP_INTERVAL, self.request_sweep)

    def stop(self) -> None:
        for timer in (self._startup_timer, self._periodic_timer):
            if timer is not None:
                timer.cancel()
        self._startup_timer = None
        self._periodic_timer = None

    @property
    def sweep_in_progress(self) -> bool:
        return self._sweep_in_progress

    def request_sweep(self) -> bool:
        """Start a background sweep unless one is still running.

        Returns False when the request was dropped.
        """
        if self._scheduler is None:
            raise RuntimeError("RetryQueue.request_sweep() needs a scheduler")
        if self._sweep_in_progress:
            log.info("Previous retry sweep still running, dropping this one")
            return False
        self._sweep_in_progress = True
        self._scheduler.run_in_background(self.sweep, self._on_sweep_done)
        return True

    def _on_sweep_done(self, report: SweepReport | None, error: BaseException | None) -> None:
        self._sweep_in_progress = False
        if error is not None:
            log.error("Retry sweep failed", exc_info=error)
            self._activity.error(f"Retry sweep failed: {error}")
        elif report is not None and report.retried:
            log.info(
                "Retry sweep: %d retried, %d succeeded, %d failed, %d evicted, %d waiting",
                report.retried, report.succeeded, report.failed,
                len(report.evicted), report.waiting,
            )
