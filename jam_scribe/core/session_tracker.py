"""Per-device recording sessions bounded by an inactivity window.

Each device gets its own inactivity timer, restarted by every event. When
a timer fires the device goes idle; once *every* known device is idle, all
buffered sessions are flushed together. A device that goes quiet during a
jam therefore does not cut the session short for the others.

Must be driven from a single thread (the scheduler's loop): events,
timer fires and flushes never interleave.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import TYPE_CHECKING

from .midi_encoder import MidiEncoder
from .notifier import NullNotifier, notify_in_background

if TYPE_CHECKING:
    from .activity_log import ActivityLog
    from .config import ConfigManager
    from .events import PerformanceEvent
    from .notifier import Notifier
    from .scheduler import Scheduler, TimerHandle

log = logging.getLogger(__name__)

# (file_name, data, device_id)
FlushSink = Callable[[str, bytes, str], None]

_UNSAFE_CHARS = re.compile(r"[^\w.-]+")


class SessionState(Enum):
    IDLE = "idle"
    RECORDING = "recording"


@dataclass(slots=True)
class DeviceSession:
    """Buffered events and timer state for one input device."""

    device_id: str
    events: list[PerformanceEvent] = field(default_factory=list)
    state: SessionState = SessionState.IDLE
    timer: TimerHandle | None = None
    timer_generation: int = 0
    started_at: datetime | None = None

    @property
    def is_recording(self) -> bool:
        return self.state is SessionState.RECORDING


def session_file_name(device_id: str, when: datetime) -> str:
    """``<device>_<UTC timestamp>_recording.mid`` with filesystem-safe parts."""
    safe_device = _UNSAFE_CHARS.sub("_", device_id).strip("_") or "device"
    stamp = when.astimezone(timezone.utc).strftime("%Y-%m-%dT%H-%M-%S-%f")[:-3] + "Z"
    return f"{safe_device}_{stamp}_recording.mid"


class SessionTracker:
    """Groups incoming events into per-device sessions and flushes them."""

    def __init__(
        self,
        config: ConfigManager,
        scheduler: Scheduler,
        sink: FlushSink,
        activity_log: ActivityLog,
        encoder: MidiEncoder | None = None,
        notifier: Notifier | None = None,
        wall_clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ) -> None:
        self._config = config
        self._scheduler = scheduler
        self._sink = sink
        self._activity = activity_log
        self._encoder = encoder if encoder is not None else MidiEncoder()
        self._notifier = notifier if notifier is not None else NullNotifier()
        self._wall_clock = wall_clock
        self._sessions: dict[str, DeviceSession] = {}

    # ── Queries ─────────────────────────────────────────

    @property
    def sessions(self) -> dict[str, DeviceSession]:
        return dict(self._sessions)

    def state_of(self, device_id: str) -> SessionState:
        session = self._sessions.get(device_id)
        return session.state if session is not None else SessionState.IDLE

    def buffered_count(self, device_id: str) -> int:
        session = self._sessions.get(device_id)
        return len(session.events) if session is not None else 0

    @property
    def all_idle(self) -> bool:
        return all(not s.is_recording for s in self._sessions.values())

    # ── Event ingestion ─────────────────────────────────

    def on_event(self, event: PerformanceEvent) -> None:
        """Buffer *event* and restart its device's inactivity timer."""
        session = self._sessions.get(event.device_id)
        if session is None:
            session = DeviceSession(event.device_id)
            self._sessions[event.device_id] = session

        timeout = self._config.recording().inactivity_timeout_seconds
        if not session.is_recording:
            session.state = SessionState.RECORDING
            self._on_session_started(session, timeout)

        session.events.append(event)
        self._schedule_timer(session, timeout)

    def _on_session_started(self, session: DeviceSession, timeout: int) -> None:
        """Log the IDLE → RECORDING transition.

        Only a fresh session sends the "Started recording" notification; a
        device resuming into an unflushed buffer is the same take.
        """
        if session.events:
            self._activity.log(f"Resumed recording {session.device_id}.")
            return
        session.started_at = self._wall_clock()
        self._activity.log(
            f"Started recording {session.device_id}. "
            f"Will stop after {timeout} seconds of inactivity"
        )
        try:
            notify_in_background(
                self._scheduler, self._notifier, "Started recording",
                self._config.get("notifications.open_url", ""),
            )
        except Exception:
            log.exception("Failed to send start notification for %s", session.device_id)

    def _schedule_timer(self, session: DeviceSession, timeout: float) -> None:
        if session.timer is not None:
            session.timer.cancel()
        session.timer_generation += 1
        generation = session.timer_generation
        device_id = session.device_id
        session.timer = self._scheduler.call_later(
            timeout, lambda: self._on_timer_fire(device_id, generation),
        )

    # ── Inactivity ──────────────────────────────────────

    def _on_timer_fire(self, device_id: str, generation: int) -> None:
        session = self._sessions.get(device_id)
        if session is None or generation != session.timer_generation:
            # Superseded by a later event
            return
        session.timer = None
        session.state = SessionState.IDLE
        self._activity.log(f"Device {device_id} is now inactive.")

        if self.all_idle:
            self.flush_all()

    # ── Flushing ────────────────────────────────────────

    def flush_all(self) -> list[str]:
        """Flush every session with buffered events. Returns flushed device ids.

        Each device is isolated: an encoding or sink failure is logged and
        does not stop the others.
        """
        self._activity.log("Stopping all recordings due to inactivity...")
        flushed: list[str] = []
        for session in list(self._sessions.values()):
            if not session.events:
                log.debug("No events recorded for device: %s", session.device_id)
                continue
            if self._flush(session):
                flushed.append(session.device_id)
        return flushed

    def _flush(self, session: DeviceSession) -> bool:
        device_id = session.device_id
        events = list(session.events)
        try:
            data = self._encoder.to_bytes(events, track_name=device_id)
            file_name = session_file_name(device_id, self._wall_clock())
            self._sink(file_name, data, device_id)
        except Exception as exc:
            log.exception("Flush failed for %s", device_id)
            self._activity.error(f"Error while saving MIDI file for {device_id}: {exc}")
            return False
        finally:
            session.events.clear()
            session.started_at = None
        log.info("Flushed %d events for %s", len(events), device_id)
        return True

    def close(self) -> int:
        """Cancel every timer. Buffered events are dropped; returns how many."""
        dropped = 0
        for session in self._sessions.values():
            if session.timer is not None:
                session.timer.cancel()
                session.timer = None
            session.timer_generation += 1
            dropped += len(session.events)
        if dropped:
            log.warning("Shutting down with %d unflushed event(s)", dropped)
        return dropped
