"""MIDI device enumeration and callback-based event capture using mido/rtmidi.

Every open input port is a separate device. Messages are timestamped on
the rtmidi thread (``time.perf_counter``) and forwarded one at a time to a
single consumer, which must hand them to the event loop.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from typing import TYPE_CHECKING

import mido

from .events import PerformanceEvent

if TYPE_CHECKING:
    from .activity_log import ActivityLog

log = logging.getLogger(__name__)

# rtmidi's own virtual "Through" ports would echo our output back in
_IGNORED_PORT_PREFIXES = ("Midi Through",)


class MidiListener:
    """One open input port delivering PerformanceEvents via callback.

    The callback runs on the rtmidi C++ thread.
    """

    def __init__(self, device_id: str) -> None:
        self.device_id = device_id
        self._port: mido.ports.BaseInput | None = None
        self._callback: Callable[[PerformanceEvent], None] | None = None

    @property
    def connected(self) -> bool:
        return self._port is not None and not getattr(self._port, "closed", True)

    def open(self, callback: Callable[[PerformanceEvent], None]) -> None:
        """Open the port named ``device_id`` and register *callback*."""
        self.close()
        self._callback = callback
        try:
            self._port = mido.open_input(self.device_id, callback=self._on_message)
            log.info("Opened MIDI port: %s", self.device_id)
        except (OSError, RuntimeError):
            self._port = None
            self._callback = None
            raise

    def close(self) -> None:
        """Close the port if open."""
        if self._port is not None:
            try:
                self._port.close()
            except (OSError, RuntimeError):
                log.warning("Error closing MIDI port %s", self.device_id, exc_info=True)
            self._port = None
            log.info("MIDI port closed: %s", self.device_id)
        self._callback = None

    def _on_message(self, msg: mido.Message) -> None:
        """Internal callback from rtmidi thread. Stamps and dispatches."""
        callback = self._callback
        if callback is None:
            return
        timestamp_ms = time.perf_counter() * 1000
        try:
            callback(PerformanceEvent.from_message(self.device_id, msg, timestamp_ms))
        except (AttributeError, IndexError, TypeError, ValueError):
            log.exception("Error in MIDI callback")


class MidiInputHub:
    """Keeps one MidiListener per available input port.

    ``refresh()`` is polled to pick up devices plugged in or removed while
    running.
    """

    def __init__(
        self,
        on_event: Callable[[PerformanceEvent], None],
        activity_log: ActivityLog | None = None,
        listener_factory: Callable[[str], MidiListener] = MidiListener,
    ) -> None:
        self._on_event = on_event
        self._activity = activity_log
        self._factory = listener_factory
        self._listeners: dict[str, MidiListener] = {}

    @staticmethod
    def list_ports() -> list[str]:
        """Return available MIDI input port names."""
        return mido.get_input_names()  # type: ignore[no-any-return]

    @property
    def devices(self) -> list[str]:
        return sorted(self._listeners)

    def _status(self, device_id: str, status: str) -> None:
        message = f"Device '{device_id}' {status}"
        if self._activity is not None:
            self._activity.log(message)
        else:
            log.info(message)

    def refresh(self) -> None:
        """Open new ports, close ports that disappeared."""
        try:
            available = {
                name for name in self.list_ports()
                if not name.startswith(_IGNORED_PORT_PREFIXES)
            }
        except (OSError, RuntimeError):
            log.warning("Could not enumerate MIDI inputs", exc_info=True)
            return

        for device_id in sorted(set(self._listeners) - available):
            self._listeners.pop(device_id).close()
            self._status(device_id, "disconnected")

        for device_id in sorted(available - set(self._listeners)):
            listener = self._factory(device_id)
            try:
                listener.open(self._on_event)
            except (OSError, RuntimeError) as exc:
                log.warning("Failed to open MIDI port %s: %s", device_id, exc)
                continue
            self._listeners[device_id] = listener
            self._status(device_id, "connected")

        for device_id, listener in list(self._listeners.items()):
            if not listener.connected:
                self._listeners.pop(device_id)
                listener.close()
                self._status(device_id, "disconnected")

    def close_all(self) -> None:
        for listener in self._listeners.values():
            listener.close()
        self._listeners.clear()
