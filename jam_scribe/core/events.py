"""Performance events captured from MIDI input devices.

Pure Python apart from reading ``mido.Message`` attributes.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

import mido


class EventKind(Enum):
    """Kinds of performance event the encoder knows about."""
    NOTE_ON = "note_on"
    NOTE_OFF = "note_off"
    CONTROLLER = "control_change"
    OTHER = "other"


@dataclass(frozen=True, slots=True)
class PerformanceEvent:
    """A single timestamped event from one input device."""

    device_id: str
    kind: EventKind
    channel: int            # MIDI channel (0-15)
    number: int             # note number or controller number
    value: int | None       # velocity / controller value, None if absent
    timestamp_ms: float     # monotonic arrival time in milliseconds

    @classmethod
    def from_message(
        cls, device_id: str, msg: mido.Message, timestamp_ms: float,
    ) -> PerformanceEvent:
        """Classify a ``mido.Message``.

        ``note_on`` with velocity 0 is a note-off by MIDI convention.
        Every other message type is kept as ``OTHER`` so the encoder can
        decide to drop it.
        """
        channel = getattr(msg, "channel", 0)
        if msg.type == "note_on" and msg.velocity > 0:
            return cls(device_id, EventKind.NOTE_ON, channel, msg.note,
                       msg.velocity, timestamp_ms)
        if msg.type == "note_off" or msg.type == "note_on":
            return cls(device_id, EventKind.NOTE_OFF, channel, msg.note,
                       msg.velocity, timestamp_ms)
        if msg.type == "control_change":
            return cls(device_id, EventKind.CONTROLLER, channel, msg.control,
                       msg.value, timestamp_ms)
        return cls(device_id, EventKind.OTHER, channel, 0, None, timestamp_ms)
