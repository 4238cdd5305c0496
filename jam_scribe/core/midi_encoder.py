"""Encode buffered performance events as Standard MIDI Files.

Arrival times in milliseconds become quantized tick deltas at a fixed
tempo, then a single-track file is serialized via mido.
"""

from __future__ import annotations

import io
import logging
import math
from collections.abc import Sequence
from dataclasses import dataclass, field

import mido

from .constants import DEFAULT_NOTE_ON_VELOCITY, DEFAULT_TEMPO_BPM, TICKS_PER_BEAT
from .events import EventKind, PerformanceEvent

log = logging.getLogger(__name__)


class EncodingError(Exception):
    """Raised when a session cannot be turned into a MIDI file."""


@dataclass(slots=True)
class EncodedTrack:
    """Tick-delta message stream for one device session."""

    ticks_per_beat: int = TICKS_PER_BEAT
    beats_per_minute: int = DEFAULT_TEMPO_BPM
    messages: list[tuple[int, mido.Message]] = field(default_factory=list)

    @property
    def deltas(self) -> list[int]:
        return [delta for delta, _ in self.messages]

    @property
    def ms_per_beat(self) -> float:
        return 60000 / self.beats_per_minute


def round_half_away(value: float) -> int:
    """Round to the nearest integer, halves away from zero."""
    return int(math.copysign(math.floor(abs(value) + 0.5), value))


def ms_to_ticks(
    delta_ms: float,
    ticks_per_beat: int = TICKS_PER_BEAT,
    beats_per_minute: int = DEFAULT_TEMPO_BPM,
) -> int:
    """Convert an inter-arrival gap in milliseconds to MIDI ticks."""
    ms_per_beat = 60000 / beats_per_minute
    return round_half_away(delta_ms / ms_per_beat * ticks_per_beat)


class MidiEncoder:
    """Turn PerformanceEvent sequences into MIDI file bytes."""

    def __init__(
        self,
        ticks_per_beat: int = TICKS_PER_BEAT,
        beats_per_minute: int = DEFAULT_TEMPO_BPM,
    ) -> None:
        self.ticks_per_beat = ticks_per_beat
        self.beats_per_minute = beats_per_minute

    def encode(self, events: Sequence[PerformanceEvent]) -> EncodedTrack:
        """Quantize one device's ordered events into an EncodedTrack.

        The first event sits at delta 0. Each later event's delta is the
        rounded gap to the event before it. Dropped events (unsupported
        kinds, controllers without a value) contribute their gap to the
        next event that is kept so the timeline does not shrink.
        """
        if not events:
            raise EncodingError("Cannot encode an empty event buffer")

        track = EncodedTrack(self.ticks_per_beat, self.beats_per_minute)
        carried = 0
        previous_ms = events[0].timestamp_ms

        for evt in events:
            delta_ms = evt.timestamp_ms - previous_ms
            previous_ms = evt.timestamp_ms
            if delta_ms < 0:
                log.warning(
                    "Negative arrival gap (%.3f ms) on device %s, clamping to 0",
                    delta_ms, evt.device_id,
                )
                delta_ms = 0.0
            carried += ms_to_ticks(delta_ms, self.ticks_per_beat, self.beats_per_minute)

            msg = self._to_message(evt)
            if msg is None:
                continue
            track.messages.append((carried, msg))
            carried = 0

        return track

    @staticmethod
    def _to_message(evt: PerformanceEvent) -> mido.Message | None:
        try:
            if evt.kind is EventKind.NOTE_ON:
                velocity = evt.value if evt.value is not None else DEFAULT_NOTE_ON_VELOCITY
                return mido.Message(
                    "note_on", channel=evt.channel, note=evt.number, velocity=velocity,
                )
            if evt.kind is EventKind.NOTE_OFF:
                return mido.Message(
                    "note_off", channel=evt.channel, note=evt.number, velocity=0,
                )
            if evt.kind is EventKind.CONTROLLER:
                if evt.value is None:
                    log.warning(
                        "Controller %d on device %s has no value, dropping event",
                        evt.number, evt.device_id,
                    )
                    return None
                return mido.Message(
                    "control_change", channel=evt.channel, control=evt.number,
                    value=evt.value,
                )
        except (TypeError, ValueError) as exc:
            raise EncodingError(
                f"Malformed {evt.kind.value} event from {evt.device_id}: {exc}"
            ) from exc
        # Aftertouch, pitchwheel, sysex, clock...
        return None

    @staticmethod
    def to_midi_file(track: EncodedTrack, track_name: str = "") -> mido.MidiFile:
        """Build a type 1 MIDI file holding a single track."""
        mid = mido.MidiFile(type=1, ticks_per_beat=track.ticks_per_beat)
        trk = mido.MidiTrack()
        mid.tracks.append(trk)

        if track_name:
            # Meta text is stored as latin-1
            name = track_name.encode("latin-1", "replace").decode("latin-1")
            trk.append(mido.MetaMessage("track_name", name=name, time=0))
        trk.append(mido.MetaMessage(
            "set_tempo", tempo=mido.bpm2tempo(track.beats_per_minute), time=0,
        ))
        for delta, msg in track.messages:
            trk.append(msg.copy(time=delta))
        trk.append(mido.MetaMessage("end_of_track", time=0))
        return mid

    def to_bytes(self, events: Sequence[PerformanceEvent], track_name: str = "") -> bytes:
        """Encode and serialize in one step."""
        track = self.encode(events)
        mid = self.to_midi_file(track, track_name)
        buf = io.BytesIO()
        try:
            mid.save(file=buf)
        except (TypeError, ValueError) as exc:
            raise EncodingError(f"MIDI serialization failed: {exc}") from exc
        return buf.getvalue()
