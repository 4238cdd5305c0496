"""Tests for jam_scribe.core.midi_encoder: tick quantization and MIDI output."""

from __future__ import annotations

import io
import logging

import mido
import pytest
from conftest import make_event

from jam_scribe.core.events import EventKind
from jam_scribe.core.midi_encoder import (
    EncodingError,
    MidiEncoder,
    ms_to_ticks,
    round_half_away,
)

# ── Helpers ─────────────────────────────────────────────────


def _two_note_phrase():
    return [
        make_event(0, EventKind.NOTE_ON, 60, 100),
        make_event(500, EventKind.NOTE_ON, 64, None),
        make_event(1000, EventKind.NOTE_OFF, 60, 0),
        make_event(1200, EventKind.NOTE_OFF, 64, 0),
    ]


def _channel_messages(data: bytes) -> list[mido.Message]:
    mid = mido.MidiFile(file=io.BytesIO(data))
    return [m for m in mid.tracks[0] if not m.is_meta]


# ── Rounding ────────────────────────────────────────────────


class TestRounding:
    def test_half_rounds_away_from_zero(self):
        assert round_half_away(0.5) == 1
        assert round_half_away(1.5) == 2
        assert round_half_away(2.5) == 3
        assert round_half_away(-0.5) == -1

    def test_below_half_rounds_down(self):
        assert round_half_away(2.49) == 2

    def test_ms_to_ticks_one_beat(self):
        # 120 BPM → 500 ms per beat
        assert ms_to_ticks(500) == 480

    def test_ms_to_ticks_custom_tempo(self):
        # 60 BPM → 1000 ms per beat
        assert ms_to_ticks(500, ticks_per_beat=96, beats_per_minute=60) == 48


# ── MidiEncoder.encode ──────────────────────────────────────


class TestEncode:
    def test_phrase_deltas(self):
        track = MidiEncoder().encode(_two_note_phrase())
        assert track.deltas == [0, 480, 480, 192]
        assert track.ticks_per_beat == 480
        assert track.beats_per_minute == 120

    def test_first_delta_is_zero_even_with_late_start(self):
        events = [make_event(98765.4), make_event(99265.4)]
        assert MidiEncoder().encode(events).deltas[0] == 0

    def test_preserves_arrival_order(self):
        notes = [60, 62, 64, 65, 67]
        events = [make_event(i * 37.0, number=n) for i, n in enumerate(notes)]
        track = MidiEncoder().encode(events)
        assert [msg.note for _, msg in track.messages] == notes

    def test_delta_round_trip_within_one_tick(self):
        times = [0.0, 3.3, 17.9, 250.0, 251.04, 999.5, 1500.26, 4000.0]
        events = [make_event(t) for t in times]
        track = MidiEncoder().encode(events)
        for (prev, cur), delta in zip(zip(times, times[1:]), track.deltas[1:]):
            reconstructed_ms = delta * track.ms_per_beat / track.ticks_per_beat
            tick_ms = track.ms_per_beat / track.ticks_per_beat
            assert abs(reconstructed_ms - (cur - prev)) <= tick_ms

    def test_empty_buffer_raises(self):
        with pytest.raises(EncodingError):
            MidiEncoder().encode([])

    def test_negative_gap_clamped_and_logged(self, caplog):
        events = [make_event(100), make_event(50), make_event(600)]
        with caplog.at_level(logging.WARNING):
            track = MidiEncoder().encode(events)
        assert track.deltas == [0, 0, 528]
        assert "Negative arrival gap" in caplog.text


# ── Event kind mapping ──────────────────────────────────────


class TestKindMapping:
    def test_note_on_keeps_velocity(self):
        track = MidiEncoder().encode([make_event(0, EventKind.NOTE_ON, 60, 100)])
        msg = track.messages[0][1]
        assert msg.type == "note_on"
        assert msg.velocity == 100

    def test_note_on_without_velocity_defaults_to_64(self):
        track = MidiEncoder().encode([make_event(0, EventKind.NOTE_ON, 60, None)])
        assert track.messages[0][1].velocity == 64

    def test_note_off_velocity_forced_to_zero(self):
        track = MidiEncoder().encode([make_event(0, EventKind.NOTE_OFF, 60, 90)])
        msg = track.messages[0][1]
        assert msg.type == "note_off"
        assert msg.velocity == 0

    def test_channel_preserved(self):
        track = MidiEncoder().encode([make_event(0, channel=9)])
        assert track.messages[0][1].channel == 9

    def test_controller(self):
        track = MidiEncoder().encode([make_event(0, EventKind.CONTROLLER, 64, 127)])
        msg = track.messages[0][1]
        assert msg.type == "control_change"
        assert msg.control == 64
        assert msg.value == 127

    def test_controller_without_value_dropped(self, caplog):
        events = [
            make_event(0),
            make_event(250, EventKind.CONTROLLER, 64, None),
            make_event(500, EventKind.NOTE_OFF),
        ]
        with caplog.at_level(logging.WARNING):
            track = MidiEncoder().encode(events)
        assert [m.type for _, m in track.messages] == ["note_on", "note_off"]
        assert "has no value" in caplog.text

    def test_other_kind_dropped_and_time_carried(self):
        events = [
            make_event(0),
            make_event(250, EventKind.OTHER, 0, None),
            make_event(500, EventKind.NOTE_OFF),
        ]
        track = MidiEncoder().encode(events)
        assert len(track.messages) == 2
        # 250 ms + 250 ms → one beat
        assert track.deltas == [0, 480]

    def test_out_of_range_note_is_encoding_error(self):
        with pytest.raises(EncodingError):
            MidiEncoder().encode([make_event(0, number=200)])


# ── Serialization ───────────────────────────────────────────


class TestToBytes:
    def test_valid_midi_file(self):
        data = MidiEncoder().to_bytes(_two_note_phrase(), track_name="PianoA")
        mid = mido.MidiFile(file=io.BytesIO(data))
        assert mid.type == 1
        assert mid.ticks_per_beat == 480
        assert len(mid.tracks) == 1

    def test_file_deltas_match_phrase(self):
        msgs = _channel_messages(MidiEncoder().to_bytes(_two_note_phrase()))
        assert [m.time for m in msgs] == [0, 480, 480, 192]
        assert [m.type for m in msgs] == ["note_on", "note_on", "note_off", "note_off"]

    def test_tempo_and_name_meta(self):
        data = MidiEncoder().to_bytes(_two_note_phrase(), track_name="PianoA")
        track = mido.MidiFile(file=io.BytesIO(data)).tracks[0]
        tempos = [m for m in track if m.type == "set_tempo"]
        names = [m for m in track if m.type == "track_name"]
        assert tempos[0].tempo == mido.bpm2tempo(120)
        assert names[0].name == "PianoA"

    def test_non_latin_track_name_does_not_fail(self):
        data = MidiEncoder().to_bytes(_two_note_phrase(), track_name="電子琴")
        assert data.startswith(b"MThd")

    def test_empty_raises(self):
        with pytest.raises(EncodingError):
            MidiEncoder().to_bytes([])
