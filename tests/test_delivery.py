"""Tests for jam_scribe.core.delivery: save, first attempt, hand-off to the retry queue."""

from __future__ import annotations

from pathlib import Path
from unittest import mock

import pytest
from conftest import FakeDispatcher

from jam_scribe.core.audio_renderer import RenderResult
from jam_scribe.core.delivery import DeliveryService
from jam_scribe.core.file_saver import LocalFileSaver
from jam_scribe.core.retry_queue import RetryQueue, RetryQueueStore
from jam_scribe.core.uploader import UploadResult

ENDPOINT = "https://uploads.example/info"
MIDI = b"MThd\x00\x00\x00\x06\x00\x01\x00\x01\x01\xe0"


class FailingSaver:
    def write_file(self, file_name: str, data: bytes) -> Path:
        raise OSError("No space left on device")


@pytest.fixture
def out_dir(tmp_path):
    return tmp_path / "midi_files"


@pytest.fixture
def retry_queue(tmp_path, dispatcher, config, activity_log):
    return RetryQueue(RetryQueueStore(tmp_path / "queue.json"), dispatcher, config, activity_log)


@pytest.fixture
def service(out_dir, dispatcher, retry_queue, config, scheduler, activity_log):
    return DeliveryService(
        LocalFileSaver(out_dir), dispatcher, retry_queue, config, scheduler, activity_log,
    )


# ── Upload disabled ─────────────────────────────────────────


class TestUploadsDisabled:
    def test_file_saved_no_upload(self, service, dispatcher, retry_queue, scheduler, out_dir, activity_log):
        service.submit("PianoA_x_recording.mid", MIDI, "PianoA")
        scheduler.run_background()
        assert (out_dir / "PianoA_x_recording.mid").read_bytes() == MIDI
        assert dispatcher.calls == []
        assert retry_queue.size == 0
        assert any("MIDI file saved for device: PianoA" in m for m in activity_log.messages())


# ── Upload enabled ──────────────────────────────────────────


class TestUploadsEnabled:
    @pytest.fixture(autouse=True)
    def _endpoint(self, config):
        config.set("upload.endpoint", ENDPOINT)

    def test_success(self, service, dispatcher, retry_queue, scheduler, activity_log):
        service.submit("a.mid", MIDI, "PianoA")
        scheduler.run_background()
        assert dispatcher.calls == [("a.mid", "audio/midi", MIDI, ENDPOINT)]
        assert retry_queue.size == 0
        assert "Uploaded a.mid" in activity_log.messages()

    def test_failure_enqueues_with_local_path(self, service, dispatcher, retry_queue, scheduler, out_dir):
        dispatcher.results = [UploadResult.failed("HTTP 503")]
        service.submit("a.mid", MIDI, "PianoA")
        scheduler.run_background()
        entry = retry_queue.pending[0]
        assert entry.attempts == 1
        assert entry.last_error == "HTTP 503"
        assert entry.file_path == str(out_dir / "a.mid")
        assert entry.content_type == "audio/midi"
        assert Path(entry.file_path).exists()

    def test_failed_upload_retried_from_disk(self, out_dir, config, scheduler, activity_log, tmp_path):
        now = [1_000_000.0]
        dispatcher = FakeDispatcher([UploadResult.failed("HTTP 503")])
        queue = RetryQueue(RetryQueueStore(tmp_path / "q.json"), dispatcher, config,
                           activity_log, clock=lambda: now[0])
        service = DeliveryService(LocalFileSaver(out_dir), dispatcher, queue, config,
                                  scheduler, activity_log)
        service.submit("a.mid", MIDI, "PianoA")
        scheduler.run_background()
        assert queue.size == 1

        now[0] += 61
        report = queue.sweep()
        assert report.succeeded == 1
        assert queue.size == 0
        # Retry read the file from disk
        assert dispatcher.calls[1][2] == str(out_dir / "a.mid")

    def test_upload_uses_endpoint_at_submit_time(self, service, dispatcher, config, scheduler):
        service.submit("a.mid", MIDI)
        config.set("upload.endpoint", "")
        scheduler.run_background()
        assert dispatcher.calls[0][3] == ENDPOINT


# ── Failures ────────────────────────────────────────────────


class TestPersistFailure:
    def test_logged_and_not_uploaded(self, dispatcher, retry_queue, config, scheduler, activity_log):
        config.set("upload.endpoint", ENDPOINT)
        service = DeliveryService(FailingSaver(), dispatcher, retry_queue, config, scheduler, activity_log)
        service.submit("a.mid", MIDI, "PianoA")
        scheduler.run_background()
        assert dispatcher.calls == []
        assert retry_queue.size == 0
        assert any(
            m.startswith("Error while saving MIDI file for PianoA") for m in activity_log.messages()
        )


# ── Notifications and rendering ─────────────────────────────


class TestExtras:
    def test_stopped_notification(self, out_dir, dispatcher, retry_queue, config, scheduler, activity_log):
        notifier = mock.MagicMock()
        service = DeliveryService(LocalFileSaver(out_dir), dispatcher, retry_queue, config,
                                  scheduler, activity_log, notifier=notifier)
        service.submit("a.mid", MIDI)
        scheduler.run_background()
        notifier.notify.assert_called_once_with("Stopped recording", "http://jamscribe.local:1337")

    def test_rendered_wav_uploaded(self, out_dir, dispatcher, retry_queue, config, scheduler, activity_log):
        config.set("upload.endpoint", ENDPOINT)
        renderer = mock.MagicMock()

        def render(midi_path):
            wav = Path(midi_path).with_suffix(".wav")
            wav.write_bytes(b"RIFF")
            return RenderResult(True, audio_path=wav)

        renderer.render.side_effect = render
        service = DeliveryService(LocalFileSaver(out_dir), dispatcher, retry_queue, config,
                                  scheduler, activity_log, renderer=renderer)
        service.submit("a.mid", MIDI)
        scheduler.run_background()
        assert [(c[0], c[1]) for c in dispatcher.calls] == [
            ("a.mid", "audio/midi"), ("a.wav", "audio/wav"),
        ]

    def test_render_failure_keeps_midi_upload(self, out_dir, dispatcher, retry_queue, config,
                                              scheduler, activity_log):
        config.set("upload.endpoint", ENDPOINT)
        renderer = mock.MagicMock()
        renderer.render.return_value = RenderResult(False, error="SoundFont file not found")
        service = DeliveryService(LocalFileSaver(out_dir), dispatcher, retry_queue, config,
                                  scheduler, activity_log, renderer=renderer)
        service.submit("a.mid", MIDI)
        scheduler.run_background()
        assert len(dispatcher.calls) == 1
        assert any("Audio render failed" in m for m in activity_log.messages())

    def test_render_exception_still_queues_midi_retry(self, out_dir, dispatcher, retry_queue, config,
                                                      scheduler, activity_log):
        config.set("upload.endpoint", ENDPOINT)
        dispatcher.results = [UploadResult.failed("HTTP 503")]
        renderer = mock.MagicMock()
        renderer.render.side_effect = PermissionError("cannot unlink empty wav")
        service = DeliveryService(LocalFileSaver(out_dir), dispatcher, retry_queue, config,
                                  scheduler, activity_log, renderer=renderer)
        service.submit("a.mid", MIDI, "PianoA")
        scheduler.run_background()
        assert retry_queue.size == 1
        assert retry_queue.pending[0].file_name == "a.mid"
        messages = activity_log.messages()
        assert any("MIDI file saved for device: PianoA" in m for m in messages)
        assert not any(m.startswith("Error while saving MIDI file") for m in messages)
        assert any("cannot unlink empty wav" in m for m in messages)
