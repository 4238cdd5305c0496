"""Persist a flushed session and hand it to the uploader.

``submit`` is the sink the SessionTracker flushes into. The slow part
(disk write, first upload attempt, optional WAV render) runs on a
background worker; the outcome is applied back on the event loop, where
failed uploads go into the retry queue.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING

from .constants import MIDI_CONTENT_TYPE, WAV_CONTENT_TYPE
from .notifier import NullNotifier, notify_in_background
from .uploader import UploadResult

if TYPE_CHECKING:
    from .activity_log import ActivityLog
    from .audio_renderer import FluidSynthRenderer
    from .config import ConfigManager
    from .file_saver import FileSaver
    from .notifier import Notifier
    from .retry_queue import RetryQueue
    from .scheduler import Scheduler
    from .uploader import UploadDispatcher

log = logging.getLogger(__name__)


@dataclass(slots=True)
class UploadAttempt:
    file_name: str
    file_path: Path
    content_type: str
    result: UploadResult


@dataclass(slots=True)
class DeliveryOutcome:
    file_name: str
    path: Path
    uploads: list[UploadAttempt] = field(default_factory=list)
    render_error: str | None = None


class DeliveryService:
    """Save → first upload attempt → queue for retry on failure."""

    def __init__(
        self,
        file_saver: FileSaver,
        dispatcher: UploadDispatcher,
        retry_queue: RetryQueue,
        config: ConfigManager,
        scheduler: Scheduler,
        activity_log: ActivityLog,
        notifier: Notifier | None = None,
        renderer: FluidSynthRenderer | None = None,
    ) -> None:
        self._saver = file_saver
        self._dispatcher = dispatcher
        self._retry_queue = retry_queue
        self._config = config
        self._scheduler = scheduler
        self._activity = activity_log
        self._notifier = notifier if notifier is not None else NullNotifier()
        self._renderer = renderer

    def submit(self, file_name: str, data: bytes, device_id: str = "") -> None:
        """Persist and upload *data* without blocking the event loop."""
        destination = self._config.recording().uploader_endpoint
        self._scheduler.run_in_background(
            lambda: self.deliver(file_name, data, destination),
            lambda outcome, error: self._on_delivered(file_name, device_id, outcome, error),
        )

    def deliver(self, file_name: str, data: bytes, destination: str) -> DeliveryOutcome:
        """Blocking delivery. Runs on a worker thread.

        Raises if the file cannot be written; upload failures are
        reported in the outcome instead.
        """
        path = self._saver.write_file(file_name, data)
        outcome = DeliveryOutcome(file_name=file_name, path=path)
        outcome.uploads.append(self._first_attempt(file_name, path, MIDI_CONTENT_TYPE, data, destination))

        if self._renderer is not None:
            # The MIDI attempt above must reach _on_delivered whatever happens here
            try:
                self._render_and_upload(path, destination, outcome)
            except Exception as exc:
                log.exception("Audio render step failed for %s", file_name)
                outcome.render_error = str(exc) or exc.__class__.__name__
        return outcome

    def _render_and_upload(self, path: Path, destination: str, outcome: DeliveryOutcome) -> None:
        rendered = self._renderer.render(path)
        if rendered.success and rendered.audio_path is not None:
            audio = rendered.audio_path
            outcome.uploads.append(
                self._first_attempt(audio.name, audio, WAV_CONTENT_TYPE, audio, destination)
            )
        else:
            outcome.render_error = rendered.error

    def _first_attempt(
        self,
        file_name: str,
        path: Path,
        content_type: str,
        data: bytes | Path,
        destination: str,
    ) -> UploadAttempt:
        if not destination:
            return UploadAttempt(file_name, path, content_type, UploadResult.disabled())
        result = self._dispatcher.attempt(file_name, content_type, data, destination)
        return UploadAttempt(file_name, path, content_type, result)

    def _on_delivered(
        self,
        file_name: str,
        device_id: str,
        outcome: DeliveryOutcome | None,
        error: BaseException | None,
    ) -> None:
        label = device_id or file_name
        if error is not None or outcome is None:
            self._activity.error(f"Error while saving MIDI file for {label}: {error}")
            return

        self._activity.log(f"MIDI file saved for device: {label} at {outcome.path}")
        notify_in_background(
            self._scheduler, self._notifier, "Stopped recording",
            self._config.get("notifications.open_url", ""),
        )
        if outcome.render_error:
            self._activity.warning(f"Audio render failed for {file_name}: {outcome.render_error}")

        for attempt in outcome.uploads:
            if attempt.result.skipped:
                log.info("Uploads disabled, %s kept locally only", attempt.file_name)
            elif attempt.result.success:
                self._activity.log(f"Uploaded {attempt.file_name}")
            else:
                self._retry_queue.enqueue(
                    attempt.file_name, attempt.file_path, attempt.content_type, attempt.result.error,
                )
