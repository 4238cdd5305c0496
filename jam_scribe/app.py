"""Wires the recorder core together around a scheduler."""

from __future__ import annotations

import logging
from pathlib import Path

from .core.activity_log import ActivityLog
from .core.audio_renderer import FluidSynthRenderer
from .core.config import ConfigManager
from .core.constants import PORT_POLL_INTERVAL
from .core.delivery import DeliveryService
from .core.events import PerformanceEvent
from .core.file_saver import FileSaver, LocalFileSaver
from .core.midi_encoder import MidiEncoder
from .core.midi_listener import MidiInputHub
from .core.notifier import Notifier, create_notifier
from .core.retry_queue import RetryQueue, RetryQueueStore
from .core.scheduler import Scheduler, TimerHandle
from .core.session_tracker import SessionTracker
from .core.uploader import UploadDispatcher

log = logging.getLogger(__name__)


class JamScribe:
    """Owns every long-lived core object.

    MIDI callbacks arrive on rtmidi threads and are posted to the
    scheduler's loop, so the tracker sees one event at a time.
    """

    def __init__(
        self,
        config: ConfigManager,
        scheduler: Scheduler,
        activity_log: ActivityLog | None = None,
        dispatcher: UploadDispatcher | None = None,
        file_saver: FileSaver | None = None,
        notifier: Notifier | None = None,
        hub: MidiInputHub | None = None,
    ) -> None:
        self.config = config
        self.scheduler = scheduler
        self.activity_log = activity_log if activity_log is not None else ActivityLog()
        self.dispatcher = dispatcher if dispatcher is not None else UploadDispatcher()
        self.file_saver = file_saver if file_saver is not None else LocalFileSaver(
            config.resolve_path("recording.output_dir"),
        )
        self.notifier = notifier if notifier is not None else create_notifier(
            config.get("notifications.push_url", ""),
        )

        self.retry_queue = RetryQueue(
            RetryQueueStore(config.resolve_path("upload.queue_file")),
            self.dispatcher,
            config,
            self.activity_log,
            scheduler=scheduler,
        )
        self.delivery = DeliveryService(
            self.file_saver,
            self.dispatcher,
            self.retry_queue,
            config,
            scheduler,
            self.activity_log,
            notifier=self.notifier,
            renderer=self._create_renderer(),
        )
        self.tracker = SessionTracker(
            config,
            scheduler,
            self.delivery.submit,
            self.activity_log,
            encoder=MidiEncoder(),
            notifier=self.notifier,
        )
        self.hub = hub if hub is not None else MidiInputHub(self.post_event, self.activity_log)
        self._poll_timer: TimerHandle | None = None

    def _create_renderer(self) -> FluidSynthRenderer | None:
        if not self.config.get("rendering.enabled", False):
            return None
        soundfont = self.config.get("rendering.soundfont_path", "")
        if not soundfont:
            self.activity_log.warning("Audio rendering enabled but no SoundFont configured")
            return None
        renderer = FluidSynthRenderer(
            Path(soundfont),
            sample_rate=int(self.config.get("rendering.sample_rate")),
            gain=float(self.config.get("rendering.gain")),
        )
        if not renderer.is_available():
            self.activity_log.warning("fluidsynth not found on PATH, audio rendering disabled")
            return None
        return renderer

    def post_event(self, event: PerformanceEvent) -> None:
        """Thread-safe entry point for the event source."""
        self.scheduler.call_soon_threadsafe(lambda: self.tracker.on_event(event))

    def start(self) -> None:
        self.hub.refresh()
        self._poll_timer = self.scheduler.call_repeating(PORT_POLL_INTERVAL, self.hub.refresh)
        self.retry_queue.start()
        endpoint = self.config.recording().uploader_endpoint
        self.activity_log.log(
            f"Listening on {len(self.hub.devices)} MIDI device(s); "
            + (f"uploading to {endpoint}" if endpoint else "uploads disabled")
        )

    def stop(self) -> None:
        if self._poll_timer is not None:
            self._poll_timer.cancel()
            self._poll_timer = None
        self.retry_queue.stop()
        self.hub.close_all()
        self.tracker.close()
