"""Render recorded MIDI files to WAV with the FluidSynth command-line tool."""

from __future__ import annotations

import logging
import shutil
import subprocess
from dataclasses import dataclass
from pathlib import Path

from .constants import DEFAULT_RENDER_GAIN, DEFAULT_SAMPLE_RATE, RENDER_TIMEOUT

log = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class RenderResult:
    success: bool
    audio_path: Path | None = None
    error: str | None = None


class FluidSynthRenderer:
    """Offline MIDI → WAV rendering through ``fluidsynth -F``."""

    def __init__(
        self,
        soundfont_path: str | Path,
        sample_rate: int = DEFAULT_SAMPLE_RATE,
        gain: float = DEFAULT_RENDER_GAIN,
        timeout: float = RENDER_TIMEOUT,
        executable: str = "fluidsynth",
    ) -> None:
        self.soundfont_path = Path(soundfont_path) if soundfont_path else None
        self.sample_rate = sample_rate
        self.gain = gain
        self.timeout = timeout
        self.executable = executable

    def is_available(self) -> bool:
        """True if the fluidsynth binary can be run."""
        if shutil.which(self.executable) is None:
            return False
        try:
            subprocess.run(
                [self.executable, "--version"],
                capture_output=True, timeout=10, check=True,
            )
        except (OSError, subprocess.SubprocessError):
            return False
        return True

    def command(self, midi_path: Path, audio_path: Path) -> list[str]:
        # -n no MIDI input, -i non-interactive, -F fast render to file
        return [
            self.executable,
            "-n",
            "-i",
            "-g", str(self.gain),
            "-r", str(self.sample_rate),
            "-F", str(audio_path),
            str(self.soundfont_path),
            str(midi_path),
        ]

    def render(self, midi_path: str | Path) -> RenderResult:
        """Render *midi_path* to a .wav beside it."""
        midi_path = Path(midi_path)
        if self.soundfont_path is None:
            return RenderResult(False, error="No SoundFont path configured")
        if not self.soundfont_path.exists():
            return RenderResult(False, error=f"SoundFont file not found: {self.soundfont_path}")
        if not midi_path.exists():
            return RenderResult(False, error=f"MIDI file not found: {midi_path}")

        audio_path = midi_path.with_suffix(".wav")
        try:
            proc = subprocess.run(
                self.command(midi_path, audio_path),
                capture_output=True, text=True, timeout=self.timeout,
            )
        except (OSError, subprocess.SubprocessError) as exc:
            audio_path.unlink(missing_ok=True)
            return RenderResult(False, error=str(exc))

        # fluidsynth writes warnings to stderr even when it succeeds
        if not audio_path.exists():
            return RenderResult(
                False, error=f"Audio file was not created. FluidSynth output: {proc.stderr}",
            )
        try:
            if audio_path.stat().st_size == 0:
                audio_path.unlink()
                return RenderResult(False, error="FluidSynth created an empty audio file")
        except OSError as exc:
            return RenderResult(False, error=f"Could not inspect rendered audio: {exc}")

        log.info("Rendered %s -> %s", midi_path.name, audio_path.name)
        return RenderResult(True, audio_path=audio_path)
