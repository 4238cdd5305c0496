"""Timing, retry, and upload constants."""

# Standard MIDI file resolution used for every recorded session
TICKS_PER_BEAT = 480

# Tempo is fixed, never inferred from the incoming stream
DEFAULT_TEMPO_BPM = 120

# Velocity written for a note-on that arrives without one
DEFAULT_NOTE_ON_VELOCITY = 64

# Seconds of silence after which a device is considered inactive
DEFAULT_INACTIVITY_TIMEOUT = 60

# Upload retry queue
MAX_UPLOAD_ATTEMPTS = 10
RETRY_BASE_DELAY_MS = 60_000  # attempts=k waits 2^(k-1) * this
RETRY_SWEEP_INTERVAL = 60.0  # seconds
RETRY_STARTUP_DELAY = 5.0  # seconds, drains backlog from a previous run

# Chunked upload protocol
UPLOAD_PART_SIZE = 5 * 1024 * 1024
UPLOAD_TIMEOUT = 30.0  # seconds per HTTP request

# Content types handed to the uploader
MIDI_CONTENT_TYPE = "audio/midi"
WAV_CONTENT_TYPE = "audio/wav"

# MIDI input hot-plug polling interval in seconds
PORT_POLL_INTERVAL = 3.0

# FluidSynth rendering
DEFAULT_SAMPLE_RATE = 44100
DEFAULT_RENDER_GAIN = 0.5
RENDER_TIMEOUT = 60.0  # seconds
