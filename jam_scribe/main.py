"""Entry point: command-line parsing and QCoreApplication startup."""

from __future__ import annotations

import argparse
import json
import logging
import signal
import sys
from datetime import datetime
from pathlib import Path

from . import __version__
from .core.config import ConfigManager
from .core.midi_listener import MidiInputHub
from .core.retry_queue import RetryQueueStore

log = logging.getLogger(__name__)


def _load_config(args: argparse.Namespace) -> ConfigManager:
    return ConfigManager(config_dir=Path(args.config_dir) if args.config_dir else None)


def _parse_value(raw: str):
    """Interpret CLI values as JSON scalars where possible ("60" → 60)."""
    try:
        return json.loads(raw)
    except ValueError:
        return raw


def cmd_run(args: argparse.Namespace) -> int:
    from PyQt6.QtCore import QCoreApplication, QTimer

    from .app import JamScribe
    from .core.scheduler import QtScheduler

    app = QCoreApplication(sys.argv[:1])
    app.setApplicationName("JamScribe")
    app.setOrganizationName("JamScribe")

    config = _load_config(args)
    scribe = JamScribe(config, QtScheduler())

    # Let the interpreter see SIGINT while Qt's loop is blocking
    signal.signal(signal.SIGINT, lambda *_: app.quit())
    wake = QTimer()
    wake.timeout.connect(lambda: None)
    wake.start(500)

    scribe.start()
    try:
        return app.exec()
    finally:
        scribe.stop()


def cmd_ports(args: argparse.Namespace) -> int:
    ports = MidiInputHub.list_ports()
    if not ports:
        print("No MIDI input ports found")
        return 1
    for name in ports:
        print(name)
    return 0


def cmd_queue(args: argparse.Namespace) -> int:
    config = _load_config(args)
    store = RetryQueueStore(config.resolve_path("upload.queue_file"))
    entries = store.read()
    if not entries:
        print("No pending uploads")
        return 0
    for entry in entries:
        next_at = datetime.fromtimestamp(entry.next_attempt_time / 1000)
        print(
            f"{entry.id}  {entry.file_name}  attempts={entry.attempts}  "
            f"next={next_at:%Y-%m-%d %H:%M:%S}  error={entry.last_error or '-'}"
        )
    return 0


def cmd_config(args: argparse.Namespace) -> int:
    config = _load_config(args)
    if args.value is None:
        value = config.get(args.key)
        if value is None:
            print(f"{args.key} is not set", file=sys.stderr)
            return 1
        print(value)
        return 0
    config.set(args.key, _parse_value(args.value))
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="jam-scribe",
        description="Record MIDI jam sessions per device and upload them.",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("--config-dir", help="configuration directory (default ~/.jam_scribe)")
    parser.add_argument("-v", "--verbose", action="store_true", help="debug logging")

    sub = parser.add_subparsers(dest="command")
    sub.add_parser("run", help="listen to all MIDI inputs (default)").set_defaults(func=cmd_run)
    sub.add_parser("ports", help="list MIDI input ports").set_defaults(func=cmd_ports)
    sub.add_parser("queue", help="show uploads waiting for retry").set_defaults(func=cmd_queue)

    cfg = sub.add_parser("config", help="get or set a config value")
    cfg.add_argument("key", help="dot path, e.g. upload.endpoint")
    cfg.add_argument("value", nargs="?", help="new value (JSON scalars are parsed)")
    cfg.set_defaults(func=cmd_config)
    return parser


def main(argv: list[str] | None = None) -> None:
    parser = build_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
    )

    func = getattr(args, "func", cmd_run)
    sys.exit(func(args))


if __name__ == "__main__":
    main()
