"""JamScribe: records MIDI jam sessions per device and uploads them."""

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("jam-scribe")
except PackageNotFoundError:
    # Dev environment without installed metadata, read pyproject.toml directly
    try:
        import tomllib
        from pathlib import Path

        _toml = Path(__file__).resolve().parent.parent / "pyproject.toml"
        with open(_toml, "rb") as f:
            __version__ = tomllib.load(f)["project"]["version"]
    except (OSError, KeyError, ValueError):
        __version__ = "0.0.0-dev"
