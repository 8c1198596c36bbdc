"""Service version, read from the VERSION file next to this module."""

from pathlib import Path

VERSION_FILE = Path(__file__).with_name("VERSION")
UNKNOWN_VERSION = "0.0.0-dev"


def get_version(path: Path = VERSION_FILE) -> str:
    try:
        version = path.read_text().strip()
    except OSError:
        return UNKNOWN_VERSION
    return version or UNKNOWN_VERSION


__version__ = get_version()
