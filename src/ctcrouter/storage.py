"""
Persistent storage of session configurations.

Each named record is one JSON file in the configuration directory. Records
are replaced atomically and never expire.
"""

import logging
import os
import re
import tempfile
from typing import Optional

from .config_codec import ConfigFormatError, SessionConfig, deserialize, serialize

logger = logging.getLogger(__name__)

DEFAULT_RECORD = "config"


def default_config_dir() -> str:
    """Directory used when CTCROUTER_CONFIG_DIR is not set."""
    return os.path.join(os.path.expanduser("~"), ".config", "ctcrouter")


class ConfigStore:
    """Reads and writes named SessionConfig records."""

    def __init__(self, directory: Optional[str] = None):
        self.directory = directory or default_config_dir()

    def _record_path(self, name: str) -> str:
        # Only allow simple record names, no path components
        if not re.fullmatch(r"[A-Za-z0-9_.-]+", name) or name.startswith("."):
            raise ValueError(f"Invalid record name: {name!r}")
        return os.path.join(self.directory, f"{name}.json")

    def save(self, config: SessionConfig, name: str = DEFAULT_RECORD) -> str:
        """Write a record, replacing any previous one with the same name."""
        path = self._record_path(name)
        os.makedirs(self.directory, exist_ok=True)

        fd, tmp_path = tempfile.mkstemp(prefix=f".{name}.", suffix=".tmp", dir=self.directory)
        try:
            with os.fdopen(fd, "w") as f:
                f.write(serialize(config))
            os.replace(tmp_path, path)
        except Exception:
            try:
                os.unlink(tmp_path)
            except OSError:
                pass
            raise

        logger.info(f"Saved configuration record '{name}' to {path}")
        return path

    def load(self, name: str = DEFAULT_RECORD) -> Optional[SessionConfig]:
        """
        Read a record.

        Returns None when the record does not exist or cannot be decoded, in
        which case callers use the defaults.
        """
        path = self._record_path(name)
        try:
            with open(path, "r") as f:
                text = f.read()
        except FileNotFoundError:
            logger.debug(f"No saved configuration record '{name}'")
            return None
        except OSError as e:
            logger.warning(f"Failed to read configuration record {path}: {e}")
            return None

        try:
            return deserialize(text)
        except ConfigFormatError as e:
            logger.warning(f"Ignoring malformed configuration record {path}: {e}")
            return None

    def clear(self, name: str = DEFAULT_RECORD) -> bool:
        """Delete a record. Returns True if it existed."""
        path = self._record_path(name)
        try:
            os.unlink(path)
        except FileNotFoundError:
            return False
        logger.info(f"Deleted configuration record '{name}'")
        return True
