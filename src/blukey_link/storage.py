"""
APPKEY secret stores.

The link only needs get/put/clear by device id. Two stores are provided:
an in-memory store and an INI file store compatible with the Linux CLI's
"blukeyborg.data" file (one section per device, app_key as hex).
"""

import configparser
import hashlib
import logging
import os
from pathlib import Path
from typing import Optional, Protocol, Union

from .crypto import KEY_SIZE

logger = logging.getLogger(__name__)

DEFAULT_STORE_PATH = "blukeyborg.data"

APP_KEY_OPTION = "app_key"
LAYOUT_OPTION = "keyboard_layout"


def slot_id(device_id: str) -> str:
    """Stable storage slot for a device: sha256(lower(trim(id)))[:16] as hex."""
    normalized = device_id.strip().lower().encode("utf-8")
    return hashlib.sha256(normalized).digest()[:16].hex()


class KeyStore(Protocol):
    """Secret store collaborator."""

    def get(self, device_id: str) -> Optional[bytes]:
        ...

    def put(self, device_id: str, key: bytes) -> bool:
        ...

    def clear(self, device_id: str) -> None:
        ...

    def get_layout(self, device_id: str) -> Optional[str]:
        """Last keyboard layout code read from the device, if remembered."""
        ...

    def set_layout(self, device_id: str, layout: str) -> None:
        ...


class MemoryKeyStore:
    """Process-local store, keyed by slot id."""

    def __init__(self) -> None:
        self._keys: dict[str, bytes] = {}
        self._layouts: dict[str, str] = {}

    def get(self, device_id: str) -> Optional[bytes]:
        return self._keys.get(slot_id(device_id))

    def put(self, device_id: str, key: bytes) -> bool:
        if len(key) != KEY_SIZE:
            return False
        self._keys[slot_id(device_id)] = bytes(key)
        return True

    def clear(self, device_id: str) -> None:
        self._keys.pop(slot_id(device_id), None)

    def get_layout(self, device_id: str) -> Optional[str]:
        return self._layouts.get(slot_id(device_id))

    def set_layout(self, device_id: str, layout: str) -> None:
        self._layouts[slot_id(device_id)] = layout


class IniKeyStore:
    """
    INI file store.

    Sections are named by device address (upper-cased); each holds the
    APPKEY as hex plus the last layout code read from the dongle.
    Last write wins; the whole file is rewritten on every change.
    """

    def __init__(self, path: Union[str, os.PathLike] = DEFAULT_STORE_PATH):
        self.path = Path(path)
        self._config = configparser.ConfigParser()
        self.load()

    @staticmethod
    def _section(device_id: str) -> str:
        return device_id.strip().upper()

    def load(self) -> None:
        """Read the file; a missing file is an empty store."""
        self._config = configparser.ConfigParser()
        if self.path.exists():
            self._config.read(self.path, encoding="utf-8")

    def save(self) -> bool:
        try:
            with self.path.open("w", encoding="utf-8") as f:
                self._config.write(f)
        except OSError as e:
            logger.error(f"Failed to write key store {self.path}: {e}")
            return False
        return True

    def get(self, device_id: str) -> Optional[bytes]:
        value = self._config.get(self._section(device_id), APP_KEY_OPTION, fallback=None)
        if not value:
            return None
        try:
            key = bytes.fromhex(value)
        except ValueError:
            logger.warning(f"Ignoring malformed app_key for {device_id}")
            return None
        return key if len(key) == KEY_SIZE else None

    def put(self, device_id: str, key: bytes) -> bool:
        if len(key) != KEY_SIZE:
            return False
        section = self._section(device_id)
        if not self._config.has_section(section):
            self._config.add_section(section)
        self._config.set(section, APP_KEY_OPTION, key.hex())
        return self.save()

    def clear(self, device_id: str) -> None:
        section = self._section(device_id)
        if self._config.has_option(section, APP_KEY_OPTION):
            self._config.remove_option(section, APP_KEY_OPTION)
            self.save()

    def get_layout(self, device_id: str) -> Optional[str]:
        return self._config.get(self._section(device_id), LAYOUT_OPTION, fallback=None)

    def set_layout(self, device_id: str, layout: str) -> None:
        section = self._section(device_id)
        if not self._config.has_section(section):
            self._config.add_section(section)
        self._config.set(section, LAYOUT_OPTION, layout)
        self.save()
