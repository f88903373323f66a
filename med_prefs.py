# med_prefs.py
# Small JSON key-value store for app settings (currently just the theme).

import json
from pathlib import Path
from threading import RLock
from typing import Callable, Dict, List, Tuple

from med_config import DEFAULT_DARK_MODE
from med_crypto import atomic_write_bytes
from med_errors import StorageFault
from med_log import logger

DARK_MODE_KEY = "dark_mode"

BoolCallback = Callable[[bool], None]


class PreferenceStore:
    def __init__(self, path: Path):
        self.path = Path(path)
        self._lock = RLock()
        self._subscribers: Dict[str, List[Tuple[bool, BoolCallback]]] = {}

    def _read(self) -> Dict:
        if not self.path.exists():
            return {}
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, ValueError):
            logger.warning(f"unreadable settings file {self.path.name}; using defaults")
            return {}
        return data if isinstance(data, dict) else {}

    def get_bool(self, key: str, default: bool) -> bool:
        with self._lock:
            value = self._read().get(key)
        return value if isinstance(value, bool) else default

    def put_bool(self, key: str, value: bool):
        value = bool(value)
        with self._lock:
            data = self._read()
            data[key] = value
            try:
                atomic_write_bytes(self.path, json.dumps(data, indent=2).encode("utf-8"))
            except OSError as exc:
                raise StorageFault(f"cannot save setting {key}: {exc}") from exc
            for _, callback in list(self._subscribers.get(key, [])):
                try:
                    callback(value)
                except Exception:
                    logger.exception(f"settings subscriber for {key} failed")

    def subscribe(self, key: str, default: bool, callback: BoolCallback) -> Callable[[], None]:
        """Call back with the current value now and on every change.

        Returns a function that removes the subscription.
        """
        entry = (default, callback)
        with self._lock:
            self._subscribers.setdefault(key, []).append(entry)
            try:
                callback(self.get_bool(key, default))
            except Exception:
                logger.exception(f"settings subscriber for {key} failed")

        def unsubscribe():
            with self._lock:
                entries = self._subscribers.get(key, [])
                if entry in entries:
                    entries.remove(entry)

        return unsubscribe


class ThemePreferences:
    def __init__(self, store: PreferenceStore):
        self.store = store

    @property
    def dark_mode(self) -> bool:
        return self.store.get_bool(DARK_MODE_KEY, DEFAULT_DARK_MODE)

    def set_dark_mode(self, enabled: bool):
        self.store.put_bool(DARK_MODE_KEY, enabled)
        logger.info(f"dark mode {'on' if enabled else 'off'}")

    def subscribe(self, callback: BoolCallback) -> Callable[[], None]:
        return self.store.subscribe(DARK_MODE_KEY, DEFAULT_DARK_MODE, callback)
