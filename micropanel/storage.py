import os
import json
import logging
import threading
from pathlib import Path
from typing import Any, Dict, Optional

logger = logging.getLogger(__name__)

SAVE_DELAY = 2.0


class PersistentStorage:
    """
    Small per-module key/value store kept in one JSON file.

    Writes are coalesced: ``set`` schedules a save ``SAVE_DELAY`` seconds
    later, and ``close`` flushes anything still pending.
    """

    def __init__(self, path: str, save_delay: float = SAVE_DELAY):
        self.path = path
        self.save_delay = save_delay
        self.data: Dict[str, Dict[str, Any]] = {}
        self.dirty = False
        self._lock = threading.Lock()
        self._timer: Optional[threading.Timer] = None
        self.load()

    def load(self) -> None:
        p = Path(self.path)
        try:
            p.parent.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            logger.warning(f"Cannot create data directory {p.parent}: {e}")
        if not p.exists():
            logger.info(f"No persistent data at {self.path}, starting empty")
            return
        try:
            text = p.read_text()
            data = json.loads(text) if text.strip() else {}
        except (OSError, ValueError) as e:
            logger.warning(f"Invalid persistent data in {self.path}: {e}")
            data = {}
        if not isinstance(data, dict):
            logger.warning(f"Persistent data in {self.path} is not an object, ignoring")
            data = {}
        self.data = {k: v for k, v in data.items() if isinstance(v, dict)}
        logger.debug(f"Loaded persistent data for {len(self.data)} modules")

    def get(self, module_id: str, key: str, default: Any = None) -> Any:
        with self._lock:
            value = self.data.get(module_id, {}).get(key, default)
        if default is None or type(value) is type(default):
            return value
        if type(default) is float and type(value) is int:
            return float(value)
        logger.debug(f"Stored {module_id}.{key} has unexpected type, using default")
        return default

    def set(self, module_id: str, key: str, value: Any) -> None:
        with self._lock:
            self.data.setdefault(module_id, {})[key] = value
            self.dirty = True
            self._schedule()

    def _schedule(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
        self._timer = threading.Timer(self.save_delay, self.save)
        self._timer.daemon = True
        self._timer.start()

    def save(self) -> bool:
        with self._lock:
            if not self.dirty:
                return True
            payload = json.dumps(self.data, indent=2)
            tmp = self.path + ".tmp"
            try:
                with open(tmp, "w") as f:
                    f.write(payload)
                os.replace(tmp, self.path)
            except OSError as e:
                logger.error(f"Failed to save persistent data to {self.path}: {e}")
                return False
            self.dirty = False
        logger.debug(f"Persistent data saved to {self.path}")
        return True

    def close(self) -> None:
        with self._lock:
            timer, self._timer = self._timer, None
        if timer is not None:
            timer.cancel()
        self.save()
