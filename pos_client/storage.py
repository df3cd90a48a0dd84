"""
Durable client-side key/value storage.

``FileStorage`` keeps values in a JSON file so they survive restarts of
the point-of-sale terminal; ``MemoryStorage`` is for tests and throwaway
sessions.
"""
import json
import logging
import os
import threading
from pathlib import Path

logger = logging.getLogger(__name__)

AUTH_TOKEN_KEY = 'auth_token'
REFRESH_TOKEN_KEY = 'refresh_token'
LAST_ACTIVITY_KEY = 'last_activity'
SERVER_LAST_ACTIVITY_KEY = 'server_last_activity'
SERVER_TIME_REMAINING_KEY = 'server_time_remaining'

# Cleared on logout along with the credentials
SENSITIVE_KEYS = (
    AUTH_TOKEN_KEY,
    REFRESH_TOKEN_KEY,
    'user_preferences',
    'cart_data',
    'temp_sale_data',
)


class MemoryStorage:
    def __init__(self, initial=None):
        self._data = dict(initial or {})
        self._lock = threading.Lock()

    def get(self, key, default=None):
        with self._lock:
            return self._data.get(key, default)

    def set(self, key, value):
        with self._lock:
            self._data[key] = value

    def remove(self, key):
        with self._lock:
            self._data.pop(key, None)

    def clear(self):
        with self._lock:
            self._data.clear()

    def keys(self):
        with self._lock:
            return list(self._data)


class FileStorage(MemoryStorage):
    """JSON file backed storage; every write is flushed to disk"""

    DEFAULT_PATH = Path.home() / '.pharmacy_pos' / 'storage.json'

    def __init__(self, path=None):
        self.path = Path(path or self.DEFAULT_PATH)
        super().__init__(self._load())

    def _load(self):
        try:
            with open(self.path, encoding='utf-8') as fh:
                data = json.load(fh)
        except FileNotFoundError:
            return {}
        except (OSError, ValueError) as e:
            logger.warning(f"Could not read client storage {self.path}, starting empty: {e}")
            return {}
        return data if isinstance(data, dict) else {}

    def _save(self):
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.path.with_suffix('.tmp')
        with open(tmp_path, 'w', encoding='utf-8') as fh:
            json.dump(self._data, fh)
        os.replace(tmp_path, self.path)

    def set(self, key, value):
        with self._lock:
            self._data[key] = value
            self._save()

    def remove(self, key):
        with self._lock:
            if self._data.pop(key, None) is not None:
                self._save()

    def clear(self):
        with self._lock:
            self._data.clear()
            self._save()
