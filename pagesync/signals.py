"""Reload signals and the shared-store contract they travel through.

A shared store holds named records per room (one room per document) and
tells observers about updates. Reload signals are written under
``signal:reload``; viewers report visible pages under ``signal:viewport``.
"""

import json
import logging
import os
import threading
from pathlib import Path

logger = logging.getLogger(__name__)

RELOAD_KEY = "signal:reload"
VIEWPORT_KEY = "signal:viewport"


class SharedStore:
    """get/set/delete of records per room, plus observe and broadcast."""

    def __init__(self):
        self._observers = {}
        self._observer_lock = threading.Lock()

    def get(self, room, key):
        raise NotImplementedError

    def set(self, room, key, value):
        raise NotImplementedError

    def delete(self, room, key):
        raise NotImplementedError

    def observe(self, room, callback):
        """Call ``callback(key, value)`` on every broadcast in ``room``.

        Returns a function that removes the observer.
        """
        with self._observer_lock:
            self._observers.setdefault(room, []).append(callback)

        def unsubscribe():
            with self._observer_lock:
                callbacks = self._observers.get(room, [])
                if callback in callbacks:
                    callbacks.remove(callback)

        return unsubscribe

    def broadcast(self, room, key, value):
        with self._observer_lock:
            callbacks = list(self._observers.get(room, []))
        for callback in callbacks:
            try:
                callback(key, value)
            except Exception:
                logger.exception("observer of %s failed", room)


class MemoryStore(SharedStore):
    def __init__(self):
        super().__init__()
        self._rooms = {}
        self._lock = threading.Lock()

    def get(self, room, key):
        with self._lock:
            return self._rooms.get(room, {}).get(key)

    def set(self, room, key, value):
        with self._lock:
            self._rooms.setdefault(room, {})[key] = value

    def delete(self, room, key):
        with self._lock:
            self._rooms.get(room, {}).pop(key, None)


class JsonFileStore(SharedStore):
    """Store keeping each room in a JSON file.

    Rooms bound with :meth:`bind` use the given path (the command line binds
    each document room to ``signals.json`` in its output directory); other
    rooms live in ``<directory>/<room>.json``. Records are re-read on every
    ``get`` so values written by other processes are seen.
    """

    def __init__(self, directory):
        super().__init__()
        self.directory = Path(directory)
        self._paths = {}
        self._lock = threading.Lock()

    def bind(self, room, path):
        self._paths[room] = Path(path)

    def path_for(self, room):
        return self._paths.get(room, self.directory / f"{room}.json")

    def _read(self, room):
        path = self.path_for(room)
        if not path.exists():
            return {}
        try:
            return json.loads(path.read_text())
        except ValueError:
            logger.warning("ignoring unreadable signal file %s", path)
            return {}

    def _write(self, room, records):
        path = self.path_for(room)
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp = path.with_name(path.name + ".tmp")
        tmp.write_text(json.dumps(records, indent=2))
        os.replace(tmp, path)

    def get(self, room, key):
        with self._lock:
            return self._read(room).get(key)

    def set(self, room, key, value):
        with self._lock:
            records = self._read(room)
            records[key] = value
            self._write(room, records)

    def delete(self, room, key):
        with self._lock:
            records = self._read(room)
            if key in records:
                del records[key]
                self._write(room, records)


class SignalDispatcher:
    def __init__(self, store):
        self.store = store

    def publish(self, document, signal):
        """Write ``signal`` to the document's room; the latest value wins."""
        value = signal.to_dict()
        self.store.set(document.room, RELOAD_KEY, value)
        self.store.broadcast(document.room, RELOAD_KEY, value)
        if signal.type == "partial":
            logger.info(
                "[signal] %s: reload pages %s", document.name, signal.pages
            )
        else:
            logger.info("[signal] %s: full reload", document.name)

    def visible_pages(self, document):
        """Pages the viewer last reported as visible, ``[1]`` if unknown."""
        record = self.store.get(document.room, VIEWPORT_KEY)
        pages = []
        if isinstance(record, dict):
            for page in record.get("pages") or []:
                if isinstance(page, int) and not isinstance(page, bool):
                    if page > 0 and page not in pages:
                        pages.append(page)
        return sorted(pages) or [1]
