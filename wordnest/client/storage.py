from __future__ import annotations

import json
import os
import threading
from pathlib import Path
from typing import Callable, Dict, List, Optional, Protocol, Tuple

from wordnest.client.state import AuthState, AuthStateContainer
from wordnest.logging import get_logger

logger = get_logger(__name__)

STORAGE_KEY = "auth-storage"

StorageListener = Callable[[str, Optional[str]], None]


class KeyValueStorage(Protocol):
    """String key/value storage with change events from other writers."""

    def get_item(self, key: str) -> Optional[str]:
        ...

    def set_item(self, key: str, value: str) -> None:
        ...

    def remove_item(self, key: str) -> None:
        ...

    def subscribe(self, listener: StorageListener) -> Callable[[], None]:
        ...


class StorageArea:
    """Data shared by every :class:`MemoryStorage` opened on it, one per tab."""

    def __init__(self) -> None:
        self.data: Dict[str, str] = {}
        self.subscribers: List[Tuple["MemoryStorage", StorageListener]] = []
        self.lock = threading.RLock()


class MemoryStorage:
    """In-process storage; writes are announced to every *other* handle on the area.

    Mirrors browser ``storage`` events: the tab that wrote a key is not told
    about its own write.
    """

    def __init__(self, area: Optional[StorageArea] = None) -> None:
        self.area = area or StorageArea()

    def get_item(self, key: str) -> Optional[str]:
        with self.area.lock:
            return self.area.data.get(key)

    def set_item(self, key: str, value: str) -> None:
        with self.area.lock:
            if self.area.data.get(key) == value:
                return
            self.area.data[key] = value
        self._emit(key, value)

    def remove_item(self, key: str) -> None:
        with self.area.lock:
            if key not in self.area.data:
                return
            del self.area.data[key]
        self._emit(key, None)

    def subscribe(self, listener: StorageListener) -> Callable[[], None]:
        entry = (self, listener)
        with self.area.lock:
            self.area.subscribers.append(entry)

        def unsubscribe() -> None:
            with self.area.lock:
                if entry in self.area.subscribers:
                    self.area.subscribers.remove(entry)

        return unsubscribe

    def _emit(self, key: str, value: Optional[str]) -> None:
        with self.area.lock:
            targets = [listener for owner, listener in self.area.subscribers if owner is not self]
        for listener in targets:
            listener(key, value)


class FileStorage:
    """JSON-file storage for long-lived clients such as CLIs.

    Changes written by other processes surface through :meth:`reload`, which
    emits an event for every key whose value differs from the last read.
    """

    def __init__(self, path: str | os.PathLike) -> None:
        self.path = Path(path)
        self._lock = threading.RLock()
        self._listeners: List[StorageListener] = []
        self._snapshot: Dict[str, str] = self._read()

    def _read(self) -> Dict[str, str]:
        if not self.path.exists():
            return {}
        try:
            with self.path.open("r", encoding="utf-8") as fh:
                data = json.load(fh)
        except (OSError, json.JSONDecodeError) as exc:
            logger.warning("client_storage_read_failed", path=str(self.path), error=str(exc))
            return {}
        return {str(k): str(v) for k, v in data.items()} if isinstance(data, dict) else {}

    def _write(self, data: Dict[str, str]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.path.with_suffix(self.path.suffix + ".tmp")
        with tmp_path.open("w", encoding="utf-8") as fh:
            json.dump(data, fh)
        os.replace(tmp_path, self.path)

    def get_item(self, key: str) -> Optional[str]:
        with self._lock:
            return self._read().get(key)

    def set_item(self, key: str, value: str) -> None:
        with self._lock:
            data = self._read()
            data[key] = value
            self._write(data)
            self._snapshot = data

    def remove_item(self, key: str) -> None:
        with self._lock:
            data = self._read()
            if data.pop(key, None) is None:
                return
            self._write(data)
            self._snapshot = data

    def subscribe(self, listener: StorageListener) -> Callable[[], None]:
        with self._lock:
            self._listeners.append(listener)

        def unsubscribe() -> None:
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return unsubscribe

    def reload(self) -> None:
        with self._lock:
            previous, current = self._snapshot, self._read()
            self._snapshot = current
            listeners = list(self._listeners)
        changed = [key for key in set(previous) | set(current) if previous.get(key) != current.get(key)]
        for key in changed:
            for listener in listeners:
                listener(key, current.get(key))


class StorageBridge:
    """Persists a container's shared slice and applies changes made by other tabs.

    Outbound, every state change is written under ``key`` as
    ``{"state": {user, tokens, isAuthenticated}}``. Inbound, a removed key
    clears the container; a new value is adopted only when its user id or
    access token differs from the local state. No network calls are made.
    """

    def __init__(
        self,
        container: AuthStateContainer,
        storage: KeyValueStorage,
        key: str = STORAGE_KEY,
    ) -> None:
        self.container = container
        self.storage = storage
        self.key = key
        self._applying = False
        self._unsubscribers: List[Callable[[], None]] = []

    def attach(self) -> "StorageBridge":
        self.hydrate()
        self._unsubscribers = [
            self.container.subscribe(self._on_state_change),
            self.storage.subscribe(self._on_storage_event),
        ]
        return self

    def detach(self) -> None:
        for unsubscribe in self._unsubscribers:
            unsubscribe()
        self._unsubscribers = []

    def hydrate(self) -> None:
        """Load the persisted slice into the container, if any."""
        snapshot = self._parse(self.storage.get_item(self.key))
        if snapshot is not None:
            self._apply(snapshot)

    def _parse(self, raw: Optional[str]) -> Optional[dict]:
        if raw is None:
            return None
        try:
            payload = json.loads(raw)
        except json.JSONDecodeError as exc:
            logger.warning("auth_storage_parse_failed", key=self.key, error=str(exc))
            return None
        state = payload.get("state") if isinstance(payload, dict) else None
        return state if isinstance(state, dict) else None

    def _apply(self, snapshot: dict) -> None:
        self._applying = True
        try:
            self.container.restore(
                snapshot.get("user"),
                snapshot.get("tokens"),
                bool(snapshot.get("isAuthenticated")),
            )
        finally:
            self._applying = False

    def _on_state_change(self, current: AuthState, previous: AuthState) -> None:
        if self._applying or current.persisted() == previous.persisted():
            return
        self.storage.set_item(self.key, json.dumps({"state": current.persisted(), "version": 0}))

    def _on_storage_event(self, key: str, value: Optional[str]) -> None:
        if key != self.key:
            return
        if value is None:
            self._applying = True
            try:
                self.container.clear()
            finally:
                self._applying = False
            return
        snapshot = self._parse(value)
        if snapshot is None:
            return
        local = self.container.state
        user_id = (snapshot.get("user") or {}).get("id")
        access_token = (snapshot.get("tokens") or {}).get("accessToken")
        if local.user_id != user_id or local.access_token != access_token:
            self._apply(snapshot)
