"""
Shared-state mirror — a tiny replicated map every client at the table sees.

Only two keys live here: `gameId` and `phase`. A client writes them after every
confirmed game or phase transition and listens for changes made by the others;
a change it did not expect is the cheap hint that it should re-sync with the
game server. The mirror is never authoritative: the server state always wins.

Writes are fire-and-forget scalar overwrites (no read-modify-write), so no
coordination between clients is needed.
"""
import asyncio
import logging
import os
from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, List, Optional

from pydantic import BaseModel

from config import settings

logger = logging.getLogger(__name__)

# field name → key stored in the shared map
MIRROR_KEYS: Dict[str, str] = {"game_id": "gameId", "phase": "phase"}


class MirrorState(BaseModel):
    game_id: Optional[str] = None
    phase: Optional[str] = None

    @classmethod
    def from_wire(cls, data: Dict[str, Any]) -> "MirrorState":
        game_id = data.get("gameId")
        return cls(
            game_id=str(game_id) if game_id not in (None, "") else None,
            phase=data.get("phase") or None,
        )


def to_wire(fields: Dict[str, Any]) -> Dict[str, Any]:
    unknown = set(fields) - set(MIRROR_KEYS)
    if unknown:
        raise ValueError(f"Unknown mirror fields: {sorted(unknown)}")
    wire: Dict[str, Any] = {}
    for name, value in fields.items():
        # Enums are stored by value so other clients can compare plain strings
        wire[MIRROR_KEYS[name]] = getattr(value, "value", value)
    return wire


MirrorCallback = Callable[[MirrorState], None]


class SharedStateMirror(ABC):

    def __init__(self) -> None:
        self._callbacks: List[MirrorCallback] = []

    @abstractmethod
    def read(self) -> MirrorState:
        """Current (locally cached) view of the shared map. Never blocks."""

    @abstractmethod
    def publish(self, **fields: Any) -> None:
        """Overwrite the given keys. Fire-and-forget: failures are logged, not raised."""

    def subscribe(self, callback: MirrorCallback) -> Callable[[], None]:
        self._callbacks.append(callback)

        def _unsubscribe() -> None:
            if callback in self._callbacks:
                self._callbacks.remove(callback)

        return _unsubscribe

    def _notify(self, state: MirrorState) -> None:
        for callback in list(self._callbacks):
            try:
                callback(state)
            except Exception:
                logger.warning("Mirror subscriber raised", exc_info=True)

    def close(self) -> None:
        self._callbacks.clear()


class InMemoryMirror(SharedStateMirror):
    """Single-process mirror; notifies subscribers synchronously on every write."""

    def __init__(self, initial: Optional[Dict[str, Any]] = None):
        super().__init__()
        self._data: Dict[str, Any] = dict(initial or {})
        self.writes: List[Dict[str, Any]] = []

    def read(self) -> MirrorState:
        return MirrorState.from_wire(self._data)

    def publish(self, **fields: Any) -> None:
        wire = to_wire(fields)
        self.writes.append(wire)
        self._data.update(wire)
        self._notify(self.read())

    def set_remote(self, **fields: Any) -> None:
        """Simulate a write made by another participant's client."""
        self._data.update(to_wire(fields))
        self._notify(self.read())


class FirestoreMirror(SharedStateMirror):
    """
    Mirror backed by one Firestore document per table: {mirror_collection}/{table_id}.

    The snapshot listener runs on a Firestore watch thread; every update is handed
    to the event loop with call_soon_threadsafe so subscribers only ever run on the
    loop. Writes go through run_in_executor to avoid blocking the event loop.
    """

    def __init__(self, table_id: Optional[str] = None, collection: Optional[str] = None):
        super().__init__()
        if settings.firestore_emulator_host:
            os.environ["FIRESTORE_EMULATOR_HOST"] = settings.firestore_emulator_host
        # Lazy import so the module loads without GCP libraries/credentials present
        from google.cloud import firestore
        self.db = firestore.Client(project=settings.google_cloud_project or None)
        self.table_id = table_id or settings.table_id
        self._doc = self.db.collection(collection or settings.mirror_collection).document(self.table_id)
        self._state = MirrorState()
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._watch = None

    def start(self) -> None:
        """Attach the snapshot listener. Must be called from the running event loop."""
        if self._watch is not None:
            return
        self._loop = asyncio.get_running_loop()
        self._watch = self._doc.on_snapshot(self._on_snapshot)
        logger.info(f"[{self.table_id}] Listening for mirror changes")

    def _on_snapshot(self, doc_snapshots, changes, read_time) -> None:
        # Firestore watch thread: hand off to the loop, never notify from here
        for doc in doc_snapshots:
            state = MirrorState.from_wire(doc.to_dict() or {})
            if self._loop is not None:
                self._loop.call_soon_threadsafe(self._deliver, state)

    def _deliver(self, state: MirrorState) -> None:
        self._state = state
        self._notify(state)

    def read(self) -> MirrorState:
        return self._state

    def publish(self, **fields: Any) -> None:
        wire = to_wire(fields)
        # Update the cache now; the listener will confirm (or overwrite) it shortly
        merged = {MIRROR_KEYS[name]: value for name, value in self._state.model_dump().items()}
        merged.update(wire)
        self._state = MirrorState.from_wire(merged)
        loop = asyncio.get_running_loop()
        future = loop.run_in_executor(None, lambda: self._doc.set(wire, merge=True))
        future.add_done_callback(self._log_write_failure)

    def _log_write_failure(self, future: "asyncio.Future") -> None:
        if future.cancelled():
            return
        exc = future.exception()
        if exc is not None:
            logger.warning(f"[{self.table_id}] Mirror write failed: {exc}")

    def close(self) -> None:
        if self._watch is not None:
            self._watch.unsubscribe()
            self._watch = None
        super().close()


_mirror: Optional[SharedStateMirror] = None


def get_shared_state_mirror() -> SharedStateMirror:
    """Lazy singleton — Firestore-backed when enabled in settings, in-memory otherwise.
    Initialised on first call so credential errors cannot crash the app at import time."""
    global _mirror
    if _mirror is None:
        _mirror = FirestoreMirror() if settings.use_firestore_mirror else InMemoryMirror()
    return _mirror
