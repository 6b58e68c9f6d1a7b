"""
ATLAS SNAPSHOT STORE - Atomic publication of graph snapshots.

Two layers of atomicity:
- On disk: the snapshot is written to a temp file in the same directory and
  moved into place with os.replace, so a crash never leaves half a file.
- In memory: `current()` hands out a reference to an immutable GraphSnapshot.
  Publishing swaps the reference under a lock; readers never lock.

A snapshot carrying fatal findings is never published. The previously
published snapshot stays visible (all-or-nothing).
"""
import logging
import os
import tempfile
import threading
from pathlib import Path
from typing import Optional, Union

import msgspec

from core.errors import IngestionRejected
from core.snapshot import GraphSnapshot, SnapshotRecord, empty_snapshot
from infrastructure.event_bus import EventBus, EventType, publish_event

logger = logging.getLogger(__name__)


_encoder = msgspec.json.Encoder(order="sorted")
_decoder = msgspec.json.Decoder(type=SnapshotRecord)


def encode_snapshot(snapshot: GraphSnapshot) -> bytes:
    """Stable, diffable JSON: keys sorted, two-space indent, trailing newline."""
    return msgspec.json.format(_encoder.encode(snapshot.to_record()), indent=2) + b"\n"


def decode_snapshot(data: bytes) -> GraphSnapshot:
    """
    Raises:
        msgspec.ValidationError / msgspec.DecodeError: If the data is not a snapshot
    """
    return GraphSnapshot.from_record(_decoder.decode(data))


class SnapshotStore:
    """
    Holds the live snapshot and its on-disk copy.

    Usage:
        store = SnapshotStore(".atlas/snapshot.json")
        store.load()                      # previous snapshot, if any
        store.publish(snapshot)           # persist + swap
        engine = store.current().query_engine()
    """

    def __init__(self, path: Union[str, Path, None] = None, event_bus: Optional[EventBus] = None):
        self.path = Path(path) if path is not None else None
        self.event_bus = event_bus
        self._lock = threading.Lock()
        # Held by writers from reading the current snapshot until publishing its successor
        self.write_lock = threading.RLock()
        self._current: GraphSnapshot = empty_snapshot()
        self._has_published = False

    def current(self) -> GraphSnapshot:
        """The live snapshot. No locking: the reference swap is atomic."""
        return self._current

    @property
    def has_snapshot(self) -> bool:
        return self._has_published

    def next_version(self) -> int:
        return self._current.version + 1

    def load(self) -> Optional[GraphSnapshot]:
        """
        Load the persisted snapshot into memory.

        Returns:
            The loaded snapshot, or None if nothing is persisted yet
        """
        if self.path is None or not self.path.exists():
            return None
        snapshot = decode_snapshot(self.path.read_bytes())
        with self._lock:
            self._current = snapshot
            self._has_published = True
        logger.info(f"Loaded snapshot v{snapshot.version} from {self.path} ({snapshot.db!r})")
        return snapshot

    def publish(self, snapshot: GraphSnapshot) -> GraphSnapshot:
        """
        Persist a snapshot and make it the live one.

        Raises:
            IngestionRejected: If the snapshot carries fatal findings
            OSError: If it cannot be written (the live snapshot is unchanged)
        """
        fatal = snapshot.fatal_findings
        if fatal:
            raise IngestionRejected(fatal)

        with self._lock:
            if self.path is not None:
                self.persist(snapshot)
            self._current = snapshot
            self._has_published = True

        logger.info(f"Published snapshot v{snapshot.version} ({snapshot.db!r})")
        publish_event(
            EventType.SNAPSHOT_PUBLISHED,
            {"version": snapshot.version, "source": snapshot.source,
             "nodes": snapshot.db.node_count, "relations": snapshot.db.relation_count},
            source="snapshot_store",
            bus=self.event_bus,
        )
        return snapshot

    def persist(self, snapshot: GraphSnapshot) -> Path:
        """Write the snapshot file atomically (temp file + os.replace)."""
        if self.path is None:
            raise ValueError("SnapshotStore has no path to persist to")
        self.path.parent.mkdir(parents=True, exist_ok=True)
        data = encode_snapshot(snapshot)

        fd, tmp_name = tempfile.mkstemp(prefix=f".{self.path.name}.", suffix=".tmp", dir=self.path.parent)
        try:
            with os.fdopen(fd, "wb") as f:
                f.write(data)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_name, self.path)
        except BaseException:
            if os.path.exists(tmp_name):
                os.unlink(tmp_name)
            raise
        logger.debug(f"Wrote {len(data)} bytes to {self.path}")
        return self.path
