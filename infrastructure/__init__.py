"""
ATLAS INFRASTRUCTURE - System-Level Modules

This package contains infrastructure components:
- config: TOML configuration with environment overrides
- anchor_resolver: filesystem verification of anchors on a worker pool
- snapshot_store: atomic persistence and publication of snapshots
- ingestion: the end-to-end pipeline
- event_bus: pub/sub notifications
"""

from infrastructure.config import AtlasConfig, load_config
from infrastructure.anchor_resolver import AnchorResolver, merge_resolutions
from infrastructure.snapshot_store import SnapshotStore
from infrastructure.ingestion import IngestionPipeline, IngestionResult
from infrastructure.event_bus import EventBus, EventType, GraphEvent, get_event_bus

__all__ = [
    "AtlasConfig",
    "load_config",
    "AnchorResolver",
    "merge_resolutions",
    "SnapshotStore",
    "IngestionPipeline",
    "IngestionResult",
    "EventBus",
    "EventType",
    "GraphEvent",
    "get_event_bus",
]
