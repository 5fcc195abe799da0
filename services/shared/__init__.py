"""Persistence, change detection and notifications shared by the worker and query paths."""

from .models import (
    Base,
    Source,
    Document,
    Chunk,
    ChunkEmbedding,
    ChangeEvent,
    Snapshot,
    SourceSyncRequest,
    new_id
)
from .change_detection import ChangeClassifier, DetectedChange, SectionDiffClassifier
from .incremental import IncrementalProcessor, PersistStats
from .notifications import ChangeNotifier, select_alert_events

__all__ = [
    'Base',
    'Source',
    'Document',
    'Chunk',
    'ChunkEmbedding',
    'ChangeEvent',
    'Snapshot',
    'SourceSyncRequest',
    'new_id',
    'ChangeClassifier',
    'DetectedChange',
    'SectionDiffClassifier',
    'IncrementalProcessor',
    'PersistStats',
    'ChangeNotifier',
    'select_alert_events'
]
