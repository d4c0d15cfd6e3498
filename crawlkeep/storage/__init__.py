"""
Storage layer for the crawler.
"""

from .database import DatabaseManager, DatabaseError, PersistenceError, QueryError, PageRecord, LinkEdge
from .snapshots import SnapshotWriter, SnapshotReconciler, LogReconciler, ProgressLog

__all__ = [
    'DatabaseManager', 'DatabaseError', 'PersistenceError', 'QueryError', 'PageRecord', 'LinkEdge',
    'SnapshotWriter', 'SnapshotReconciler', 'LogReconciler', 'ProgressLog'
]
