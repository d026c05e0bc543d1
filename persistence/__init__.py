"""
Persistence layer for recorded actions, schedules and runs.

This package provides the record store the engine writes through,
with a JSON-file implementation behind an abstract interface.
"""

from .record_store import JSONRecordStore, RecordStore

__all__ = ['JSONRecordStore', 'RecordStore']
