"""scholar_rag.storage

Persistence boundary for the answering workflow.

Modules
-------
record_store
    Abstract record store and its in-memory implementation.
"""
from .record_store import InMemoryRecordStore, RecordStore, create_record_store

__all__ = ["RecordStore", "InMemoryRecordStore", "create_record_store"]
