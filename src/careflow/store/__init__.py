"""Record store and workflow persistence."""
from careflow.store.base import RecordStore, WorkflowRepository
from careflow.store.memory import InMemoryRecordStore, InMemoryWorkflowRepository
from careflow.store.sqlite import SQLiteWorkflowRepository

__all__ = [
    "RecordStore",
    "WorkflowRepository",
    "InMemoryRecordStore",
    "InMemoryWorkflowRepository",
    "SQLiteWorkflowRepository",
]
