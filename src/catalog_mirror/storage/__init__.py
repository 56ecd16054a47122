"""Mirror and audit-log stores."""

from .json_store import JsonFileAuditLog, JsonFileMirror, atomic_write_json
from .memory import InMemoryAuditLog, InMemoryMirror

__all__ = [
    "InMemoryMirror",
    "InMemoryAuditLog",
    "JsonFileMirror",
    "JsonFileAuditLog",
    "atomic_write_json",
]
