"""
Persisted record models for the file-backed store.

Each collection document under DATA_DIR is a JSON list (or map, for config)
of these records dumped with ``model_dump(mode="json")``.
For HTTP request/response schemas, see schemas.py.
"""

from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field


class MessageStatus(str, Enum):
    RECEIVED = "received"
    # Kept for compatibility with older documents; nothing forwards messages.
    FORWARDED = "forwarded"
    FAILED = "failed"


class MessageInput(BaseModel):
    """Fields supplied by the caller of ``FileStorage.save_message``."""
    source_message_id: Optional[str] = None
    content: str = ""
    author: str = "Unknown"
    group_name: str = "Unknown Group"
    group_id: str
    status: MessageStatus = MessageStatus.RECEIVED
    timestamp: Optional[datetime] = None


class StoredMessage(BaseModel):
    """
    A message as kept in messages.json.

    ``id`` is assigned by the store and never reused; ``source_message_id``
    is the platform identifier used for deduplication.
    """
    id: int
    source_message_id: Optional[str] = None
    content: str = ""
    author: str = "Unknown"
    group_name: str = "Unknown Group"
    group_id: str
    status: MessageStatus = MessageStatus.RECEIVED
    timestamp: datetime
    created_at: datetime
    updated_at: Optional[datetime] = None
    error: Optional[str] = None


class GroupInput(BaseModel):
    group_id: str = Field(..., min_length=1)
    name: str
    is_active: Optional[bool] = None


class GroupRecord(BaseModel):
    """A monitored conversation, keyed by its stable ``group_id``."""
    id: int
    group_id: str
    name: str
    is_active: bool = True
    created_at: datetime
    updated_at: datetime


class ErrorLogEntry(BaseModel):
    id: int
    message: str
    stack_trace: Optional[str] = None
    context: Optional[str] = None
    timestamp: datetime
