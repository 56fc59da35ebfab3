"""
Pydantic schemas for request/response validation.

This module contains:
- Request models for incoming data validation
- Response models for API responses

Persisted record models live in models.py and are returned as-is by the
list endpoints.
"""

from typing import Any, Optional

from pydantic import AliasChoices, BaseModel, Field

from group_monitor.models import StoredMessage


# =============================================================================
# Pydantic Request Models
# =============================================================================

class SendMessageRequest(BaseModel):
    """
    Body of POST /api/send-message and POST /simulate.

    Only ``content`` is expected; missing author and group fall back to
    the usual display defaults.
    """
    content: str = Field(
        "",
        max_length=4096,
        validation_alias=AliasChoices("content", "message", "body"),
        description="Message text"
    )
    author: Optional[str] = Field(None, description="Display name of the sender")
    group_name: Optional[str] = Field(
        None,
        validation_alias=AliasChoices("group_name", "group", "groupName"),
        description="Display name of the conversation"
    )
    group_id: Optional[str] = Field(
        None,
        validation_alias=AliasChoices("group_id", "groupId"),
        description="Stable conversation identifier"
    )

    model_config = {
        "json_schema_extra": {
            "examples": [
                {"content": "hi", "author": "Alice", "group_name": "G1", "group_id": "G1"}
            ]
        }
    }


class GroupRequest(BaseModel):
    group_id: str = Field(..., min_length=1, description="Stable conversation identifier")
    name: str = Field(..., description="Display name")
    is_active: Optional[bool] = Field(None, description="Monitor this group (defaults to true)")


class GroupActiveRequest(BaseModel):
    is_active: bool


class ConfigValueRequest(BaseModel):
    value: Any = None


# =============================================================================
# Pydantic Response Models
# =============================================================================

class ErrorResponse(BaseModel):
    detail: str = Field(..., description="Error description")


class HealthResponse(BaseModel):
    """Response model for health check endpoints."""
    status: str = Field(..., description="Health status")
    uptime: Optional[str] = Field(None, description="Process uptime, e.g. '42s'")
    timestamp: Optional[str] = Field(None, description="Server time (ISO-8601)")
    reason: Optional[str] = Field(None, description="Reason if not ready")


class PairingInfo(BaseModel):
    available: bool
    status: str


class StorageInfo(BaseModel):
    type: str = "file"
    connected: bool


class Statistics(BaseModel):
    total_messages: int = Field(..., ge=0, description="Messages currently stored")
    monitored_messages: int = Field(..., ge=0, description="Messages ingested since start (incl. reconciled)")
    success_rate: float = Field(..., ge=0, le=100, description="Share of stored messages not failed, in %")
    duplicates: int = Field(0, ge=0)
    dropped: int = Field(0, ge=0)
    errors: int = Field(0, ge=0)


class StatusResponse(BaseModel):
    phase: str
    whatsapp: str = Field(..., description="Human readable connection status")
    is_ready: bool
    mode: str = Field(..., description="'live' or 'simulation'")
    pairing: PairingInfo
    storage: StorageInfo
    statistics: Statistics
    uptime: str
    last_error: Optional[str] = None


class QrCodeResponse(BaseModel):
    status: str = Field(..., description="already_connected, qr_ready or generating")
    message: str
    qr: Optional[str] = Field(None, description="Pairing payload when status is qr_ready")


class LogoutResponse(BaseModel):
    success: bool = True
    message: str


class IngestResponse(BaseModel):
    status: str = Field(default="ok", description="Operation status")
    result: str = Field(..., description="created, duplicate, invalid or error")
    data: Optional[StoredMessage] = None


class ConfigValueResponse(BaseModel):
    key: str
    value: Any = None
