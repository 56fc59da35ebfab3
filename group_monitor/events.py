"""
Typed events pushed by the chat client, and the channel that carries them.

The chat client never calls into the controller or the ingestion pipeline
directly. It publishes events onto one ``EventChannel``; the runtime
consumes them in order. ``normalize_inbound`` is the only place that reads
the client's own message objects.
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Optional, Union

logger = logging.getLogger(__name__)


# =============================================================================
# Lifecycle events
# =============================================================================

@dataclass(frozen=True)
class PairingRequired:
    """The client needs the user to pair, ``payload`` is the pairing code."""
    payload: str


@dataclass(frozen=True)
class Authenticated:
    pass


@dataclass(frozen=True)
class Ready:
    pass


@dataclass(frozen=True)
class AuthFailure:
    reason: str = ""


@dataclass(frozen=True)
class Disconnected:
    reason: str = ""


LifecycleEvent = Union[PairingRequired, Authenticated, Ready, AuthFailure, Disconnected]


# =============================================================================
# Message events
# =============================================================================

@dataclass(frozen=True)
class RawInboundEvent:
    """Inbound message in the fixed shape consumed by the ingestion pipeline."""
    conversation_id: Optional[str]
    source_message_id: Optional[str] = None
    body: Optional[str] = None
    author_name: Optional[str] = None
    author_number: Optional[str] = None
    conversation_name: Optional[str] = None
    is_group: bool = True
    from_me: bool = False
    timestamp: Optional[datetime] = None


@dataclass(frozen=True)
class InboundMessage:
    raw: RawInboundEvent


ChannelEvent = Union[LifecycleEvent, InboundMessage]


def _field(obj: Any, *path: str) -> Any:
    """Walk attributes or mapping keys, returning None at the first gap."""
    for name in path:
        if obj is None:
            return None
        if isinstance(obj, dict):
            obj = obj.get(name)
        else:
            obj = getattr(obj, name, None)
    return obj


def _serialized_id(value: Any) -> Optional[str]:
    # Platform ids arrive either as plain strings or as {"_serialized": ...}
    if value is None:
        return None
    if isinstance(value, str):
        return value or None
    serialized = _field(value, "_serialized")
    return str(serialized) if serialized else None


def _text(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def normalize_inbound(message: Any, chat: Any = None, contact: Any = None) -> RawInboundEvent:
    """
    Convert a chat client's message, chat and contact objects into a
    ``RawInboundEvent``.

    Objects may be attribute-style or plain dicts; any missing or null field
    becomes None. Never raises for missing data.
    """
    chat = chat if chat is not None else _field(message, "chat")
    contact = contact if contact is not None else _field(message, "contact")

    timestamp = None
    raw_ts = _field(message, "timestamp")
    if isinstance(raw_ts, (int, float)) and raw_ts > 0:
        # Platform timestamps are epoch seconds
        timestamp = datetime.fromtimestamp(raw_ts, tz=timezone.utc)
    elif isinstance(raw_ts, datetime):
        timestamp = raw_ts

    is_group = _field(chat, "isGroup")
    if is_group is None:
        is_group = _field(chat, "is_group")

    from_me = _field(message, "fromMe")
    if from_me is None:
        from_me = _field(message, "from_me")

    body = _field(message, "body")

    return RawInboundEvent(
        conversation_id=_serialized_id(_field(chat, "id")),
        source_message_id=_serialized_id(_field(message, "id")),
        body=None if body is None else str(body),
        author_name=_text(_field(contact, "pushname")) or _text(_field(contact, "name")),
        author_number=_text(_field(contact, "number")),
        conversation_name=_text(_field(chat, "name")),
        is_group=bool(is_group),
        from_me=bool(from_me),
        timestamp=timestamp,
    )


# =============================================================================
# Channel
# =============================================================================

class EventChannel:
    """Single ordered queue of chat client events."""

    def __init__(self):
        self._queue: asyncio.Queue = asyncio.Queue()

    async def publish(self, event: ChannelEvent) -> None:
        logger.debug(f"Event published: {type(event).__name__}")
        await self._queue.put(event)

    async def get(self) -> ChannelEvent:
        return await self._queue.get()

    def task_done(self) -> None:
        self._queue.task_done()

    async def join(self) -> None:
        """Wait until every published event has been handled."""
        await self._queue.join()

    def drain(self) -> list[ChannelEvent]:
        """Remove and return every queued event without waiting."""
        events = []
        while True:
            try:
                events.append(self._queue.get_nowait())
            except asyncio.QueueEmpty:
                return events
            self._queue.task_done()

    def __len__(self) -> int:
        return self._queue.qsize()
