"""
Inbound message ingestion.

Turns ``RawInboundEvent``s into stored messages: filters self-originated
and unusable events, fills display defaults, deduplicates on the platform
message id, and writes through to ``FileStorage``. Ingestion never raises
to the event source; storage failures go to the error log.
"""

import logging
import threading
from collections import Counter
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from group_monitor.connection import ConnectionController
from group_monitor.events import RawInboundEvent
from group_monitor.metrics import record_ingestion_outcome
from group_monitor.models import MessageInput, StoredMessage
from group_monitor.storage import FileStorage
from group_monitor.utils import synthetic_message_id

logger = logging.getLogger(__name__)

UNKNOWN_AUTHOR = "Unknown"
UNKNOWN_GROUP = "Unknown Group"
MANUAL_GROUP_ID = "manual"

ERROR_CONTEXT = "group_message_processing"


class IngestResult(str, Enum):
    CREATED = "created"
    DUPLICATE = "duplicate"
    SELF_ORIGINATED = "self_originated"
    INVALID = "invalid"
    ERROR = "error"


@dataclass(frozen=True)
class IngestOutcome:
    result: IngestResult
    message: Optional[StoredMessage] = None
    source_message_id: Optional[str] = None

    @property
    def is_duplicate(self) -> bool:
        return self.result is IngestResult.DUPLICATE


class IngestionPipeline:
    def __init__(self, storage: FileStorage, controller: ConnectionController):
        self.storage = storage
        self.controller = controller
        self.stats: Counter = Counter()
        # Dedup check and save must not interleave
        self._lock = threading.Lock()

    def _finish(self, outcome: IngestOutcome) -> IngestOutcome:
        self.stats[outcome.result.value] += 1
        record_ingestion_outcome(outcome.result.value)
        return outcome

    def ingest(self, raw: RawInboundEvent) -> IngestOutcome:
        """
        Store an inbound message unless it is dropped.

        Returns an ``IngestOutcome``; only ``IngestResult.CREATED`` carries
        a stored message.
        """
        source_id = raw.source_message_id

        if raw.from_me:
            logger.debug(f"Skipping self-originated message {source_id}")
            record_ingestion_outcome(IngestResult.SELF_ORIGINATED.value)
            return IngestOutcome(IngestResult.SELF_ORIGINATED, source_message_id=source_id)

        conversation_id = (raw.conversation_id or "").strip()
        if not conversation_id or not raw.is_group:
            logger.debug(f"Dropping message {source_id}: no group conversation")
            return self._finish(IngestOutcome(IngestResult.INVALID, source_message_id=source_id))

        try:
            message_input = MessageInput(
                source_message_id=source_id,
                content=raw.body or "",
                author=raw.author_name or raw.author_number or UNKNOWN_AUTHOR,
                group_name=raw.conversation_name or UNKNOWN_GROUP,
                group_id=conversation_id,
                timestamp=raw.timestamp,
            )

            with self._lock:
                if source_id and self.storage.find_message_by_source_id(source_id) is not None:
                    logger.info(f"Duplicate message detected: {source_id}")
                    return self._finish(IngestOutcome(IngestResult.DUPLICATE, source_message_id=source_id))

                stored = self.storage.save_message(message_input)
        except Exception as e:
            logger.error(f"Error processing group message {source_id}: {e}")
            self.storage.log_error(e, context=ERROR_CONTEXT)
            return self._finish(IngestOutcome(IngestResult.ERROR, source_message_id=source_id))

        self.controller.record_ingested()
        preview = stored.content[:50]
        logger.info(f"[{stored.group_name}] {stored.author}: {preview}")
        return self._finish(IngestOutcome(IngestResult.CREATED, message=stored, source_message_id=source_id))

    def ingest_manual(
        self,
        content: str,
        author: Optional[str] = None,
        group_name: Optional[str] = None,
        group_id: Optional[str] = None,
    ) -> IngestOutcome:
        """
        Ingest a message typed in by an operator.

        Gets a synthetic source message id that cannot collide with platform
        ids. Without a ``group_id`` the message lands in the manual group.
        """
        raw = RawInboundEvent(
            conversation_id=group_id or MANUAL_GROUP_ID,
            source_message_id=synthetic_message_id(),
            body=content,
            author_name=author,
            conversation_name=group_name,
        )
        logger.info(f"Manual message injection: {raw.source_message_id}")
        return self.ingest(raw)
