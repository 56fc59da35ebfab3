import json
import logging
import os
import tempfile
import threading
import time
import traceback
from pathlib import Path
from typing import Any, Callable, Optional, Type, TypeVar, Union

from pydantic import BaseModel, ValidationError

from group_monitor.models import (
    ErrorLogEntry,
    GroupInput,
    GroupRecord,
    MessageInput,
    MessageStatus,
    StoredMessage,
)
from group_monitor.utils import next_record_id, utc_now

logger = logging.getLogger(__name__)

ModelT = TypeVar("ModelT", bound=BaseModel)

# Collection names, one JSON document each
MESSAGES = "messages"
CONFIG = "config"
GROUPS = "groups"
ERRORS = "errors"

_DEFAULTS: dict[str, Callable[[], Any]] = {
    MESSAGES: list,
    CONFIG: dict,
    GROUPS: list,
    ERRORS: list,
}

# Returned by get_config for keys that were never set
MISSING = object()


class StorageError(Exception):
    """Base class for storage failures."""


class StorageWriteError(StorageError):
    """A collection document could not be written."""


class FileStorage:
    """
    File-backed store for messages, config, groups and the error log.

    Every collection is one JSON document rewritten wholesale on each
    mutation. Mutations of a collection are serialized by that collection's
    lock; the store assumes it is the only process using ``data_dir``.

    Reads return an empty value when a document cannot be read or decoded.
    Writes raise ``StorageWriteError``, except ``log_error`` which never
    raises.
    """

    def __init__(
        self,
        data_dir: Union[str, Path],
        message_retention: int = 1000,
        error_retention: int = 100,
    ):
        self.data_dir = Path(data_dir)
        self.message_retention = message_retention
        self.error_retention = error_retention
        self._files = {name: self.data_dir / f"{name}.json" for name in _DEFAULTS}
        self._locks = {name: threading.Lock() for name in _DEFAULTS}
        self._last_ids = {MESSAGES: 0, GROUPS: 0, ERRORS: 0}

    # =========================================================================
    # Document I/O
    # =========================================================================

    def initialize(self) -> None:
        """
        Create the storage directory and any missing collection document.

        Idempotent. Existing documents are left alone unless they cannot be
        decoded, in which case they are moved aside and recreated empty.
        """
        logger.debug(f"Initializing storage in {self.data_dir}")
        try:
            self.data_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise StorageWriteError(f"Cannot create data directory {self.data_dir}: {e}") from e

        for name, path in self._files.items():
            with self._locks[name]:
                if path.exists():
                    if self._load(name) is not None:
                        self._seed_last_id(name)
                        continue
                    backup = path.with_name(f"{path.name}.corrupt-{int(time.time())}")
                    logger.warning(f"Moving unreadable {path.name} aside to {backup.name}")
                    try:
                        os.replace(path, backup)
                    except OSError as e:
                        raise StorageWriteError(f"Cannot move {path} aside: {e}") from e
                try:
                    # Exclusive create: a concurrent initializer may have won
                    with open(path, "x", encoding="utf-8") as fh:
                        json.dump(_DEFAULTS[name](), fh, indent=2)
                    logger.info(f"Created {path.name}")
                except FileExistsError:
                    logger.debug(f"{path.name} created concurrently, keeping it")
                except OSError as e:
                    raise StorageWriteError(f"Cannot create {path}: {e}") from e

        logger.info("Storage initialized successfully")

    def check_health(self) -> bool:
        """Return True if every collection document can be read."""
        if not self.data_dir.is_dir():
            logger.error(f"Storage directory missing: {self.data_dir}")
            return False
        for name in self._files:
            if self._load(name) is None:
                logger.error(f"Storage health check failed for {name}")
                return False
        return True

    def _load(self, name: str) -> Optional[Any]:
        """Decode a collection document, or None if it is unreadable."""
        path = self._files[name]
        try:
            with open(path, encoding="utf-8") as fh:
                data = json.load(fh)
        except (OSError, ValueError) as e:
            logger.warning(f"Could not read {path.name}: {e}")
            return None
        expected = type(_DEFAULTS[name]())
        if not isinstance(data, expected):
            logger.warning(f"{path.name} does not hold a JSON {expected.__name__}")
            return None
        return data

    def _read(self, name: str) -> Any:
        data = self._load(name)
        return _DEFAULTS[name]() if data is None else data

    def _read_for_update(self, name: str) -> Any:
        """
        Read a collection that is about to be rewritten.

        Unlike ``_read``, an existing but unreadable document is not treated
        as empty, since rewriting it would drop every record it holds.

        Raises:
            StorageWriteError: The document exists but cannot be decoded.
        """
        if not self._files[name].exists():
            return _DEFAULTS[name]()
        data = self._load(name)
        if data is None:
            raise StorageWriteError(f"Refusing to overwrite unreadable {self._files[name].name}")
        return data

    def _write(self, name: str, data: Any) -> None:
        path = self._files[name]
        tmp_path = None
        try:
            fd, tmp_path = tempfile.mkstemp(dir=self.data_dir, prefix=f".{name}.", suffix=".tmp")
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                json.dump(data, fh, indent=2)
            os.replace(tmp_path, path)
        except (OSError, TypeError, ValueError) as e:
            if tmp_path and os.path.exists(tmp_path):
                os.unlink(tmp_path)
            logger.error(f"Error writing to {path}: {e}")
            raise StorageWriteError(f"Failed to write {path.name}: {e}") from e

    def _seed_last_id(self, name: str) -> None:
        if name not in self._last_ids:
            return
        for record in self._read(name):
            if isinstance(record, dict) and isinstance(record.get("id"), int):
                self._last_ids[name] = max(self._last_ids[name], record["id"])

    def _allocate_id(self, name: str, records: list) -> int:
        last_id = self._last_ids[name]
        for record in records:
            if isinstance(record, dict) and isinstance(record.get("id"), int):
                last_id = max(last_id, record["id"])
        new_id = next_record_id(last_id)
        self._last_ids[name] = new_id
        return new_id

    @staticmethod
    def _parse(model: Type[ModelT], records: list) -> list[ModelT]:
        parsed = []
        for record in records:
            try:
                parsed.append(model.model_validate(record))
            except ValidationError as e:
                logger.warning(f"Skipping malformed {model.__name__} record: {e.error_count()} errors")
        return parsed

    # =========================================================================
    # Messages
    # =========================================================================

    def save_message(self, message: MessageInput) -> StoredMessage:
        """
        Store a new message at the head of the collection.

        Returns the stored record. The collection keeps the newest
        ``message_retention`` entries.
        """
        logger.debug(f"Saving message: source_id={message.source_message_id}, group={message.group_id}")
        with self._locks[MESSAGES]:
            messages = self._read_for_update(MESSAGES)
            now = utc_now()
            stored = StoredMessage(
                id=self._allocate_id(MESSAGES, messages),
                source_message_id=message.source_message_id,
                content=message.content,
                author=message.author,
                group_name=message.group_name,
                group_id=message.group_id,
                status=message.status,
                timestamp=message.timestamp or now,
                created_at=now,
            )
            messages.insert(0, stored.model_dump(mode="json"))
            del messages[self.message_retention:]
            self._write(MESSAGES, messages)

        logger.info(f"Message saved: id={stored.id}")
        return stored

    def update_message_status(
        self,
        message_id: int,
        status: Union[MessageStatus, str],
        error_message: Optional[str] = None,
    ) -> Optional[StoredMessage]:
        """Update a message's status. Unknown ids are ignored and return None."""
        status = MessageStatus(status)
        with self._locks[MESSAGES]:
            messages = self._read_for_update(MESSAGES)
            for record in messages:
                if isinstance(record, dict) and record.get("id") == message_id:
                    record["status"] = status.value
                    if error_message:
                        record["error"] = error_message
                    record["updated_at"] = utc_now().isoformat()
                    self._write(MESSAGES, messages)
                    logger.info(f"Updated message {message_id} status to {status.value}")
                    return StoredMessage.model_validate(record)

        logger.debug(f"No message with id {message_id}, status update skipped")
        return None

    def get_messages(self, limit: int = 100) -> list[StoredMessage]:
        """
        Get stored messages, newest first.

        Args:
            limit: Maximum number of messages to return

        Returns:
            List of StoredMessage, empty when ``limit`` is not positive
        """
        if limit <= 0:
            return []
        return self._parse(StoredMessage, self._read(MESSAGES)[:limit])

    def count_messages(self) -> int:
        """Return the number of retained messages."""
        return len(self._read(MESSAGES))

    def find_message_by_source_id(self, source_message_id: Optional[str]) -> Optional[StoredMessage]:
        """
        Look up a retained message by its platform id.

        Args:
            source_message_id: Platform or synthetic message id

        Returns:
            The matching StoredMessage, or None
        """
        if not source_message_id:
            return None
        for record in self._read(MESSAGES):
            if isinstance(record, dict) and record.get("source_message_id") == source_message_id:
                try:
                    return StoredMessage.model_validate(record)
                except ValidationError:
                    logger.warning(f"Malformed record for source id {source_message_id}")
                    return None
        return None

    # =========================================================================
    # Config
    # =========================================================================

    def set_config(self, key: str, value: Any) -> None:
        """
        Store a config value.

        Args:
            key: Config key
            value: Any JSON-serializable value, including None

        Raises:
            StorageWriteError: The config document could not be written.
        """
        with self._locks[CONFIG]:
            config = self._read_for_update(CONFIG)
            config[key] = value
            self._write(CONFIG, config)
        logger.info(f"Set config {key} = {value!r}")

    def get_config(self, key: str, default: Any = None) -> Any:
        """
        Get a config value.

        Args:
            key: Config key
            default: Returned when the key was never set. Pass ``MISSING``
                to tell an unset key apart from a stored None.

        Returns:
            The stored value, or ``default``
        """
        return self._read(CONFIG).get(key, default)

    # =========================================================================
    # Groups
    # =========================================================================

    def upsert_group(self, group: GroupInput) -> GroupRecord:
        """
        Insert a group or update the one with the same ``group_id``.

        A missing ``is_active`` is stored as True.
        """
        is_active = True if group.is_active is None else group.is_active
        with self._locks[GROUPS]:
            groups = self._read_for_update(GROUPS)
            now = utc_now().isoformat()
            for record in groups:
                if isinstance(record, dict) and record.get("group_id") == group.group_id:
                    record["name"] = group.name
                    record["is_active"] = is_active
                    record["updated_at"] = now
                    break
            else:
                record = {
                    "id": self._allocate_id(GROUPS, groups),
                    "group_id": group.group_id,
                    "name": group.name,
                    "is_active": is_active,
                    "created_at": now,
                    "updated_at": now,
                }
                groups.append(record)
            self._write(GROUPS, groups)

        logger.info(f"Added/updated group: {group.name} ({group.group_id})")
        return GroupRecord.model_validate(record)

    def get_groups(self) -> list[GroupRecord]:
        """Return every stored group in insertion order."""
        return self._parse(GroupRecord, self._read(GROUPS))

    def get_active_groups(self) -> list[GroupRecord]:
        """Return the groups whose ``is_active`` flag is set."""
        return [group for group in self.get_groups() if group.is_active]

    def set_group_active(self, group_id: str, is_active: bool) -> Optional[GroupRecord]:
        """Toggle a group's active flag. Unknown groups are ignored and return None."""
        with self._locks[GROUPS]:
            groups = self._read_for_update(GROUPS)
            for record in groups:
                if isinstance(record, dict) and record.get("group_id") == group_id:
                    record["is_active"] = is_active
                    record["updated_at"] = utc_now().isoformat()
                    self._write(GROUPS, groups)
                    logger.info(f"Group {group_id} is now {'active' if is_active else 'inactive'}")
                    return GroupRecord.model_validate(record)

        logger.debug(f"No group {group_id}, toggle skipped")
        return None

    # =========================================================================
    # Error log
    # =========================================================================

    def log_error(self, error: Union[BaseException, str], context: str = "") -> Optional[ErrorLogEntry]:
        """
        Record an error in the error log.

        Never raises; a failure to record is only reported to the logger.
        """
        try:
            if isinstance(error, BaseException):
                message = str(error) or error.__class__.__name__
                stack_trace = "".join(
                    traceback.format_exception(type(error), error, error.__traceback__)
                )
            else:
                message = str(error)
                stack_trace = None

            with self._locks[ERRORS]:
                errors = self._read_for_update(ERRORS)
                entry = ErrorLogEntry(
                    id=self._allocate_id(ERRORS, errors),
                    message=message,
                    stack_trace=stack_trace,
                    context=context or None,
                    timestamp=utc_now(),
                )
                errors.insert(0, entry.model_dump(mode="json"))
                del errors[self.error_retention:]
                self._write(ERRORS, errors)
        except Exception as e:
            logger.error(f"Error logging error to storage: {e}")
            return None

        logger.debug(f"Error logged to storage: context={context}")
        return entry

    def get_recent_errors(self, limit: int = 50) -> list[ErrorLogEntry]:
        """Return up to ``limit`` error log entries, newest first."""
        if limit <= 0:
            return []
        return self._parse(ErrorLogEntry, self._read(ERRORS)[:limit])
