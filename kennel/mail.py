"""Durable per-recipient mailboxes and the router that addresses them.

Each mailbox is a directory holding two JSONL files:

    inbox.jsonl    active messages, one JSON object per line
    archive.jsonl  archived messages (terminal state, never deleted here)
    .lock          flock target shared by every process touching the mailbox

Appends take the exclusive lock and write a single line. Archiving takes the
same lock, appends the message to the archive and atomically replaces the
inbox (temp file + rename), so a concurrent archiver of the same id finds it
already gone and does nothing.
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Iterable

from .errors import AddressError, StorageError
from .locking import DEFAULT_LOCK_TIMEOUT, file_lock

logger = logging.getLogger(__name__)

INBOX_FILENAME = "inbox.jsonl"
ARCHIVE_FILENAME = "archive.jsonl"
LOCK_FILENAME = ".lock"

_EPOCH = datetime.fromtimestamp(0, tz=timezone.utc)


class MessageType(str, Enum):
    TASK = "task"
    NOTIFICATION = "notification"
    REPLY = "reply"
    SCAVENGE = "scavenge"


class Priority(str, Enum):
    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"
    URGENT = "urgent"


def new_message_id() -> str:
    return f"msg-{uuid.uuid4().hex[:12]}"


def utc_now() -> datetime:
    return datetime.now(tz=timezone.utc)


def _as_utc(ts: datetime) -> datetime:
    """Naive timestamps are taken to be UTC."""
    if ts.tzinfo is None:
        return ts.replace(tzinfo=timezone.utc)
    return ts.astimezone(timezone.utc)


def _line_id(line: str) -> str:
    """The ``id`` of a stored JSONL line, or "" if it has none."""
    try:
        data = json.loads(line)
    except json.JSONDecodeError:
        return ""
    if not isinstance(data, dict):
        return ""
    return str(data.get("id") or "")


@dataclass
class Message:
    """A single piece of mail. Immutable once appended to a mailbox."""

    from_addr: str = ""
    to: str = ""
    subject: str = ""
    body: str = ""
    type: MessageType = MessageType.NOTIFICATION
    priority: Priority = Priority.NORMAL
    id: str = ""
    timestamp: datetime | None = None
    thread_id: str | None = None
    extra: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        """Convert to a JSON-serialisable dict."""
        data: dict[str, Any] = {
            "id": self.id,
            "from": self.from_addr,
            "to": self.to,
            "subject": self.subject,
            "body": self.body,
            "type": self.type.value,
            "priority": self.priority.value,
            "timestamp": self.timestamp.isoformat() if self.timestamp else None,
        }
        if self.thread_id:
            data["thread_id"] = self.thread_id
        if self.extra:
            data["extra"] = self.extra
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Message":
        """Create a Message from a dict produced by to_dict().

        Unknown message types and priorities are rejected with ValueError so
        corrupt lines are noticed by the caller.
        """
        raw_ts = data.get("timestamp")
        timestamp = None
        if raw_ts:
            timestamp = datetime.fromisoformat(raw_ts)
            if timestamp.tzinfo is None:
                timestamp = timestamp.replace(tzinfo=timezone.utc)

        return cls(
            id=data.get("id", ""),
            from_addr=data.get("from", ""),
            to=data.get("to", ""),
            subject=data.get("subject", ""),
            body=data.get("body", ""),
            type=MessageType(data.get("type", MessageType.NOTIFICATION.value)),
            priority=Priority(data.get("priority", Priority.NORMAL.value)),
            timestamp=timestamp,
            thread_id=data.get("thread_id"),
            extra=data.get("extra") or {},
        )


def new_message(
    from_addr: str,
    to: str,
    subject: str,
    body: str,
    type: MessageType = MessageType.NOTIFICATION,
    priority: Priority = Priority.NORMAL,
) -> Message:
    """Build a message with a fresh id and the current UTC time."""
    return Message(
        id=new_message_id(),
        from_addr=from_addr,
        to=to,
        subject=subject,
        body=body,
        type=type,
        priority=priority,
        timestamp=utc_now(),
    )


# ---------------------------------------------------------------------------
# Mailbox
# ---------------------------------------------------------------------------


class Mailbox:
    """Active/archived message store for one recipient.

    Any number of Mailbox instances, in any number of processes, may point at
    the same directory.

    Args:
        path: Mailbox directory (created lazily on first write)
        lock_timeout: Seconds to wait for the mailbox lock before StorageError
    """

    def __init__(self, path: Path | str, lock_timeout: float = DEFAULT_LOCK_TIMEOUT):
        self.path = Path(path)
        self.lock_timeout = lock_timeout

    def __repr__(self) -> str:
        return f"Mailbox({str(self.path)!r})"

    @property
    def inbox_path(self) -> Path:
        return self.path / INBOX_FILENAME

    @property
    def archive_path(self) -> Path:
        return self.path / ARCHIVE_FILENAME

    @property
    def lock_path(self) -> Path:
        return self.path / LOCK_FILENAME

    # -- writes ------------------------------------------------------------

    def append(self, message: Message) -> Message:
        """Durably append a message to the active inbox.

        Keeps the message's id if it has one; otherwise assigns one. Missing
        timestamps are set to now; all timestamps are stored in UTC.

        Returns:
            The message as stored, equal to what list() will return for it

        Raises:
            StorageError: On I/O failure or lock timeout
        """
        stored = replace(
            message,
            id=message.id or new_message_id(),
            timestamp=_as_utc(message.timestamp) if message.timestamp else utc_now(),
        )
        line = json.dumps(stored.to_dict(), ensure_ascii=False) + "\n"

        try:
            with file_lock(self.lock_path, timeout=self.lock_timeout):
                with open(self.inbox_path, "a", encoding="utf-8") as f:
                    f.write(line)
                    f.flush()
                    os.fsync(f.fileno())
        except OSError as e:
            raise StorageError(f"append to {self.path} failed: {e}", path=self.path) from e

        logger.debug("mailbox %s: appended %s (%s)", self.path, stored.id, stored.subject)
        return stored

    def archive_by_id(self, message_id: str) -> bool:
        """Move a message from the inbox to the archive.

        Returns:
            True if the message was moved, False if it was not in the inbox
            (already archived, by us or a concurrent process, or never there)

        Raises:
            StorageError: On I/O failure or lock timeout
        """
        return self.archive_many([message_id]) == 1

    def archive_many(self, message_ids: Iterable[str]) -> int:
        """Archive every listed id present in the inbox in one locked pass.

        Returns:
            Number of messages actually moved
        """
        wanted = {mid for mid in message_ids if mid}
        if not wanted:
            return 0

        # Lines move verbatim. Anything this version cannot decode stays in
        # the inbox untouched.
        try:
            with file_lock(self.lock_path, timeout=self.lock_timeout):
                moving: list[str] = []
                keep: list[str] = []
                for line in self._read_lines(self.inbox_path):
                    if _line_id(line) in wanted:
                        moving.append(line)
                    else:
                        keep.append(line)
                if not moving:
                    return 0

                # Archive first: a crash between the two writes leaves a
                # duplicate in the archive rather than losing the message.
                with open(self.archive_path, "a", encoding="utf-8") as f:
                    for line in moving:
                        f.write(line + "\n")
                    f.flush()
                    os.fsync(f.fileno())
                self._rewrite(self.inbox_path, keep)
        except OSError as e:
            raise StorageError(f"archive in {self.path} failed: {e}", path=self.path) from e

        logger.debug(
            "mailbox %s: archived %s", self.path, ", ".join(_line_id(line) for line in moving)
        )
        return len(moving)

    # -- reads -------------------------------------------------------------

    def list(self) -> list[Message]:
        """Return active messages, oldest first."""
        return self._locked_read(self.inbox_path)

    def list_archived(self) -> list[Message]:
        """Return archived messages, oldest first."""
        return self._locked_read(self.archive_path)

    def get(self, message_id: str) -> Message | None:
        """Return the active message with this id, or None."""
        for m in self.list():
            if m.id == message_id:
                return m
        return None

    def count(self) -> int:
        """Number of active messages."""
        return len(self.list())

    # -- internals ---------------------------------------------------------

    def _locked_read(self, path: Path) -> list[Message]:
        if not self.path.exists():
            return []
        try:
            with file_lock(self.lock_path, shared=True, timeout=self.lock_timeout):
                messages = self._read(path)
        except OSError as e:
            raise StorageError(f"read of {path} failed: {e}", path=path) from e
        # Stable sort: equal timestamps keep file (insertion) order
        messages.sort(key=lambda m: m.timestamp or _EPOCH)
        return messages

    def _read_lines(self, path: Path) -> list[str]:
        """Non-blank lines of ``path``, without trailing newlines."""
        if not path.exists():
            return []
        with open(path, encoding="utf-8") as f:
            return [line.rstrip("\n") for line in f if line.strip()]

    def _read(self, path: Path) -> list[Message]:
        messages = []
        for lineno, line in enumerate(self._read_lines(path), 1):
            try:
                messages.append(Message.from_dict(json.loads(line)))
            except (json.JSONDecodeError, ValueError, TypeError, AttributeError) as e:
                logger.warning("%s:%d: skipping undecodable message: %s", path, lineno, e)
        return messages

    def _rewrite(self, path: Path, lines: list[str]) -> None:
        """Replace ``path`` atomically (write to temp file, then rename)."""
        fd, temp_path = tempfile.mkstemp(dir=path.parent, prefix=".inbox_", suffix=".jsonl")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                for line in lines:
                    f.write(line + "\n")
                f.flush()
                os.fsync(f.fileno())
            os.rename(temp_path, path)
        except Exception:
            try:
                os.unlink(temp_path)
            except OSError:
                pass
            raise


# ---------------------------------------------------------------------------
# Router
# ---------------------------------------------------------------------------


class Router:
    """Resolves recipient addresses to mailboxes and delivers mail.

    Addresses are slash-separated actor names ("dog/rex", "gastown/Toast",
    "daemon"); each segment becomes a directory under ``mail_root``.
    """

    def __init__(self, mail_root: Path | str, lock_timeout: float = DEFAULT_LOCK_TIMEOUT):
        self.mail_root = Path(mail_root)
        self.lock_timeout = lock_timeout

    def resolve(self, address: str) -> Path:
        """Map an address to its mailbox directory.

        Raises:
            AddressError: If the address is empty or any segment is unsafe
        """
        cleaned = (address or "").strip().strip("/")
        if not cleaned:
            raise AddressError("recipient address is empty", address=address)

        segments = cleaned.split("/")
        for seg in segments:
            if not seg or seg in (".", "..") or "\\" in seg or "\0" in seg:
                raise AddressError(f"invalid mailbox address: {address!r}", address=address)
        return self.mail_root.joinpath(*segments)

    def mailbox(self, address: str) -> Mailbox:
        return Mailbox(self.resolve(address), lock_timeout=self.lock_timeout)

    def send(self, message: Message) -> Message:
        """Validate, stamp and deliver a message to its recipient's mailbox.

        No retries: callers own retry policy.

        Returns:
            The stored message (with id and timestamp filled in)

        Raises:
            AddressError: If ``message.to`` is empty or unresolvable
            StorageError: If the append fails
        """
        if not message.to or not message.to.strip():
            raise AddressError("message has no recipient", address=message.to)

        mailbox = self.mailbox(message.to)
        stored = mailbox.append(message)
        logger.info("mail %s -> %s: %s", stored.from_addr or "?", stored.to, stored.subject)
        return stored
