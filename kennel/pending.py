"""Pending-spawn tracking: correlating "work started" notifications.

When a worker session comes up it mails a notification such as:

    Subject: POLECAT_STARTED gastown/Toast
    Body:    Session: gt-gastown-polecat-Toast
             Issue: gt-abc123

scan_for_spawns() turns every such message still in a mailbox's inbox into a
PendingSpawn. A pending spawn is never stored on its own: clearing or pruning
one means archiving the message behind it, after which a fresh scan no longer
returns it. Archiving is idempotent, so two processes clearing the same spawn
both succeed.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Iterable

from .errors import NilMailboxError
from .mail import Mailbox, Message, MessageType, Router

# Subject prefixes that announce a started worker session
STARTED_EVENTS = ("POLECAT_STARTED", "DOG_STARTED")

SESSION_KEY = "Session"
ISSUE_KEY = "Issue"


@dataclass
class PendingSpawn:
    rig: str
    worker: str
    session: str
    issue: str
    mail_id: str
    spawned_at: datetime | None = None
    mailbox: Mailbox | None = None

    def archive(self) -> bool:
        """Archive the backing message.

        Raises:
            NilMailboxError: If this spawn has no mailbox to archive through
        """
        if self.mailbox is None:
            raise NilMailboxError(
                f"cannot archive pending spawn {self.session!r} (mail {self.mail_id}): nil mailbox"
            )
        return self.mailbox.archive_by_id(self.mail_id)


def _body_fields(body: str) -> dict[str, str]:
    fields: dict[str, str] = {}
    for line in body.splitlines():
        key, sep, value = line.partition(":")
        if sep and key.strip() and key.strip() not in fields:
            fields[key.strip()] = value.strip()
    return fields


def parse_spawn_message(message: Message, mailbox: Mailbox | None = None) -> PendingSpawn | None:
    """Parse a started notification, or return None if it is not one.

    Never raises on malformed input: unrelated or broken mail is expected
    traffic and is simply skipped.
    """
    event, _, target = (message.subject or "").strip().partition(" ")
    if event not in STARTED_EVENTS:
        return None

    rig, sep, worker = target.strip().partition("/")
    if not sep or not rig or not worker or "/" in worker:
        return None

    fields = _body_fields(message.body or "")
    session = fields.get(SESSION_KEY, "")
    if not session or not message.id:
        return None

    return PendingSpawn(
        rig=rig,
        worker=worker,
        session=session,
        issue=fields.get(ISSUE_KEY, ""),
        mail_id=message.id,
        spawned_at=message.timestamp,
        mailbox=mailbox,
    )


def scan_for_spawns(mailbox: Mailbox) -> list[PendingSpawn]:
    """Return one PendingSpawn per started notification in the inbox.

    Raises:
        StorageError: If the mailbox cannot be read
    """
    pending = []
    for message in mailbox.list():
        spawn = parse_spawn_message(message, mailbox=mailbox)
        if spawn is not None:
            pending.append(spawn)
    return pending


def clear_pending_spawn(pending: Iterable[PendingSpawn], session: str) -> int:
    """Archive every pending spawn for ``session``.

    Matching nothing is success.

    Returns:
        Number of backing messages actually archived

    Raises:
        NilMailboxError: If a matching spawn has no mailbox
    """
    cleared = 0
    for spawn in pending:
        if spawn.session != session:
            continue
        if spawn.archive():
            cleared += 1
    return cleared


def prune_stale(
    pending: Iterable[PendingSpawn],
    max_age: timedelta,
    now: datetime | None = None,
) -> int:
    """Archive pending spawns older than ``max_age``.

    Spawns without a timestamp are left alone.

    Returns:
        Number of backing messages actually archived

    Raises:
        NilMailboxError: If a stale spawn has no mailbox
    """
    cutoff = (now or datetime.now(tz=timezone.utc)) - max_age
    pruned = 0
    for spawn in pending:
        if spawn.spawned_at is None or spawn.spawned_at >= cutoff:
            continue
        if spawn.archive():
            pruned += 1
    return pruned


def notify_spawn_started(
    router: Router,
    to: str,
    rig: str,
    worker: str,
    session: str,
    issue: str = "",
    sender: str = "",
    event: str = STARTED_EVENTS[0],
) -> Message:
    """Send a started notification in the format scan_for_spawns() parses."""
    body = f"{SESSION_KEY}: {session}"
    if issue:
        body += f"\n{ISSUE_KEY}: {issue}"
    return router.send(Message(
        from_addr=sender or f"{rig}/{worker}",
        to=to,
        subject=f"{event} {rig}/{worker}",
        body=body,
        type=MessageType.NOTIFICATION,
    ))
