"""Kennel CLI — inspect dogs, mailboxes and pending spawns from the command line."""

import argparse
import sys

from . import __version__
from .config import get_dog_names, get_dogs_dir, get_mail_dir, get_pending_max_age
from .dogs import DogManager
from .errors import KennelError
from .mail import Message, MessageType, Router
from .pending import clear_pending_spawn, prune_stale, scan_for_spawns
from .plugins import parse_duration


def _fmt_table(rows: list[list[str]], headers: list[str]) -> str:
    """Format rows as a simple aligned table."""
    all_rows = [headers] + rows
    widths = [max(len(r[i]) for r in all_rows) for i in range(len(headers))]
    lines = ["  ".join(h.ljust(w) for h, w in zip(headers, widths))]
    lines.append("  ".join("-" * w for w in widths))
    for row in rows:
        lines.append("  ".join(c.ljust(w) for c, w in zip(row, widths)))
    return "\n".join(lines)


def _fmt_time(ts) -> str:
    return ts.strftime("%Y-%m-%d %H:%M:%S") if ts else ""


def _fail(message: str) -> None:
    print(message, file=sys.stderr)
    sys.exit(1)


# ---------------------------------------------------------------------------
# Subcommands
# ---------------------------------------------------------------------------

def cmd_dispatch(args: argparse.Namespace) -> None:
    """Run one dispatch cycle under the scheduler lock."""
    from .dispatch import run_dispatch

    report = run_dispatch()
    if report is None:
        print("Another dispatch cycle is running, exiting")
        return
    print(report.summary())
    for error in report.errors:
        print(f"  ! {error}")


def cmd_dogs(args: argparse.Namespace) -> None:
    """List dogs in a table."""
    manager = DogManager(get_dogs_dir(), get_dog_names())
    dogs = manager.list()
    if not dogs:
        print("No dogs configured.")
        return

    rows = [[d.name, d.state.value, d.work or "", d.last_active or ""] for d in dogs]
    print(_fmt_table(rows, ["NAME", "STATE", "WORK", "LAST_ACTIVE"]))


def cmd_release(args: argparse.Namespace) -> None:
    """Force a dog back to idle."""
    manager = DogManager(get_dogs_dir(), get_dog_names())
    manager.clear_work(args.name, reason="released from cli")
    print(f"Released {args.name}")


def cmd_mail_list(args: argparse.Namespace) -> None:
    mailbox = Router(get_mail_dir()).mailbox(args.address)
    messages = mailbox.list_archived() if args.archived else mailbox.list()
    if not messages:
        print("No messages.")
        return

    rows = [
        [m.id, _fmt_time(m.timestamp), m.type.value, m.from_addr, m.subject[:50]]
        for m in messages
    ]
    print(_fmt_table(rows, ["ID", "TIME", "TYPE", "FROM", "SUBJECT"]))
    print(f"\n{len(messages)} message(s)")


def cmd_mail_send(args: argparse.Namespace) -> None:
    stored = Router(get_mail_dir()).send(Message(
        from_addr=args.sender,
        to=args.to,
        subject=args.subject,
        body=args.body,
        type=MessageType(args.type),
    ))
    print(f"Sent {stored.id} to {stored.to}")


def cmd_mail_archive(args: argparse.Namespace) -> None:
    mailbox = Router(get_mail_dir()).mailbox(args.address)
    if mailbox.archive_by_id(args.id):
        print(f"Archived {args.id}")
    else:
        print(f"{args.id} not in inbox (already archived?)")


def cmd_pending_list(args: argparse.Namespace) -> None:
    pending = scan_for_spawns(Router(get_mail_dir()).mailbox(args.address))
    if not pending:
        print("No pending spawns.")
        return

    rows = [
        [p.rig, p.worker, p.session, p.issue, _fmt_time(p.spawned_at), p.mail_id]
        for p in pending
    ]
    print(_fmt_table(rows, ["RIG", "WORKER", "SESSION", "ISSUE", "SPAWNED", "MAIL"]))


def cmd_pending_clear(args: argparse.Namespace) -> None:
    pending = scan_for_spawns(Router(get_mail_dir()).mailbox(args.address))
    cleared = clear_pending_spawn(pending, args.session)
    print(f"Cleared {cleared} pending spawn(s) for {args.session}")


def cmd_pending_prune(args: argparse.Namespace) -> None:
    raw = args.max_age or get_pending_max_age()
    max_age = parse_duration(raw)
    if max_age is None:
        _fail(f"Invalid --max-age: {raw!r}")
    pending = scan_for_spawns(Router(get_mail_dir()).mailbox(args.address))
    pruned = prune_stale(pending, max_age)
    print(f"Pruned {pruned} stale pending spawn(s) older than {raw}")


# ---------------------------------------------------------------------------
# Argument parser
# ---------------------------------------------------------------------------

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="kennel",
        description="Kennel dog fleet CLI",
    )
    parser.add_argument(
        "--version", "-V",
        action="version",
        version=f"%(prog)s {__version__}",
    )
    parser.add_argument("--debug", action="store_true", help="Verbose logging")
    sub = parser.add_subparsers(dest="command")

    p_dispatch = sub.add_parser("dispatch", help="Run one dispatch cycle")
    p_dispatch.set_defaults(func=cmd_dispatch)

    p_dogs = sub.add_parser("dogs", help="List dogs")
    p_dogs.set_defaults(func=cmd_dogs)

    p_release = sub.add_parser("release", help="Return a dog to idle")
    p_release.add_argument("name", help="Dog name")
    p_release.set_defaults(func=cmd_release)

    # mail
    p_mail = sub.add_parser("mail", help="Mailbox operations")
    mail_sub = p_mail.add_subparsers(dest="mail_command")

    p_ml = mail_sub.add_parser("list", help="List messages in a mailbox")
    p_ml.add_argument("address", help="Mailbox address (e.g. dog/rex)")
    p_ml.add_argument("--archived", action="store_true", help="List the archive instead")
    p_ml.set_defaults(func=cmd_mail_list)

    p_ms = mail_sub.add_parser("send", help="Send a message")
    p_ms.add_argument("to", help="Recipient address")
    p_ms.add_argument("subject")
    p_ms.add_argument("body")
    p_ms.add_argument("--from", dest="sender", default="human", help="Sender address")
    p_ms.add_argument(
        "--type", default=MessageType.NOTIFICATION.value,
        choices=[t.value for t in MessageType],
    )
    p_ms.set_defaults(func=cmd_mail_send)

    p_ma = mail_sub.add_parser("archive", help="Archive a message by id")
    p_ma.add_argument("address", help="Mailbox address")
    p_ma.add_argument("id", help="Message ID")
    p_ma.set_defaults(func=cmd_mail_archive)

    # pending
    p_pending = sub.add_parser("pending", help="Pending spawn tracking")
    pending_sub = p_pending.add_subparsers(dest="pending_command")

    p_pl = pending_sub.add_parser("list", help="List pending spawns in a mailbox")
    p_pl.add_argument("address", help="Mailbox address")
    p_pl.set_defaults(func=cmd_pending_list)

    p_pc = pending_sub.add_parser("clear", help="Clear pending spawns for a session")
    p_pc.add_argument("address", help="Mailbox address")
    p_pc.add_argument("session", help="Session name")
    p_pc.set_defaults(func=cmd_pending_clear)

    p_pp = pending_sub.add_parser("prune", help="Archive stale pending spawns")
    p_pp.add_argument("address", help="Mailbox address")
    p_pp.add_argument("--max-age", help="Duration, e.g. 10m (default from kennel.yaml)")
    p_pp.set_defaults(func=cmd_pending_prune)

    return parser


def main() -> None:
    from .dispatch import setup_logging

    parser = build_parser()
    args = parser.parse_args()

    if not hasattr(args, "func"):
        parser.print_help()
        sys.exit(0)

    setup_logging(args.debug)

    try:
        args.func(args)
    except (KennelError, FileNotFoundError) as e:
        _fail(f"Error: {e}")


if __name__ == "__main__":
    main()
