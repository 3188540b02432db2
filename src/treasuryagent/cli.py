"""Command-line interface for treasuryagent."""

from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path
from typing import Any, Sequence

from pydantic import ValidationError as PydanticValidationError
from rich.console import Console
from rich.logging import RichHandler
from rich.markup import escape
from rich.prompt import Prompt
from rich.table import Table

from .backends import DirectoryQueue
from .config import TreasuryConfig, load_config
from .engine import TreasuryEngine
from .errors import TreasuryError, ValidationError
from .notifiers.telegram import format_usd
from .settings import CONFIRMATION_PHRASE
from .signer import SubprocessSigner
from .types import IntentEvent, IntentStatus, TransferIntent, mask_address
from .worker import OutboxWorker, WorkerReport

_logger = logging.getLogger(__name__)

DEFAULT_ACTOR = "cli"


def _parse_args(argv: Sequence[str]) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog="treasuryagent", add_help=True)
    parser.add_argument("--state-dir", type=Path, help="Override TREASURY_STATE_DIR")
    parser.add_argument(
        "--backend", choices=("conway", "vultisig"), help="Override TREASURY_EXECUTION_BACKEND"
    )
    parser.add_argument("--log-level", help="Override TREASURY_LOG_LEVEL")
    subparsers = parser.add_subparsers(dest="command", required=True)

    create_parser = subparsers.add_parser("create", help="Create a transfer intent")
    create_parser.add_argument("--to", dest="to_address", required=True, help="Recipient 0x address")
    create_parser.add_argument("--amount-cents", type=int, required=True, help="Amount in cents")
    create_parser.add_argument("--reason", help="Why the transfer is needed")
    create_parser.add_argument("--child-id", help="Child wallet funded by this transfer")
    create_parser.add_argument("--source", default="cli", help="Request source")
    create_parser.add_argument("--by", default=DEFAULT_ACTOR, help="Requesting actor")

    list_parser = subparsers.add_parser("list", help="List intents, newest first")
    list_parser.add_argument("--status", choices=[status.value for status in IntentStatus])
    list_parser.add_argument("--limit", type=int, default=50, help="1..500")
    list_parser.add_argument("--json", action="store_true", help="Output JSON")

    show_parser = subparsers.add_parser("show", help="Show one intent as JSON")
    show_parser.add_argument("intent_id")

    history_parser = subparsers.add_parser("history", help="Show an intent's status history")
    history_parser.add_argument("intent_id")
    history_parser.add_argument("--json", action="store_true", help="Output JSON")

    approve_parser = subparsers.add_parser("approve", help="Approve a pending intent")
    approve_parser.add_argument("intent_id")
    approve_parser.add_argument("--by", default=DEFAULT_ACTOR)
    approve_parser.add_argument("--note")
    approve_parser.add_argument("--execute", action="store_true", help="Execute after approving")

    reject_parser = subparsers.add_parser("reject", help="Reject a pending intent")
    reject_parser.add_argument("intent_id")
    reject_parser.add_argument("--by", default=DEFAULT_ACTOR)
    reject_parser.add_argument("--reason", required=True)

    execute_parser = subparsers.add_parser("execute", help="Execute an approved intent")
    execute_parser.add_argument("intent_id")
    execute_parser.add_argument("--by", default=DEFAULT_ACTOR)

    confirm_parser = subparsers.add_parser("confirm", help="Record an external submission/execution")
    confirm_parser.add_argument("intent_id")
    confirm_parser.add_argument("--status", choices=("submitted", "executed"), default="executed")
    confirm_parser.add_argument("--tx", dest="tx_ref", required=True, help="Transaction reference")
    confirm_parser.add_argument("--message")
    confirm_parser.add_argument("--by", default=DEFAULT_ACTOR)

    fail_parser = subparsers.add_parser("fail", help="Mark an approved/submitted intent failed")
    fail_parser.add_argument("intent_id")
    fail_parser.add_argument("--reason", required=True)
    fail_parser.add_argument("--tx", dest="tx_ref")
    fail_parser.add_argument("--by", default=DEFAULT_ACTOR)

    add_child_parser = subparsers.add_parser("add-child", help="Register a child wallet")
    add_child_parser.add_argument("child_id")
    add_child_parser.add_argument("--address")

    child_address_parser = subparsers.add_parser(
        "set-child-address", help="Set a child wallet address"
    )
    child_address_parser.add_argument("child_id")
    child_address_parser.add_argument("address")

    settings_parser = subparsers.add_parser("settings", help="Show or update policy settings")
    settings_sub = settings_parser.add_subparsers(dest="settings_command", required=True)
    settings_sub.add_parser("show", help="Print current settings as JSON")
    update_parser = settings_sub.add_parser("update", help="Change settings (audited)")
    update_parser.add_argument(
        "--set",
        dest="assignments",
        action="append",
        default=[],
        metavar="KEY=VALUE",
        help="Setting to change; repeatable",
    )
    update_parser.add_argument("--reason", required=True)
    update_parser.add_argument("--actor", default=DEFAULT_ACTOR)
    update_parser.add_argument(
        "--confirm", dest="confirmation_phrase", help=f'Must be "{CONFIRMATION_PHRASE}"'
    )

    audit_parser = subparsers.add_parser("audit", help="Inspect the settings audit trail")
    audit_sub = audit_parser.add_subparsers(dest="audit_command", required=True)
    audit_list_parser = audit_sub.add_parser("list", help="Recent settings changes, newest first")
    audit_list_parser.add_argument("--limit", type=int, default=25, help="1..200")
    audit_sub.add_parser("verify", help="Verify the audit trail hash chain")

    worker_parser = subparsers.add_parser("worker", help="Drain the outbox through the signer")
    worker_parser.add_argument(
        "--dry-run", action=argparse.BooleanOptionalAction, default=None, help="Skip the signer"
    )
    worker_parser.add_argument(
        "--auto-approve",
        action=argparse.BooleanOptionalAction,
        default=None,
        help="Approve pending intents found in the outbox",
    )
    worker_parser.add_argument("--signer-command", help="Override TREASURY_SIGNER_COMMAND")

    return parser.parse_args(argv)


def _configure_logging(level: str) -> None:
    logging.basicConfig(
        level=level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=Console(stderr=True), show_path=False)],
    )


def _print_json(value: Any) -> None:
    print(json.dumps(value, indent=2, ensure_ascii=False))


def _print_intent(intent: TransferIntent) -> None:
    print(intent.to_wire_json(indent=2))


def _render_intents(console: Console, intents: list[TransferIntent]) -> None:
    if not intents:
        console.print("no transfer intents")
        return
    table = Table(title="Transfer intents")
    for column in ("id", "created", "status", "amount", "to", "child", "reason"):
        table.add_column(column)
    for intent in intents:
        table.add_row(
            intent.id,
            intent.created_at.strftime("%Y-%m-%d %H:%M"),
            intent.status.value,
            format_usd(intent.amount_cents),
            mask_address(intent.to_address),
            intent.child_id or "-",
            escape(intent.reason or "-"),
        )
    console.print(table)


def _render_history(console: Console, events: list[IntentEvent]) -> None:
    table = Table(title="Intent history")
    for column in ("at", "from", "to", "actor", "detail"):
        table.add_column(column)
    for event in events:
        table.add_row(
            event.at.isoformat(),
            event.from_status.value if event.from_status else "-",
            event.to_status.value,
            escape(event.actor),
            escape(event.detail),
        )
    console.print(table)


def _parse_assignments(assignments: list[str]) -> dict[str, str]:
    settings: dict[str, str] = {}
    for item in assignments:
        key, sep, value = item.partition("=")
        if not sep or not key.strip():
            raise ValidationError(f"expected KEY=VALUE, got {item!r}")
        settings[key.strip()] = value.strip()
    return settings


def _cmd_settings_update(engine: TreasuryEngine, args: argparse.Namespace) -> int:
    phrase = args.confirmation_phrase
    if phrase is None:
        if not sys.stdin.isatty():
            print(
                f'settings update failed: pass --confirm "{CONFIRMATION_PHRASE}"', file=sys.stderr
            )
            return 2
        phrase = Prompt.ask(f'Type "{CONFIRMATION_PHRASE}" to apply', console=Console(stderr=True))
    values = engine.update_settings(
        confirmation_phrase=phrase,
        reason=args.reason,
        actor=args.actor,
        settings=_parse_assignments(args.assignments),
    )
    _print_json(values)
    return 0


def _cmd_audit(engine: TreasuryEngine, args: argparse.Namespace) -> int:
    if args.audit_command == "verify":
        count = engine.verify_settings_audit()
        print(f"verification ok ({count} record(s))")
        return 0
    _print_json([record.to_wire() for record in engine.settings_audit(args.limit)])
    return 0


def _cmd_worker(config: TreasuryConfig, engine: TreasuryEngine, args: argparse.Namespace) -> int:
    command = args.signer_command if args.signer_command is not None else config.signer_command
    worker = OutboxWorker(
        engine.ledger,
        DirectoryQueue(config.outbox_dir),
        SubprocessSigner(command, timeout=config.signer_timeout_seconds),
        actor=config.worker_actor,
        auto_approve=config.worker_auto_approve if args.auto_approve is None else args.auto_approve,
        dry_run=config.worker_dry_run if args.dry_run is None else args.dry_run,
        lock_path=config.outbox_dir / "worker.lock",
    )
    report = worker.run()
    _print_report(report)
    return report.exit_code


def _print_report(report: WorkerReport) -> None:
    if not report.results:
        print("no queued outbox intents")
        return
    for result in report.results:
        print(f"{result.outcome}: {result.name}: {result.message}")
    print(f"{len(report.results)} file(s), {report.failures} failed")


def _dispatch(config: TreasuryConfig, engine: TreasuryEngine, args: argparse.Namespace) -> int:
    console = Console()
    command = args.command
    if command == "create":
        _print_intent(
            engine.create(
                source=args.source,
                requested_by=args.by,
                to_address=args.to_address,
                amount_cents=args.amount_cents,
                reason=args.reason,
                child_id=args.child_id,
            )
        )
        return 0
    if command == "list":
        status = IntentStatus(args.status) if args.status else None
        intents = engine.list(status=status, limit=args.limit)
        if args.json:
            _print_json([intent.to_wire() for intent in intents])
        else:
            _render_intents(console, intents)
        return 0
    if command == "show":
        _print_intent(engine.show(args.intent_id))
        return 0
    if command == "history":
        events = engine.history(args.intent_id)
        if args.json:
            _print_json([event.to_wire() for event in events])
        else:
            _render_history(console, events)
        return 0
    if command == "approve":
        _print_intent(
            engine.approve(args.intent_id, by=args.by, note=args.note, execute=args.execute)
        )
        return 0
    if command == "reject":
        _print_intent(engine.reject(args.intent_id, by=args.by, reason=args.reason))
        return 0
    if command == "execute":
        _print_intent(engine.execute(args.intent_id, by=args.by))
        return 0
    if command == "confirm":
        _print_intent(
            engine.confirm(
                args.intent_id,
                status=args.status,
                tx_ref=args.tx_ref,
                message=args.message,
                by=args.by,
            )
        )
        return 0
    if command == "fail":
        _print_intent(
            engine.fail(args.intent_id, reason=args.reason, by=args.by, tx_ref=args.tx_ref)
        )
        return 0
    if command == "add-child":
        print(engine.add_child(args.child_id, address=args.address).to_wire_json(indent=2))
        return 0
    if command == "set-child-address":
        print(engine.set_child_address(args.child_id, args.address).to_wire_json(indent=2))
        return 0
    if command == "settings":
        if args.settings_command == "show":
            _print_json(engine.get_settings())
            return 0
        return _cmd_settings_update(engine, args)
    if command == "audit":
        return _cmd_audit(engine, args)
    if command == "worker":
        return _cmd_worker(config, engine, args)
    print("unknown command", file=sys.stderr)
    return 1


def main(argv: Sequence[str] | None = None) -> int:
    args = _parse_args(sys.argv[1:] if argv is None else argv)
    overrides: dict[str, Any] = {}
    if args.state_dir is not None:
        overrides["state_dir"] = args.state_dir
    if args.backend is not None:
        overrides["execution_backend"] = args.backend
    if args.log_level is not None:
        overrides["log_level"] = args.log_level
    try:
        config = load_config(**overrides)
    except PydanticValidationError as exc:
        print(f"config failed: {exc}", file=sys.stderr)
        return 2
    _configure_logging(config.log_level)

    try:
        engine = TreasuryEngine.from_config(config)
    except (TreasuryError, OSError, PydanticValidationError) as exc:
        print(f"{args.command} failed: {exc}", file=sys.stderr)
        return 1
    try:
        return _dispatch(config, engine, args)
    except TreasuryError as exc:
        print(f"{args.command} failed: {exc}", file=sys.stderr)
        return 1
    finally:
        engine.close()


if __name__ == "__main__":
    sys.exit(main())
