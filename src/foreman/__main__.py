"""Foreman CLI entry point."""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path

from foreman.config import (
    CONFIG_FILE_NAME,
    STATE_DIR_NAME,
    ForemanConfig,
    default_config_yaml,
    find_project_root,
    load_config,
)
from foreman.errors import ConfigError, ForemanError, ValidationError
from foreman.events import EventRecorder, tool_name_from_hook_input
from foreman.git import Git
from foreman.lifecycle import AgentLifecycle, resolve_attach
from foreman.merge import MergeEngine, MergeQueue
from foreman.models import MailMessage, MailType
from foreman.multiplexer import TmuxMultiplexer
from foreman.registry import SessionRegistry
from foreman.status import gather_status, render_status
from foreman.stores import MailStore

logger = logging.getLogger(__name__)

# Commands run from inside agents by hooks; kept quiet by default.
HOOK_COMMANDS = frozenset({"log", "mail", "prime"})
COORDINATOR_SUBCOMMANDS = ("start", "stop", "status")
MIN_WATCH_INTERVAL = 0.5  # seconds

_STATE_GITIGNORE = """\
# Runtime state; only the config is tracked.
*
!.gitignore
!config.yaml
"""


def _print_json(data) -> None:
    print(json.dumps(data))


def _multiplexer(config: ForemanConfig) -> TmuxMultiplexer:
    return TmuxMultiplexer(timeout=config.multiplexer.command_timeout)


# ── init ─────────────────────────────────────────────────────────────────────


def _init_project(repo_root: Path, canonical_branch: str) -> None:
    """Scaffold a .foreman/ directory with default configuration."""
    state_dir = repo_root / STATE_DIR_NAME
    config_path = state_dir / CONFIG_FILE_NAME
    if config_path.exists():
        raise ConfigError(f"{config_path} already exists; remove it first to re-initialize")

    state_dir.mkdir(parents=True, exist_ok=True)
    config_path.write_text(default_config_yaml(repo_root.resolve().name, canonical_branch))
    (state_dir / ".gitignore").write_text(_STATE_GITIGNORE)

    print(f"Initialized Foreman project at {state_dir}")
    print(f"  Canonical branch: {canonical_branch}")
    print()
    print("Next steps:")
    print(f"  1. Review {config_path}")
    print("  2. Run: foreman coordinator start")


# ── Agent commands ───────────────────────────────────────────────────────────


async def _cmd_sling(args, config: ForemanConfig) -> None:
    lifecycle = AgentLifecycle(config, multiplexer=_multiplexer(config))
    session = await lifecycle.sling(
        args.name,
        args.capability,
        args.bead,
        parent_agent=args.parent,
        depth=args.depth,
    )
    if args.json:
        _print_json(session.to_json_dict())
        return
    print(f"Slung {session.agent_name} [{session.capability.value}]")
    print(f"  Branch:   {session.branch_name}")
    print(f"  Worktree: {session.worktree_path}")
    print(f"  Tmux:     {session.multiplexer_session_id}")
    print(f"  Depth:    {session.depth}")


async def _cmd_stop(args, config: ForemanConfig) -> None:
    lifecycle = AgentLifecycle(config, multiplexer=_multiplexer(config))
    session = await lifecycle.stop(args.name)
    if args.json:
        _print_json({"stopped": True, "sessionId": session.id})
    else:
        print(f"Stopped {args.name} (session: {session.id})")


async def _cmd_coordinator(args, config: ForemanConfig) -> None:
    multiplexer = _multiplexer(config)
    lifecycle = AgentLifecycle(config, multiplexer=multiplexer)

    if args.subcommand == "start":
        session = await lifecycle.start_coordinator()
        if args.json:
            _print_json(
                {
                    "agentName": session.agent_name,
                    "capability": session.capability.value,
                    "multiplexerSession": session.multiplexer_session_id,
                    "projectRoot": session.worktree_path,
                    "pid": session.pid,
                }
            )
        else:
            print("Coordinator started")
            print(f"  Tmux:    {session.multiplexer_session_id}")
            print(f"  Root:    {session.worktree_path}")
            print(f"  PID:     {session.pid}")
            if resolve_attach(args.attach, args.no_attach, sys.stdout.isatty()):
                await multiplexer.attach(session.multiplexer_session_id)
        return

    if args.subcommand == "stop":
        session = await lifecycle.stop_coordinator()
        if args.json:
            _print_json({"stopped": True, "sessionId": session.id})
        else:
            print(f"Coordinator stopped (session: {session.id})")
        return

    status = await lifecycle.coordinator_status()
    if args.json:
        _print_json(status)
    elif not status["running"] and "sessionId" not in status:
        print("Coordinator is not running")
    else:
        print(f"Coordinator: {'running' if status['running'] else status['state']}")
        print(f"  Session:   {status['sessionId']}")
        print(f"  Tmux:      {status['multiplexerSession']}")
        print(f"  PID:       {status['pid']}")
        print(f"  Started:   {status['startedAt']}")
        print(f"  Activity:  {status['lastActivity']}")


async def _cmd_status(args, config: ForemanConfig) -> None:
    multiplexer = _multiplexer(config)
    while True:
        data = await gather_status(config, multiplexer, agent_name=args.agent, verbose=args.verbose)
        if args.watch:
            sys.stdout.write("\x1b[2J\x1b[H")
        if args.json:
            print(json.dumps(data.to_json_dict(), indent="\t"))
        else:
            sys.stdout.write(render_status(data, namespace=config.project.branch_namespace))
        if not args.watch:
            return
        sys.stdout.flush()
        await asyncio.sleep(args.interval)


# ── Merge commands ───────────────────────────────────────────────────────────


def _merge_engine(config: ForemanConfig) -> MergeEngine:
    return MergeEngine(
        Git(config.root),
        MergeQueue(config.merge_queue_path),
        SessionRegistry(config.sessions_path),
        config.project.canonical_branch,
    )


async def _cmd_merge(args, config: ForemanConfig) -> None:
    engine = _merge_engine(config)

    if args.branch:
        result = await engine.integrate(args.branch, dry_run=args.dry_run)
        if args.json:
            _print_json(result.to_json_dict())
        elif args.dry_run:
            print(f"Would merge {result.branch_name} ({len(result.files_modified)} file(s))")
            for path in result.files_modified:
                print(f"  {path}")
        elif result.success:
            print(f"Merged {result.branch_name} via {result.tier.value}")
        else:
            print(f"Failed to merge {result.branch_name}: {result.error}")
            for path in result.conflicts:
                print(f"  conflict: {path}")
        if not result.success and not args.dry_run:
            sys.exit(1)
        return

    batch = await engine.integrate_all(dry_run=args.dry_run)
    if args.json:
        _print_json(batch.to_json_dict())
        return
    if batch.count == 0:
        print("Merge queue is empty")
        return
    for result in batch.results:
        if args.dry_run:
            print(f"  pending  {result.branch_name} ({len(result.files_modified)} file(s))")
        elif result.success:
            print(f"  merged   {result.branch_name} ({result.tier.value})")
        else:
            print(f"  failed   {result.branch_name}: {result.error}")
    if not args.dry_run:
        print(f"{batch.success_count} merged, {batch.fail_count} failed")


async def _cmd_enqueue(args, config: ForemanConfig) -> None:
    git = Git(config.root)
    if not await git.branch_exists(args.branch):
        raise ValidationError(f"Branch not found: {args.branch}", field="branch", value=args.branch)
    files = args.files or await git.changed_files(config.project.canonical_branch, args.branch)
    entry = MergeQueue(config.merge_queue_path).enqueue(args.branch, files)
    if args.json:
        _print_json(entry.to_json_dict())
    else:
        print(f"Queued {entry.branch_name} ({len(entry.files_modified)} file(s))")


# ── Hook commands ────────────────────────────────────────────────────────────


async def _cmd_log(args, config: ForemanConfig) -> None:
    tool_name = args.tool_name
    if args.stdin and tool_name is None:
        tool_name = tool_name_from_hook_input(sys.stdin.read())
    await EventRecorder(config).record(args.event, args.agent, tool_name)


async def _cmd_mail(args, config: ForemanConfig) -> None:
    async with MailStore(config.mail_db_path) as mail:
        if args.mail_command == "send":
            message = await mail.send(
                MailMessage(
                    sender=args.sender,
                    recipient=args.to,
                    subject=args.subject,
                    body=args.body,
                    type=MailType(args.type),
                )
            )
            if args.json:
                _print_json(message.to_json_dict())
            else:
                print(f"Sent mail {message.id} to {message.recipient}")
            return

        unread = await mail.get_all(to=args.agent, unread=True)
        for message in unread:
            await mail.mark_read(message.id)

    if args.json:
        _print_json([m.to_json_dict() for m in unread])
        return
    if not unread:
        if not args.inject:
            print(f"No new mail for {args.agent}")
        return
    if args.inject:
        print(f"[FOREMAN MAIL] {len(unread)} new message(s) for {args.agent}:")
    for message in reversed(unread):
        print(f"--- [{message.type.value}] from {message.sender}: {message.subject}")
        if message.body:
            print(message.body)


async def _cmd_prime(args, config: ForemanConfig) -> None:
    session = SessionRegistry(config.sessions_path).get(args.agent)
    unread = 0
    if config.mail_db_path.exists():
        async with MailStore(config.mail_db_path) as mail:
            unread = len(await mail.get_all(to=args.agent, unread=True))

    if session is None:
        print(f"[FOREMAN] {args.agent}: no recorded session | unread mail: {unread}")
        return
    if args.compact:
        print(
            f"[FOREMAN] {session.agent_name} ({session.capability.value}) "
            f"branch {session.branch_name} | bead {session.bead_id or 'none'} | unread mail: {unread}"
        )
        return
    print(f"# Foreman context for {session.agent_name}")
    print(f"Capability: {session.capability.value}")
    print(f"Branch:     {session.branch_name}")
    print(f"Worktree:   {session.worktree_path}")
    print(f"Bead:       {session.bead_id or 'none'}")
    print(f"Depth:      {session.depth}")
    print(f"Parent:     {session.parent_agent or 'none'}")
    print(f"State:      {session.state.value}")
    print(f"Unread mail: {unread} (foreman mail check --agent {session.agent_name})")


HANDLERS = {
    "sling": _cmd_sling,
    "stop": _cmd_stop,
    "coordinator": _cmd_coordinator,
    "status": _cmd_status,
    "merge": _cmd_merge,
    "enqueue": _cmd_enqueue,
    "log": _cmd_log,
    "mail": _cmd_mail,
    "prime": _cmd_prime,
}


# ── Parser ───────────────────────────────────────────────────────────────────


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="foreman",
        description="Foreman: orchestration kernel for concurrent coding agents",
    )
    parser.add_argument(
        "--log-level",
        default=None,
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging level (default: from config; WARNING for hook commands)",
    )
    subparsers = parser.add_subparsers(dest="command")

    # foreman init
    init_parser = subparsers.add_parser("init", help="Initialize a new Foreman project")
    init_parser.add_argument(
        "--repo-root",
        type=Path,
        default=Path.cwd(),
        help="Path to the repository root (default: current directory)",
    )
    init_parser.add_argument("--canonical-branch", default="main", help="Branch agents merge into")

    # foreman sling
    sling_parser = subparsers.add_parser("sling", help="Dispatch an agent into a fresh worktree")
    sling_parser.add_argument("name", help="Agent name")
    sling_parser.add_argument("--capability", required=True, help="Agent role (builder, scout, ...)")
    sling_parser.add_argument("--bead", required=True, help="Work item id")
    sling_parser.add_argument("--parent", default=None, help="Parent agent name")
    sling_parser.add_argument("--depth", type=int, default=None, help="Depth when there is no parent session")
    sling_parser.add_argument("--json", action="store_true")

    # foreman stop
    stop_parser = subparsers.add_parser("stop", help="Stop an agent")
    stop_parser.add_argument("name", help="Agent name")
    stop_parser.add_argument("--json", action="store_true")

    # foreman coordinator
    coord_parser = subparsers.add_parser("coordinator", help="Manage the persistent coordinator")
    coord_parser.add_argument("subcommand", help="start | stop | status")
    coord_parser.add_argument("--attach", action="store_true", help="Attach to tmux after start")
    coord_parser.add_argument("--no-attach", action="store_true", help="Never attach after start")
    coord_parser.add_argument("--json", action="store_true")

    # foreman status
    status_parser = subparsers.add_parser("status", help="Show agents and project state")
    status_parser.add_argument("--json", action="store_true")
    status_parser.add_argument("--watch", action="store_true", help="Refresh continuously")
    status_parser.add_argument("--interval", type=float, default=3.0, help="Watch interval in seconds")
    status_parser.add_argument("--agent", default="orchestrator", help="Count unread mail for this agent")
    status_parser.add_argument("--verbose", action="store_true")

    # foreman merge
    merge_parser = subparsers.add_parser("merge", help="Integrate agent branches")
    merge_parser.add_argument("--branch", default=None, help="Merge a single branch")
    merge_parser.add_argument("--all", action="store_true", help="Merge every pending queue entry")
    merge_parser.add_argument("--dry-run", action="store_true")
    merge_parser.add_argument("--json", action="store_true")

    # foreman enqueue
    enqueue_parser = subparsers.add_parser("enqueue", help="Queue a branch for merging")
    enqueue_parser.add_argument("branch")
    enqueue_parser.add_argument("--files", nargs="*", default=None, help="Files modified (default: from git)")
    enqueue_parser.add_argument("--json", action="store_true")

    # foreman log
    log_parser = subparsers.add_parser("log", help="Record a hook event")
    log_parser.add_argument("event", help="tool-start | tool-end | session-end")
    log_parser.add_argument("--agent", default=None)
    log_parser.add_argument("--tool-name", default=None)
    log_parser.add_argument("--stdin", action="store_true", help="Read hook input JSON from stdin")

    # foreman mail
    mail_parser = subparsers.add_parser("mail", help="Send or check agent mail")
    mail_sub = mail_parser.add_subparsers(dest="mail_command", required=True)
    send_parser = mail_sub.add_parser("send")
    send_parser.add_argument("--from", dest="sender", required=True)
    send_parser.add_argument("--to", required=True)
    send_parser.add_argument("--subject", required=True)
    send_parser.add_argument("--body", default="")
    send_parser.add_argument("--type", default=MailType.STATUS.value, choices=[t.value for t in MailType])
    send_parser.add_argument("--json", action="store_true")
    check_parser = mail_sub.add_parser("check")
    check_parser.add_argument("--agent", required=True)
    check_parser.add_argument("--inject", action="store_true", help="Format for prompt injection")
    check_parser.add_argument("--json", action="store_true")

    # foreman prime
    prime_parser = subparsers.add_parser("prime", help="Print an agent's session context")
    prime_parser.add_argument("--agent", required=True)
    prime_parser.add_argument("--compact", action="store_true")

    return parser


def validate_args(args: argparse.Namespace) -> None:
    """Checks argparse can't express. Raises ValidationError."""
    if args.command == "status" and args.interval < MIN_WATCH_INTERVAL:
        raise ValidationError(
            f"--interval must be at least {MIN_WATCH_INTERVAL} seconds",
            field="interval",
            value=args.interval,
        )
    if args.command == "merge":
        if not args.branch and not args.all:
            raise ValidationError("Specify --branch <name> or --all", field="branch")
        if args.branch and args.all:
            raise ValidationError("--branch and --all are mutually exclusive", field="branch")
    if args.command == "coordinator" and args.subcommand not in COORDINATOR_SUBCOMMANDS:
        raise ValidationError(
            f"Unknown coordinator subcommand: {args.subcommand}. "
            f"Expected one of: {', '.join(COORDINATOR_SUBCOMMANDS)}",
            field="subcommand",
            value=args.subcommand,
        )


def _load_project_config() -> ForemanConfig:
    root = find_project_root()
    if root is None:
        raise ConfigError(f"No {STATE_DIR_NAME}/{CONFIG_FILE_NAME} found; run 'foreman init' first")
    try:
        return load_config(root)
    except FileNotFoundError as e:
        raise ConfigError(str(e)) from e


def main(argv: list[str] | None = None) -> None:
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        sys.exit(1)

    quiet = args.command in HOOK_COMMANDS
    logging.basicConfig(
        level=getattr(logging, args.log_level or ("WARNING" if quiet else "INFO")),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    try:
        validate_args(args)
        if args.command == "init":
            _init_project(args.repo_root, args.canonical_branch)
            return

        config = _load_project_config()
        if args.log_level is None and not quiet:
            logging.getLogger().setLevel(config.logging.level)
        asyncio.run(HANDLERS[args.command](args, config))
    except ForemanError as e:
        logger.debug("%s failed: %s", args.command, e.to_dict())
        print(f"Error: {e.message}", file=sys.stderr)
        sys.exit(1)
    except KeyboardInterrupt:
        sys.exit(130)


if __name__ == "__main__":
    main()
