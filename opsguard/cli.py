"""
OpsGuard CLI

Command-line interface for guard policies, playbooks and runs.
"""

import argparse
import asyncio
import getpass
import json
import logging
import os
import sys
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

from .core import Config, OpsGuardRuntime
from .core.exceptions import OpsGuardError
from .core.policy import GLOBAL_SCOPE, GuardPolicy
from .core.run import RunFilter, RunStatus, RunTrigger
from .observability import setup_logging
from .planner import RunRequest


def load_config(config_path: Optional[str]) -> Config:
    """Load configuration from file or use defaults."""
    if config_path:
        return Config.from_file(config_path)
    return Config()


def load_document(path: str) -> Dict[str, Any]:
    """Load a YAML or JSON document."""
    with open(path) as f:
        if Path(path).suffix.lower() == ".json":
            return json.load(f)
        return yaml.safe_load(f) or {}


def parse_scope(value: Optional[str]) -> Dict[str, Any]:
    """Scope from inline JSON or @file."""
    if not value:
        return {}
    if value.startswith("@"):
        return load_document(value[1:])
    return json.loads(value)


def emit(data: Any) -> None:
    print(json.dumps(data, indent=2, default=str))


def create_parser() -> argparse.ArgumentParser:
    """Create argument parser."""
    parser = argparse.ArgumentParser(
        prog="opsguard",
        description="OpsGuard - Guarded autonomy execution runtime",
    )

    parser.add_argument(
        "-c", "--config",
        help="Path to configuration file",
        default=None,
    )
    parser.add_argument(
        "--db",
        help="SQLite database path (overrides config)",
        default=None,
    )
    parser.add_argument(
        "--company",
        default=os.environ.get("OPSGUARD_COMPANY", "default"),
        help="Company (tenant) id",
    )
    parser.add_argument(
        "--user",
        default=os.environ.get("OPSGUARD_USER") or getpass.getuser(),
        help="Acting user id",
    )
    parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Enable verbose output",
    )
    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        default=None,
        help="Logging level (overrides config)",
    )

    subparsers = parser.add_subparsers(dest="command", help="Commands")

    # Policy commands
    policy_parser = subparsers.add_parser("policy", help="Guard policy operations")
    policy_subparsers = policy_parser.add_subparsers(dest="policy_command")

    set_parser = policy_subparsers.add_parser("set", help="Create or replace a guard policy")
    set_parser.add_argument("--scope", default=GLOBAL_SCOPE, help="global or playbook:<code>")
    set_parser.add_argument("--max-concurrent", type=int)
    set_parser.add_argument("--max-entities", type=int)
    set_parser.add_argument("--max-percent", type=float)
    set_parser.add_argument("--dual-control", action=argparse.BooleanOptionalAction, default=None)
    set_parser.add_argument("--timeout", type=int, help="Run timeout in seconds")
    set_parser.add_argument("--cooldown", type=int, help="Cooldown in seconds")
    set_parser.add_argument("--canary-percent", type=float)
    set_parser.add_argument("--canary-min", type=int)
    set_parser.add_argument("--rollback", choices=["inverse_action", "custom", "none"])

    show_parser = policy_subparsers.add_parser("show", help="Show the effective policy")
    show_parser.add_argument("--playbook", help="Playbook code")

    # Playbook commands
    playbook_parser = subparsers.add_parser("playbook", help="Playbook operations")
    playbook_subparsers = playbook_parser.add_subparsers(dest="playbook_command")

    publish_parser = playbook_subparsers.add_parser("publish", help="Publish a playbook spec")
    publish_parser.add_argument("file", help="YAML or JSON playbook spec")
    publish_parser.add_argument("--code", help="Playbook code (defaults to the spec's code)")

    versions_parser = playbook_subparsers.add_parser("versions", help="List published versions, newest first")
    versions_parser.add_argument("code", help="Playbook code")
    versions_parser.add_argument("--limit", type=int, default=20)
    versions_parser.add_argument("--offset", type=int, default=0)

    # Run commands
    run_parser = subparsers.add_parser("run", help="Run operations")
    run_subparsers = run_parser.add_subparsers(dest="run_command")

    for name, help_text in (("plan", "Plan a run"), ("request", "Plan a run and queue it")):
        p = run_subparsers.add_parser(name, help=help_text)
        p.add_argument("--playbook", required=True, help="Playbook code")
        p.add_argument("--version", type=int, help="Playbook version (default latest)")
        p.add_argument("--scope", help="Scope as JSON or @file")
        p.add_argument("--live", action="store_true", help="Live run instead of dry run")
        p.add_argument("--trigger", choices=[t.value for t in RunTrigger], default=RunTrigger.MANUAL.value)

    approve_parser = run_subparsers.add_parser("approve", help="Approve or reject a queued run")
    approve_parser.add_argument("run_id")
    approve_parser.add_argument("--reject", action="store_true", help="Reject instead of approve")
    approve_parser.add_argument("--reason")

    cancel_parser = run_subparsers.add_parser("cancel", help="Cancel a run")
    cancel_parser.add_argument("run_id")
    cancel_parser.add_argument("--reason", default="User requested")

    execute_parser = run_subparsers.add_parser("execute", help="Execute an approved run")
    execute_parser.add_argument("run_id")

    list_parser = run_subparsers.add_parser("list", help="List runs")
    list_parser.add_argument("--status", choices=[s.value for s in RunStatus])
    list_parser.add_argument("--playbook")
    list_parser.add_argument("--limit", type=int, default=50)
    list_parser.add_argument("--offset", type=int, default=0)

    status_parser = run_subparsers.add_parser("show", help="Show a run")
    status_parser.add_argument("run_id")

    # Actions
    actions_parser = subparsers.add_parser("actions", help="Action catalog")
    actions_subparsers = actions_parser.add_subparsers(dest="actions_command")
    actions_subparsers.add_parser("list", help="List registered actions")

    # Metrics
    metrics_parser = subparsers.add_parser("metrics", help="Aggregated run metrics")
    metrics_parser.add_argument("--playbook")

    # Version command
    subparsers.add_parser("version", help="Show version")

    return parser


def cmd_policy_set(args: argparse.Namespace, runtime: OpsGuardRuntime) -> int:
    """Create or replace a guard policy."""
    blast_radius = None
    if args.max_entities is not None or args.max_percent is not None:
        blast_radius = {"maxEntities": args.max_entities, "maxPercent": args.max_percent}
    canary = None
    if args.canary_percent is not None or args.canary_min is not None:
        canary = {"samplePercent": args.canary_percent, "minEntities": args.canary_min}

    policy = runtime.set_guard_policy(GuardPolicy(
        company_id=args.company,
        scope=args.scope,
        max_concurrent=args.max_concurrent,
        blast_radius=blast_radius,
        requires_dual_control=args.dual_control,
        canary=canary,
        rollback_policy={"type": args.rollback} if args.rollback else None,
        timeout_sec=args.timeout,
        cooldown_sec=args.cooldown,
        updated_by=args.user,
    ))
    emit(policy.to_dict())
    return 0


async def cmd_run_plan(args: argparse.Namespace, runtime: OpsGuardRuntime, queue: bool) -> int:
    """Plan (and optionally queue) a run."""
    request = RunRequest(
        playbook_code=args.playbook,
        scope=parse_scope(args.scope),
        dry_run=not args.live,
        version=args.version,
        trigger=RunTrigger(args.trigger),
    )
    if queue:
        run = await runtime.submit_run(args.company, args.user, request)
        emit(run.to_dict())
    else:
        plan = await runtime.plan_run(args.company, args.user, request)
        emit(plan.to_dict())
    return 0


async def async_main(args: argparse.Namespace, runtime: OpsGuardRuntime) -> int:
    """Async main entry point."""
    logger = logging.getLogger(__name__)

    try:
        if args.command == "policy":
            if args.policy_command == "set":
                return cmd_policy_set(args, runtime)
            elif args.policy_command == "show":
                emit(runtime.get_effective_policy(args.company, args.playbook).to_dict())
                return 0

        elif args.command == "playbook":
            if args.playbook_command == "publish":
                spec = load_document(args.file)
                code = args.code or spec.get("code")
                if not code:
                    print("Playbook code missing: pass --code or set 'code' in the spec", file=sys.stderr)
                    return 1
                version = runtime.publish_playbook(args.company, args.user, code, spec)
                emit(version.to_dict())
                return 0
            elif args.playbook_command == "versions":
                versions = runtime.list_playbook_versions(
                    args.company, args.code, limit=args.limit, offset=args.offset,
                )
                emit([v.to_dict() for v in versions])
                return 0

        elif args.command == "run":
            if args.run_command in ("plan", "request"):
                return await cmd_run_plan(args, runtime, queue=args.run_command == "request")
            elif args.run_command == "approve":
                decision = "reject" if args.reject else "approve"
                run = await runtime.approve_run(args.company, args.user, args.run_id, decision, args.reason)
                emit(run.to_dict())
                return 0
            elif args.run_command == "cancel":
                run = await runtime.cancel_run(args.company, args.user, args.run_id, args.reason)
                emit(run.to_dict())
                return 0
            elif args.run_command == "execute":
                run = await runtime.execute_run(args.company, args.run_id)
                emit(run.to_dict())
                return 0 if run.status == RunStatus.SUCCEEDED else 2
            elif args.run_command == "list":
                page = await runtime.list_runs(
                    args.company,
                    RunFilter(
                        status=RunStatus(args.status) if args.status else None,
                        playbook_code=args.playbook,
                    ),
                    limit=args.limit,
                    offset=args.offset,
                )
                emit(page.to_dict())
                return 0
            elif args.run_command == "show":
                emit((await runtime.get_run(args.company, args.run_id)).to_dict())
                return 0

        elif args.command == "actions":
            emit([a.to_dict() for a in runtime.registry.list_actions()])
            return 0

        elif args.command == "metrics":
            emit(await runtime.get_aggregated_metrics(args.company, RunFilter(playbook_code=args.playbook)))
            return 0

    except OpsGuardError as e:
        logger.error(f"{args.command} failed: {e}")
        print(json.dumps(e.to_dict(), indent=2, default=str), file=sys.stderr)
        return 1

    print("No command specified. Use --help for usage.")
    return 1


async def run_cli(args: argparse.Namespace, config: Config) -> int:
    runtime = OpsGuardRuntime(config)
    await runtime.start()
    try:
        return await async_main(args, runtime)
    finally:
        await runtime.stop()
        runtime.store.close()


def main() -> int:
    """Main entry point."""
    parser = create_parser()
    args = parser.parse_args()

    if args.command == "version":
        from . import __version__
        print(f"opsguard {__version__}")
        return 0

    try:
        config = load_config(args.config)
    except Exception as e:
        print(f"Failed to load config: {e}", file=sys.stderr)
        return 1

    if args.db:
        config.store.db_path = args.db

    log_level = "DEBUG" if args.verbose else (args.log_level or config.log_level)
    setup_logging(log_level, json_format=config.json_logs, log_file=config.log_file)

    return asyncio.run(run_cli(args, config))


if __name__ == "__main__":
    sys.exit(main())
