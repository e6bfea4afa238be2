# src/main.py — v1
"""CLI entry point: trigger, approve, reject, status, runs, cancel, resume.

Usage:
    deploygate trigger <target> <directory> [--revision-id ID] [--detach]
    deploygate approve <token> --approver <identity> [--comment TEXT]
    deploygate reject <token> --approver <identity> [--comment TEXT]
    deploygate status <run_id>
    deploygate runs [target]
    deploygate cancel <run_id>
    deploygate resume <run_id>
    deploygate reclaim-locks
    deploygate expire-approvals
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path

from deploygate.version import __version__

logger = logging.getLogger("deploygate.cli")


def main(argv: list[str] | None = None) -> int:
    """Main CLI entry point."""
    parser = _build_parser()
    args = parser.parse_args(argv)

    if not hasattr(args, "func"):
        parser.print_help()
        return 1

    try:
        return asyncio.run(_dispatch(args))
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
        return 130
    except Exception as exc:
        logger.error("Fatal error: %s", exc, exc_info=args.verbose)
        return 1


def _build_parser() -> argparse.ArgumentParser:
    """Build CLI argument parser."""
    parser = argparse.ArgumentParser(
        prog="deploygate",
        description=f"deploygate v{__version__} — gated infrastructure deployment pipeline",
    )
    parser.add_argument(
        "--version", action="version", version=f"%(prog)s {__version__}",
    )
    parser.add_argument(
        "-v", "--verbose", action="store_true",
        help="Enable debug logging",
    )
    parser.add_argument(
        "--env-file", type=Path, default=None,
        help="Settings file (default: ./.env)",
    )

    subparsers = parser.add_subparsers(dest="command")

    # --- trigger ---
    p_trigger = subparsers.add_parser(
        "trigger", help="Start a run for the revision in a directory",
    )
    p_trigger.add_argument("target", help="Deployment target (e.g. prod)")
    p_trigger.add_argument("directory", type=Path, help="Directory holding the revision")
    p_trigger.add_argument(
        "--revision-id", default=None,
        help="Revision identifier (default: content digest)",
    )
    p_trigger.add_argument(
        "--detach", action="store_true",
        help="Return once the run awaits approval",
    )
    p_trigger.set_defaults(func=_cmd_trigger)

    # --- approve / reject ---
    for name, help_text in (("approve", "Approve a pending run"), ("reject", "Reject a pending run")):
        p_decide = subparsers.add_parser(name, help=help_text)
        p_decide.add_argument("token", help="Approval token")
        p_decide.add_argument("--approver", required=True, help="Approver identity")
        p_decide.add_argument("--comment", default="", help="Free-text comment")
        p_decide.set_defaults(func=_cmd_decide)

    # --- status ---
    p_status = subparsers.add_parser("status", help="Show one run")
    p_status.add_argument("run_id", type=int)
    p_status.set_defaults(func=_cmd_status)

    # --- runs ---
    p_runs = subparsers.add_parser("runs", help="List runs")
    p_runs.add_argument("target", nargs="?", default=None)
    p_runs.set_defaults(func=_cmd_runs)

    # --- cancel ---
    p_cancel = subparsers.add_parser("cancel", help="Cancel a run before apply")
    p_cancel.add_argument("run_id", type=int)
    p_cancel.set_defaults(func=_cmd_cancel)

    # --- resume ---
    p_resume = subparsers.add_parser("resume", help="Drive an existing run to completion")
    p_resume.add_argument("run_id", type=int)
    p_resume.set_defaults(func=_cmd_resume)

    # --- maintenance ---
    p_reclaim = subparsers.add_parser("reclaim-locks", help="Remove expired state locks")
    p_reclaim.set_defaults(func=_cmd_reclaim_locks)

    p_expire = subparsers.add_parser("expire-approvals", help="Time out overdue approvals")
    p_expire.set_defaults(func=_cmd_expire_approvals)

    return parser


async def _dispatch(args: argparse.Namespace) -> int:
    """Load settings, configure logging and run the selected command."""
    from deploygate.api.facade import build_pipeline
    from deploygate.config.settings import Settings
    from deploygate.logging.logger import setup_logging

    settings = Settings(_env_file=args.env_file) if args.env_file else Settings()
    setup_logging(
        level="DEBUG" if args.verbose else settings.log_level,
        log_format=settings.log_format,
        log_file=str(settings.log_file) if settings.log_file else None,
        rotation=settings.log_rotation,
        retention=settings.log_retention,
        run_log_dir=settings.log_run_dir,
    )

    app = build_pipeline(settings)
    try:
        return await args.func(app, args)
    finally:
        app.close()


async def _cmd_trigger(app, args: argparse.Namespace) -> int:
    """Snapshot a directory and run it through the pipeline."""
    from deploygate.core.models import RunStatus
    from deploygate.source.directory_source import DirectorySource

    directory: Path = args.directory
    if not directory.is_dir():
        logger.error("Not a directory: %s", directory)
        return 1

    revision = DirectorySource(directory).revision(args.target, revision_id=args.revision_id)
    run = await app.controller.on_new_revision(revision)
    run = await app.controller.run_to_completion(run, stop_at_approval=args.detach)

    _print_run(run)
    if run.status == RunStatus.AWAITING_APPROVAL and run.approval_token:
        print(f"\nApproval token: {run.approval_token}")
    return 1 if run.status in (RunStatus.FAILED, RunStatus.CANCELLED) else 0


async def _cmd_decide(app, args: argparse.Namespace) -> int:
    """Record an approve/reject decision."""
    from deploygate.core.models import ApprovalDecisionKind

    kind = ApprovalDecisionKind.APPROVED if args.command == "approve" else ApprovalDecisionKind.REJECTED
    decision = await app.gate.decide(args.token, kind, args.approver, comment=args.comment)
    print(f"Run {decision.run_id}: {decision.kind.value} by {decision.approver}")
    return 0


async def _cmd_status(app, args: argparse.Namespace) -> int:
    run = await app.controller.get_run(args.run_id)
    if run is None:
        logger.error("Unknown run: %d", args.run_id)
        return 1
    _print_run(run)
    return 0


async def _cmd_runs(app, args: argparse.Namespace) -> int:
    runs = await app.controller.list_runs(args.target)
    if not runs:
        print("No runs.")
        return 0
    for run in runs:
        stage = run.stage.value if run.stage else "-"
        print(f"{run.run_id:>6}  {run.target:<16} {run.status.value:<18} {stage:<9} {run.revision_id}")
    return 0


async def _cmd_cancel(app, args: argparse.Namespace) -> int:
    run = await app.controller.get_run(args.run_id)
    if run is None:
        logger.error("Unknown run: %d", args.run_id)
        return 1
    run = await app.controller.cancel(run)
    _print_run(run)
    return 0


async def _cmd_resume(app, args: argparse.Namespace) -> int:
    from deploygate.core.models import RunStatus

    run = await app.controller.get_run(args.run_id)
    if run is None:
        logger.error("Unknown run: %d", args.run_id)
        return 1
    if not run.is_terminal:
        run = await app.controller.run_to_completion(run)
    _print_run(run)
    return 1 if run.status in (RunStatus.FAILED, RunStatus.CANCELLED) else 0


async def _cmd_reclaim_locks(app, args: argparse.Namespace) -> int:
    reclaimed = await app.lock.reclaim_expired()
    print(f"Reclaimed {len(reclaimed)} expired lock(s).")
    for handle in reclaimed:
        print(f"  {handle.target}: run {handle.holder_run_id} (fencing {handle.fencing_token})")
    return 0


async def _cmd_expire_approvals(app, args: argparse.Namespace) -> int:
    expired = await app.gate.expire_overdue()
    print(f"Expired {len(expired)} approval(s).")
    return 0


def _print_run(run: object) -> None:
    """Print a run summary as JSON on stdout."""
    print(json.dumps(run.summary(), indent=2))


if __name__ == "__main__":
    sys.exit(main())
