"""Entry point for `python -m scopeward` and the `scopeward` CLI script."""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from dataclasses import replace
from pathlib import Path
from typing import Sequence

from dotenv import load_dotenv

from scopeward.errors import ScopeError, ScopeNotFoundError
from scopeward.finalization import FinalizationEngine
from scopeward.inspector import ScopeInspector
from scopeward.models import FinalizationReport, FinalizationSummary, StageInspection
from scopeward.scope import DesiredResources
from scopeward.settings import STRATEGY_CHOICES, RuntimeSettings
from scopeward.utils import detect_app_name, join_scope_path

EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_USAGE = 2


def parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog="scopeward", description="Inspect and finalize scoped resource state")
    parser.add_argument("--state-dir", type=Path, default=None, help="State directory (default: SCOPEWARD_STATE_DIR)")
    parser.add_argument(
        "--log-level",
        default="WARNING",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Logging verbosity",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    finalize = subparsers.add_parser("finalize", help="Tear down a stage or every stage of an application")
    finalize.add_argument("--app", default=None, help="Application name (default: detected from project files)")
    finalize.add_argument("--stage", default=None, help="Stage to finalize (default: every stage of --app)")
    finalize.add_argument("--all", action="store_true", help="Finalize every application")
    finalize.add_argument("--dry-run", action="store_true", help="Report what would be deleted without deleting")
    finalize.add_argument("--strategy", choices=STRATEGY_CHOICES, default=None, help="Failure handling strategy")
    finalize.add_argument("--retry", type=int, default=None, help="Deletion attempts per resource")
    finalize.add_argument("--force", action="store_true", help="Allow finalizing protected stages")
    finalize.add_argument("--parallel", action="store_true", help="Delete resources and nested scopes concurrently")
    finalize.add_argument(
        "--max-concurrency",
        type=int,
        default=None,
        help="Concurrent deletions per scope with --parallel (default: SCOPEWARD_MAX_CONCURRENCY)",
    )
    finalize.add_argument("--json", action="store_true", help="Machine-readable output")

    list_parser = subparsers.add_parser("list", help="List stages of an application (or every application)")
    list_parser.add_argument("app", nargs="?", default=None, help="Application name")
    list_parser.add_argument("--json", action="store_true", help="Machine-readable output")

    inspect = subparsers.add_parser("inspect", help="Show details of one stage without locking it")
    inspect.add_argument("app", help="Application name")
    inspect.add_argument("stage", help="Stage name")
    inspect.add_argument("--depth", type=int, default=2, help="Nested scope levels to show")
    inspect.add_argument(
        "--desired",
        nargs="*",
        default=None,
        metavar="ID",
        help="Resource ids still wanted; any other resource is reported as orphaned",
    )
    inspect.add_argument("--json", action="store_true", help="Machine-readable output")
    return parser.parse_args(argv)


def format_bytes(size: int) -> str:
    value = float(size)
    for unit in ("B", "KB", "MB"):
        if value < 1024:
            return f"{value:.0f} {unit}" if unit == "B" else f"{value:.1f} {unit}"
        value /= 1024
    return f"{value:.1f} GB"


def render_report(report: FinalizationReport, indent: int = 0) -> list[str]:
    pad = "  " * indent
    status = "removed" if report.state_removed else "kept"
    lines = [
        f"{pad}{report.scope_path}: deleted={report.resources_deleted} failed={report.resources_failed} "
        f"nested={report.nested_scopes_processed} state={status} ({report.duration:.2f}s)"
    ]
    for nested in report.nested_reports:
        lines.extend(render_report(nested, indent + 1))
    return lines


def render_summary(summary: FinalizationSummary) -> list[str]:
    lines = [f"Application {summary.app_name}{' (dry run)' if summary.dry_run else ''}"]
    for report in summary.reports:
        lines.extend(render_report(report, indent=1))
    lines.append(
        f"Total: stages={summary.stages_processed} deleted={summary.resources_deleted} "
        f"failed={summary.resources_failed} nested={summary.nested_scopes_processed} ({summary.duration:.2f}s)"
    )
    return lines


def render_inspection(inspection: StageInspection) -> list[str]:
    snapshot = inspection.snapshot
    metadata = inspection.metadata
    lines = [
        f"Scope:          {snapshot.scope_path}",
        f"Environment:    {metadata.environment.value}",
        f"Ephemeral:      {'yes' if metadata.is_ephemeral else 'no'}",
        f"Estimated cost: {metadata.estimated_cost.value}",
        f"Locked:         {'yes' if snapshot.is_locked else 'no'}",
        f"Resources:      {snapshot.total_resources}",
        f"Nested scopes:  {len(snapshot.nested_scopes)}",
        f"State size:     {format_bytes(snapshot.state_size)}",
        f"Last updated:   {snapshot.last_updated.isoformat() if snapshot.last_updated else 'unknown'}",
    ]
    if inspection.resources:
        lines.append("")
        lines.append("Resources:")
        for resource_id, resource in inspection.resources.items():
            lines.append(f"  {resource.type:<12} {resource_id:<30} {resource.created_at.isoformat()}")

    def walk(views, depth: int) -> None:
        for view in views:
            lines.append(f"{'  ' * depth}{view.scope_name}/ ({view.resource_count} resources)")
            for resource_id, resource in view.resources.items():
                lines.append(f"{'  ' * (depth + 1)}{resource.type}: {resource_id}")
            walk(view.nested_scopes, depth + 1)

    if inspection.nested_scopes:
        lines.append("")
        lines.append("Nested scopes:")
        walk(inspection.nested_scopes, 1)
    if inspection.orphaned_resources:
        lines.append("")
        lines.append(f"Orphaned resources: {', '.join(inspection.orphaned_resources)}")
    for problem in inspection.validation.errors:
        lines.append(f"Error: {problem}")
    if inspection.recommendations:
        lines.append("")
        lines.append("Recommendations:")
        lines.extend(f"  - {advice}" for advice in inspection.recommendations)
    return lines


async def run_finalize(args: argparse.Namespace, settings: RuntimeSettings) -> int:
    if args.all:
        print("Finalizing all applications is not implemented; pass --app instead.", file=sys.stderr)
        return EXIT_USAGE

    app_name = args.app or detect_app_name(Path.cwd())
    if app_name is None:
        logging.error("No --app given and no application name found in scopeward.toml, pyproject.toml or package.json")
        return EXIT_USAGE
    stage = args.stage
    if stage is None and args.app is None:
        stage = settings.default_stage

    engine = FinalizationEngine.from_settings(settings)
    options = engine.default_options(
        dry_run=args.dry_run,
        force=args.force,
        parallel=args.parallel,
        max_concurrency=args.max_concurrency,
        strategy=args.strategy,
        retry_attempts=args.retry,
    )

    if stage is not None:
        report = await engine.finalize(join_scope_path(app_name, stage), options)
        if args.json:
            print(report.model_dump_json(indent=2))
        else:
            print("\n".join(render_report(report)))
            for error in report.errors:
                print(f"  error: {error}")
        return EXIT_OK if report.success else EXIT_FAILURE

    summary = await engine.finalize_application(app_name, options)
    if args.json:
        print(summary.model_dump_json(indent=2))
    else:
        print("\n".join(render_summary(summary)))
        for error in summary.errors:
            print(f"  error: {error}")
    failed = summary.resources_failed > 0 or summary.errors or any(not report.success for report in summary.reports)
    return EXIT_FAILURE if failed else EXIT_OK


async def run_list(args: argparse.Namespace, settings: RuntimeSettings) -> int:
    inspector = ScopeInspector.from_settings(settings)
    apps = [args.app] if args.app else await inspector.list_applications()
    stages = [summary for app in apps for summary in await inspector.list_stages(app)]
    if args.json:
        print(json.dumps([summary.model_dump(mode="json") for summary in stages], indent=2))
        return EXIT_OK
    if not stages:
        print("No scopes found.")
        return EXIT_OK
    for summary in stages:
        nested = f" nested={','.join(summary.nested_scopes)}" if summary.nested_scopes else ""
        lock = " [locked]" if summary.is_locked else ""
        print(f"{summary.scope_path}: {summary.total_resources} resources{nested}{lock}")
    return EXIT_OK


async def run_inspect(args: argparse.Namespace, settings: RuntimeSettings) -> int:
    inspector = ScopeInspector.from_settings(settings)
    policy = DesiredResources(args.desired) if args.desired is not None else None
    try:
        inspection = await inspector.inspect(args.app, args.stage, depth=args.depth, orphan_policy=policy)
    except ScopeNotFoundError as exc:
        logging.error("%s", exc)
        return EXIT_FAILURE
    if args.json:
        print(inspection.model_dump_json(indent=2))
    else:
        print("\n".join(render_inspection(inspection)))
    return EXIT_OK


COMMANDS = {
    "finalize": run_finalize,
    "list": run_list,
    "inspect": run_inspect,
}


def main(argv: Sequence[str] | None = None) -> int:
    args = parse_args(argv)
    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    env_path = Path.cwd() / ".env"
    if env_path.is_file():
        load_dotenv(env_path)
    try:
        settings = RuntimeSettings.from_env()
        if args.state_dir is not None:
            settings = replace(settings, state_dir=str(args.state_dir)).normalized()
        return asyncio.run(COMMANDS[args.command](args, settings))
    except (ScopeError, ValueError) as exc:
        logging.error("%s failed: %s", args.command, exc)
        return EXIT_FAILURE


if __name__ == "__main__":
    raise SystemExit(main())
