"""
Auto Mode Command Line
======================

Runs the feature orchestration engine from a terminal.

Commands:
    autoforge loop     --project-dir DIR        Run the autonomous loop until the backlog is empty
    autoforge run      --project-dir DIR ID     Implement one feature
    autoforge verify   --project-dir DIR ID     Verify one feature
    autoforge resume   --project-dir DIR ID     Resume one feature from its execution log
    autoforge analyze  --project-dir DIR        Analyze the project structure
    autoforge status   --project-dir DIR        Show the feature list

Exit codes: 0 when the feature passed (or the command succeeded), 1 when it
did not pass, 2 on usage errors.
"""

import argparse
import asyncio
import io
import logging
import sys
from pathlib import Path
from typing import Any

# Fix Windows console encoding for Unicode characters (emoji, etc.)
if sys.platform == "win32":
    sys.stdout = io.TextIOWrapper(sys.stdout.buffer, encoding="utf-8", errors="replace", line_buffering=True)
    sys.stderr = io.TextIOWrapper(sys.stderr.buffer, encoding="utf-8", errors="replace", line_buffering=True)

from autoforge import __version__, events, execution_log
from autoforge.config import Settings
from autoforge.errors import AutoModeError
from autoforge.feature_store import FEATURE_STATUSES, get_feature_list_path, load_features

EXIT_OK = 0
EXIT_NOT_PASSING = 1
EXIT_USAGE = 2

TOOL_INPUT_PREVIEW_CHARS = 200


# =============================================================================
# Console Output
# =============================================================================

def print_event(event: dict[str, Any]) -> None:
    """Event sink that renders lifecycle events on stdout."""
    event_type = event.get("type")

    if event_type == events.EVENT_PROGRESS:
        print(event.get("content", ""), end="", flush=True)
    elif event_type == events.EVENT_TOOL:
        print(f"\n[Tool: {event.get('tool')}]", flush=True)
        input_str = str(event.get("input", ""))
        if len(input_str) > TOOL_INPUT_PREVIEW_CHARS:
            input_str = input_str[:TOOL_INPUT_PREVIEW_CHARS] + "..."
        print(f"   Input: {input_str}", flush=True)
    elif event_type == events.EVENT_PHASE:
        print(f"\n== {event.get('phase', '').upper()}: {event.get('message')}", flush=True)
    elif event_type == events.EVENT_FEATURE_START:
        feature = event.get("feature") or {}
        print("\n" + "=" * 70)
        print(f"  FEATURE {event.get('featureId')}: {feature.get('description', '')}")
        print("=" * 70, flush=True)
    elif event_type == events.EVENT_FEATURE_COMPLETE:
        outcome = "PASSED" if event.get("passes") else "NOT PASSING"
        print("\n" + "-" * 70)
        print(f"  {event.get('featureId')}: {outcome}")
        print("-" * 70, flush=True)
    elif event_type == events.EVENT_COMPLETE:
        print("\n" + "=" * 70)
        print(f"  {event.get('message')}")
        print("=" * 70, flush=True)
    elif event_type == events.EVENT_ERROR:
        feature_id = event.get("featureId")
        prefix = f"[{feature_id}] " if feature_id else ""
        print(f"\nError: {prefix}{event.get('error')}", file=sys.stderr, flush=True)


def print_feature_summary(project_dir: Path) -> None:
    features = load_features(project_dir)
    if not features:
        print(f"No features found at {get_feature_list_path(project_dir)}")
        return

    counts = {status: 0 for status in FEATURE_STATUSES}
    for feature in features:
        counts[feature.status] = counts.get(feature.status, 0) + 1
        marker = "x" if feature.is_verified else ("~" if feature.status == "in_progress" else " ")
        has_log = execution_log.read(project_dir, feature.id) is not None
        print(f"  [{marker}] {feature.id}  {feature.description}{'  (log)' if has_log else ''}")

    print()
    print(
        f"{counts['verified']}/{len(features)} verified, "
        f"{counts['in_progress']} in progress, {counts['backlog']} in backlog"
    )


# =============================================================================
# Commands
# =============================================================================

async def run_loop(service, project_dir: Path) -> int:
    await service.start(str(project_dir), sink=print_event)
    try:
        await service.loop.join()
    except asyncio.CancelledError:
        await service.shutdown()
        raise
    return EXIT_OK


async def run_single(service, command: str, project_dir: Path, feature_id: str) -> int:
    entry = {
        "run": service.run_feature,
        "verify": service.verify_feature,
        "resume": service.resume_feature,
    }[command]
    result = await entry(str(project_dir), feature_id, sink=print_event)
    return EXIT_OK if result.passes else EXIT_NOT_PASSING


async def run_analysis(service, project_dir: Path) -> int:
    result = await service.analyze_project(str(project_dir), sink=print_event)
    return EXIT_OK if result.passes else EXIT_NOT_PASSING


def build_parser() -> argparse.ArgumentParser:
    """Build and return the argument parser."""
    parser = argparse.ArgumentParser(
        prog="autoforge",
        description="AutoForge - autonomous feature implementation with a delegate agent.",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument(
        "--project-dir",
        type=Path,
        default=Path.cwd(),
        help="Project directory containing .autoforge/feature_list.json (default: cwd).",
    )
    parser.add_argument(
        "--model",
        default=None,
        help="Model for feature passes (default: AUTOFORGE_MODEL or Opus 4.5).",
    )
    parser.add_argument(
        "--verbose",
        action="store_true",
        default=False,
        help="Enable debug logging.",
    )

    subparsers = parser.add_subparsers(dest="command", help="Available commands")
    subparsers.add_parser("loop", help="Implement features until the backlog is empty.")
    for name, help_text in (
        ("run", "Implement one feature."),
        ("verify", "Verify one feature and finish it if needed."),
        ("resume", "Resume one feature from its execution log."),
    ):
        command_parser = subparsers.add_parser(name, help=help_text)
        command_parser.add_argument("feature_id", help="Feature id from feature_list.json.")
    subparsers.add_parser("analyze", help="Analyze the project structure and tech stack.")
    subparsers.add_parser("status", help="Show the feature list and statuses.")

    return parser


def main(argv: list[str] | None = None) -> int:
    """Main entry point for the CLI."""
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        return EXIT_OK

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    project_dir = args.project_dir.expanduser().resolve()
    if not project_dir.is_dir():
        print(f"Error: project directory not found: {project_dir}", file=sys.stderr)
        return EXIT_USAGE

    if args.command == "status":
        print_feature_summary(project_dir)
        return EXIT_OK

    # Import here to keep `status` and `--help` free of SDK startup
    from autoforge.service import AutoModeService

    settings = Settings.from_env()
    if args.model:
        settings.model = args.model
    service = AutoModeService(settings=settings)

    print(f"\nProject directory: {project_dir}")
    print(f"Model: {settings.model}\n")

    try:
        if args.command == "loop":
            coro = run_loop(service, project_dir)
        elif args.command == "analyze":
            coro = run_analysis(service, project_dir)
        else:
            coro = run_single(service, args.command, project_dir, args.feature_id)
        return asyncio.run(coro)
    except AutoModeError as e:
        print(f"Error: {e}", file=sys.stderr)
        return EXIT_USAGE
    except KeyboardInterrupt:
        print("\nInterrupted", file=sys.stderr)
        return EXIT_NOT_PASSING


if __name__ == "__main__":
    sys.exit(main())
