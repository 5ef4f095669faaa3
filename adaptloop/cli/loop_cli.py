#!/usr/bin/env python3
"""
AdaptLoop CLI
=============

Operator commands for the error-learning and prompt-evolution loop.

Usage:
    adaptloop seed
    adaptloop report "Module not found: cannot resolve 'lodash'"
    adaptloop patterns [--category CATEGORY] [--limit N]
    adaptloop versions
    adaptloop traffic v1.0.0=70 v1.1.0=30
    adaptloop stats [--days N]
    adaptloop improve
    adaptloop notifications
    adaptloop serve [--port PORT]
"""

import argparse
import asyncio
import logging
import sys
from datetime import timedelta
from typing import Dict, List

from adaptloop.config import LoopConfig
from adaptloop.db.models import utcnow
from adaptloop.errors import AdaptLoopError
from adaptloop.improvement_loop import ImprovementStatus
from adaptloop.output import (
    console,
    print_header,
    print_success,
    print_error,
    print_warning,
    print_info,
    print_muted,
    print_key_value_table,
    print_list,
    print_json_data,
    create_table,
    print_table,
    spinner,
    setup_rich_logging,
)
from adaptloop.prompt_router import DEFAULT_SYSTEM_PROMPT, DEFAULT_VERSION
from adaptloop.service import AdaptiveLoop


def parse_allocation(items: List[str]) -> Dict[str, float]:
    """Parse ["v1.0.0=70", "v1.1.0=30"] into {"v1.0.0": 70.0, "v1.1.0": 30.0}."""
    allocation: Dict[str, float] = {}
    for item in items:
        version, sep, pct = item.partition("=")
        if not sep or not version:
            raise ValueError(f"Expected VERSION=PERCENT, got {item!r}")
        try:
            allocation[version.strip()] = float(pct)
        except ValueError as e:
            raise ValueError(f"Invalid percentage in {item!r}") from e
    return allocation


async def _with_loop(args, action):
    config = LoopConfig.load()
    if getattr(args, "database", None):
        config.database_url = args.database
    loop = await AdaptiveLoop.from_config(config)
    try:
        return await action(loop)
    finally:
        await loop.close()


# =============================================================================
# Commands
# =============================================================================

def cmd_seed(args):
    """Create the initial prompt version if none exists."""
    async def action(loop: AdaptiveLoop):
        if await loop.versions.list_versions():
            print_warning("Prompt versions already exist, nothing to seed")
            return
        await loop.versions.create_version(
            DEFAULT_VERSION,
            DEFAULT_SYSTEM_PROMPT,
            traffic_percentage=100.0,
            is_active=True,
            notes="Initial prompt",
        )
        print_success(f"Seeded {DEFAULT_VERSION} with 100% traffic")

    asyncio.run(_with_loop(args, action))


def cmd_report(args):
    """Report an error and print the resolved fix."""
    async def action(loop: AdaptiveLoop):
        with spinner("Resolving error..."):
            result = await loop.report_error(args.error_text, identifier=args.identifier)

        print_header("Known Fix" if result.is_known else "Learned Fix")
        print_key_value_table({
            "Category": result.category,
            "Confidence": f"{result.confidence:.0%}",
            "Pattern": result.pattern_id,
            "Seen": f"{result.times_encountered}x",
            "Fix type": result.fix_type,
        })
        console.print()
        console.print(f"[al.key]Diagnosis:[/] {result.diagnosis}")
        console.print(f"[al.key]Root cause:[/] {result.root_cause}")
        steps = result.solution.get("steps") or []
        if steps:
            console.print()
            print_list([str(s) for s in steps], numbered=True)
        if args.json:
            print_json_data(result.solution, title="Solution")

    asyncio.run(_with_loop(args, action))


def cmd_patterns(args):
    """List learned error patterns."""
    async def action(loop: AdaptiveLoop):
        patterns = await loop.patterns.list_patterns(category=args.category, limit=args.limit)
        counts = await loop.patterns.category_counts()

        print_header("Learned Error Patterns")
        if not patterns:
            print_muted("No patterns learned yet")
            return

        table = create_table(columns=["ID", "Category", "Signature", "Seen", "Conf", "Fixed", "Failed"])
        for p in patterns:
            table.add_row(
                f"[al.number]{p.id}[/]",
                p.category,
                p.signature[:60],
                f"[al.number]{p.times_encountered}[/]",
                f"{p.confidence_score:.0%}",
                f"[al.ok]{p.success_count}[/]",
                f"[al.err]{p.failure_count}[/]" if p.failure_count else f"[al.muted]0[/]",
            )
        print_table(table)
        console.print()
        print_key_value_table(counts, title="Patterns per Category")

    asyncio.run(_with_loop(args, action))


def cmd_versions(args):
    """List prompt versions and their traffic."""
    async def action(loop: AdaptiveLoop):
        versions = await loop.versions.list_versions()

        print_header("Prompt Versions")
        if not versions:
            print_muted("No prompt versions. Run 'adaptloop seed' first.")
            return

        table = create_table(columns=["Version", "Parent", "Active", "Traffic", "Created By", "Improvements"])
        for v in versions:
            table.add_row(
                f"[al.accent]{v.version}[/]",
                v.parent_version or "-",
                "[al.ok]yes[/]" if v.is_active else "[al.muted]no[/]",
                f"[al.number]{v.traffic_percentage:g}%[/]",
                v.created_by,
                str(len(v.improvements_made)),
            )
        print_table(table)

    asyncio.run(_with_loop(args, action))


def cmd_traffic(args):
    """Replace the traffic split."""
    async def action(loop: AdaptiveLoop):
        allocation = parse_allocation(args.allocation)
        versions = await loop.set_traffic(allocation)
        for v in versions:
            print_success(f"{v.version}: {v.traffic_percentage:g}%")

    asyncio.run(_with_loop(args, action))


def cmd_stats(args):
    """Show per-version outcome stats over a window."""
    async def action(loop: AdaptiveLoop):
        since = utcnow() - timedelta(days=args.days)
        stats = await loop.outcomes.version_stats(since)

        print_header(f"Generation Outcomes (last {args.days} days)")
        if not stats:
            print_muted("No outcomes recorded in this window")
            return

        table = create_table(columns=["Version", "Total", "Success", "Rate"])
        for s in stats:
            rate_style = "al.ok" if s.success_rate >= loop.config.healthy_success_rate else "al.warn"
            table.add_row(
                s.prompt_version,
                f"[al.number]{s.total}[/]",
                f"[al.number]{s.successes}[/]",
                f"[{rate_style}]{s.success_rate:.1%}[/]",
            )
        print_table(table)

    asyncio.run(_with_loop(args, action))


def cmd_improve(args):
    """Run one pass of the scheduled improvement loop."""
    async def action(loop: AdaptiveLoop):
        with spinner("Analyzing recent outcomes..."):
            result = await loop.run_scheduled_improvement()

        if result.status == ImprovementStatus.CREATED:
            print_success(result.message)
            print_list(result.improvements)
            print_info("Promote it with: adaptloop traffic VERSION=PERCENT ...")
        else:
            print_info(f"{result.status.value}: {result.message}")
        print_key_value_table({
            k: v for k, v in result.to_dict().items()
            if k in ("sample_size", "success_rate", "failure_count", "parent_version", "new_version")
        })

    asyncio.run(_with_loop(args, action))


def cmd_notifications(args):
    """Show recent operational notifications."""
    async def action(loop: AdaptiveLoop):
        notes = await loop.notifier.recent(limit=args.limit)
        print_header("Notifications")
        if not notes:
            print_muted("No notifications")
            return
        for n in notes:
            stamp = n.created_at.strftime("%Y-%m-%d %H:%M") if n.created_at else ""
            console.print(f"[al.muted]{stamp}[/] [al.accent]{n.title}[/] {n.message}")

    asyncio.run(_with_loop(args, action))


def cmd_serve(args):
    """Run the HTTP API."""
    from adaptloop.web.main import run
    run(host=args.host, port=args.port)


def main():
    parser = argparse.ArgumentParser(
        description="AdaptLoop - error learning and prompt evolution",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
    # Create the first prompt version
    adaptloop seed

    # Report an error
    adaptloop report "TypeError: Cannot read property 'map' of undefined"

    # Split traffic between two versions
    adaptloop traffic v1.0.0=70 v1.1.0=30

    # Run the improvement loop (e.g. from cron)
    adaptloop improve

Environment Variables:
    ANTHROPIC_API_KEY           API key for the completion service
    ADAPTLOOP_MODEL             Model used for synthesis and generation
    ADAPTLOOP_DATABASE_URL      Base directory or async SQLAlchemy URL
        """
    )
    parser.add_argument("--database", "-d", help="Base directory or database URL (overrides config)")
    parser.add_argument("--verbose", "-v", action="store_true", help="Debug logging")

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    subparsers.add_parser("seed", help="Create the initial prompt version")

    report_parser = subparsers.add_parser("report", help="Report an error")
    report_parser.add_argument("error_text", help="Error message")
    report_parser.add_argument("--identifier", default="cli", help="Rate limit identifier")
    report_parser.add_argument("--json", action="store_true", help="Print the full solution")

    patterns_parser = subparsers.add_parser("patterns", help="List learned patterns")
    patterns_parser.add_argument("--category", "-c", help="Filter by category")
    patterns_parser.add_argument("--limit", "-n", type=int, default=50)

    subparsers.add_parser("versions", help="List prompt versions")

    traffic_parser = subparsers.add_parser("traffic", help="Set the traffic split")
    traffic_parser.add_argument("allocation", nargs="+", help="VERSION=PERCENT pairs summing to 100")

    stats_parser = subparsers.add_parser("stats", help="Outcome stats per version")
    stats_parser.add_argument("--days", type=int, default=7)

    subparsers.add_parser("improve", help="Run the improvement loop once")

    notes_parser = subparsers.add_parser("notifications", help="Show notifications")
    notes_parser.add_argument("--limit", "-n", type=int, default=20)

    serve_parser = subparsers.add_parser("serve", help="Run the HTTP API")
    serve_parser.add_argument("--host", default="0.0.0.0")
    serve_parser.add_argument("--port", type=int, default=8679)

    args = parser.parse_args()

    if not args.command:
        parser.print_help()
        sys.exit(1)

    if args.command != "serve":
        setup_rich_logging(logging.DEBUG if args.verbose else logging.WARNING)

    commands = {
        "seed": cmd_seed,
        "report": cmd_report,
        "patterns": cmd_patterns,
        "versions": cmd_versions,
        "traffic": cmd_traffic,
        "stats": cmd_stats,
        "improve": cmd_improve,
        "notifications": cmd_notifications,
        "serve": cmd_serve,
    }

    try:
        commands[args.command](args)
    except (AdaptLoopError, ValueError, LookupError) as e:
        print_error(str(e))
        sys.exit(1)


if __name__ == "__main__":
    main()
