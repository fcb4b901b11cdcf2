# safe_audit/cli.py
# Defines the command-line interface using argparse.

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from dataclasses import asdict, is_dataclass
from datetime import datetime
from pathlib import Path
from typing import IO, Any, Sequence

from safe_audit import __version__
from safe_audit.api import check_url, run_audit
from safe_audit.models import Rejection
from safe_audit.ui import (
    render_audit_header,
    render_issues_section,
    render_rejection,
    render_scores,
    render_tech_section,
    render_url_check,
)

log = logging.getLogger(__name__)


def _configure_logging(verbose: bool) -> None:
    level = logging.INFO if verbose else logging.WARNING
    logging.basicConfig(level=level, format="%(levelname)s: %(message)s")


def _json_default(o: Any) -> Any:
    # Minimal, safe encoder for dataclasses and datetimes.
    if isinstance(o, datetime):
        return o.isoformat()
    if is_dataclass(o):
        return asdict(o)  # type: ignore[arg-type]
    return str(o)


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Audit a website for SEO, performance and Next.js practices behind an SSRF-safe fetcher.",
        prog="safe_audit",
    )
    parser.add_argument(
        "--version", action="version", version=f"%(prog)s {__version__}"
    )
    parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Enable verbose logging output to stderr.",
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    # --- audit ---
    audit_parser = subparsers.add_parser(
        "audit", help="Fetch a URL, analyze it and print the scored report."
    )
    audit_parser.add_argument("url", help="The URL or bare domain to audit.")
    audit_parser.add_argument(
        "--quick",
        action="store_true",
        help="Skip the PageSpeed Insights performance audit.",
    )
    audit_parser.add_argument(
        "--deep-tech",
        action="store_true",
        help="Also render the page in a headless browser for technology detection.",
    )
    audit_parser.add_argument(
        "--json",
        dest="json_output",
        metavar="FILEPATH",
        help="Also write the full report as JSON to this path.",
    )

    # --- check-url ---
    check_parser = subparsers.add_parser(
        "check-url", help="Validate a URL against the safety rules without fetching it."
    )
    check_parser.add_argument("url", help="The URL or bare domain to check.")
    return parser


async def async_main(
    argv: Sequence[str] | None = None, stdout: IO[str] | None = None
) -> int:
    """Async entry point for the command-line interface."""
    stdout = stdout or sys.stdout

    args = _build_parser().parse_args(argv)
    _configure_logging(args.verbose)

    if args.command == "check-url":
        checked = await check_url(args.url)
        if isinstance(checked, Rejection):
            render_rejection(checked, file=stdout)
            return 1
        render_url_check(checked, file=stdout)
        return 0

    # args.command == "audit"
    render_audit_header(args.url, args.quick, file=stdout)
    outcome = await run_audit(args.url, quick=args.quick, deep_tech=args.deep_tech)
    if isinstance(outcome, Rejection):
        render_rejection(outcome, file=stdout)
        return 1

    render_scores(outcome, file=stdout)
    render_issues_section(outcome.issues, file=stdout)
    render_tech_section(outcome.metadata.tech.tags, file=stdout)

    if args.json_output:
        out_path = Path(args.json_output)
        out_path.parent.mkdir(parents=True, exist_ok=True)
        with out_path.open("w", encoding="utf-8") as f:
            json.dump(outcome, f, default=_json_default, indent=2)
        print(f"\nFull report written to {args.json_output}", file=stdout)
    return 0


def main(argv: Sequence[str] | None = None) -> int:
    """Synchronous wrapper for the CLI entry point."""
    return asyncio.run(async_main(argv))


if __name__ == "__main__":
    sys.exit(main())
