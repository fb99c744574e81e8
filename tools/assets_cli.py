"""Utility CLI for inspecting and copying stored mailing assets."""

from __future__ import annotations

import argparse
import asyncio
import sys
from pathlib import Path
from typing import List, Optional

PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

import json_utils as json  # noqa: E402
from config import config  # noqa: E402
from services.asset_store import AssetStore, CopyReport, build_asset_store  # noqa: E402
from services.errors import MailingServiceError  # noqa: E402


class CLIError(Exception):
    """Raised when CLI validation fails."""


def _resolve_store() -> AssetStore:
    try:
        return build_asset_store(config.STORAGE)
    except ValueError as exc:
        raise CLIError(str(exc)) from exc


def _print_listing(names: List[str]) -> None:
    if not names:
        print("(no assets found)")
        return
    header = f"{'#':>5}  STORED NAME"
    print(header)
    print("-" * max(len(header), max(len(name) for name in names) + 7))
    for index, name in enumerate(names, start=1):
        print(f"{index:>5}  {name}")


def _print_report(report: CopyReport) -> None:
    print(f"Copied {len(report.copied)} asset(s) from '{report.src_prefix}' to '{report.dst_prefix}'")
    for source, destination in report.copied:
        print(f"  {source} -> {destination}")
    if report.failed:
        print("\nFailures:")
        for key, reason in sorted(report.failed.items()):
            print(f" - {key}: {reason}")


def _command_list(args: argparse.Namespace) -> int:
    store = _resolve_store()
    try:
        names = asyncio.run(store.list(args.prefix))
    except MailingServiceError as exc:
        raise CLIError(str(exc)) from exc

    if args.limit is not None:
        names = names[: args.limit]

    if args.as_json:
        print(json.dumps(names, indent=2))
    else:
        _print_listing(names)
    return 0


def _command_copy(args: argparse.Namespace) -> int:
    if args.src == args.dst:
        raise CLIError("--src and --dst must differ")
    store = _resolve_store()
    try:
        report = asyncio.run(store.copy(args.src, args.dst))
    except MailingServiceError as exc:
        raise CLIError(str(exc)) from exc

    if args.as_json:
        print(json.dumps(report.to_dict(), indent=2))
    else:
        _print_report(report)
    return 0 if report.ok else 1


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Maintenance tools for Mailing Workshop assets")
    subparsers = parser.add_subparsers(dest="command", required=True)

    list_parser = subparsers.add_parser("list", help="List stored assets whose name starts with a prefix")
    list_parser.add_argument("--prefix", default="", help="Stored name prefix, e.g. '<mailing id>-'")
    list_parser.add_argument("--limit", type=int, default=None, help="Number of entries to display")
    list_parser.add_argument("--json", dest="as_json", action="store_true", help="Output as JSON")
    list_parser.set_defaults(func=_command_list)

    copy_parser = subparsers.add_parser("copy", help="Duplicate every asset of one prefix under another")
    copy_parser.add_argument("--src", required=True, help="Source prefix")
    copy_parser.add_argument("--dst", required=True, help="Destination prefix")
    copy_parser.add_argument("--json", dest="as_json", action="store_true", help="Output the copy report as JSON")
    copy_parser.set_defaults(func=_command_copy)

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(argv)
    try:
        return args.func(args)
    except CLIError as exc:
        parser.error(str(exc))
        return 2


if __name__ == "__main__":  # pragma: no cover - manual invocation only
    raise SystemExit(main())
