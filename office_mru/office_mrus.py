"""Office most recently used file list, optionally with the VBA macros of each document."""
from __future__ import annotations

import argparse
import functools
import logging
import sys
from pathlib import Path
from typing import Iterable, Sequence

from . import common, office_automation
from .harvester import MruHarvest
from .identity import make_identity_resolver
from .mru_decoder import RecentFileRecord
from .registry import open_registry

# Pins design mode for this entry point. None reads IsDesignModeEnabled.
MANUAL_IS_DESIGN_MODE: bool | None = None

LEGACY_FLAGS = {"/checkForMacros": "--check-for-macros"}


def parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Office most recently used file list (last 7 days)")
    parser.add_argument(
        "last_days",
        nargs="?",
        help="Only list files opened in the last N days (default 7, or 30 with --full).",
    )
    parser.add_argument(
        "--check-for-macros",
        action="store_true",
        help="Read the VBA modules of recent Word/Excel documents, temporarily allowing VBA project access.",
    )
    parser.add_argument(
        "--full",
        action="store_true",
        help="Do not filter results; widens the default window to 30 days.",
    )
    parser.add_argument(
        "--snapshot",
        type=Path,
        metavar="FILE",
        help="Read a JSON registry snapshot instead of the live registry.",
    )
    raw = sys.argv[1:] if argv is None else argv
    return parser.parse_args([LEGACY_FLAGS.get(arg, arg) for arg in raw])


def main(argv: Sequence[str] | None = None) -> int:
    args = parse_args(argv)
    design_mode = _resolve_design_mode()
    common.refresh_design_log_flags(design_mode)
    common.configure_logging(design_mode)

    try:
        config = common.build_config(args.last_days, args.check_for_macros, filter_results=not args.full)
    except common.ConfigurationError as exc:
        common.exit_with_error(f"[ERROR] {exc}", design_mode)
        return 1

    try:
        registry = open_registry(args.snapshot)
    except OSError as exc:
        common.exit_with_error(f"[ERROR] Could not open the registry ({exc})", design_mode)
        return 1

    macro_extractor = functools.partial(office_automation.extract_macros_isolated, timeout=config.macro_timeout)
    if config.check_for_macros and not common.is_windows():
        logging.getLogger(__name__).warning("[MACROS] Office automation is only available on Windows; macros will not be read.")
        macro_extractor = None

    print(f"Enumerating Office most recently used files for the last {config.window_days} days")
    with MruHarvest(
        registry,
        config,
        macro_extractor=macro_extractor,
        identity_resolver=make_identity_resolver(registry),
        design_mode=design_mode,
    ) as run:
        records = run.records()

    for line in format_records(records):
        print(line)
    return 0


def format_records(records: Iterable[RecentFileRecord]) -> list[str]:
    lines = [
        "",
        "  {0:<8}  {1:<23}  {2:<12}  {3}".format("App", "User", "LastAccess", "FileName"),
        "  {0:<8}  {1:<23}  {2:<12}  {3}".format("---", "----", "----------", "--------"),
    ]
    for record in records:
        lines.append(
            "  {0:<8}  {1:<23}  {2:<12}  {3}".format(
                record.application,
                record.owning_user or "",
                record.last_access.strftime("%Y-%m-%d"),
                record.target,
            )
        )
        for module in record.macro_modules or ():
            if not module.code.strip():
                continue
            lines.append(f"    Macro Module: {module.name}")
            lines.append("    Macro Code:")
            lines.extend(f"        {code_line}" for code_line in module.code.splitlines())
            lines.append("  -----------------------")
            lines.append("")
    return lines


def _resolve_design_mode() -> bool:
    if MANUAL_IS_DESIGN_MODE is not None:
        return bool(MANUAL_IS_DESIGN_MODE)
    return bool(common.DEFAULT_DESIGN_MODE)


if __name__ == "__main__":
    raise SystemExit(main())
