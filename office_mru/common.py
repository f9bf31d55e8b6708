"""Shared settings, logging and helpers for the Office MRU harvester."""
from __future__ import annotations

import logging
import os
import re
import sys
from dataclasses import dataclass
from typing import Optional

LOGGER = logging.getLogger(__name__)

# --------------------------------------------------------------------------- #
# Per-category tracing switches
# --------------------------------------------------------------------------- #
# True or False pins a category on or off for every run. None defers to the
# DesignLog* environment variable, then to the effective design mode.
MANUAL_DESIGN_LOG_MRU: bool | None = None
MANUAL_DESIGN_LOG_POLICY: bool | None = None
MANUAL_DESIGN_LOG_MACROS: bool | None = None
MANUAL_DESIGN_LOG_IDENTITY: bool | None = None


# --------------------------------------------------------------------------- #
# Base constants
# --------------------------------------------------------------------------- #

DEFAULT_LAST_DAYS = 7
FULL_LAST_DAYS = 30

OFFICE_ROOT = r"Software\Microsoft\Office"
FIRST_OFFICE_VERSION = 7
LAST_OFFICE_VERSION = 16
CONTROLLED_APPLICATIONS = ("Word", "Excel")
GENERIC_APPLICATION = "Office"

WORD_MACRO_EXTENSIONS = {".doc", ".dot", ".dotx", ".dotm", ".docm", ".docb"}
EXCEL_MACRO_EXTENSIONS = {".xls", ".xlt", ".xltx", ".xltm", ".xlsm", ".xlsb"}

DEFAULT_DESIGN_MODE = os.environ.get("IsDesignModeEnabled", "false").lower() == "true"
DEFAULT_LAST_DAYS_OVERRIDE = os.environ.get("OFFICE_MRU_LAST_DAYS") or None
DEFAULT_REVERT_DELAY_SECONDS = 0.5
DEFAULT_REVERT_RETRIES = 3
DEFAULT_MACRO_TIMEOUT_SECONDS = 120.0
REVERT_DELAY_OVERRIDE = os.environ.get("VBOM_REVERT_DELAY_SECONDS") or None
REVERT_RETRIES_OVERRIDE = os.environ.get("VBOM_REVERT_RETRIES") or None
MACRO_TIMEOUT_OVERRIDE = os.environ.get("OFFICE_MRU_MACRO_TIMEOUT_SECONDS") or None


def office_versions() -> list[str]:
    return [f"{number}.0" for number in range(FIRST_OFFICE_VERSION, LAST_OFFICE_VERSION + 1)]


def _design_flag(env_var: str, manual_override: bool | None, fallback: bool) -> bool:
    if manual_override is not None:
        return bool(manual_override)
    raw = os.environ.get(env_var)
    if raw is None:
        return fallback
    return raw.lower() == "true"


DESIGN_LOG_MRU = _design_flag("DesignLogMRU", MANUAL_DESIGN_LOG_MRU, DEFAULT_DESIGN_MODE)
DESIGN_LOG_POLICY = _design_flag("DesignLogPolicy", MANUAL_DESIGN_LOG_POLICY, DEFAULT_DESIGN_MODE)
DESIGN_LOG_MACROS = _design_flag("DesignLogMacros", MANUAL_DESIGN_LOG_MACROS, DEFAULT_DESIGN_MODE)
DESIGN_LOG_IDENTITY = _design_flag("DesignLogIdentity", MANUAL_DESIGN_LOG_IDENTITY, DEFAULT_DESIGN_MODE)


def refresh_design_log_flags(effective_design_mode: bool) -> None:
    """Recompute the design flags for this run from the effective mode."""
    global DESIGN_LOG_MRU, DESIGN_LOG_POLICY, DESIGN_LOG_MACROS, DESIGN_LOG_IDENTITY

    DESIGN_LOG_MRU = _design_flag("DesignLogMRU", MANUAL_DESIGN_LOG_MRU, effective_design_mode)
    DESIGN_LOG_POLICY = _design_flag("DesignLogPolicy", MANUAL_DESIGN_LOG_POLICY, effective_design_mode)
    DESIGN_LOG_MACROS = _design_flag("DesignLogMacros", MANUAL_DESIGN_LOG_MACROS, effective_design_mode)
    DESIGN_LOG_IDENTITY = _design_flag("DesignLogIdentity", MANUAL_DESIGN_LOG_IDENTITY, effective_design_mode)


def design_log(enabled: bool, design_mode: bool, level: int, message: str, *args: object) -> None:
    if design_mode and enabled:
        LOGGER.log(level, message, *args)


# --------------------------------------------------------------------------- #
# Run configuration
# --------------------------------------------------------------------------- #


class ConfigurationError(ValueError):
    """Invalid command-line or environment configuration; raised before any registry access."""


@dataclass(frozen=True)
class HarvestConfig:
    window_days: int = DEFAULT_LAST_DAYS
    check_for_macros: bool = False
    filter_results: bool = True
    revert_delay: float = DEFAULT_REVERT_DELAY_SECONDS
    revert_retries: int = DEFAULT_REVERT_RETRIES
    macro_timeout: float = DEFAULT_MACRO_TIMEOUT_SECONDS


def build_config(
    last_days: str | int | None = None,
    check_for_macros: bool = False,
    filter_results: bool = True,
) -> HarvestConfig:
    raw = last_days if last_days is not None else DEFAULT_LAST_DAYS_OVERRIDE
    if raw is None:
        window_days = DEFAULT_LAST_DAYS if filter_results else FULL_LAST_DAYS
    else:
        window_days = _parse_window_days(raw)
    return HarvestConfig(
        window_days=window_days,
        check_for_macros=bool(check_for_macros),
        filter_results=bool(filter_results),
        revert_delay=_parse_seconds("VBOM_REVERT_DELAY_SECONDS", REVERT_DELAY_OVERRIDE, DEFAULT_REVERT_DELAY_SECONDS),
        revert_retries=_parse_count("VBOM_REVERT_RETRIES", REVERT_RETRIES_OVERRIDE, DEFAULT_REVERT_RETRIES),
        macro_timeout=_parse_seconds("OFFICE_MRU_MACRO_TIMEOUT_SECONDS", MACRO_TIMEOUT_OVERRIDE, DEFAULT_MACRO_TIMEOUT_SECONDS),
    )


_INTEGER_PATTERN = re.compile(r"^[+-]?\d+$")


def _parse_seconds(name: str, raw: str | None, default: float) -> float:
    if raw is None:
        return default
    try:
        value = float(raw)
    except ValueError:
        raise ConfigurationError(f"{name} is not a number: {raw!r}") from None
    if not value >= 0:
        raise ConfigurationError(f"{name} must be zero or positive, got {raw!r}")
    return value


def _parse_count(name: str, raw: str | None, default: int) -> int:
    if raw is None:
        return default
    text = raw.strip()
    if not _INTEGER_PATTERN.match(text):
        raise ConfigurationError(f"{name} is not an integer: {raw!r}")
    value = int(text)
    if value < 0:
        raise ConfigurationError(f"{name} must be zero or positive, got {value}")
    return value


def _parse_window_days(raw: str | int) -> int:
    if isinstance(raw, bool):
        raise ConfigurationError(f"lastDays is not an integer: {raw!r}")
    if isinstance(raw, int):
        value = raw
    else:
        text = str(raw).strip()
        if not _INTEGER_PATTERN.match(text):
            raise ConfigurationError(f"lastDays is not an integer: {raw!r}")
        value = int(text)
    if value < 0:
        raise ConfigurationError(f"lastDays must be zero or positive, got {value}")
    return value


# --------------------------------------------------------------------------- #
# Platform helpers
# --------------------------------------------------------------------------- #


def is_windows() -> bool:
    return os.name == "nt"


def configure_logging(design_mode: bool) -> None:
    level = logging.DEBUG if design_mode else logging.INFO
    logging.basicConfig(level=level, format="%(message)s")


def exit_with_error(message: str, design_mode: bool = DEFAULT_DESIGN_MODE, code: Optional[int] = 1) -> None:
    if design_mode:
        LOGGER.error(message)
    else:
        print(message, file=sys.stderr)
    sys.exit(code)
