"""Decoding of Office "File MRU" registry values.

A value looks like ``[F00000000][T01D5E2A1B2C3D4E0][O00000000]*C:\\path\\file.docx``:
a run of bracketed tokens, one of them ``T`` + a 64-bit hex Windows file-time,
then ``*`` and the document path.
"""
from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

from .common import GENERIC_APPLICATION

MRU_PATTERN = re.compile(r"\[[a-zA-Z0-9]+?\]\[T([a-zA-Z0-9]+?)\](\[[a-zA-Z0-9]+?\])?\*(.+)")
MRU_FLAGS_TOKEN = "[F00000000]"
MRU_OPTIONS_TOKEN = "[O00000000]"

FILETIME_EPOCH = datetime(1601, 1, 1, tzinfo=timezone.utc)
_MAX_FILETIME = 2**63


@dataclass(frozen=True)
class MacroModule:
    name: str
    code: str


@dataclass(frozen=True)
class RecentFileRecord:
    application: str
    target: str
    last_access: datetime
    owning_user: Optional[str] = None
    macro_modules: Optional[tuple[MacroModule, ...]] = None
    decode_problem: Optional[str] = None
    office_version: Optional[str] = None


def filetime_to_datetime(ticks: int) -> datetime:
    """Convert 100-ns ticks since 1601-01-01 UTC; sub-microsecond precision is dropped."""
    if ticks < 0 or ticks >= _MAX_FILETIME:
        raise OverflowError(f"file-time out of range: {ticks}")
    return FILETIME_EPOCH + timedelta(microseconds=ticks // 10)


def datetime_to_filetime(moment: datetime) -> int:
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return ((moment - FILETIME_EPOCH) // timedelta(microseconds=1)) * 10


def decode(raw: str) -> Optional[RecentFileRecord]:
    """Parse one MRU value; None when the value is not in MRU form.

    An unreadable timestamp still yields a record, stamped with the file-time
    epoch and carrying ``decode_problem``.
    """
    if not isinstance(raw, str):
        return None
    match = MRU_PATTERN.search(raw)
    if match is None:
        return None

    date_hex = match.group(1)
    target = _extract_mru_path(match.group(3))
    if not target:
        return None

    problem = None
    try:
        last_access = filetime_to_datetime(int(date_hex, 16))
    except (ValueError, OverflowError):
        last_access = FILETIME_EPOCH
        problem = f"Could not parse MRU timestamp. Parsed timestamp: {date_hex} MRU value: {raw}"

    return RecentFileRecord(
        application=GENERIC_APPLICATION,
        target=target,
        last_access=last_access,
        decode_problem=problem,
    )


def encode_mru_value(last_access: datetime, target: str) -> str:
    return f"{MRU_FLAGS_TOKEN}[T{datetime_to_filetime(last_access):016X}]{MRU_OPTIONS_TOKEN}*{target}"


def _extract_mru_path(raw_value: str) -> Optional[str]:
    if not raw_value:
        return None
    if "*" in raw_value:
        candidate = raw_value.split("*")[-1]
        return candidate.strip() or None
    return raw_value.strip() or None
