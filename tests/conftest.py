from __future__ import annotations

from datetime import datetime, timezone

import pytest

from office_mru.registry import MemoryRegistry, join_registry_path

SID = "S-1-5-21-1004336348-1177238915-682003330-1001"
NOW = datetime(2026, 10, 19, 12, 0, 0, tzinfo=timezone.utc)


def office_path(sid: str, version: str, *parts: str) -> str:
    return join_registry_path("HKU", sid, r"Software\Microsoft\Office", version, *parts)


def security_path(hive: str, version: str, app: str) -> str:
    return join_registry_path(hive, r"Software\Microsoft\Office", version, app, "Security")


@pytest.fixture
def registry() -> MemoryRegistry:
    return MemoryRegistry()
