"""Temporary, reversible relaxation of the Office ``AccessVBOM`` security gate.

Reading a document's VBA project through COM requires "Trust access to the VBA
project object model", stored per user as
``HKCU\\Software\\Microsoft\\Office\\<version>\\<app>\\Security\\AccessVBOM``.
A DWORD of 1 permits access; 0 or a missing value blocks it. The same value
under HKLM is a machine policy that wins over the user setting and is never
touched here.
"""
from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Optional

from . import common
from .registry import RegistryBackend, join_registry_path

LOGGER = logging.getLogger(__name__)

ACCESS_VBOM = "AccessVBOM"
PERMIT_VALUE = 1
DENY_VALUE = 0


class RegistryPolicyState(Enum):
    UNBLOCKED = "unblocked"
    KEY_ABSENT = "key_absent"
    BLOCKED = "blocked"
    VALUE_ABSENT = "value_absent"

    @property
    def requires_mutation(self) -> bool:
        return self in (RegistryPolicyState.BLOCKED, RegistryPolicyState.VALUE_ABSENT)


class MutationKind(Enum):
    NONE = "none"
    VALUE_SET = "value_set"
    VALUE_CREATED = "value_created"


@dataclass
class PolicyMutationRecord:
    application: str
    kind: MutationKind = MutationKind.NONE
    version: Optional[str] = None
    previous_value: Any = None
    reverted: bool = False

    @property
    def key_path(self) -> Optional[str]:
        if self.version is None:
            return None
        return security_key_path("HKCU", self.version, self.application)


def security_key_path(hive: str, version: str, application: str) -> str:
    return join_registry_path(hive, common.OFFICE_ROOT, version, application, "Security")


def _permits(value: Any) -> bool:
    return str(value) == str(PERMIT_VALUE)


def _denies(value: Any) -> bool:
    return str(value) == str(DENY_VALUE)


def evaluate(
    registry: RegistryBackend,
    application: str,
    design_mode: bool = False,
) -> tuple[RegistryPolicyState, PolicyMutationRecord]:
    """Check the user-scope gate for ``application`` and open it where it is closed.

    Versions are scanned in ascending order and the scan stops at the first
    version that needed a change; later versions are left as they are.
    """
    record = PolicyMutationRecord(application)
    key_found = False

    for version in common.office_versions():
        key_path = security_key_path("HKCU", version, application)
        values = registry.value_map(key_path)
        if values is None:
            continue
        key_found = True
        current = _lookup(values, ACCESS_VBOM)

        if current is _MISSING:
            LOGGER.warning("Creating %s\\%s and setting the value to %s", key_path, ACCESS_VBOM, PERMIT_VALUE)
            registry.set_dword(key_path, ACCESS_VBOM, PERMIT_VALUE)
            record.kind = MutationKind.VALUE_CREATED
            record.version = version
            return RegistryPolicyState.VALUE_ABSENT, record

        if not _permits(current):
            LOGGER.warning("Setting %s\\%s to %s", key_path, ACCESS_VBOM, PERMIT_VALUE)
            registry.set_dword(key_path, ACCESS_VBOM, PERMIT_VALUE)
            record.kind = MutationKind.VALUE_SET
            record.version = version
            record.previous_value = current
            return RegistryPolicyState.BLOCKED, record

        common.design_log(common.DESIGN_LOG_POLICY, design_mode, logging.DEBUG, "[POLICY] %s already permits access", key_path)

    state = RegistryPolicyState.UNBLOCKED if key_found else RegistryPolicyState.KEY_ABSENT
    common.design_log(common.DESIGN_LOG_POLICY, design_mode, logging.INFO, "[POLICY] %s: %s", application, state.value)
    return state, record


def evaluate_machine_override(registry: RegistryBackend, application: str, design_mode: bool = False) -> bool:
    """True when HKLM explicitly denies VBA project access for ``application``."""
    for version in common.office_versions():
        key_path = security_key_path("HKLM", version, application)
        values = registry.value_map(key_path)
        if values is None:
            continue
        current = _lookup(values, ACCESS_VBOM)
        if current is _MISSING:
            continue
        if _permits(current):
            common.design_log(common.DESIGN_LOG_POLICY, design_mode, logging.DEBUG, "[POLICY] %s permits access", key_path)
            return False
        if _denies(current):
            common.design_log(common.DESIGN_LOG_POLICY, design_mode, logging.DEBUG, "[POLICY] %s denies access", key_path)
            return True
    return False


def revert(
    registry: RegistryBackend,
    record: PolicyMutationRecord,
    delay: float = common.DEFAULT_REVERT_DELAY_SECONDS,
    retries: int = common.DEFAULT_REVERT_RETRIES,
    sleep: Callable[[float], None] = time.sleep,
) -> None:
    """Undo whatever ``evaluate`` changed for one application. Never raises."""
    if record.kind is MutationKind.NONE or record.reverted:
        return
    record.reverted = True
    key_path = record.key_path

    # The Office COM server can keep the key open for a moment after quitting.
    sleep(delay)

    values = registry.value_map(key_path)
    current = _MISSING if values is None else _lookup(values, ACCESS_VBOM)
    if current is _MISSING:
        LOGGER.error(
            "Something went wrong. %s\\%s was changed earlier but it was missing when trying to restore it.",
            key_path,
            ACCESS_VBOM,
        )
        return
    if not _permits(current):
        # Someone else changed it during the run; their value stays.
        LOGGER.error(
            "Something went wrong. %s\\%s was changed to %r during the run; leaving it as it is.",
            key_path,
            ACCESS_VBOM,
            current,
        )
        return

    if record.kind is MutationKind.VALUE_SET:
        restored = _coerce_dword(record.previous_value)
        LOGGER.warning("Setting %s\\%s back to %s", key_path, ACCESS_VBOM, restored)
        action = lambda: registry.set_dword(key_path, ACCESS_VBOM, restored)
    else:
        LOGGER.warning("Deleting %s\\%s", key_path, ACCESS_VBOM)
        action = lambda: registry.delete_value(key_path, ACCESS_VBOM)

    for attempt in range(retries + 1):
        try:
            action()
            return
        except FileNotFoundError as exc:
            LOGGER.error("[POLICY] %s\\%s disappeared while restoring it (%s)", key_path, ACCESS_VBOM, exc)
            return
        except OSError as exc:
            if attempt >= retries:
                LOGGER.error("[POLICY] Could not restore %s\\%s (%s). Restore it manually.", key_path, ACCESS_VBOM, exc)
                return
            sleep(delay * (2 ** attempt))


_MISSING = object()


def _lookup(values: dict[str, Any], name: str) -> Any:
    for value_name, value in values.items():
        if value_name.lower() == name.lower():
            return value
    return _MISSING


def _coerce_dword(value: Any) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return DENY_VALUE
