"""Walks HKEY_USERS for Office "File MRU" lists across users, versions and apps."""
from __future__ import annotations

import dataclasses
import logging
import re
from typing import Callable, Iterator, Optional

from . import common
from .mru_decoder import RecentFileRecord, decode
from .registry import RegistryBackend, join_registry_path

LOGGER = logging.getLogger(__name__)

USERS_HIVE = "HKU"
USER_SID_PREFIX = "S-1"
CLASSES_SUFFIX = "_Classes"
_VERSION_PATTERN = re.compile(r"^(\d+\.?\d*|\.\d+)$")

IdentityResolver = Callable[[str], str]


def iter_user_sids(registry: RegistryBackend) -> Iterator[str]:
    for sid in registry.subkey_names(USERS_HIVE) or []:
        if not sid.startswith(USER_SID_PREFIX) or sid.endswith(CLASSES_SUFFIX):
            continue
        yield sid


def resolve_user(sid: str, resolver: Optional[IdentityResolver], design_mode: bool = False) -> str:
    if resolver is None:
        return sid
    try:
        name = resolver(sid)
    except Exception as exc:  # noqa: BLE001
        common.design_log(common.DESIGN_LOG_IDENTITY, design_mode, logging.DEBUG, "[USER] Could not resolve %s (%s)", sid, exc)
        return sid
    return name or sid


def is_office_version(name: str) -> bool:
    return bool(_VERSION_PATTERN.match(name))


def office_version_keys(registry: RegistryBackend, sid: str) -> list[str]:
    office_root = join_registry_path(USERS_HIVE, sid, common.OFFICE_ROOT)
    return [name for name in registry.subkey_names(office_root) or [] if is_office_version(name)]


def iter_mru_values(registry: RegistryBackend, mru_path: str, design_mode: bool = False) -> Iterator[RecentFileRecord]:
    values = registry.value_map(mru_path)
    if not values:
        return
    for name, value in values.items():
        if not isinstance(value, str):
            continue
        record = decode(value)
        if record is None:
            if not name.startswith("Item Metadata"):
                LOGGER.warning("[MRU] Skipping malformed MRU value %s\\%s: %r", mru_path, name, value)
            continue
        if record.decode_problem:
            LOGGER.warning("[MRU] %s (%s\\%s)", record.decode_problem, mru_path, name)
        common.design_log(common.DESIGN_LOG_MRU, design_mode, logging.DEBUG, "[MRU] %s -> %s", name, record.target)
        yield record


def iter_version_records(
    registry: RegistryBackend,
    version_path: str,
    design_mode: bool = False,
) -> Iterator[RecentFileRecord]:
    applications = registry.subkey_names(version_path)
    if applications is None:
        return

    for app in applications:
        app_path = join_registry_path(version_path, app)

        # Legacy list: <version>\<app>\File MRU
        yield from iter_mru_values(registry, join_registry_path(app_path, "File MRU"), design_mode)

        # Per logon session: <version>\<app>\User MRU\<ADAL_...|LiveId_...>\File MRU
        sessions = registry.subkey_names(join_registry_path(app_path, "User MRU"))
        if sessions is None:
            continue
        for session in sessions:
            session_mru = join_registry_path(app_path, "User MRU", session, "File MRU")
            for record in iter_mru_values(registry, session_mru, design_mode):
                yield dataclasses.replace(record, application=app)


def iter_recent_files(
    registry: RegistryBackend,
    identity_resolver: Optional[IdentityResolver] = None,
    design_mode: bool = False,
) -> Iterator[RecentFileRecord]:
    """Lazily yield every decodable MRU record for every user profile loaded in HKEY_USERS."""
    for sid in iter_user_sids(registry):
        user_name = resolve_user(sid, identity_resolver, design_mode)
        versions = office_version_keys(registry, sid)
        common.design_log(common.DESIGN_LOG_MRU, design_mode, logging.INFO, "[MRU] %s (%s): versions=%s", user_name, sid, versions)
        for version in versions:
            version_path = join_registry_path(USERS_HIVE, sid, common.OFFICE_ROOT, version)
            for record in iter_version_records(registry, version_path, design_mode):
                yield dataclasses.replace(record, owning_user=user_name, office_version=version)
