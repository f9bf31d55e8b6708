"""SID to account-name resolution."""
from __future__ import annotations

import logging
from pathlib import PureWindowsPath
from typing import Callable, Optional

try:
    import pywintypes  # type: ignore[import-not-found]
    import win32security  # type: ignore[import-not-found]
except Exception:  # pragma: no cover - non-Windows environments
    pywintypes = None  # type: ignore[assignment]
    win32security = None  # type: ignore[assignment]

from .registry import RegistryBackend, join_registry_path

LOGGER = logging.getLogger(__name__)

PROFILE_LIST = r"HKLM\SOFTWARE\Microsoft\Windows NT\CurrentVersion\ProfileList"


def lookup_account_sid(sid: str) -> Optional[str]:
    if win32security is None:
        return None
    try:
        name, domain, _ = win32security.LookupAccountSid(None, win32security.ConvertStringSidToSid(sid))
    except pywintypes.error:
        return None
    return f"{domain}\\{name}" if domain else name


def profile_folder_name(registry: RegistryBackend, sid: str) -> Optional[str]:
    image_path = registry.read_value(join_registry_path(PROFILE_LIST, sid), "ProfileImagePath")
    if not isinstance(image_path, str) or not image_path.strip():
        return None
    return PureWindowsPath(image_path.strip()).name or None


def make_identity_resolver(registry: RegistryBackend) -> Callable[[str], str]:
    """Account lookup first, then the profile folder name; raises LookupError when both fail."""

    def resolve_account_name(sid: str) -> str:
        name = lookup_account_sid(sid) or profile_folder_name(registry, sid)
        if not name:
            raise LookupError(f"Could not translate SID {sid}")
        return name

    return resolve_account_name
