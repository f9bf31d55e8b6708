"""Registry access for the harvester: the live Windows registry and an in-memory stand-in.

Paths are written the same way in both backends, as a hive label followed by
the subkey, e.g. ``HKCU\\Software\\Microsoft\\Office\\16.0\\Word\\Security``.
Supported hive labels are ``HKU``, ``HKCU`` and ``HKLM``.

Every call opens and releases its own key handle; nothing is held between
calls.
"""
from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Optional, Protocol

try:
    import winreg  # type: ignore[import-not-found]
except Exception:  # pragma: no cover - non-Windows environments
    winreg = None  # type: ignore[assignment]

LOGGER = logging.getLogger(__name__)

HIVE_LABELS = ("HKU", "HKCU", "HKLM")
VALUES_MARKER = "@values"


def split_registry_path(reg_path: str) -> tuple[str, str]:
    hive, _, subkey = reg_path.partition("\\")
    hive = hive.upper()
    if hive == "HKEY_USERS":
        hive = "HKU"
    elif hive == "HKEY_CURRENT_USER":
        hive = "HKCU"
    elif hive == "HKEY_LOCAL_MACHINE":
        hive = "HKLM"
    if hive not in HIVE_LABELS:
        raise ValueError(f"Unsupported registry hive in {reg_path!r}")
    return hive, subkey.strip("\\")


def join_registry_path(*parts: str) -> str:
    return "\\".join(part.strip("\\") for part in parts if part)


class RegistryBackend(Protocol):
    def subkey_names(self, reg_path: str) -> Optional[list[str]]:
        """Child key names, or None when the key does not exist."""

    def value_map(self, reg_path: str) -> Optional[dict[str, Any]]:
        """All values of a key, or None when the key does not exist."""

    def read_value(self, reg_path: str, name: str) -> Any:
        """A single value, or None when the key or value does not exist."""

    def set_dword(self, reg_path: str, name: str, value: int) -> None:
        """Write a DWORD into an existing key; raises OSError on failure."""

    def delete_value(self, reg_path: str, name: str) -> None:
        """Remove a value; raises FileNotFoundError if it is missing."""


# --------------------------------------------------------------------------- #
# Live registry
# --------------------------------------------------------------------------- #


class WindowsRegistry:
    """RegistryBackend over ``winreg``."""

    def __init__(self) -> None:
        if winreg is None:
            raise OSError("The Windows registry is not available on this platform.")

    @staticmethod
    def _open(reg_path: str, access: int | None = None):
        hive, subkey = split_registry_path(reg_path)
        roots = {
            "HKU": winreg.HKEY_USERS,
            "HKCU": winreg.HKEY_CURRENT_USER,
            "HKLM": winreg.HKEY_LOCAL_MACHINE,
        }
        return winreg.OpenKey(roots[hive], subkey, 0, access if access is not None else winreg.KEY_READ)

    def subkey_names(self, reg_path: str) -> Optional[list[str]]:
        try:
            with self._open(reg_path) as key:
                sub_count = winreg.QueryInfoKey(key)[0]
                return [winreg.EnumKey(key, idx) for idx in range(sub_count)]
        except OSError:
            return None

    def value_map(self, reg_path: str) -> Optional[dict[str, Any]]:
        try:
            with self._open(reg_path) as key:
                value_count = winreg.QueryInfoKey(key)[1]
                values: dict[str, Any] = {}
                for idx in range(value_count):
                    name, value, _ = winreg.EnumValue(key, idx)
                    values[name] = value
                return values
        except OSError:
            return None

    def read_value(self, reg_path: str, name: str) -> Any:
        try:
            with self._open(reg_path) as key:
                value, _ = winreg.QueryValueEx(key, name)
                return value
        except OSError:
            return None

    def set_dword(self, reg_path: str, name: str, value: int) -> None:
        with self._open(reg_path, winreg.KEY_SET_VALUE) as key:
            winreg.SetValueEx(key, name, 0, winreg.REG_DWORD, int(value))

    def delete_value(self, reg_path: str, name: str) -> None:
        with self._open(reg_path, winreg.KEY_SET_VALUE) as key:
            winreg.DeleteValue(key, name)


# --------------------------------------------------------------------------- #
# In-memory registry
# --------------------------------------------------------------------------- #


class _Key:
    def __init__(self, name: str) -> None:
        self.name = name
        self.subkeys: dict[str, _Key] = {}
        self.values: dict[str, tuple[str, Any]] = {}


class MemoryRegistry:
    """Case-insensitive in-memory registry, used for snapshot replay and tests.

    Every mutation is appended to ``writes`` as ``(operation, path, name, value)``.
    Setting ``fail_writes`` to N makes the next N mutations raise ``PermissionError``,
    which mimics a key still held open by an Office process.
    """

    def __init__(self) -> None:
        self._hives = {label: _Key(label) for label in HIVE_LABELS}
        self.writes: list[tuple[str, str, str, Any]] = []
        self.fail_writes = 0

    # Construction ----------------------------------------------------------

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "MemoryRegistry":
        registry = cls()
        for hive, tree in data.items():
            registry._load(split_registry_path(hive)[0], tree)
        return registry

    @classmethod
    def from_json(cls, path: Path) -> "MemoryRegistry":
        with Path(path).open("r", encoding="utf-8") as handle:
            return cls.from_dict(json.load(handle))

    def _load(self, prefix: str, tree: dict[str, Any]) -> None:
        for name, child in tree.items():
            if name == VALUES_MARKER:
                for value_name, value in child.items():
                    self.set_value(prefix, value_name, value)
            else:
                child_path = join_registry_path(prefix, name)
                self.create_key(child_path)
                self._load(child_path, child or {})

    def create_key(self, reg_path: str) -> None:
        hive, subkey = split_registry_path(reg_path)
        node = self._hives[hive]
        for part in filter(None, subkey.split("\\")):
            node = node.subkeys.setdefault(part.lower(), _Key(part))

    def set_value(self, reg_path: str, name: str, value: Any) -> None:
        self.create_key(reg_path)
        node = self._find(reg_path)
        node.values[name.lower()] = (name, value)  # type: ignore[union-attr]

    # RegistryBackend -------------------------------------------------------

    def _find(self, reg_path: str) -> Optional[_Key]:
        hive, subkey = split_registry_path(reg_path)
        node = self._hives[hive]
        for part in filter(None, subkey.split("\\")):
            node = node.subkeys.get(part.lower())
            if node is None:
                return None
        return node

    def subkey_names(self, reg_path: str) -> Optional[list[str]]:
        node = self._find(reg_path)
        if node is None:
            return None
        return [child.name for child in node.subkeys.values()]

    def value_map(self, reg_path: str) -> Optional[dict[str, Any]]:
        node = self._find(reg_path)
        if node is None:
            return None
        return {name: value for name, value in node.values.values()}

    def read_value(self, reg_path: str, name: str) -> Any:
        node = self._find(reg_path)
        if node is None:
            return None
        entry = node.values.get(name.lower())
        return entry[1] if entry else None

    def _check_writable(self, reg_path: str) -> _Key:
        if self.fail_writes > 0:
            self.fail_writes -= 1
            raise PermissionError(f"Access denied writing {reg_path}")
        node = self._find(reg_path)
        if node is None:
            raise FileNotFoundError(f"Registry key not found: {reg_path}")
        return node

    def set_dword(self, reg_path: str, name: str, value: int) -> None:
        node = self._check_writable(reg_path)
        node.values[name.lower()] = (name, int(value))
        self.writes.append(("set", reg_path, name, int(value)))

    def delete_value(self, reg_path: str, name: str) -> None:
        node = self._check_writable(reg_path)
        if name.lower() not in node.values:
            raise FileNotFoundError(f"Registry value not found: {reg_path}\\{name}")
        del node.values[name.lower()]
        self.writes.append(("delete", reg_path, name, None))


def open_registry(snapshot: Path | None = None) -> RegistryBackend:
    if snapshot is not None:
        LOGGER.debug("[REG] Loading registry snapshot from %s", snapshot)
        return MemoryRegistry.from_json(snapshot)
    return WindowsRegistry()
