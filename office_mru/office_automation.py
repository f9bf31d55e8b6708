"""VBA module extraction through Word/Excel COM automation (pywin32)."""
from __future__ import annotations

import json
import logging
import subprocess
import sys

try:
    import pythoncom  # type: ignore[import-not-found]
    import win32com.client  # type: ignore[import-not-found]
except Exception:  # pragma: no cover - non-Windows environments
    pythoncom = None  # type: ignore[assignment]
    win32com = None  # type: ignore[assignment]

from . import common
from .mru_decoder import MacroModule

LOGGER = logging.getLogger(__name__)

WD_DO_NOT_SAVE_CHANGES = 0


def extract_macros(application: str, file_name: str) -> list[MacroModule]:
    """Open ``file_name`` read-only in a hidden Word/Excel instance and read every code module.

    The document is closed and the application quit even when reading fails.
    """
    if win32com is None:
        raise OSError("Office automation requires pywin32 on Windows.")
    if application not in ("Word", "Excel"):
        raise ValueError(f"Unsupported Office application: {application}")

    pythoncom.CoInitialize()
    try:
        office = win32com.client.DispatchEx(f"{application}.Application")
        try:
            office.Visible = False
            office.DisplayAlerts = False
            if application == "Word":
                # FileName, ConfirmConversions, ReadOnly, AddToRecentFiles
                document = office.Documents.Open(file_name, False, True, False)
            else:
                # Filename, UpdateLinks, ReadOnly
                document = office.Workbooks.Open(file_name, 0, True)
            try:
                return read_project_modules(document.VBProject)
            finally:
                if application == "Word":
                    document.Close(WD_DO_NOT_SAVE_CHANGES)
                else:
                    document.Close(False)
        finally:
            office.Quit()
    finally:
        pythoncom.CoUninitialize()


def read_project_modules(project) -> list[MacroModule]:
    modules: list[MacroModule] = []
    for component in project.VBComponents:
        code = component.CodeModule
        count = code.CountOfLines
        text = code.Lines(1, count) if count else ""
        modules.append(MacroModule(name=component.Name, code=text))
    LOGGER.debug("[MACROS] %s code modules read", len(modules))
    return modules


def extract_macros_isolated(
    application: str,
    file_name: str,
    timeout: float = common.DEFAULT_MACRO_TIMEOUT_SECONDS,
) -> list[MacroModule]:
    """Run ``extract_macros`` in a child interpreter so a hung Office instance costs one file.

    Raises ``TimeoutError`` when the child does not finish within ``timeout``
    seconds and ``OSError`` when it fails; the caller skips that file.
    """
    command = [sys.executable, "-m", __name__, application, file_name]
    try:
        completed = subprocess.run(command, capture_output=True, text=True, timeout=timeout, check=False)
    except subprocess.TimeoutExpired:
        raise TimeoutError(f"{application} did not finish reading {file_name} within {timeout:g} seconds") from None
    if completed.returncode != 0:
        detail = (completed.stderr or "").strip().splitlines()
        raise OSError(detail[-1] if detail else f"macro reader exited with code {completed.returncode}")
    try:
        payload = json.loads(completed.stdout)
    except json.JSONDecodeError as exc:
        raise OSError(f"macro reader returned unreadable output ({exc})") from None
    return [MacroModule(name=item["name"], code=item["code"]) for item in payload]


def _child_main(argv: list[str]) -> int:
    application, file_name = argv
    modules = extract_macros(application, file_name)
    json.dump([{"name": module.name, "code": module.code} for module in modules], sys.stdout)
    return 0


if __name__ == "__main__":
    raise SystemExit(_child_main(sys.argv[1:]))
