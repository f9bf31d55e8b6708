from __future__ import annotations

import logging
from datetime import timedelta

import pytest
from conftest import NOW, SID, office_path, security_path

from office_mru.common import HarvestConfig
from office_mru.harvester import MruHarvest, RunState, harvest, macro_application_for
from office_mru.mru_decoder import MacroModule, encode_mru_value
from office_mru.registry import MemoryRegistry
from office_mru.vbom_policy import ACCESS_VBOM

MACROS = HarvestConfig(window_days=7, check_for_macros=True)
NO_MACROS = HarvestConfig(window_days=7, check_for_macros=False)


def _registry_with_files() -> MemoryRegistry:
    registry = MemoryRegistry()
    word = office_path(SID, "16.0", "Word", "File MRU")
    excel = office_path(SID, "16.0", "Excel", "User MRU", "LiveId_CC4B8243", "File MRU")
    registry.set_value(word, "Item 1", encode_mru_value(NOW - timedelta(days=2), "C:\\Users\\a\\Invoice.docm"))
    registry.set_value(word, "Item 2", encode_mru_value(NOW - timedelta(hours=3), "C:\\Users\\a\\Notes.txt"))
    registry.set_value(word, "Item 3", encode_mru_value(NOW - timedelta(days=40), "C:\\Users\\a\\Old.doc"))
    registry.set_value(excel, "Item 1", encode_mru_value(NOW - timedelta(days=1), "C:\\Users\\a\\Model.XLSM"))
    return registry


class _Extractor:
    def __init__(self, fail_on: str | None = None) -> None:
        self.calls: list[tuple[str, str]] = []
        self.fail_on = fail_on

    def __call__(self, application: str, path: str) -> list[MacroModule]:
        self.calls.append((application, path))
        if self.fail_on and path.endswith(self.fail_on):
            raise OSError("RPC server is unavailable")
        return [MacroModule("ThisDocument", 'Sub AutoOpen()\n    MsgBox "hi"\nEnd Sub')]


def _run(registry: MemoryRegistry, config: HarvestConfig, **kwargs) -> list:  # type: ignore[no-untyped-def]
    with MruHarvest(registry, config, now=NOW, revert_delay=0, **kwargs) as run:
        return run.records()


def test_records_are_filtered_and_newest_first() -> None:
    records = _run(_registry_with_files(), NO_MACROS)

    assert [r.target for r in records] == [
        "C:\\Users\\a\\Notes.txt",
        "C:\\Users\\a\\Model.XLSM",
        "C:\\Users\\a\\Invoice.docm",
    ]
    assert all(r.macro_modules is None for r in records)


def test_macro_flag_off_leaves_policy_untouched() -> None:
    registry = _registry_with_files()
    registry.set_value(security_path("HKCU", "16.0", "Word"), ACCESS_VBOM, 0)
    extractor = _Extractor()

    _run(registry, NO_MACROS, macro_extractor=extractor)

    assert registry.writes == []
    assert extractor.calls == []


def test_machine_override_disables_macros_for_whole_run(caplog) -> None:  # type: ignore[no-untyped-def]
    registry = _registry_with_files()
    registry.set_value(security_path("HKLM", "16.0", "Excel"), ACCESS_VBOM, 0)
    registry.set_value(security_path("HKCU", "16.0", "Word"), ACCESS_VBOM, 0)
    registry.create_key(security_path("HKCU", "16.0", "Excel"))
    extractor = _Extractor()

    with caplog.at_level(logging.WARNING):
        with MruHarvest(registry, MACROS, macro_extractor=extractor, now=NOW, revert_delay=0) as run:
            records = run.records()
            assert run.check_for_macros is False

    assert registry.writes == []
    assert extractor.calls == []
    assert len(records) == 3
    assert all(r.macro_modules is None for r in records)
    assert any("HKLM" in rec.getMessage() for rec in caplog.records)


def test_macros_are_read_and_policy_restored() -> None:
    registry = _registry_with_files()
    word_key = security_path("HKCU", "16.0", "Word")
    excel_key = security_path("HKCU", "15.0", "Excel")
    registry.set_value(word_key, ACCESS_VBOM, 0)
    registry.create_key(excel_key)
    extractor = _Extractor()

    with MruHarvest(registry, MACROS, macro_extractor=extractor, now=NOW, revert_delay=0) as run:
        assert registry.read_value(word_key, ACCESS_VBOM) == 1
        assert registry.read_value(excel_key, ACCESS_VBOM) == 1
        records = run.records()
        assert run.state is RunState.ENUMERATING

    assert run.state is RunState.DONE
    assert registry.read_value(word_key, ACCESS_VBOM) == 0
    assert registry.value_map(excel_key) == {}
    assert sorted(extractor.calls) == [
        ("Excel", "C:\\Users\\a\\Model.XLSM"),
        ("Word", "C:\\Users\\a\\Invoice.docm"),
    ]
    by_target = {r.target: r for r in records}
    assert by_target["C:\\Users\\a\\Notes.txt"].macro_modules is None
    assert by_target["C:\\Users\\a\\Invoice.docm"].macro_modules == (
        MacroModule("ThisDocument", 'Sub AutoOpen()\n    MsgBox "hi"\nEnd Sub'),
    )


def test_extraction_failure_is_reported_and_run_continues(caplog) -> None:  # type: ignore[no-untyped-def]
    registry = _registry_with_files()
    extractor = _Extractor(fail_on="Invoice.docm")

    with caplog.at_level(logging.WARNING):
        records = _run(registry, MACROS, macro_extractor=extractor)

    assert len(extractor.calls) == 2
    by_target = {r.target: r for r in records}
    assert by_target["C:\\Users\\a\\Invoice.docm"].macro_modules is None
    assert by_target["C:\\Users\\a\\Model.XLSM"].macro_modules
    assert any("Invoice.docm" in rec.getMessage() for rec in caplog.records)


def test_empty_project_is_distinct_from_not_attempted() -> None:
    records = _run(_registry_with_files(), MACROS, macro_extractor=lambda app, path: [])
    by_target = {r.target: r for r in records}
    assert by_target["C:\\Users\\a\\Invoice.docm"].macro_modules == ()
    assert by_target["C:\\Users\\a\\Notes.txt"].macro_modules is None


def test_revert_fires_when_enumeration_raises() -> None:
    registry = _registry_with_files()
    key = security_path("HKCU", "16.0", "Word")
    registry.set_value(key, ACCESS_VBOM, 0)

    def exploding_resolver(sid: str) -> str:
        raise KeyboardInterrupt

    with pytest.raises(KeyboardInterrupt):
        with MruHarvest(registry, MACROS, identity_resolver=exploding_resolver, now=NOW, revert_delay=0) as run:
            run.records()

    assert registry.read_value(key, ACCESS_VBOM) == 0


def test_generator_closed_early_still_reverts() -> None:
    registry = _registry_with_files()
    key = security_path("HKCU", "16.0", "Word")
    registry.set_value(key, ACCESS_VBOM, 0)

    stream = harvest(registry, MACROS, macro_extractor=_Extractor(), now=NOW, revert_delay=0)
    first = next(stream)
    assert first.target == "C:\\Users\\a\\Notes.txt"
    assert registry.read_value(key, ACCESS_VBOM) == 1

    stream.close()

    assert registry.read_value(key, ACCESS_VBOM) == 0


def test_policy_write_failure_disables_macros_and_reverts_earlier_changes(caplog) -> None:  # type: ignore[no-untyped-def]
    registry = _registry_with_files()
    word_key = security_path("HKCU", "16.0", "Word")
    excel_key = security_path("HKCU", "16.0", "Excel")
    registry.set_value(word_key, ACCESS_VBOM, 0)
    registry.set_value(excel_key, ACCESS_VBOM, 0)
    extractor = _Extractor()

    original_set = registry.set_dword

    def failing_for_excel(reg_path: str, name: str, value: int) -> None:
        if "Excel" in reg_path and value == 1:
            raise PermissionError("Access is denied")
        original_set(reg_path, name, value)

    registry.set_dword = failing_for_excel  # type: ignore[method-assign]

    with caplog.at_level(logging.ERROR):
        records = _run(registry, MACROS, macro_extractor=extractor)

    assert records
    assert extractor.calls == []
    assert registry.read_value(word_key, ACCESS_VBOM) == 0
    assert registry.read_value(excel_key, ACCESS_VBOM) == 0


def test_macro_application_by_extension() -> None:
    assert macro_application_for("C:\\a\\b.DOCM") == "Word"
    assert macro_application_for("\\\\srv\\share\\b.xlsb") == "Excel"
    assert macro_application_for("C:\\a\\b.docx") is None
    assert macro_application_for("C:\\a\\b.xlsx") is None
    assert macro_application_for("C:\\a\\noext") is None


def test_records_after_exit_are_refused() -> None:
    registry = _registry_with_files()
    key = security_path("HKCU", "16.0", "Word")
    registry.set_value(key, ACCESS_VBOM, 0)
    extractor = _Extractor()

    with MruHarvest(registry, MACROS, macro_extractor=extractor, now=NOW, revert_delay=0) as run:
        pass

    with pytest.raises(RuntimeError):
        run.records()
    assert extractor.calls == []
    assert run.state is RunState.DONE
    assert registry.read_value(key, ACCESS_VBOM) == 0


def test_timed_out_extraction_still_delivers_the_record(caplog) -> None:  # type: ignore[no-untyped-def]
    def slow_for_invoice(application: str, path: str) -> list[MacroModule]:
        if path.endswith("Invoice.docm"):
            raise TimeoutError("Word did not finish reading Invoice.docm within 120 seconds")
        return [MacroModule("Module1", "Sub A()\nEnd Sub")]

    with caplog.at_level(logging.WARNING):
        records = _run(_registry_with_files(), MACROS, macro_extractor=slow_for_invoice)

    by_target = {r.target: r for r in records}
    assert len(records) == 3
    assert by_target["C:\\Users\\a\\Invoice.docm"].macro_modules is None
    assert by_target["C:\\Users\\a\\Model.XLSM"].macro_modules == (MacroModule("Module1", "Sub A()\nEnd Sub"),)
    assert any("within 120 seconds" in rec.getMessage() for rec in caplog.records)


def test_revert_settings_come_from_config() -> None:
    registry = _registry_with_files()
    config = HarvestConfig(window_days=7, check_for_macros=True, revert_delay=0.25, revert_retries=5)

    run = MruHarvest(registry, config)

    assert run.revert_delay == 0.25
    assert MruHarvest(registry, config, revert_delay=0).revert_delay == 0
