"""Runs one Office MRU harvest: policy check, enumeration, and guaranteed policy revert."""
from __future__ import annotations

import dataclasses
import logging
from datetime import datetime
from enum import Enum
from pathlib import PureWindowsPath
from typing import Callable, Iterator, Optional, Sequence

from . import common
from .mru_decoder import MacroModule, RecentFileRecord
from .mru_walker import IdentityResolver, iter_recent_files
from .recency import filter_recent, order_by_recency
from .registry import RegistryBackend
from .vbom_policy import (
    PolicyMutationRecord,
    RegistryPolicyState,
    evaluate,
    evaluate_machine_override,
    revert,
)

LOGGER = logging.getLogger(__name__)

MacroExtractor = Callable[[str, str], Sequence[MacroModule]]


class RunState(Enum):
    IDLE = "idle"
    POLICY_CHECKED = "policy_checked"
    ENUMERATING = "enumerating"
    REVERTING = "reverting"
    DONE = "done"


def macro_application_for(target: str) -> Optional[str]:
    extension = PureWindowsPath(target).suffix.lower()
    if extension in common.WORD_MACRO_EXTENSIONS:
        return "Word"
    if extension in common.EXCEL_MACRO_EXTENSIONS:
        return "Excel"
    return None


class MruHarvest:
    """One harvest run. Use as a context manager so the policy revert always fires.

    ::

        with MruHarvest(registry, config) as run:
            for record in run.records():
                ...
    """

    def __init__(
        self,
        registry: RegistryBackend,
        config: common.HarvestConfig,
        macro_extractor: Optional[MacroExtractor] = None,
        identity_resolver: Optional[IdentityResolver] = None,
        design_mode: bool = False,
        now: Optional[datetime] = None,
        revert_delay: Optional[float] = None,
    ) -> None:
        self.registry = registry
        self.config = config
        self.macro_extractor = macro_extractor
        self.identity_resolver = identity_resolver
        self.design_mode = design_mode
        self.now = now
        self.revert_delay = config.revert_delay if revert_delay is None else revert_delay
        self.state = RunState.IDLE
        self.check_for_macros = False
        self.policy_states: dict[str, RegistryPolicyState] = {}
        self.mutations: dict[str, PolicyMutationRecord] = {}

    # Lifecycle -------------------------------------------------------------

    def __enter__(self) -> "MruHarvest":
        if self.config.check_for_macros:
            try:
                self.check_policy()
            except BaseException:
                # __exit__ does not run when __enter__ raises.
                self.revert_policy()
                raise
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.revert_policy()

    def check_policy(self) -> bool:
        """Decide whether macros can be read this run, opening user-scope gates when needed."""
        if self.state is not RunState.IDLE:
            return self.check_for_macros

        blocking = [
            app
            for app in common.CONTROLLED_APPLICATIONS
            if evaluate_machine_override(self.registry, app, self.design_mode)
        ]
        if blocking:
            LOGGER.warning(
                "The /checkForMacros flag has been provided but one or more registry keys in HKLM block this "
                "(%s), so the macro check will not be performed.",
                ", ".join(blocking),
            )
            LOGGER.warning("If you have admin, you can manually set these values then run again")
            self.check_for_macros = False
            self.state = RunState.POLICY_CHECKED
            return False

        for app in common.CONTROLLED_APPLICATIONS:
            try:
                state, mutation = evaluate(self.registry, app, self.design_mode)
            except OSError as exc:
                LOGGER.error("[POLICY] Could not update the %s security key (%s); the macro check will not be performed.", app, exc)
                self.check_for_macros = False
                self.state = RunState.POLICY_CHECKED
                return False
            self.policy_states[app] = state
            self.mutations[app] = mutation

        if any(state.requires_mutation for state in self.policy_states.values()):
            LOGGER.warning(
                "The /checkForMacros flag has been provided but one or more registry keys in HKCU block this. "
                "Those keys will be temporarily modified or created to allow this enumeration."
            )
        self.check_for_macros = True
        self.state = RunState.POLICY_CHECKED
        return True

    def revert_policy(self) -> None:
        if self.state is RunState.DONE:
            return
        self.state = RunState.REVERTING
        for app in common.CONTROLLED_APPLICATIONS:
            mutation = self.mutations.get(app)
            if mutation is not None:
                revert(self.registry, mutation, delay=self.revert_delay, retries=self.config.revert_retries)
        self.state = RunState.DONE

    # Enumeration -----------------------------------------------------------

    def records(self) -> list[RecentFileRecord]:
        """Recent records, newest first."""
        if self.state in (RunState.REVERTING, RunState.DONE):
            raise RuntimeError("records() called after the policy keys were restored; start a new MruHarvest")
        self.state = RunState.ENUMERATING
        return order_by_recency(self._iter_retained())

    def _iter_retained(self) -> Iterator[RecentFileRecord]:
        walked = iter_recent_files(self.registry, self.identity_resolver, self.design_mode)
        for record in filter_recent(walked, self.config.window_days, self.now):
            if self.check_for_macros:
                record = self._with_macros(record)
            yield record

    def _with_macros(self, record: RecentFileRecord) -> RecentFileRecord:
        app = macro_application_for(record.target)
        if app is None or self.macro_extractor is None:
            return record
        common.design_log(common.DESIGN_LOG_MACROS, self.design_mode, logging.INFO, "Checking for %s macros in %s", app, record.target)
        try:
            modules = tuple(self.macro_extractor(app, record.target))
        except Exception as exc:  # noqa: BLE001
            LOGGER.warning("[MACROS] Hit an issue trying to read %s (%s)", record.target, exc)
            return record
        return dataclasses.replace(record, macro_modules=modules)


def harvest(
    registry: RegistryBackend,
    config: common.HarvestConfig,
    macro_extractor: Optional[MacroExtractor] = None,
    identity_resolver: Optional[IdentityResolver] = None,
    design_mode: bool = False,
    now: Optional[datetime] = None,
    revert_delay: Optional[float] = None,
) -> Iterator[RecentFileRecord]:
    """Generator form of ``MruHarvest``; closing it early still restores the policy keys."""
    run = MruHarvest(
        registry,
        config,
        macro_extractor=macro_extractor,
        identity_resolver=identity_resolver,
        design_mode=design_mode,
        now=now,
        revert_delay=revert_delay,
    )
    with run:
        yield from run.records()
