"""Shared fixtures: in-memory store and adapters wired into the core components."""

import pytest

from gastown.adapters.memory import MemoryRecordStore, MemoryWorktreeAdapter
from gastown.convoys.tracker import ConvoyTracker
from gastown.dispatch.dispatcher import Dispatcher
from gastown.formulas.engine import FormulaEngine
from gastown.formulas.models import Formula, Step, VariableSpec
from gastown.hooks.manager import HookManager
from gastown.state.store import StateStore


def make_step(name, deps=(), template="", **kwargs) -> Step:
    return Step(name=name, depends_on=frozenset(deps), template=template, **kwargs)


def make_formula(*steps, name="f", variables=None, **kwargs) -> Formula:
    specs = {}
    for var, opts in (variables or {}).items():
        specs[var] = VariableSpec(name=var, **opts)
    return Formula(name=name, steps=tuple(steps), variables=specs, **kwargs)


@pytest.fixture
def store():
    return StateStore()


@pytest.fixture
def records():
    return MemoryRecordStore()


@pytest.fixture
def worktrees():
    return MemoryWorktreeAdapter()


@pytest.fixture
def hooks(store, worktrees):
    manager = HookManager(store, worktrees, max_hooks_per_rig=3)
    manager.add_rig("rig-x", "/repos/x")
    return manager


@pytest.fixture
def convoys(store, records):
    return ConvoyTracker(store, records)


@pytest.fixture
def engine(store, records, convoys):
    return FormulaEngine(store, records, convoys)


@pytest.fixture
def dispatcher(store, hooks):
    return Dispatcher(store, hooks)
