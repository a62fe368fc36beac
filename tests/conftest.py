"""Shared fixtures and fakes for healthwatch tests."""

from __future__ import annotations

import asyncio
from typing import Callable, Dict, List, Optional, Set, Tuple

import pytest

from checks import NOT_CONFIGURED, HealthOutcome, ReachabilityOk, ReachabilityOutcome
from probe import Controller, Op, Scheduler
from settings import Config, Target
from store import StateStore

ENV_KEYS = (
    "PING_WEBSITE",
    "PING_SCHEDULE",
    "TIMEZONE",
    "HEALTH_ENDPOINT",
    "PING_PORT",
    "PING_TIMEOUT",
    "HEALTH_TIMEOUT",
)


@pytest.fixture
def clean_env(monkeypatch: pytest.MonkeyPatch, tmp_path):
    """Remove PING_* variables (restored afterwards) and run from an empty directory."""
    for key in ENV_KEYS:
        # setenv first so monkeypatch restores the original state, even for keys
        # that load_dotenv adds during the test
        monkeypatch.setenv(key, "")
        monkeypatch.delenv(key)
    monkeypatch.chdir(tmp_path)
    return monkeypatch


class FakeChecker:
    """Checker double: scripted outcomes per host, optional hosts that never answer."""

    def __init__(
        self,
        reach: Optional[Dict[str, ReachabilityOutcome]] = None,
        health: Optional[Dict[str, HealthOutcome]] = None,
        hang: Set[str] = frozenset(),
    ):
        self.reach = reach or {}
        self.health_outcomes = health or {}
        self.hang = set(hang)
        self.calls: List[Tuple[str, str]] = []

    def count(self, op: str, host: str) -> int:
        return sum(1 for c in self.calls if c == (op, host))

    async def reachability(self, target: Target) -> ReachabilityOutcome:
        self.calls.append(("reachability", target.host))
        if target.host in self.hang:
            await asyncio.Event().wait()
        return self.reach.get(target.host, ReachabilityOk(latency_ms=1.5))

    async def health(self, target: Target) -> HealthOutcome:
        self.calls.append(("health", target.host))
        if not target.health_path:
            return NOT_CONFIGURED
        return self.health_outcomes[target.host]


class RecordingScheduler:
    """Scheduler double that records dispatched operations instead of running them."""

    def __init__(self) -> None:
        self.ops: List[Tuple[int, Op]] = []
        self.shut_down = False

    def dispatch(self, index: int, op: Op) -> None:
        self.ops.append((index, op))

    async def shutdown(self) -> None:
        self.shut_down = True


def make_controller(cfg: Config, checker, listener=None) -> Controller:
    events: asyncio.Queue = asyncio.Queue()
    stop = asyncio.Event()
    store = StateStore(len(cfg.targets))
    scheduler = Scheduler(cfg, checker, events, stop)
    return Controller(cfg, store, scheduler, events, stop, listener)


def make_recording_controller(cfg: Config) -> Tuple[Controller, RecordingScheduler]:
    scheduler = RecordingScheduler()
    controller = Controller(cfg, StateStore(len(cfg.targets)), scheduler, asyncio.Queue(), asyncio.Event())
    return controller, scheduler


async def wait_until(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.005)
