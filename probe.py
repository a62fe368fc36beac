# probe.py
"""
healthwatch agent: scheduling and state-update side of the (agent + TUI) design.

Features:
- Loads targets from YAML config or PING_* environment variables
- One independent probe cycle per target: TCP connect, then HTTPS health check, then wait
- All probe results flow through one asyncio.Queue into a single controller
- Controller applies results to the state store through an explicit transition table
- One-shot stop event (quit key, SIGINT, SIGTERM) cancels every in-flight probe

CLI:
  python probe.py agent --config ./config.yaml
  python probe.py agent --env-file ./.env
  python probe.py check --config ./config.yaml

Requirements (see pyproject.toml):
  httpx
  PyYAML
  python-dotenv
  typer
"""
from __future__ import annotations

import asyncio
import enum
import signal
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Tuple, Union

import httpx
import typer

from checks import (
    EndpointChecker,
    HealthErrorKind,
    HealthFailure,
    HealthNotConfigured,
    HealthOutcome,
    ReachabilityErrorKind,
    ReachabilityFailure,
    ReachabilityOutcome,
)
from settings import DEFAULT_SCHEDULE, Config, ConfigError, Target, parse_duration, resolve_config
from store import Observation, StateStore

app = typer.Typer(add_completion=False, help="healthwatch headless probe agent")


# -------------------------
# Events
# -------------------------

@dataclass(frozen=True)
class TimerFired:
    index: int


@dataclass(frozen=True)
class ReachabilityResult:
    index: int
    outcome: ReachabilityOutcome


@dataclass(frozen=True)
class HealthResult:
    index: int
    outcome: HealthOutcome


@dataclass(frozen=True)
class QuitRequested:
    pass


Event = Union[TimerFired, ReachabilityResult, HealthResult, QuitRequested]
Listener = Callable[[int, Event, Observation], None]


# -------------------------
# Transition table
# -------------------------

class Phase(enum.Enum):
    IDLE = "idle"
    AWAITING_REACHABILITY = "awaiting_reachability"
    AWAITING_HEALTH = "awaiting_health"


class Op(enum.Enum):
    REACHABILITY = "reachability"
    HEALTH = "health"
    WAIT = "wait"


class RunState(enum.Enum):
    RUNNING = "running"
    QUITTING = "quitting"


class InvalidTransition(RuntimeError):
    pass


# (phase, event type, outcome ok) -> (next phase, the one operation to schedule)
TRANSITIONS: Dict[Tuple[Phase, type, Optional[bool]], Tuple[Phase, Op]] = {
    (Phase.IDLE, TimerFired, None): (Phase.AWAITING_REACHABILITY, Op.REACHABILITY),
    (Phase.AWAITING_REACHABILITY, ReachabilityResult, True): (Phase.AWAITING_HEALTH, Op.HEALTH),
    (Phase.AWAITING_REACHABILITY, ReachabilityResult, False): (Phase.IDLE, Op.WAIT),
    (Phase.AWAITING_HEALTH, HealthResult, True): (Phase.IDLE, Op.WAIT),
    (Phase.AWAITING_HEALTH, HealthResult, False): (Phase.IDLE, Op.WAIT),
}


def transition(phase: Phase, event: Event) -> Tuple[Phase, Op]:
    outcome = getattr(event, "outcome", None)
    ok = None if outcome is None else bool(outcome.ok)
    try:
        return TRANSITIONS[(phase, type(event), ok)]
    except KeyError:
        raise InvalidTransition(f"{type(event).__name__} not expected in phase {phase.value}") from None


# -------------------------
# Scheduler
# -------------------------

class Scheduler:
    """Runs each target's probes and timers as separate tasks feeding one event queue."""

    def __init__(self, cfg: Config, checker: EndpointChecker, events: asyncio.Queue, stop: asyncio.Event):
        self.cfg = cfg
        self.checker = checker
        self.events = events
        self.stop = stop
        self.intervals: Dict[int, float] = {i: cfg.interval_for(t) for i, t in enumerate(cfg.targets)}
        self.pending: Dict[int, asyncio.Task] = {}

    def interval(self, index: int) -> float:
        try:
            return self.intervals[index]
        except KeyError:
            typer.secho(f"⚠️  no interval bound for target #{index}, using {DEFAULT_SCHEDULE}", fg=typer.colors.YELLOW)
            return parse_duration(DEFAULT_SCHEDULE)

    def dispatch(self, index: int, op: Op) -> asyncio.Task:
        if op is Op.REACHABILITY:
            coro = self._reachability(index)
        elif op is Op.HEALTH:
            coro = self._health(index)
        else:
            coro = self._wait(index, self.interval(index))
        task = asyncio.create_task(coro, name=f"{op.value}-{index}")
        self.pending[index] = task
        return task

    async def _reachability(self, index: int) -> None:
        target = self.cfg.targets[index]
        try:
            outcome = await self.checker.reachability(target)
        except Exception as e:  # keep the cycle alive; the error is recorded as a failure
            outcome = ReachabilityFailure(ReachabilityErrorKind.OTHER, f"{type(e).__name__}: {e}")
        self.events.put_nowait(ReachabilityResult(index, outcome))

    async def _health(self, index: int) -> None:
        target = self.cfg.targets[index]
        try:
            outcome = await self.checker.health(target)
        except Exception as e:
            outcome = HealthFailure(HealthErrorKind.TRANSPORT, f"{type(e).__name__}: {e}")
        self.events.put_nowait(HealthResult(index, outcome))

    async def _wait(self, index: int, interval: float) -> None:
        try:
            await asyncio.wait_for(self.stop.wait(), timeout=interval)
        except asyncio.TimeoutError:
            self.events.put_nowait(TimerFired(index))

    async def shutdown(self) -> None:
        tasks = [t for t in self.pending.values() if not t.done()]
        for t in tasks:
            t.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self.pending.clear()


# -------------------------
# Controller
# -------------------------

class Controller:
    """Single consumer of the event queue and the only writer to the state store."""

    def __init__(
        self,
        cfg: Config,
        store: StateStore,
        scheduler: Scheduler,
        events: asyncio.Queue,
        stop: asyncio.Event,
        listener: Optional[Listener] = None,
    ):
        self.cfg = cfg
        self.store = store
        self.scheduler = scheduler
        self.events = events
        self.stop = stop
        self.listener = listener
        self.phases: List[Phase] = [Phase.IDLE] * len(cfg.targets)
        self.state = RunState.RUNNING

    def start(self) -> None:
        for i in range(len(self.cfg.targets)):
            self.phases[i] = Phase.AWAITING_REACHABILITY
            self.scheduler.dispatch(i, Op.REACHABILITY)

    def request_quit(self) -> None:
        self.stop.set()
        self.events.put_nowait(QuitRequested())

    def handle(self, event: Event) -> None:
        if self.state is RunState.QUITTING:
            return
        if isinstance(event, QuitRequested) or self.stop.is_set():
            self.state = RunState.QUITTING
            self.stop.set()
            return
        outcome = getattr(event, "outcome", None)
        if getattr(outcome, "cancelled", False):
            return

        index = event.index
        phase, op = transition(self.phases[index], event)
        if isinstance(event, ReachabilityResult):
            obs = self.store.apply_reachability(index, event.outcome)
        elif isinstance(event, HealthResult):
            obs = self.store.apply_health(index, event.outcome)
        else:
            obs = self.store[index]
        self.phases[index] = phase
        self.scheduler.dispatch(index, op)
        if self.listener is not None:
            self.listener(index, event, obs)

    async def run(self) -> None:
        self.start()
        try:
            while self.state is RunState.RUNNING:
                self.handle(await self.events.get())
        finally:
            self.stop.set()
            await self.scheduler.shutdown()


def build_controller(
    cfg: Config,
    client: Optional[httpx.AsyncClient] = None,
    listener: Optional[Listener] = None,
) -> Controller:
    events: asyncio.Queue = asyncio.Queue()
    stop = asyncio.Event()
    checker = EndpointChecker(cfg, stop, client)
    store = StateStore(len(cfg.targets))
    scheduler = Scheduler(cfg, checker, events, stop)
    return Controller(cfg, store, scheduler, events, stop, listener)


def install_signal_handlers(controller: Controller) -> None:
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, controller.request_quit)
        except NotImplementedError:
            pass


# -------------------------
# Headless agent
# -------------------------

def log_event(cfg: Config, index: int, event: Event, obs: Observation) -> None:
    t = cfg.targets[index]
    if isinstance(event, ReachabilityResult):
        if obs.latency_ms is not None:
            typer.secho(f"📡 ping {t.host}: {obs.latency_ms:.1f}ms", fg=typer.colors.GREEN)
        else:
            typer.secho(f"❌ ping {t.host}: {obs.reachability_error}", fg=typer.colors.RED)
    elif isinstance(event, HealthResult):
        if isinstance(event.outcome, HealthNotConfigured):
            return
        if obs.health_data is not None:
            typer.secho(f"💚 health {t.health_url}: {len(obs.health_data)} fields", fg=typer.colors.GREEN)
        else:
            typer.secho(f"❌ health {t.health_url}: {obs.health_error}", fg=typer.colors.RED)


async def agent_loop(cfg: Config) -> None:
    typer.secho(f"🚀 Agent starting with {len(cfg.targets)} targets", fg=typer.colors.CYAN, bold=True)
    async with httpx.AsyncClient() as client:
        controller = build_controller(cfg, client, listener=lambda i, e, o: log_event(cfg, i, e, o))
        install_signal_handlers(controller)
        await controller.run()
    typer.secho("👋 Agent stopped", fg=typer.colors.CYAN)


def load_or_exit(config: Optional[str], env_file: Optional[str]) -> Config:
    try:
        return resolve_config(config, env_file)
    except ConfigError as e:
        typer.secho(f"Configuration error: {e}", fg=typer.colors.RED, err=True)
        raise typer.Exit(code=1)


def describe_target(cfg: Config, t: Target) -> str:
    health = t.health_url or "health check disabled"
    return f"{t.host}:{cfg.port} every {cfg.schedule_for(t)} ({health})"


# -------------------------
# CLI commands
# -------------------------

@app.command()
def agent(config: Optional[str] = typer.Option(None, help="Path to config.yaml (default: PING_* environment)"),
          env_file: Optional[str] = typer.Option(None, help="Path to .env file")):
    """Run the headless probing agent, logging every result."""
    cfg = load_or_exit(config, env_file)
    typer.echo("Starting healthwatch agent…")
    asyncio.run(agent_loop(cfg))


@app.command()
def check(config: Optional[str] = typer.Option(None, help="Path to config.yaml (default: PING_* environment)"),
          env_file: Optional[str] = typer.Option(None, help="Path to .env file")):
    """Validate configuration and print a summary."""
    cfg = load_or_exit(config, env_file)
    typer.secho("✓ Configuration valid", fg=typer.colors.GREEN)
    tz = cfg.timezone_name or "local"
    typer.echo(f"Targets: {len(cfg.targets)} | schedule: {cfg.schedule} | timezone: {tz}")
    for t in cfg.targets:
        typer.echo(f"  • {describe_target(cfg, t)}")


if __name__ == "__main__":
    app()
