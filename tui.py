# tui.py
"""
healthwatch TUI: full-screen terminal view of the latest reachability and health result per target.

Features:
- Runs the probe controller (see probe.py) in the same event loop
- Re-renders on every applied result and at least every --refresh seconds
- Health payload shown as key/value lines; timestamp/time/date values shown in the display timezone
- Most recent error per target (health error wins over connect error)
- Press 'q' to quit gracefully; Ctrl-C also works

Requirements:
  rich
  typer
  httpx, PyYAML, python-dotenv (via probe.py / settings.py)

Usage:
  python tui.py --env-file ./.env
  python tui.py --config ./config.yaml --refresh 1.0
"""
from __future__ import annotations

import asyncio
import contextlib
import json
import select
import sys
import time
from datetime import datetime, tzinfo
from typing import Any, Iterator, List, Optional

import httpx
import typer
from rich import box
from rich.align import Align
from rich.console import Console, Group
from rich.live import Live
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from checks import HealthNotConfigured
from probe import Controller, build_controller, install_signal_handlers, load_or_exit
from settings import Config, Target
from store import Observation, StateStore

app = typer.Typer(add_completion=False)
console = Console()

TITLE = " healthwatch - Website Health Monitor "
TIME_FORMAT = "%Y-%m-%d %H:%M:%S %Z"
TIME_KEYS = ("timestamp", "time", "date")
KEY_POLL_SECS = 0.1


# --------------------
# Formatting
# --------------------

def fmt_time(dt: datetime, tz: Optional[tzinfo]) -> str:
    # tz None means local time
    return dt.astimezone(tz).strftime(TIME_FORMAT)


def parse_rfc3339(value: str) -> Optional[datetime]:
    try:
        dt = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if dt.tzinfo is None:
        return None
    return dt


def fmt_health_value(key: str, value: Any, tz: Optional[tzinfo]) -> str:
    if isinstance(value, str):
        if key in TIME_KEYS:
            dt = parse_rfc3339(value)
            if dt is not None:
                return fmt_time(dt, tz)
        return value
    if isinstance(value, (dict, list)):
        return json.dumps(value, sort_keys=True)
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def fmt_latency(latency_ms: float) -> Text:
    if latency_ms <= 100.0:
        style = "bold green"
    elif latency_ms <= 300.0:
        style = "yellow"
    else:
        style = "bold red"
    return Text(f"{latency_ms:.0f} ms", style=style)


def section(title: str, value: str, style: str = "green") -> Text:
    line = Text(f"{title} ", style="bold bright_black")
    line.append(value, style=style)
    return line


# --------------------
# Rendering
# --------------------

def build_health_lines(target: Target, obs: Observation, tz: Optional[tzinfo]) -> List[Text]:
    if isinstance(obs.health, HealthNotConfigured) or not target.health_path:
        return [section("Health Endpoint:", "not configured", style="dim")]
    data = obs.health_data
    if data is None:
        state = "failed" if obs.health_error else "unknown"
        return [section("Health Endpoint:", f"{target.health_path} ({state})", style="dim")]

    lines = [section("Health Endpoint:", target.health_path, style="white")]
    entries = []
    for key in sorted(data):
        line = Text("  ")
        line.append(f"{key}:", style="bold bright_black")
        line.append(" ")
        line.append(fmt_health_value(key, data[key], tz), style="bright_white")
        entries.append(line)
    return lines + entries


def build_target_panel(cfg: Config, target: Target, obs: Observation) -> Panel:
    tz = cfg.timezone
    rows: List[Text] = [
        section("Website:", target.host),
        section("Schedule:", cfg.schedule_for(target)),
    ]

    if obs.updated_at is None:
        rows.append(Text("Waiting for first check…", style="dim"))
    else:
        rows.append(section("Last checked:", fmt_time(obs.updated_at, tz)))

    if obs.latency_ms is not None:
        rows.append(Text(f"Ping to {target.host}:", style="green"))
        rows.append(Text("  TCP connect successful", style="green"))
        latency = Text("  Time: ", style="green")
        latency.append_text(fmt_latency(obs.latency_ms))
        rows.append(latency)

    if obs.reachable:
        rows.extend(build_health_lines(target, obs, tz))

    if obs.last_error:
        rows.append(Text(f"FAILED: {obs.last_error}", style="bold red"))

    if obs.reachable is None:
        border = "bright_black"
    elif obs.last_error:
        border = "red"
    else:
        border = "green"
    return Panel(Group(*rows), title=target.host, title_align="left", border_style=border, box=box.ROUNDED)


def layout_render(cfg: Config, store: StateStore) -> Panel:
    header = Text(TITLE, style="bold bright_white on black")
    summary = Table.grid(padding=(0, 2))
    summary.add_column(style="bold bright_black")
    summary.add_column()
    tz_name = cfg.timezone_name or "local"
    summary.add_row("Targets:", str(len(cfg.targets)))
    summary.add_row("Timezone:", tz_name)

    panels = [build_target_panel(cfg, t, store[i]) for i, t in enumerate(cfg.targets)]
    footer = Text("Press q or Ctrl+C to quit.", style="bright_black")
    return Panel(Group(header, Text(""), summary, Text(""), *panels, Text(""), footer), box=box.SQUARE)


# --------------------
# Keyboard handling (q to quit)
# --------------------

@contextlib.contextmanager
def cbreak_stdin() -> Iterator[bool]:
    """Put a TTY stdin into cbreak mode so single keypresses can be read; yields whether it did."""
    if not sys.stdin.isatty():
        yield False
        return
    import termios
    import tty
    fd = sys.stdin.fileno()
    saved = termios.tcgetattr(fd)
    try:
        tty.setcbreak(fd)
        yield True
    finally:
        termios.tcsetattr(fd, termios.TCSADRAIN, saved)


def read_key_nonblocking(single: bool) -> Optional[str]:
    if sys.stdin in select.select([sys.stdin], [], [], 0)[0]:
        data = sys.stdin.read(1) if single else sys.stdin.readline().strip()
        return data or None
    return None


# --------------------
# Main loop
# --------------------

def safe_render(cfg: Config, store: StateStore):
    try:
        return Align.left(layout_render(cfg, store))
    except Exception as e:
        return Panel(Text(f"Error: {e}", style="red"), title="healthwatch")


async def run_tui(cfg: Config, refresh: float) -> None:
    changed = asyncio.Event()
    async with httpx.AsyncClient() as client:
        controller: Controller = build_controller(cfg, client, listener=lambda *_: changed.set())
        install_signal_handlers(controller)
        runner = asyncio.create_task(controller.run(), name="controller")

        with cbreak_stdin() as single, Live(
            safe_render(cfg, controller.store),
            console=console,
            refresh_per_second=(1.0 / refresh if refresh > 0 else 4.0),
            screen=True,
        ) as live:
            last = time.monotonic()
            while not runner.done():
                key = read_key_nonblocking(single)
                if key and key.lower().startswith("q"):
                    controller.request_quit()
                    break
                if changed.is_set() or time.monotonic() - last >= refresh:
                    changed.clear()
                    live.update(safe_render(cfg, controller.store), refresh=True)
                    last = time.monotonic()
                with contextlib.suppress(asyncio.TimeoutError):
                    await asyncio.wait_for(changed.wait(), timeout=KEY_POLL_SECS)

        await runner


@app.command()
def tui(config: Optional[str] = typer.Option(None, help="Path to config.yaml (default: PING_* environment)"),
        env_file: Optional[str] = typer.Option(None, help="Path to .env file"),
        refresh: float = typer.Option(1.0, help="Refresh interval seconds")):
    cfg = load_or_exit(config, env_file)
    asyncio.run(run_tui(cfg, refresh))


if __name__ == "__main__":
    app()
