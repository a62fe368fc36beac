# settings.py
"""
Configuration for healthwatch: targets, poll schedule, display timezone and probe timeouts.

Sources:
- YAML file (--config), same shape as:

    schedule: 10s
    timezone: Europe/Berlin
    targets:
      - example.com
      - host: api.example.org
        health_path: /health
        schedule: 30s

- Environment variables, optionally from a .env file (real environment wins):
    PING_WEBSITE     comma-separated hosts (required)
    PING_SCHEDULE    poll interval, default 10s
    TIMEZONE         IANA timezone name, default local time
    HEALTH_ENDPOINT  one path for every target, or a comma-separated list matching PING_WEBSITE
                     (with a single PING_WEBSITE host the value is always taken as one path)
    PING_PORT, PING_TIMEOUT, HEALTH_TIMEOUT

Everything is validated once at startup; any problem raises ConfigError.
"""
from __future__ import annotations

import ipaddress
import os
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Any, List, Optional, Sequence, Tuple, Union
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import yaml
from dotenv import load_dotenv

DEFAULT_SCHEDULE = "10s"
DEFAULT_PORT = 80
DEFAULT_CONNECT_TIMEOUT = "5s"
DEFAULT_HEALTH_TIMEOUT = "10s"

HOSTNAME_RE = re.compile(r"^([a-zA-Z0-9-]+\.)*[a-zA-Z0-9-]+$")
DURATION_PART_RE = re.compile(r"(\d+\.?\d*|\.\d+)(ns|us|µs|μs|ms|s|m|h)")

UNIT_SECONDS = {
    "ns": 1e-9,
    "us": 1e-6,
    "µs": 1e-6,
    "μs": 1e-6,
    "ms": 1e-3,
    "s": 1.0,
    "m": 60.0,
    "h": 3600.0,
}


class ConfigError(ValueError):
    """Invalid or missing configuration. Always fatal at startup."""


# -------------------------
# Validation helpers
# -------------------------

def is_valid_host(host: str) -> bool:
    try:
        ipaddress.ip_address(host)
        return True
    except ValueError:
        pass
    return bool(HOSTNAME_RE.match(host))


def parse_duration(text: str) -> float:
    """Parse a duration such as '10s', '1m30s' or '250ms' into seconds."""
    s = text.strip() if isinstance(text, str) else ""
    if not s:
        raise ConfigError(f"Invalid duration: {text!r}")
    sign = 1.0
    if s[0] in "+-":
        sign = -1.0 if s[0] == "-" else 1.0
        s = s[1:]
    if s == "0":
        return 0.0
    total = 0.0
    pos = 0
    while pos < len(s):
        m = DURATION_PART_RE.match(s, pos)
        if not m:
            raise ConfigError(f"Invalid duration: {text!r}")
        total += float(m.group(1)) * UNIT_SECONDS[m.group(2)]
        pos = m.end()
    return sign * total


def parse_interval(text: str, what: str) -> float:
    secs = parse_duration(text)
    if secs <= 0:
        raise ConfigError(f"Invalid {what}: {text!r} (must be positive)")
    return secs


def load_timezone(name: Optional[str]) -> Optional[ZoneInfo]:
    # None means "use the local system timezone"
    # region names such as "Europe" are tzdata directories and raise OSError
    if not name:
        return None
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError, OSError):
        raise ConfigError(f"Invalid TIMEZONE: {name!r}") from None


# -------------------------
# Config models
# -------------------------

@dataclass(frozen=True)
class Target:
    host: str
    health_path: str = ""
    schedule: Optional[str] = None
    interval_secs: Optional[float] = None

    @property
    def health_url(self) -> Optional[str]:
        if not self.health_path:
            return None
        host = self.host
        if ":" in host:
            host = f"[{host}]"  # IPv6 literal
        return f"https://{host}{self.health_path}"


@dataclass(frozen=True)
class Config:
    targets: Tuple[Target, ...]
    schedule: str = DEFAULT_SCHEDULE
    interval_secs: float = 10.0
    timezone: Optional[ZoneInfo] = None
    timezone_name: str = ""
    port: int = DEFAULT_PORT
    connect_timeout_secs: float = 5.0
    health_timeout_secs: float = 10.0

    def interval_for(self, target: Target) -> float:
        return target.interval_secs if target.interval_secs is not None else self.interval_secs

    def schedule_for(self, target: Target) -> str:
        return target.schedule or self.schedule


HealthPaths = Union[None, str, Sequence[str]]


def _expand_health_paths(health_paths: HealthPaths, count: int) -> List[str]:
    if health_paths is None:
        return [""] * count
    if isinstance(health_paths, str):
        return [health_paths.strip()] * count
    paths = ["" if p is None else str(p).strip() for p in health_paths]
    if len(paths) != count:
        raise ConfigError(
            f"Health endpoint list has {len(paths)} entries but there are {count} targets"
        )
    return paths


def _make_target(host: Any, health_path: Any, schedule: Any) -> Target:
    if not isinstance(host, str) or not host.strip():
        raise ConfigError(f"Invalid target host: {host!r}")
    host = host.strip()
    if not is_valid_host(host):
        raise ConfigError(f"Invalid target host: {host!r}")
    health_path = str(health_path or "").strip()
    if health_path and not health_path.startswith("/"):
        raise ConfigError(f"Invalid health path for {host}: {health_path!r} (must start with '/')")
    interval = None
    if schedule is not None and schedule != "":
        schedule = str(schedule)
        interval = parse_interval(schedule, f"schedule for {host}")
    else:
        schedule = None
    return Target(host=host, health_path=health_path, schedule=schedule, interval_secs=interval)


def build_config(
    hosts: Sequence[Any],
    schedule: Optional[str] = None,
    timezone: Optional[str] = None,
    health_paths: HealthPaths = None,
    port: Any = DEFAULT_PORT,
    connect_timeout: Optional[str] = None,
    health_timeout: Optional[str] = None,
    schedules: Optional[Sequence[Optional[str]]] = None,
) -> Config:
    if not hosts:
        raise ConfigError("No targets configured")
    paths = _expand_health_paths(health_paths, len(hosts))
    per_target = list(schedules) if schedules is not None else [None] * len(hosts)
    targets = tuple(_make_target(h, p, s) for h, p, s in zip(hosts, paths, per_target))

    schedule = str(schedule or "").strip() or DEFAULT_SCHEDULE
    try:
        port = int(port)
    except (TypeError, ValueError):
        raise ConfigError(f"Invalid port: {port!r}") from None
    if not 1 <= port <= 65535:
        raise ConfigError(f"Invalid port: {port!r}")

    return Config(
        targets=targets,
        schedule=schedule,
        interval_secs=parse_interval(schedule, "PING_SCHEDULE"),
        timezone=load_timezone(timezone),
        timezone_name=timezone or "",
        port=port,
        connect_timeout_secs=parse_interval(connect_timeout or DEFAULT_CONNECT_TIMEOUT, "connect timeout"),
        health_timeout_secs=parse_interval(health_timeout or DEFAULT_HEALTH_TIMEOUT, "health timeout"),
    )


def _split_list(value: Optional[str]) -> List[str]:
    if value is None:
        return []
    return [part.strip() for part in value.split(",")]


def load_env_config(env_file: Optional[str] = None) -> Config:
    """Build a Config from PING_* environment variables (and .env, if present)."""
    path = env_file or ".env"
    if Path(path).exists():
        load_dotenv(path, override=False)
    elif env_file:
        raise ConfigError(f"Env file not found: {env_file}")

    website = os.getenv("PING_WEBSITE", "")
    if not website.strip():
        raise ConfigError("PING_WEBSITE not set")
    hosts = _split_list(website)

    # with a single host the value is one path, so commas in a query string survive
    health = os.getenv("HEALTH_ENDPOINT")
    health_paths: HealthPaths = health
    if health and "," in health and len(hosts) > 1:
        health_paths = _split_list(health)

    return build_config(
        hosts,
        schedule=os.getenv("PING_SCHEDULE"),
        timezone=os.getenv("TIMEZONE"),
        health_paths=health_paths,
        port=os.getenv("PING_PORT", DEFAULT_PORT),
        connect_timeout=os.getenv("PING_TIMEOUT"),
        health_timeout=os.getenv("HEALTH_TIMEOUT"),
    )


def load_config(path: str) -> Config:
    try:
        with open(path, "r", encoding="utf-8") as f:
            raw = yaml.safe_load(f) or {}
    except OSError as e:
        raise ConfigError(f"Cannot read config {path}: {e}") from e
    except yaml.YAMLError as e:
        raise ConfigError(f"Cannot parse config {path}: {e}") from e
    if not isinstance(raw, dict):
        raise ConfigError(f"Config {path} must be a mapping")
    if "targets" not in raw:
        raise ConfigError("Missing required config key: targets")
    if not isinstance(raw["targets"], list):
        raise ConfigError("Config key 'targets' must be a list")

    hosts: List[Any] = []
    schedules: List[Optional[str]] = []
    own_paths: List[Optional[str]] = []
    for t in raw["targets"]:
        if isinstance(t, dict):
            if "host" not in t:
                raise ConfigError(f"Target missing key host: {t}")
            hosts.append(t["host"])
            schedules.append(t.get("schedule"))
            own_paths.append(t.get("health_path"))
        else:
            hosts.append(t)
            schedules.append(None)
            own_paths.append(None)

    # per-target health_path wins over the top-level one
    paths = _expand_health_paths(raw.get("health_path"), len(hosts)) if hosts else []
    paths = [own if own is not None else shared for own, shared in zip(own_paths, paths)]

    return build_config(
        hosts,
        schedule=raw.get("schedule"),
        timezone=raw.get("timezone"),
        health_paths=paths,
        port=raw.get("port", DEFAULT_PORT),
        connect_timeout=raw.get("connect_timeout"),
        health_timeout=raw.get("health_timeout"),
        schedules=schedules,
    )


def resolve_config(config_path: Optional[str] = None, env_file: Optional[str] = None) -> Config:
    if config_path:
        return load_config(config_path)
    return load_env_config(env_file)
