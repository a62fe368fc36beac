# checks.py
"""
Endpoint probes: one TCP reachability check and one optional HTTPS health check per call.

Both are stateless and never retry; the scheduler re-polls on its own interval.
Both return outcome values instead of raising, and both give up promptly with a
CANCELLED failure once the shared stop event is set.
"""
from __future__ import annotations

import asyncio
import contextlib
import enum
import errno
import json
import re
import socket
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Dict, Optional, TypeVar, Union

import httpx

from settings import Config, Target

T = TypeVar("T")

ERRNO_RE = re.compile(r"\[Errno (\d+)\]")


# -------------------------
# Outcomes
# -------------------------

class ReachabilityErrorKind(enum.Enum):
    TIMEOUT = "timeout"
    REFUSED = "refused"
    DNS = "dns"
    OTHER = "other"
    CANCELLED = "cancelled"


class HealthErrorKind(enum.Enum):
    TRANSPORT = "transport"
    STATUS = "status"
    INVALID_JSON = "invalid_json"
    CANCELLED = "cancelled"


@dataclass(frozen=True)
class ReachabilityOk:
    latency_ms: float
    ok = True


@dataclass(frozen=True)
class ReachabilityFailure:
    kind: ReachabilityErrorKind
    reason: str
    ok = False

    @property
    def cancelled(self) -> bool:
        return self.kind is ReachabilityErrorKind.CANCELLED


@dataclass(frozen=True)
class HealthOk:
    data: Dict[str, Any] = field(default_factory=dict)
    ok = True


@dataclass(frozen=True)
class HealthFailure:
    kind: HealthErrorKind
    reason: str
    status_code: Optional[int] = None
    body: str = ""
    ok = False

    @property
    def cancelled(self) -> bool:
        return self.kind is HealthErrorKind.CANCELLED


class HealthNotConfigured:
    """Sentinel outcome for targets without a health path."""

    ok = True

    def __repr__(self) -> str:
        return "NOT_CONFIGURED"


NOT_CONFIGURED = HealthNotConfigured()

ReachabilityOutcome = Union[ReachabilityOk, ReachabilityFailure]
HealthOutcome = Union[HealthOk, HealthFailure, HealthNotConfigured]


class _Stopped(Exception):
    pass


async def _until_stopped(aw: Awaitable[T], stop: Optional[asyncio.Event]) -> T:
    """Await `aw`, abandoning it as soon as `stop` is set."""
    if stop is None:
        return await aw
    if stop.is_set():
        if asyncio.iscoroutine(aw):
            aw.close()
        raise _Stopped()
    work = asyncio.ensure_future(aw)
    waiter = asyncio.ensure_future(stop.wait())
    try:
        await asyncio.wait({work, waiter}, return_when=asyncio.FIRST_COMPLETED)
    finally:
        waiter.cancel()
        if not work.done():
            work.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await work
    if work.cancelled():
        raise _Stopped()
    return work.result()


# -------------------------
# Reachability
# -------------------------

async def _connect(host: str, port: int, timeout: float) -> float:
    start = time.perf_counter()
    _reader, writer = await asyncio.wait_for(asyncio.open_connection(host, port), timeout=timeout)
    elapsed_ms = (time.perf_counter() - start) * 1000.0
    writer.close()
    with contextlib.suppress(OSError):
        await writer.wait_closed()
    return elapsed_ms


def _all_refused(e: OSError) -> bool:
    # asyncio folds per-address failures (e.g. IPv4 and IPv6) into OSError("Multiple exceptions: ...")
    message = str(e)
    if not message.startswith("Multiple exceptions:"):
        return False
    codes = ERRNO_RE.findall(message)
    return bool(codes) and all(int(code) == errno.ECONNREFUSED for code in codes)


async def check_reachability(
    target: Target,
    timeout: float,
    port: int = 80,
    stop: Optional[asyncio.Event] = None,
) -> ReachabilityOutcome:
    try:
        elapsed_ms = await _until_stopped(_connect(target.host, port, timeout), stop)
    except _Stopped:
        return ReachabilityFailure(ReachabilityErrorKind.CANCELLED, "cancelled")
    except asyncio.TimeoutError:
        return ReachabilityFailure(
            ReachabilityErrorKind.TIMEOUT, f"dial tcp {target.host}:{port}: i/o timeout after {timeout:g}s"
        )
    except socket.gaierror as e:
        return ReachabilityFailure(ReachabilityErrorKind.DNS, f"lookup {target.host}: {e.strerror or e}")
    except ConnectionRefusedError:
        return ReachabilityFailure(
            ReachabilityErrorKind.REFUSED, f"dial tcp {target.host}:{port}: connection refused"
        )
    except OSError as e:
        if _all_refused(e):
            return ReachabilityFailure(
                ReachabilityErrorKind.REFUSED, f"dial tcp {target.host}:{port}: connection refused"
            )
        return ReachabilityFailure(ReachabilityErrorKind.OTHER, f"dial tcp {target.host}:{port}: {e}")
    return ReachabilityOk(latency_ms=max(0.0, elapsed_ms))


# -------------------------
# Health
# -------------------------

async def _fetch(client: httpx.AsyncClient, url: str, timeout: float) -> httpx.Response:
    return await client.get(url, timeout=timeout)


def _parse_health(response: httpx.Response) -> HealthOutcome:
    body = response.text
    if not 200 <= response.status_code < 300:
        return HealthFailure(
            HealthErrorKind.STATUS,
            f"health endpoint HTTP {response.status_code}: {body}",
            status_code=response.status_code,
            body=body,
        )
    try:
        data = json.loads(body)
    except ValueError as e:
        return HealthFailure(
            HealthErrorKind.INVALID_JSON,
            f"invalid JSON from health endpoint: {e}\nBody: {body}",
            status_code=response.status_code,
            body=body,
        )
    if not isinstance(data, dict):
        return HealthFailure(
            HealthErrorKind.INVALID_JSON,
            f"invalid JSON from health endpoint: expected an object, got {type(data).__name__}\nBody: {body}",
            status_code=response.status_code,
            body=body,
        )
    return HealthOk(data=data)


async def check_health(
    target: Target,
    timeout: float,
    client: Optional[httpx.AsyncClient] = None,
    stop: Optional[asyncio.Event] = None,
) -> HealthOutcome:
    url = target.health_url
    if url is None:
        return NOT_CONFIGURED
    try:
        if client is None:
            async with httpx.AsyncClient() as own:
                response = await _until_stopped(_fetch(own, url, timeout), stop)
        else:
            response = await _until_stopped(_fetch(client, url, timeout), stop)
    except _Stopped:
        return HealthFailure(HealthErrorKind.CANCELLED, "cancelled")
    except httpx.HTTPError as e:
        return HealthFailure(HealthErrorKind.TRANSPORT, f"GET {url}: {str(e) or type(e).__name__}")
    return _parse_health(response)


class EndpointChecker:
    """Binds probe settings, the shared HTTP client and the stop event for the scheduler."""

    def __init__(self, cfg: Config, stop: asyncio.Event, client: Optional[httpx.AsyncClient] = None):
        self.cfg = cfg
        self.stop = stop
        self.client = client

    async def reachability(self, target: Target) -> ReachabilityOutcome:
        return await check_reachability(target, self.cfg.connect_timeout_secs, self.cfg.port, self.stop)

    async def health(self, target: Target) -> HealthOutcome:
        return await check_health(target, self.cfg.health_timeout_secs, self.client, self.stop)
