"""Shared aiohttp client for GeckoTerminal, Jupiter and Helius: per-source limits, 429 cooldowns, retries."""

from __future__ import annotations

import asyncio
import logging
import random
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Any
from urllib.parse import urlsplit

import aiohttp

import config

logger = logging.getLogger(__name__)

UNLIMITED_RATE = (0, 0.0)
BODY_EXCERPT_CHARS = 500


@dataclass
class HttpResult:
    ok: bool
    status: int
    data: Any | None
    error: str = ""
    text: str = ""


@dataclass
class HttpSourceStats:
    ok: int = 0
    fail: int = 0
    rate_limited: int = 0
    limiter_waits: int = 0
    cooldown_waits: int = 0
    retries: int = 0
    latency_total_ms: float = 0.0
    latency_max_ms: float = 0.0
    latency_count: int = 0

    def observe(self, started: float) -> None:
        elapsed_ms = max(0.0, (time.perf_counter() - started) * 1000.0)
        self.latency_total_ms += elapsed_ms
        self.latency_count += 1
        self.latency_max_ms = max(self.latency_max_ms, elapsed_ms)

    def to_dict(self) -> dict[str, int | float]:
        total = self.ok + self.fail
        return {
            "ok": self.ok,
            "fail": self.fail,
            "total": total,
            "rate_limited": self.rate_limited,
            "limiter_waits": self.limiter_waits,
            "cooldown_waits": self.cooldown_waits,
            "retries": self.retries,
            "error_percent": round(self.fail / total * 100.0, 2) if total > 0 else 0.0,
            "latency_avg_ms": round(self.latency_total_ms / self.latency_count, 2) if self.latency_count else 0.0,
            "latency_max_ms": round(self.latency_max_ms, 2),
        }


@dataclass
class _SourceState:
    semaphore: asyncio.Semaphore
    max_calls: int
    window_seconds: float
    cooldown_seconds: float
    stats: HttpSourceStats = field(default_factory=HttpSourceStats)
    calls: deque[float] = field(default_factory=deque)
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    cooldown_until: float = 0.0


def redact_url(url: str) -> str:
    """Drop the query string; Helius and some RPC URLs carry API keys there."""
    parts = urlsplit(str(url))
    return f"{parts.scheme}://{parts.netloc}{parts.path}" if parts.netloc else str(url).split("?", 1)[0]


def _retry_after_seconds(response: aiohttp.ClientResponse) -> float:
    raw = (response.headers or {}).get("Retry-After", "")
    try:
        return max(0.0, float(raw)) if raw else 0.0
    except (TypeError, ValueError):
        return 0.0


def backoff_delay(attempt: int, status: int) -> float:
    base = max(0.05, float(getattr(config, "HTTP_BACKOFF_BASE_SECONDS", 0.3) or 0.3))
    cap = max(base, float(getattr(config, "HTTP_BACKOFF_MAX_SECONDS", 4.0) or 4.0))
    jitter = max(0.0, float(getattr(config, "HTTP_JITTER_SECONDS", 0.15) or 0.0))
    delay = min(cap, base * (2 ** max(0, attempt - 1)))
    if status == 429:
        delay = min(cap, delay + max(0.0, float(getattr(config, "HTTP_RATE_LIMIT_DELAY_SECONDS", 1.0) or 0.0)))
    return max(0.01, delay + random.uniform(0.0, jitter))


class ResilientHttpClient:
    def __init__(
        self,
        timeout_seconds: float,
        headers: dict[str, str] | None = None,
        source_limits: dict[str, int] | None = None,
    ) -> None:
        self._timeout = aiohttp.ClientTimeout(total=max(1.0, float(timeout_seconds)))
        self._headers = dict(headers or {})
        self._source_limits = {k.lower(): int(v) for k, v in (source_limits or {}).items()}
        self._session: aiohttp.ClientSession | None = None
        self._sources: dict[str, _SourceState] = {}

    async def close(self) -> None:
        session, self._session = self._session, None
        if session is not None and not session.closed:
            await session.close()

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            connector = aiohttp.TCPConnector(limit=max(1, int(getattr(config, "HTTP_CONNECTOR_LIMIT", 30) or 30)))
            self._session = aiohttp.ClientSession(timeout=self._timeout, connector=connector)
        return self._session

    def _source(self, source: str) -> _SourceState:
        key = str(source or "default").strip().lower() or "default"
        state = self._sources.get(key)
        if state is not None:
            return state
        concurrency = self._source_limits.get(key, int(getattr(config, "HTTP_DEFAULT_CONCURRENCY", 8) or 8))
        max_calls, window = (getattr(config, "HTTP_SOURCE_RATE_LIMITS", {}) or {}).get(key, UNLIMITED_RATE)
        cooldowns = getattr(config, "HTTP_SOURCE_429_COOLDOWNS", {}) or {}
        cooldown = cooldowns.get(key, getattr(config, "HTTP_429_COOLDOWN_SECONDS", 5.0))
        state = _SourceState(
            semaphore=asyncio.Semaphore(max(1, int(concurrency))),
            max_calls=max(0, int(max_calls)),
            window_seconds=max(0.0, float(window)),
            cooldown_seconds=max(0.0, float(cooldown or 0.0)),
        )
        self._sources[key] = state
        return state

    async def _wait_turn(self, key: str, state: _SourceState) -> None:
        """Block until the source is out of 429 cooldown and has a free slot in its rate window."""
        while True:
            remaining = state.cooldown_until - time.monotonic()
            if remaining > 0:
                state.stats.cooldown_waits += 1
                logger.debug("HTTP_COOLDOWN_WAIT source=%s wait=%.2fs", key, remaining)
                await asyncio.sleep(remaining)
                continue
            if state.max_calls <= 0:
                return
            async with state.lock:
                now = time.monotonic()
                while state.calls and state.calls[0] <= now - state.window_seconds:
                    state.calls.popleft()
                if len(state.calls) < state.max_calls:
                    state.calls.append(now)
                    return
                wait_for = max(0.01, state.calls[0] + state.window_seconds - now)
            state.stats.limiter_waits += 1
            logger.debug("HTTP_RATE_WAIT source=%s wait=%.2fs max_calls=%s", key, wait_for, state.max_calls)
            await asyncio.sleep(wait_for)

    @staticmethod
    def _start_cooldown(state: _SourceState, response: aiohttp.ClientResponse) -> None:
        # Sources configured with 0 run their own backoff (the scanner).
        if state.cooldown_seconds <= 0:
            return
        until = time.monotonic() + max(state.cooldown_seconds, _retry_after_seconds(response))
        state.cooldown_until = max(state.cooldown_until, until)

    def snapshot_stats(self, reset: bool = False) -> dict[str, dict[str, int | float]]:
        out: dict[str, dict[str, int | float]] = {}
        now = time.monotonic()
        for key, state in self._sources.items():
            row = state.stats.to_dict()
            remaining = max(0.0, state.cooldown_until - now)
            row["cooldown_active"] = 1 if remaining > 0 else 0
            row["cooldown_remaining_sec"] = round(remaining, 2)
            out[key] = row
            if reset:
                state.stats = HttpSourceStats()
        return out

    async def get_json(
        self,
        url: str,
        *,
        source: str = "default",
        params: dict[str, Any] | None = None,
        headers: dict[str, str] | None = None,
        max_attempts: int | None = None,
    ) -> HttpResult:
        return await self._request_json("GET", url, source=source, params=params, headers=headers, max_attempts=max_attempts)

    async def post_json(
        self,
        url: str,
        *,
        json_body: Any,
        source: str = "default",
        headers: dict[str, str] | None = None,
        max_attempts: int | None = None,
    ) -> HttpResult:
        return await self._request_json(
            "POST", url, source=source, json_body=json_body, headers=headers, max_attempts=max_attempts
        )

    async def _send_once(
        self,
        state: _SourceState,
        method: str,
        url: str,
        params: dict[str, Any] | None,
        json_body: Any,
        headers: dict[str, str],
    ) -> HttpResult:
        """One request; ``ok`` only on 200. Transport errors come back as status 0."""
        async with state.semaphore:
            started = time.perf_counter()
            try:
                session = await self._get_session()
                async with session.request(method, url, params=params, json=json_body, headers=headers) as response:
                    state.stats.observe(started)
                    status = int(response.status or 0)
                    if status == 200:
                        return HttpResult(ok=True, status=status, data=await response.json(content_type=None))
                    if status == 429:
                        state.stats.rate_limited += 1
                        self._start_cooldown(state, response)
                    body = (await response.text())[:BODY_EXCERPT_CHARS]
                    return HttpResult(ok=False, status=status, data=None, error=f"http_status_{status}", text=body)
            except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as exc:
                state.stats.observe(started)
                return HttpResult(ok=False, status=0, data=None, error=f"http_error:{exc!r}")

    async def _request_json(
        self,
        method: str,
        url: str,
        *,
        source: str,
        params: dict[str, Any] | None = None,
        json_body: Any = None,
        headers: dict[str, str] | None = None,
        max_attempts: int | None = None,
    ) -> HttpResult:
        attempts = max(1, int(max_attempts or getattr(config, "HTTP_RETRY_ATTEMPTS", 2) or 2))
        req_headers = {**self._headers, **(headers or {})}
        key = str(source or "default").strip().lower() or "default"
        state = self._source(key)

        result = HttpResult(ok=False, status=0, data=None, error="http_exhausted")
        for attempt in range(1, attempts + 1):
            await self._wait_turn(key, state)
            result = await self._send_once(state, method, url, params, json_body, req_headers)
            if result.ok:
                state.stats.ok += 1
                return result
            retryable = result.status in (0, 429) or 500 <= result.status <= 599
            if not retryable or attempt >= attempts:
                break
            state.stats.retries += 1
            delay = backoff_delay(attempt, result.status)
            logger.debug(
                "HTTP_RETRY source=%s method=%s attempt=%s/%s status=%s delay=%.2fs url=%s",
                key,
                method,
                attempt,
                attempts,
                result.status,
                delay,
                redact_url(url),
            )
            await asyncio.sleep(delay)

        state.stats.fail += 1
        return result
