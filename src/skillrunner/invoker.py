"""Handler invocation with a per-attempt timeout and a bounded retry loop.

Retries all happen inside one RUNNING sojourn; the state machine only sees
the final outcome. Handlers may be plain functions or coroutine functions.
A timed-out attempt is abandoned (its worker thread is not killed) and
counts as a failed attempt.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Coroutine, TypeVar

from pydantic import ValidationError as PydanticValidationError

from .errors import HandlerTimeout
from .reason_codes import HANDLER_FAILED, HANDLER_TIMEOUT
from .redaction import sanitize_error_message
from .skills import SafetyConfig, SkillResult

_logger = logging.getLogger(__name__)

R = TypeVar("R")

_loop_lock = threading.Lock()
_loop: asyncio.AbstractEventLoop | None = None


def _loop_runner(loop: asyncio.AbstractEventLoop, ready: threading.Event) -> None:
    asyncio.set_event_loop(loop)
    ready.set()
    loop.run_forever()


def _background_loop() -> asyncio.AbstractEventLoop:
    """Shared event loop for coroutine handlers, started on first use."""
    global _loop
    if _loop is not None and _loop.is_running():
        return _loop
    with _loop_lock:
        if _loop is not None and _loop.is_running():
            return _loop
        ready = threading.Event()
        loop = asyncio.new_event_loop()
        thread = threading.Thread(
            target=_loop_runner,
            name="skillrunner-async-handlers",
            args=(loop, ready),
            daemon=True,
        )
        thread.start()
        ready.wait()
        _loop = loop
        return loop


def submit_coroutine(coro: Coroutine[Any, Any, R]) -> Future[R]:
    return asyncio.run_coroutine_threadsafe(coro, _background_loop())


def retry_delay(safety: SafetyConfig, attempt: int, multiplier: float = 1.0) -> float:
    """Delay before retry number ``attempt`` (1-based)."""
    return float(safety.retry_delay_seconds) * (multiplier ** (attempt - 1))


def lease_seconds(safety: SafetyConfig, multiplier: float = 1.0) -> int:
    """Longest time a RUNNING sojourn can legitimately take: every attempt plus every delay."""
    attempts = safety.max_retries + 1
    delays = sum(retry_delay(safety, n, multiplier) for n in range(1, attempts))
    return int(safety.timeout_seconds * attempts + delays + 0.999)


@dataclass(frozen=True)
class InvocationOutcome:
    result: SkillResult | None
    attempts: int
    error_code: str | None = None
    error_message: str | None = None

    @property
    def succeeded(self) -> bool:
        return self.result is not None


class HandlerInvoker:
    """Runs one handler call per attempt with a timeout; retries per the skill's safety config."""

    def __init__(
        self,
        *,
        retry_backoff_multiplier: float = 1.0,
        sleep: Callable[[float], None] = time.sleep,
        max_workers: int | None = None,
    ) -> None:
        self._multiplier = retry_backoff_multiplier
        self._sleep = sleep
        self._pool = ThreadPoolExecutor(
            max_workers=max_workers, thread_name_prefix="skillrunner-handler"
        )

    def shutdown(self) -> None:
        self._pool.shutdown(wait=False, cancel_futures=True)

    def invoke(
        self,
        call: Callable[[int], SkillResult | Awaitable[SkillResult]],
        safety: SafetyConfig,
        *,
        label: str = "handler",
    ) -> InvocationOutcome:
        """Call ``call(attempt)`` until it succeeds or retries are exhausted."""
        attempts = safety.max_retries + 1
        last_code = HANDLER_FAILED
        last_message = "handler failed"
        for attempt in range(1, attempts + 1):
            try:
                result = self._attempt(call, attempt, safety.timeout_seconds)
            except HandlerTimeout as exc:
                last_code, last_message = HANDLER_TIMEOUT, str(exc)
            except PydanticValidationError as exc:
                last_code = HANDLER_FAILED
                last_message = f"handler returned an invalid result: {exc.error_count()} error(s)"
            except Exception as exc:  # handler code is arbitrary; every failure is a failed attempt
                last_code = HANDLER_FAILED
                last_message = f"{type(exc).__name__}: {exc}"
            else:
                if result.success:
                    return InvocationOutcome(result=result, attempts=attempt)
                last_code = HANDLER_FAILED
                last_message = result.error or "handler reported failure"

            _logger.warning(
                "%s attempt %d/%d failed: %s", label, attempt, attempts, last_code
            )
            if attempt < attempts:
                delay = retry_delay(safety, attempt, self._multiplier)
                if delay > 0:
                    self._sleep(delay)

        return InvocationOutcome(
            result=None,
            attempts=attempts,
            error_code=last_code,
            error_message=sanitize_error_message(last_message),
        )

    def _attempt(
        self,
        call: Callable[[int], SkillResult | Awaitable[SkillResult]],
        attempt: int,
        timeout_seconds: float,
    ) -> SkillResult:
        future: Future[Any] = self._pool.submit(call, attempt)
        try:
            value = future.result(timeout=timeout_seconds)
            if inspect.isawaitable(value):
                future = submit_coroutine(_await(value))
                value = future.result(timeout=timeout_seconds)
        except FutureTimeout as exc:
            future.cancel()
            raise HandlerTimeout(f"handler exceeded {timeout_seconds}s timeout") from exc
        if isinstance(value, SkillResult):
            return value
        return SkillResult.model_validate(value)


async def _await(awaitable: Awaitable[R]) -> R:
    return await awaitable
