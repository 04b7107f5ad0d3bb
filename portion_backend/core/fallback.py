"""
Priority-ordered fallback over unreliable providers.

first_success() walks candidates in order, stops at the first that yields a
value, and records one EndpointError per failed candidate. gather_settled()
runs independent providers concurrently and keeps the ones that succeed.
Used for RPC endpoints, APY sources and yield sources.
"""

from __future__ import annotations

import asyncio
from typing import Awaitable, Callable, Iterable, Sequence, TypeVar

from portion_backend.core.exceptions import EndpointError

C = TypeVar("C")
T = TypeVar("T")


class FallbackExhausted(Exception):
    """Raised by first_success when every candidate failed."""

    def __init__(self, errors: list[EndpointError]) -> None:
        super().__init__(f"all {len(errors)} candidates failed")
        self.errors = errors


def describe_error(exc: BaseException) -> str:
    text = str(exc)
    name = type(exc).__name__
    return f"{name}: {text}" if text else name


async def first_success(
    candidates: Iterable[C],
    attempt: Callable[[C], Awaitable[T]],
    *,
    label: Callable[[C], str] = str,
    on_error: Callable[[C, Exception], None] | None = None,
) -> tuple[T, list[EndpointError]]:
    """
    Try each candidate in order; return (value, errors recorded before success).

    Raises FallbackExhausted with one error per candidate if none succeeds.
    Cancellation is never swallowed.
    """
    errors: list[EndpointError] = []
    for candidate in candidates:
        try:
            value = await attempt(candidate)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            errors.append(EndpointError(endpoint=label(candidate), error=describe_error(e)))
            if on_error is not None:
                on_error(candidate, e)
            continue
        return value, errors
    raise FallbackExhausted(errors)


async def gather_settled(
    providers: Sequence[C],
    fetch: Callable[[C], Awaitable[T]],
    *,
    label: Callable[[C], str] = str,
) -> tuple[list[tuple[C, T]], list[EndpointError]]:
    """Run fetch for every provider concurrently; split into successes and errors."""
    results = await asyncio.gather(*(fetch(p) for p in providers), return_exceptions=True)
    ok: list[tuple[C, T]] = []
    errors: list[EndpointError] = []
    for provider, result in zip(providers, results):
        if isinstance(result, asyncio.CancelledError):
            raise result
        if isinstance(result, BaseException):
            errors.append(EndpointError(endpoint=label(provider), error=describe_error(result)))
        else:
            ok.append((provider, result))
    return ok, errors
