"""Bounded retry with a retryable-state classifier, shared by every issuer adapter.

Fixed attempt count, fixed delay between attempts. The sink hears about a
retry sequence once (on the first retry) and once more only if the bound is
exhausted; intermediate attempts go to the local log.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import TypeVar

from autochallenge.alerts import AlertSink

log = logging.getLogger(__name__)

T = TypeVar('T')


async def retry_bounded(
    operation: Callable[[int], Awaitable[T]],
    *,
    is_retryable: Callable[[BaseException], bool],
    max_attempts: int,
    delay: float,
    sink: AlertSink,
    label: str,
    tags: dict | None = None,
) -> T:
    """Run operation(attempt) until it returns, retrying classified failures.

    Non-retryable exceptions propagate immediately. When every attempt fails
    the last exception is re-raised after one "exhausted" error report
    carrying the attempt count.
    """
    if max_attempts < 1:
        raise ValueError('max_attempts must be at least 1')
    tags = dict(tags or {})
    warned = False

    for attempt in range(1, max_attempts + 1):
        try:
            return await operation(attempt)
        except Exception as exc:
            if not is_retryable(exc):
                raise

            if attempt == max_attempts:
                await sink.error(
                    f'{label}: retries exhausted after {attempt} attempts',
                    tags=tags,
                    extra={'attempt': attempt, 'maxAttempts': max_attempts},
                    exc=exc,
                )
                raise

            if not warned:
                await sink.warning(
                    f'{label}: attempt {attempt}/{max_attempts} failed, retrying',
                    tags=tags,
                    extra={'attempt': attempt, 'maxAttempts': max_attempts,
                           'errorType': type(exc).__name__},
                )
                warned = True
            else:
                log.info(
                    '%s: attempt %d/%d failed (%s), retrying',
                    label, attempt, max_attempts, exc,
                )
            await asyncio.sleep(delay)

    raise AssertionError('unreachable')
