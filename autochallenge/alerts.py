"""Error-tracking sink: structured warnings and errors for exhausted retries,
learner dead-ends and failed verifications.

Every report is logged locally. When a webhook URL is configured the report
is also POSTed as JSON; delivery problems are logged, never raised.
"""

from __future__ import annotations

import logging
import traceback
from dataclasses import dataclass, field

import httpx

from autochallenge.storage import timestamp

log = logging.getLogger(__name__)


@dataclass
class Report:
    """One structured report sent to the sink."""

    level: str  # 'warning' or 'error'
    message: str
    tags: dict[str, str] = field(default_factory=dict)
    extra: dict = field(default_factory=dict)
    exception: str = ''

    def to_dict(self) -> dict:
        return {
            'level': self.level,
            'message': self.message,
            'tags': self.tags,
            'extra': self.extra,
            'exception': self.exception,
            'timestamp': timestamp(),
        }


class AlertSink:
    """Reports to the log and, optionally, an HTTP webhook."""

    def __init__(self, webhook_url: str = '', timeout: float = 10.0) -> None:
        self._webhook_url = webhook_url
        self._timeout = timeout
        self._client: httpx.AsyncClient | None = None

    async def start(self) -> None:
        if self._webhook_url and self._client is None:
            self._client = httpx.AsyncClient(timeout=self._timeout)

    async def close(self) -> None:
        if self._client:
            await self._client.aclose()
            self._client = None

    async def warning(
        self, message: str, tags: dict | None = None, extra: dict | None = None,
    ) -> None:
        report = Report('warning', message, dict(tags or {}), dict(extra or {}))
        log.warning('%s tags=%s extra=%s', message, report.tags, report.extra)
        await self._deliver(report)

    async def error(
        self,
        message: str,
        tags: dict | None = None,
        extra: dict | None = None,
        exc: BaseException | None = None,
    ) -> None:
        report = Report('error', message, dict(tags or {}), dict(extra or {}))
        if exc is not None:
            report.exception = ''.join(
                traceback.format_exception(type(exc), exc, exc.__traceback__)
            )
            report.extra.setdefault('errorType', type(exc).__name__)
        log.error('%s tags=%s extra=%s', message, report.tags, report.extra)
        await self._deliver(report)

    async def _deliver(self, report: Report) -> None:
        if not self._webhook_url:
            return
        if self._client is None:
            await self.start()
        try:
            resp = await self._client.post(self._webhook_url, json=report.to_dict())
            resp.raise_for_status()
        except httpx.HTTPError as exc:
            log.warning('Alert delivery failed: %s', exc)
