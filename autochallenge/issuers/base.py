"""Shared pieces for hand-written issuer adapters.

An adapter is three coroutines (access, verify, challenge) over one
IssuerArgs bundle. The adapters hard-code their own control flow; what
they share lives here: screenshots, portal evidence upload with prefix
de-duplication, and the bounded access retry.
"""

from __future__ import annotations

import hashlib
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from urllib.parse import urljoin

from playwright.async_api import Error as PlaywrightError

from autochallenge.alerts import AlertSink
from autochallenge.browser import BrowserSession
from autochallenge.config import EVIDENCE_CONTENT_TYPE, SCREENSHOT_CONTENT_TYPE
from autochallenge.context import AutomationContext
from autochallenge.errors import StorageUploadFailure
from autochallenge.retry import retry_bounded
from autochallenge.storage import (
    EvidenceStore,
    adapter_screenshot_path,
    evidence_marker_path,
    evidence_path,
    to_jpeg,
)

log = logging.getLogger(__name__)


@dataclass
class IssuerArgs:
    """Everything an adapter call needs. One per adapter run."""

    session: BrowserSession
    ticket_id: str
    challenge_id: str
    ctx: AutomationContext
    evidence: EvidenceStore
    sink: AlertSink
    dry_run: bool = False
    screenshots: list[str] = field(default_factory=list)

    @property
    def page(self):
        return self.session.page

    def tags(self, authority: str, action: str) -> dict[str, str]:
        return {
            'component': 'issuer',
            'authority': authority,
            'action': action,
            'pcnNumber': self.ctx.pcn_number,
            'vehicleRegistration': self.ctx.vehicle_reg,
        }


@dataclass
class AdapterOutcome:
    success: bool
    submitted: bool = False
    challenge_text: str = ''


@dataclass(frozen=True)
class IssuerAdapter:
    """access/verify/challenge capability for one authority."""

    authority_id: str
    name: str
    access: Callable[[IssuerArgs], Awaitable[None]]
    verify: Callable[[IssuerArgs], Awaitable[bool]]
    challenge: Callable[[IssuerArgs], Awaitable[AdapterOutcome]]


# ---------------------------------------------------------------------------
# Screenshots and evidence
# ---------------------------------------------------------------------------

async def take_screenshot(args: IssuerArgs, name: str, full_page: bool = True) -> str:
    """Screenshot the page and upload it. Returns '' when either part fails."""
    try:
        data = await args.page.screenshot(full_page=full_page)
        url = await args.evidence.put(
            adapter_screenshot_path(args.ticket_id, args.challenge_id, name),
            data,
            SCREENSHOT_CONTENT_TYPE,
        )
    except (PlaywrightError, StorageUploadFailure) as exc:
        log.warning('Screenshot %s for ticket %s failed: %s', name, args.ticket_id, exc)
        return ''
    args.screenshots.append(url)
    return url


async def has_evidence(args: IssuerArgs) -> bool:
    return await args.evidence.exists(evidence_marker_path(args.ticket_id))


def evidence_id(source_url: str) -> str:
    """Stable object name for a portal image, so each image is stored once."""
    return hashlib.sha256(source_url.encode()).hexdigest()[:32]


async def upload_evidence(args: IssuerArgs, image_sources: list[str]) -> int:
    """Fetch portal-hosted images and store them under the ticket's evidence prefix.

    Each image lands at a path derived from its source URL, and the ticket
    is marked complete once every image is stored. A complete ticket is
    skipped outright; an incomplete one only fetches the missing images.
    Returns the number of images stored by this call.
    """
    if await has_evidence(args):
        log.info('Evidence for ticket %s already stored, skipping upload', args.ticket_id)
        return 0

    stored = 0
    present = 0
    for i, src in enumerate(image_sources, start=1):
        url = urljoin(args.page.url, src)
        path = evidence_path(args.ticket_id, evidence_id(url))
        if await args.evidence.exists(path):
            present += 1
            continue
        try:
            resp = await args.page.request.get(url)
            if not resp.ok:
                log.warning('Evidence image %d returned HTTP %d', i, resp.status)
                continue
            body = await resp.body()
            await args.evidence.put(path, to_jpeg(body), EVIDENCE_CONTENT_TYPE)
            stored += 1
        except (PlaywrightError, StorageUploadFailure) as exc:
            if await args.evidence.exists(path):
                # Another run stored it first
                present += 1
                continue
            log.error('Failed to process evidence image %d for ticket %s: %s',
                      i, args.ticket_id, exc)
    log.info('Stored %d/%d evidence images for ticket %s (%d already present)',
             stored, len(image_sources), args.ticket_id, present)

    if image_sources and stored + present == len(image_sources):
        try:
            await args.evidence.put(evidence_marker_path(args.ticket_id), b'')
        except StorageUploadFailure as exc:
            log.debug('Evidence marker for %s not written: %s', args.ticket_id, exc.reason)
    return stored


# ---------------------------------------------------------------------------
# Access retry
# ---------------------------------------------------------------------------

def is_transient(exc: BaseException) -> bool:
    """Playwright errors (timeouts, navigation failures) are worth another go."""
    return isinstance(exc, PlaywrightError)


async def with_retry(
    args: IssuerArgs,
    authority: str,
    action: str,
    attempt: Callable[[int], Awaitable[None]],
    is_retryable: Callable[[BaseException], bool],
    max_attempts: int,
    delay: float,
) -> None:
    await retry_bounded(
        attempt,
        is_retryable=is_retryable,
        max_attempts=max_attempts,
        delay=delay,
        sink=args.sink,
        label=f'{authority} {action}',
        tags=args.tags(authority, action),
    )
