"""Lewisham PCN portal: https://pcnevidence.lewisham.gov.uk/pcnonline/index.php

The search button is disabled, with a "Non-human activity has been
detected" notice, when the portal suspects automation. That state is
retried a fixed number of times with a fixed delay before giving up.
"""

from __future__ import annotations

import logging

from autochallenge.config import ANTI_BOT_DELAY, ANTI_BOT_MAX_ATTEMPTS
from autochallenge.errors import AntiBotDetected
from autochallenge.issuers.base import (
    AdapterOutcome,
    IssuerAdapter,
    IssuerArgs,
    has_evidence,
    is_transient,
    take_screenshot,
    upload_evidence,
    with_retry,
)

log = logging.getLogger(__name__)

AUTHORITY = 'lewisham'
PORTAL_URL = 'https://pcnevidence.lewisham.gov.uk/pcnonline/index.php'
NON_HUMAN_TEXT = 'Non-human activity has been detected'
DETAILS_HEADING = 'h1:has-text("Penalty Charge Notice details")'


def is_retryable(exc: BaseException) -> bool:
    return isinstance(exc, AntiBotDetected) or is_transient(exc)


async def non_human_detected(page) -> bool:
    """True when the search button is disabled by the anti-bot check."""
    if await page.get_attribute('#btn_Search', 'disabled') is None:
        return False
    notice = await page.query_selector('.captchaVerificationStatus')
    if notice is None:
        return False
    return NON_HUMAN_TEXT in (await notice.text_content() or '')


async def access(args: IssuerArgs) -> None:
    """Search for the ticket and land on its details page."""

    async def attempt(n: int) -> None:
        page = args.page
        await page.goto(PORTAL_URL)
        await page.fill('#txt_penalityChargeNotice', args.ctx.pcn_number)
        await page.fill('#txt_vehicleRegistrationNumber', args.ctx.vehicle_reg)
        if await non_human_detected(page):
            log.info('Attempt %d: non-human activity detected', n)
            raise AntiBotDetected(
                'Non-human activity detected on Lewisham website', attempts=n,
            )
        await page.click('#btn_Search')
        await page.wait_for_url('**/ticketdetails')

    await with_retry(
        args, AUTHORITY, 'access', attempt,
        is_retryable=is_retryable,
        max_attempts=ANTI_BOT_MAX_ATTEMPTS,
        delay=ANTI_BOT_DELAY,
    )


async def verify(args: IssuerArgs) -> bool:
    """Confirm the ticket is visible and pull the gallery evidence."""
    await access(args)
    page = args.page
    await page.wait_for_selector(DETAILS_HEADING)
    await take_screenshot(args, 'pcn-details')

    if await has_evidence(args):
        log.info('Evidence for ticket %s already stored', args.ticket_id)
        return True

    await page.click('#links a:first-child')
    await page.wait_for_selector('#blueimp-image-gallery')
    images = await page.query_selector_all('#blueimp-image-gallery .slides img')
    sources = [await img.get_attribute('src') for img in images]
    # Thumbnails carry thumb=true
    full_size = [src for src in sources if src and 'thumb=false' in src]
    if full_size:
        await upload_evidence(args, full_size)
    await page.click('#blueimp-image-gallery a.close')
    return True


async def challenge(args: IssuerArgs) -> AdapterOutcome:
    """Fill the contact form and submit the challenge text."""
    await access(args)
    page = args.page
    ctx = args.ctx

    await page.click('#btn_Challenge')
    await page.wait_for_url('**/contact')

    await page.click('#Title')
    await page.click('li:has-text("Mr")')
    await page.fill('#txt_First_Name', ctx.first_name)
    await page.fill('#txt_Surname', ctx.last_name)
    await page.fill('#txt_Email_Address', ctx.email)
    await page.fill('#txt_ConfirmEmail', ctx.email)
    await page.fill('#txt_Line_1', ctx.address_line1)
    if ctx.address_line2:
        await page.fill('#txt_Line_2', ctx.address_line2)
    await page.fill('#txt_Town', ctx.city)
    await page.fill('#txt_Post_Code', ctx.postcode)
    await page.fill('#mtxt_Notes', ctx.challenge_text)

    await take_screenshot(args, 'challenge-pre-submit')
    if args.dry_run:
        log.info('Dry run: not submitting Lewisham challenge for %s', ctx.pcn_number)
        return AdapterOutcome(success=True, challenge_text=ctx.challenge_text)

    await page.click('#Submit')
    await take_screenshot(args, 'challenge-submitted')
    return AdapterOutcome(success=True, submitted=True, challenge_text=ctx.challenge_text)


ADAPTER = IssuerAdapter(
    authority_id=AUTHORITY,
    name='London Borough of Lewisham',
    access=access,
    verify=verify,
    challenge=challenge,
)
