"""Westminster PCN portal: https://pcnpayment.westminster.gov.uk/

Challenge flow spans four pages:
    step3.php             grounds selection ("The contravention did not occur")
    did_not_occur.php     sub-reason and free-text details
    challenge_final.php   contact details with postcode address lookup
    submission.php        confirmation
"""

from __future__ import annotations

import logging

from autochallenge.config import ADAPTER_RETRY_DELAY, ANTI_BOT_MAX_ATTEMPTS
from autochallenge.errors import AutomationError, TicketNotFound
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

AUTHORITY = 'westminster'
PORTAL_URL = 'https://pcnpayment.westminster.gov.uk/'
DETAILS_HEADING = 'h1:has-text("Penalty Charge Notice details")'
NO_SUCH_TICKET = '#no-such-ticket:not([style*="display: none"])'
SELECTION_TIMEOUT_MS = 5_000


async def access(args: IssuerArgs) -> None:
    """Look the ticket up by PCN and VRM. Raises TicketNotFound if unknown."""

    async def attempt(n: int) -> None:
        page = args.page
        await page.goto(PORTAL_URL)
        await page.wait_for_selector('#form-check-pcn-vrm')
        await page.fill('#pcn-ref', args.ctx.pcn_number)
        await page.fill('#vehicle-registration-mark', args.ctx.vehicle_reg)
        await page.click('#ticket-submit')
        await page.wait_for_load_state('networkidle', timeout=10_000)
        if await page.query_selector(NO_SUCH_TICKET) is not None:
            raise TicketNotFound('PCN/VRM combination does not exist according to Westminster')

    await with_retry(
        args, AUTHORITY, 'access', attempt,
        is_retryable=is_transient,
        max_attempts=ANTI_BOT_MAX_ATTEMPTS,
        delay=ADAPTER_RETRY_DELAY,
    )


async def verify(args: IssuerArgs) -> bool:
    await access(args)
    page = args.page
    await page.wait_for_selector(DETAILS_HEADING)
    await take_screenshot(args, 'pcn-details')

    if await has_evidence(args):
        log.info('Evidence for ticket %s already stored', args.ticket_id)
        return True

    links = await page.query_selector_all('#links a[href*="thumb=false"]')
    sources = [href for href in [await a.get_attribute('href') for a in links] if href]
    if sources:
        log.info('Found %d Westminster evidence images', len(sources))
        await upload_evidence(args, sources)
    else:
        log.info('No evidence images in Westminster gallery for %s', args.ticket_id)
    return True


async def _did_not_occur(args: IssuerArgs) -> None:
    page = args.page
    await page.wait_for_selector('h1:has-text("The contravention did not occur")')
    # "The restriction did not apply" covers payment-app failures and wrong signage
    await page.click('#restrictiondidnotapply')
    await page.wait_for_selector(
        '#restrictiondidnotapply-selected:not(.fg-invisible)', timeout=SELECTION_TIMEOUT_MS,
    )
    await page.fill('#notesdetails', args.ctx.challenge_text)
    await page.click('#submit-btn')
    await page.wait_for_url('**/challenge_final.php')
    await page.wait_for_selector('h1:has-text("Submit my challenge")')


async def _contact_details(args: IssuerArgs) -> bool:
    """Fill contact details and submit. Returns True when actually submitted."""
    page = args.page
    ctx = args.ctx
    await page.fill('#formGroupInput', ctx.full_name)
    await page.fill('#offender-postcode', ctx.postcode)
    await page.click('#postcodelookup')
    await page.wait_for_selector('#addressModal', state='visible')
    # First address is the closest match
    await page.click('#addressselection .list-group-item:first-child')
    await page.click('#addselected')
    await page.wait_for_selector('#addressModal', state='hidden')
    await page.fill('#email-input', ctx.email)
    await page.check('#checkemail')
    await page.check('#checkinput')
    await take_screenshot(args, 'challenge-pre-submit')

    if args.dry_run:
        log.info('Dry run: not submitting Westminster challenge for %s', ctx.pcn_number)
        return False

    await page.click('#submit-btn')
    await page.wait_for_url('**/submission.php')
    await page.wait_for_selector('h1:has-text("Challenge submitted")')
    await page.wait_for_selector('.panel-body:has-text("has been recorded in our system")')
    await take_screenshot(args, 'challenge-submitted')
    return True


async def challenge(args: IssuerArgs) -> AdapterOutcome:
    await access(args)
    page = args.page

    await page.wait_for_selector(DETAILS_HEADING)
    await page.click('a[href*="step3.php"]:has-text("Challenge")')
    await page.wait_for_url('**/step3.php')
    await page.wait_for_selector('h1:has-text("Challenge")')

    await page.click('#reason1')
    await page.wait_for_selector('#reason1-selected:not(.fg-invisible)', timeout=SELECTION_TIMEOUT_MS)
    await page.click('#submit-btn')
    await page.wait_for_load_state('networkidle')

    if 'did_not_occur.php' not in page.url:
        raise AutomationError(f'Unhandled Westminster challenge page: {page.url}')

    await _did_not_occur(args)
    submitted = await _contact_details(args)
    if submitted:
        log.info('Westminster challenge submitted for %s', args.ctx.pcn_number)
    return AdapterOutcome(
        success=True, submitted=submitted, challenge_text=args.ctx.challenge_text,
    )


ADAPTER = IssuerAdapter(
    authority_id=AUTHORITY,
    name='Westminster City Council',
    access=access,
    verify=verify,
    challenge=challenge,
)
