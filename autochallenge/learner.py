"""Recipe learner: discovers an authority's challenge portal and drafts a recipe.

Flow:
    1. Locate the portal: seed URL, then the lookup table, then search.
    2. Load it in a fresh browser session and screenshot it.
    3. Run the CAPTCHA, account-gating and form-field detectors.
    4. Emit one step per mapped field plus a final submit click.
    5. Store the draft as PENDING_REVIEW for a human to approve.

The learner never promotes a recipe to VERIFIED.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field

from playwright.async_api import Error as PlaywrightError

from autochallenge import browser
from autochallenge.alerts import AlertSink
from autochallenge.browser import BrowserSession
from autochallenge.captcha import CaptchaSolver
from autochallenge.config import PORTAL_URLS, SCREENSHOT_CONTENT_TYPE, normalise_authority
from autochallenge.context import token
from autochallenge.detectors import (
    CaptchaDetection,
    FormField,
    detect_account_requirement,
    detect_captcha,
    detect_form_fields,
    detect_submit,
)
from autochallenge.errors import InvalidTransition, StorageUploadFailure, TargetNotFound
from autochallenge.lifecycle import transition
from autochallenge.recipe import (
    DRAFT,
    FAILED,
    LEARNING,
    NEEDS_HUMAN_HELP,
    PENDING_REVIEW,
    Recipe,
    RecipeStep,
    validate_steps,
)
from autochallenge.records import RecordStore, utcnow
from autochallenge.storage import EvidenceStore, learning_screenshot_path

log = logging.getLogger(__name__)

# Async search collaborator: authority name -> portal URL or None
SearchFn = Callable[[str], Awaitable[str | None]]

SUBMIT_DESCRIPTION = 'Submit challenge form'

# Used when the detector finds nothing it can map
_FALLBACK_FIELDS = (
    ('input[name*="pcn"], input[id*="pcn"], input[placeholder*="PCN"]',
     'pcnNumber', 'Enter PCN number'),
    ('input[name*="reg"], input[id*="vrm"], input[placeholder*="registration"]',
     'vehicleReg', 'Enter vehicle registration'),
)


@dataclass
class LearnResult:
    """Outcome of one learning pass."""

    success: bool
    recipe_id: str
    steps: tuple[RecipeStep, ...] = ()
    challenge_url: str = ''
    needs_account: bool = False
    captcha_type: str | None = None
    error: str = ''
    needs_human_help: bool = False
    human_help_reason: str = ''
    screenshot_urls: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            'success': self.success,
            'recipeId': self.recipe_id,
            'steps': [s.to_dict() for s in self.steps],
            'challengeUrl': self.challenge_url,
            'needsAccount': self.needs_account,
            'captchaType': self.captcha_type,
            'error': self.error,
            'needsHumanHelp': self.needs_human_help,
            'humanHelpReason': self.human_help_reason,
            'screenshotUrls': list(self.screenshot_urls),
        }


def _step_for_field(order: int, f: FormField) -> RecipeStep:
    action = 'select' if f.field_type == 'select' else 'fill'
    if f.field_type == 'file':
        action = 'upload_file'
    return RecipeStep(
        order=order,
        action=action,
        selector=f.selector,
        value=token(f.placeholder),
        description=f'Enter {f.label or f.name or f.placeholder}',
        field_type=f.field_type,
        placeholder=f.placeholder,
        optional=not f.required and f.placeholder not in ('pcnNumber', 'vehicleReg'),
    )


def build_draft_steps(
    url: str,
    authority_name: str,
    fields: list[FormField],
    captcha: CaptchaDetection,
    submit_selector: str,
) -> tuple[RecipeStep, ...]:
    """Draft step list: navigate, one step per mapped field, CAPTCHA, submit."""
    steps = [RecipeStep(
        order=1,
        action='navigate',
        value=url,
        description=f'Navigate to {authority_name} challenge portal',
    )]

    seen: set[str] = set()
    for f in fields:
        if not f.placeholder or f.selector in seen:
            continue
        seen.add(f.selector)
        steps.append(_step_for_field(len(steps) + 1, f))

    if len(steps) == 1:
        log.info('No mappable fields found on %s; using generic PCN/VRM selectors', url)
        for selector, name, description in _FALLBACK_FIELDS:
            steps.append(RecipeStep(
                order=len(steps) + 1,
                action='fill',
                selector=selector,
                value=token(name),
                description=description,
                field_type='text',
                placeholder=name,
            ))

    if captcha.detected:
        steps.append(RecipeStep(
            order=len(steps) + 1,
            action='solve_captcha',
            description=f'Solve {captcha.captcha_type} CAPTCHA',
        ))

    steps.append(RecipeStep(
        order=len(steps) + 1,
        action='click',
        selector=submit_selector,
        description=SUBMIT_DESCRIPTION,
    ))
    return tuple(steps)


class RecipeLearner:
    """Drives the discovery flow and persists draft recipes."""

    def __init__(
        self,
        records: RecordStore,
        evidence: EvidenceStore,
        sink: AlertSink,
        portal_urls: dict[str, str] | None = None,
        search: SearchFn | None = None,
        solver: CaptchaSolver | None = None,
        headless: bool = False,
    ):
        self._records = records
        self._evidence = evidence
        self._sink = sink
        self._portal_urls = PORTAL_URLS if portal_urls is None else portal_urls
        self._search = search
        self._solver = solver
        self._headless = headless

    async def find_portal(self, authority_name: str, seed_url: str | None = None) -> str:
        """Seed URL, then lookup table, then search. Raises TargetNotFound."""
        if seed_url:
            return seed_url
        url = self._portal_urls.get(normalise_authority(authority_name))
        if url:
            log.info('Portal for %s found in lookup table', authority_name)
            return url
        if self._search is not None:
            log.info('Searching for %s challenge portal', authority_name)
            url = await self._search(authority_name)
            if url:
                return url
        raise TargetNotFound(
            f'Could not automatically find challenge portal for {authority_name}. '
            'Manual URL required.'
        )

    async def _ensure_recipe(self, recipe_id: str, authority_name: str) -> Recipe:
        recipe = await self._records.get_recipe(recipe_id)
        if recipe is None:
            recipe = await self._records.create_recipe(Recipe(
                id=recipe_id,
                authority_id=normalise_authority(authority_name),
                authority_name=authority_name,
                status=DRAFT,
            ))
            log.info('Created draft recipe %s for %s', recipe_id, authority_name)
        return recipe

    async def learn(
        self, recipe_id: str, authority_name: str, seed_url: str | None = None,
    ) -> LearnResult:
        """Locate, inspect, and draft. Leaves the recipe PENDING_REVIEW on success."""
        recipe = await self._ensure_recipe(recipe_id, authority_name)
        log.info('Starting learning flow for %s (recipe %s)', authority_name, recipe_id)
        if recipe.status != LEARNING:
            try:
                await transition(self._records, recipe_id, LEARNING)
            except InvalidTransition as exc:
                log.warning('Cannot learn recipe %s: %s', recipe_id, exc.reason)
                return LearnResult(success=False, recipe_id=recipe_id, error=exc.reason)

        try:
            url = await self.find_portal(authority_name, seed_url)
        except TargetNotFound as exc:
            await transition(
                self._records, recipe_id, NEEDS_HUMAN_HELP, failure_reason=exc.reason,
            )
            await self._sink.warning(
                f'Learner dead-end for {authority_name}: {exc.reason}',
                tags={
                    'component': 'learner',
                    'action': 'find-portal',
                    'authority': normalise_authority(authority_name),
                },
                extra={'recipeId': recipe_id},
            )
            return LearnResult(
                success=False,
                recipe_id=recipe_id,
                needs_human_help=True,
                human_help_reason=exc.reason,
            )

        try:
            result = await self._inspect(recipe_id, authority_name, url)
            await transition(
                self._records, recipe_id, PENDING_REVIEW,
                steps=result.steps,
                entry_url=url,
                captcha_type=result.captcha_type,
                needs_account=result.needs_account,
                failure_reason='',
            )
        except Exception as exc:
            log.exception('Learning flow failed for %s', authority_name)
            reason = str(exc) or 'Unknown error during learning'
            try:
                await transition(
                    self._records, recipe_id, FAILED,
                    last_failed=utcnow(), failure_reason=reason,
                )
            except InvalidTransition:
                log.warning('Recipe %s moved on while learning; leaving its status', recipe_id)
            return LearnResult(success=False, recipe_id=recipe_id, error=reason)

        log.info(
            'Learning flow completed for %s: %d steps pending review',
            authority_name, len(result.steps),
        )
        return result

    async def continue_learning(
        self,
        recipe_id: str,
        challenge_url: str | None = None,
        steps: list[RecipeStep] | None = None,
    ) -> LearnResult:
        """Resume after human help: re-learn from a URL, or store recorded steps."""
        recipe = await self._records.get_recipe(recipe_id)
        if recipe is None:
            return LearnResult(success=False, recipe_id=recipe_id, error='Recipe not found')

        if challenge_url:
            await self._records.update_recipe(recipe_id, entry_url=challenge_url)
            return await self.learn(recipe_id, recipe.authority_name, seed_url=challenge_url)

        if steps:
            validate_steps(steps)
            try:
                await transition(self._records, recipe_id, PENDING_REVIEW, steps=steps)
            except InvalidTransition as exc:
                return LearnResult(success=False, recipe_id=recipe_id, error=exc.reason)
            return LearnResult(
                success=True,
                recipe_id=recipe_id,
                steps=tuple(sorted(steps, key=lambda s: s.order)),
                challenge_url=recipe.entry_url,
            )

        return LearnResult(
            success=False, recipe_id=recipe_id, error='No additional information provided',
        )

    # ------------------------------------------------------------------
    # Inspect
    # ------------------------------------------------------------------

    async def _inspect(self, recipe_id: str, authority_name: str, url: str) -> LearnResult:
        async with browser.open_session(solver=self._solver, headless=self._headless) as session:
            await session.page.goto(url)
            screenshots = []
            shot = await self._capture(session, recipe_id, 1)
            if shot:
                screenshots.append(shot)

            html = await session.page.content()
            text = await session.page.inner_text('body')
            captcha = detect_captcha(html)
            account = detect_account_requirement(text)
            fields = await detect_form_fields(session.page)
            submit = await detect_submit(session.page)

        if captcha.detected:
            log.info('CAPTCHA detected on %s: %s', url, captcha.captcha_type)
        if account.requires_account:
            log.info('Portal %s appears to need an account', url)

        return LearnResult(
            success=True,
            recipe_id=recipe_id,
            steps=build_draft_steps(url, authority_name, fields, captcha, submit),
            challenge_url=url,
            needs_account=account.requires_account,
            captcha_type=captcha.captcha_type,
            screenshot_urls=screenshots,
        )

    async def _capture(self, session: BrowserSession, recipe_id: str, n: int) -> str:
        try:
            data = await session.page.screenshot(full_page=True)
            return await self._evidence.put(
                learning_screenshot_path(recipe_id, n), data, SCREENSHOT_CONTENT_TYPE,
            )
        except (PlaywrightError, StorageUploadFailure) as exc:
            log.warning('Learning screenshot %d for %s failed: %s', n, recipe_id, exc)
            return ''
