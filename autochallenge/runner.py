"""Recipe runner: executes a VERIFIED recipe against one resolved context.

Usage:
    runner = RecipeRunner(evidence, sink, solver=solver)
    challenge = await runner.run(recipe, ctx, challenge, dry_run=False)

One browser session per run. Steps run strictly by order; a screenshot is
captured and uploaded after every step, whatever its outcome, so partial
progress survives a later crash. The only exception that reaches the
caller is AutomationNotReady, raised before any session opens.
"""

from __future__ import annotations

import asyncio
import logging
import time

from playwright.async_api import Error as PlaywrightError

from autochallenge import browser, steps
from autochallenge.alerts import AlertSink
from autochallenge.browser import BrowserSession
from autochallenge.captcha import CaptchaSolver
from autochallenge.config import (
    SCREENSHOT_CONTENT_TYPE,
    TOTAL_EXECUTION_TIMEOUT,
    VIDEO_CONTENT_TYPE,
)
from autochallenge.context import AutomationContext
from autochallenge.errors import (
    AutomationError,
    AutomationNotReady,
    StorageUploadFailure,
    UnresolvedPlaceholder,
)
from autochallenge.recipe import (
    ERROR,
    PENDING,
    SUCCESS,
    VERIFIED,
    Challenge,
    Recipe,
    RecipeStep,
    StepResult,
    validate_steps,
)
from autochallenge.storage import EvidenceStore, put_with_retry, run_screenshot_path, video_path

log = logging.getLogger(__name__)


def check_ready(recipe: Recipe) -> None:
    """Raise AutomationNotReady unless the recipe may be executed."""
    if recipe.status != VERIFIED:
        raise AutomationNotReady(
            f'Recipe {recipe.id} is {recipe.status}, not {VERIFIED}'
        )
    if not recipe.steps:
        raise AutomationNotReady(f'Recipe {recipe.id} has no steps')
    try:
        validate_steps(recipe.steps)
    except ValueError as exc:
        raise AutomationNotReady(f'Recipe {recipe.id}: {exc}') from exc


def check_placeholders(recipe: Recipe, ctx: AutomationContext) -> None:
    """Resolve every step template up front. Raises UnresolvedPlaceholder."""
    for step in recipe.ordered_steps():
        try:
            ctx.resolve(step.value)
        except UnresolvedPlaceholder as exc:
            raise UnresolvedPlaceholder(exc.reason, step_order=step.order) from exc


class RecipeRunner:
    """Runs recipes in a fresh browser session, recording evidence as it goes."""

    def __init__(
        self,
        evidence: EvidenceStore,
        sink: AlertSink,
        solver: CaptchaSolver | None = None,
        headless: bool = False,
        record_video: bool = False,
        total_timeout: float = TOTAL_EXECUTION_TIMEOUT,
    ):
        self._evidence = evidence
        self._sink = sink
        self._solver = solver
        self._headless = headless
        self._record_video = record_video
        self._total_timeout = total_timeout

    async def run(
        self,
        recipe: Recipe,
        ctx: AutomationContext,
        challenge: Challenge,
        dry_run: bool = False,
        report: bool = True,
    ) -> Challenge:
        """Execute the recipe and fill in the challenge outcome.

        The recipe is a snapshot: status changes made by other writers while
        the run is in flight do not affect it. With report=False a failed run
        is logged but not sent to the sink; callers that report the failure
        themselves (the verifier) use this.
        """
        check_ready(recipe)

        challenge.dry_run = dry_run
        if ctx.challenge_text and not challenge.narrative:
            challenge.narrative = ctx.challenge_text

        try:
            check_placeholders(recipe, ctx)
        except UnresolvedPlaceholder as exc:
            self._fail(challenge, exc.step_order, f'Step {exc.step_order}: {exc.reason}')
            return challenge

        start = time.monotonic()
        try:
            results = await self._execute(
                recipe, ctx, challenge, dry_run, deadline=start + self._total_timeout,
            )
        except Exception as exc:
            log.exception('Runner crashed on recipe %s', recipe.id)
            self._fail(challenge, None, f'Unhandled exception: {exc}')
            results = []

        if challenge.status == ERROR and report:
            await self._sink.error(
                f'Recipe run failed: {challenge.failure_reason}',
                tags={
                    'component': 'runner',
                    'action': 'dry-run' if dry_run else 'run',
                    'authority': recipe.authority_id,
                    'pcnNumber': ctx.pcn_number,
                },
                extra={'stepOrder': challenge.failed_step, 'recipeId': recipe.id},
            )

        log.info(
            'Recipe %s run for challenge %s: %s (%d steps, %d screenshots, %.1fs)',
            recipe.id, challenge.id, challenge.status, len(results),
            len(challenge.evidence_urls), time.monotonic() - start,
        )
        return challenge

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    async def _execute(
        self,
        recipe: Recipe,
        ctx: AutomationContext,
        challenge: Challenge,
        dry_run: bool,
        deadline: float,
    ) -> list[StepResult]:
        results: list[StepResult] = []

        async with browser.open_session(
            solver=self._solver,
            headless=self._headless,
            record_video=self._record_video,
        ) as session:
            for step in recipe.ordered_steps():
                sr = await self._run_step(
                    step, session, ctx, recipe, challenge, dry_run, deadline,
                )
                results.append(sr)
                if sr.screenshot_url:
                    challenge.evidence_urls.append(sr.screenshot_url)

                if not sr.success and not step.optional:
                    self._fail(
                        challenge, step.order,
                        f'Step {step.order} ({step.action}) failed: {sr.error}',
                    )
                    break
                if not sr.success:
                    log.warning(
                        'Optional step %d (%s) failed, continuing: %s',
                        step.order, step.action, sr.error,
                    )
            else:
                challenge.status = PENDING if dry_run else SUCCESS

            if self._record_video:
                await self._upload_video(session, challenge, dry_run)

        return results

    async def _run_step(
        self,
        step: RecipeStep,
        session: BrowserSession,
        ctx: AutomationContext,
        recipe: Recipe,
        challenge: Challenge,
        dry_run: bool,
        deadline: float,
    ) -> StepResult:
        """Perform one step (unless dry-run skips it), then screenshot.

        The step gets whatever is left of the run's time budget; running out
        fails this step.
        """
        step_start = time.monotonic()
        skipped = dry_run and step.is_submission
        success = True
        error = ''

        if skipped:
            log.info('Dry run: skipping submission step %d (%s)', step.order, step.description)
        else:
            log.info('Step %d: %s %s', step.order, step.action, step.selector)
            budget_error = f'Total execution timeout ({self._total_timeout:g}s) exceeded'
            try:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    raise AutomationError(budget_error, step.order)
                await asyncio.wait_for(steps.execute_step(step, session, ctx), timeout=remaining)
            except asyncio.TimeoutError:
                success, error = False, budget_error
            except steps.NON_FATAL_ERRORS as exc:
                log.warning('Step %d: %s (continuing)', step.order, exc)
            except AutomationError as exc:
                success, error = False, exc.reason
            except Exception as exc:
                success, error = False, str(exc) or type(exc).__name__

            if step.action == 'solve_captcha':
                challenge.captcha_encountered = True
            if success and step.is_submission:
                challenge.submitted = True

        suffix = '' if success else '-failed'
        url = await self._capture(session, recipe.id, challenge.id, step.order, dry_run, suffix)

        return StepResult(
            order=step.order,
            action=step.action,
            success=success,
            duration_seconds=round(time.monotonic() - step_start, 2),
            error=error,
            skipped=skipped,
            screenshot_url=url,
        )

    # ------------------------------------------------------------------
    # Evidence
    # ------------------------------------------------------------------

    async def _capture(
        self,
        session: BrowserSession,
        recipe_id: str,
        challenge_id: str,
        order: int,
        dry_run: bool,
        suffix: str = '',
    ) -> str:
        """Screenshot and upload. Failures are logged; returns '' on failure."""
        try:
            data = await session.page.screenshot(full_page=True)
        except PlaywrightError as exc:
            log.warning('Screenshot after step %d failed: %s', order, exc)
            return ''

        path = run_screenshot_path(recipe_id, challenge_id, order, dry_run, suffix)
        try:
            return await self._evidence.put(path, data, SCREENSHOT_CONTENT_TYPE)
        except StorageUploadFailure as exc:
            log.warning('Screenshot upload for step %d failed: %s', order, exc.reason)
            return ''

    async def _upload_video(
        self, session: BrowserSession, challenge: Challenge, dry_run: bool,
    ) -> None:
        # The recording is only flushed once the context closes
        try:
            await session.context.close()
            path = await session.video_file()
        except PlaywrightError as exc:
            log.warning('Could not finalise video for %s: %s', challenge.id, exc)
            return
        if path is None or not path.exists():
            return
        try:
            challenge.video_url = await put_with_retry(
                self._evidence,
                video_path(challenge.id, dry_run),
                path.read_bytes(),
                VIDEO_CONTENT_TYPE,
            )
        except StorageUploadFailure as exc:
            log.error('Video upload for %s failed: %s', challenge.id, exc.reason)

    @staticmethod
    def _fail(challenge: Challenge, step_order: int | None, reason: str) -> None:
        challenge.status = ERROR
        challenge.failed_step = step_order
        challenge.failure_reason = reason
        log.error('Challenge %s: %s', challenge.id, reason)
