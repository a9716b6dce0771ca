"""Periodic drift verifier.

Re-runs every VERIFIED recipe as a dry run against a synthetic context.
Success refreshes last_verified; failure demotes the recipe to FAILED so
the runner refuses it until a human re-approves. The demotion is a
compare-and-set on VERIFIED, so a concurrent human decision wins.

Runs already in flight keep the recipe snapshot they started with.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass, field

from autochallenge.alerts import AlertSink
from autochallenge.context import AutomationContext
from autochallenge.errors import AutomationNotReady
from autochallenge.recipe import FAILED, PENDING, VERIFIED, Challenge
from autochallenge.records import RecordStore, utcnow
from autochallenge.runner import RecipeRunner

log = logging.getLogger(__name__)

# Plausible but fictitious values; dry runs never submit them.
VERIFICATION_CONTEXT = AutomationContext(
    pcn_number='ZY00000000',
    vehicle_reg='AB12CDE',
    first_name='Test',
    last_name='Verifier',
    full_name='Test Verifier',
    email='verifier@example.com',
    phone='07700900000',
    address_line1='1 Test Street',
    address_line2='',
    city='London',
    postcode='SW1A 1AA',
    challenge_reason='contravention_did_not_occur',
    challenge_text='Verification run. This text is never submitted.',
)


@dataclass
class VerifyResult:
    recipe_id: str
    success: bool
    error: str = ''
    demoted: bool = False
    evidence_urls: list[str] = field(default_factory=list)


class Verifier:
    def __init__(
        self,
        records: RecordStore,
        runner: RecipeRunner,
        sink: AlertSink,
        interval_seconds: int = 86400,
        context: AutomationContext = VERIFICATION_CONTEXT,
    ):
        self._records = records
        self._runner = runner
        self._sink = sink
        self._interval = interval_seconds
        self._context = context
        self._task: asyncio.Task | None = None
        self._stop_event = asyncio.Event()

    async def verify(self, recipe_id: str) -> VerifyResult:
        """Dry-run one recipe and record the outcome."""
        recipe = await self._records.get_recipe(recipe_id)
        if recipe is None:
            return VerifyResult(recipe_id, False, error='Recipe not found')

        challenge = Challenge(
            id=f'verify-{uuid.uuid4()}',
            ticket_id='verification',
            authority_id=recipe.authority_id,
            method='recipe',
            automation_ref=recipe.id,
        )
        try:
            challenge = await self._runner.run(
                recipe, self._context, challenge, dry_run=True, report=False,
            )
        except AutomationNotReady as exc:
            log.info('Skipping verification of %s: %s', recipe_id, exc.reason)
            return VerifyResult(recipe_id, False, error=exc.reason)

        if challenge.status == PENDING:
            await self._records.update_recipe(
                recipe_id, last_verified=utcnow(), expected_status=VERIFIED,
            )
            log.info('Recipe %s verified', recipe_id)
            return VerifyResult(recipe_id, True, evidence_urls=challenge.evidence_urls)

        reason = challenge.failure_reason or 'Verification failed'
        demoted = await self._records.update_recipe(
            recipe_id,
            status=FAILED,
            last_failed=utcnow(),
            failure_reason=reason,
            expected_status=VERIFIED,
        )
        if not demoted:
            log.warning('Recipe %s changed status during verification; not demoting', recipe_id)
        await self._sink.error(
            f'Recipe verification failed for {recipe.authority_id}: {reason}',
            tags={
                'component': 'verifier',
                'action': 'verify',
                'authority': recipe.authority_id,
            },
            extra={'recipeId': recipe_id, 'stepOrder': challenge.failed_step, 'demoted': demoted},
        )
        return VerifyResult(
            recipe_id, False, error=reason, demoted=demoted,
            evidence_urls=challenge.evidence_urls,
        )

    async def verify_all(self) -> list[VerifyResult]:
        """Verify every VERIFIED recipe, one at a time."""
        results = []
        for recipe in await self._records.list_recipes(status=VERIFIED):
            results.append(await self.verify(recipe.id))
        if results:
            log.info(
                'Verified %d recipe(s): %d ok, %d failed',
                len(results),
                sum(1 for r in results if r.success),
                sum(1 for r in results if not r.success),
            )
        return results

    # ------------------------------------------------------------------
    # Background loop
    # ------------------------------------------------------------------

    async def start(self) -> None:
        self._stop_event.clear()
        self._task = asyncio.create_task(self.run_forever())

    async def stop(self) -> None:
        self._stop_event.set()
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

    async def run_forever(
        self, interval: int | None = None, stop: asyncio.Event | None = None,
    ) -> None:
        """Verify everything every `interval` seconds until `stop` is set."""
        interval = self._interval if interval is None else interval
        stop = self._stop_event if stop is None else stop
        while not stop.is_set():
            try:
                await self.verify_all()
            except Exception:
                log.exception('Verification pass error')

            try:
                await asyncio.wait_for(stop.wait(), timeout=interval)
                break
            except asyncio.TimeoutError:
                pass
