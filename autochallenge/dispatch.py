"""Capability registry and challenge dispatcher.

The registry maps authority id -> capability and is built once at process
start, then passed to the dispatcher. A capability is either a VERIFIED
recipe (run by the generic runner) or a hand-written issuer adapter.
Adapters take precedence when both exist.

Every submission creates a new Challenge row; a re-attempt never touches
a finished one.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass

import httpx

from autochallenge import browser
from autochallenge.alerts import AlertSink
from autochallenge.api_client import TicketApi
from autochallenge.captcha import CaptchaSolver
from autochallenge.context import AutomationContext, build_context
from autochallenge.errors import AutomationError, AutomationNotReady
from autochallenge.issuers import IssuerAdapter, IssuerArgs, default_adapters
from autochallenge.recipe import ERROR, PENDING, SUCCESS, VERIFIED, Challenge
from autochallenge.records import RecordStore
from autochallenge.runner import RecipeRunner, check_ready
from autochallenge.storage import EvidenceStore, evidence_prefix

log = logging.getLogger(__name__)

RECIPE = 'recipe'
ADAPTER = 'adapter'


@dataclass(frozen=True)
class Capability:
    authority_id: str
    kind: str  # RECIPE or ADAPTER
    ref: str  # recipe id, or the adapter's authority id
    adapter: IssuerAdapter | None = None


class Registry:
    """authority id -> capability."""

    def __init__(self, adapters: list[IssuerAdapter] | None = None) -> None:
        self._adapters: dict[str, IssuerAdapter] = {}
        self._recipes: dict[str, str] = {}
        for adapter in adapters or []:
            self.register_adapter(adapter)

    def register_adapter(self, adapter: IssuerAdapter) -> None:
        self._adapters[adapter.authority_id] = adapter

    def register_recipe(self, authority_id: str, recipe_id: str) -> None:
        self._recipes[authority_id] = recipe_id

    def lookup(self, authority_id: str) -> Capability | None:
        adapter = self._adapters.get(authority_id)
        if adapter is not None:
            return Capability(authority_id, ADAPTER, adapter.authority_id, adapter)
        recipe_id = self._recipes.get(authority_id)
        if recipe_id is not None:
            return Capability(authority_id, RECIPE, recipe_id)
        return None

    def authorities(self) -> list[str]:
        return sorted(set(self._adapters) | set(self._recipes))


async def build_registry(
    records: RecordStore, adapters: list[IssuerAdapter] | None = None,
) -> Registry:
    """Registry of built-in adapters plus every VERIFIED recipe on record."""
    registry = Registry(default_adapters() if adapters is None else adapters)
    for recipe in await records.list_recipes(status=VERIFIED):
        registry.register_recipe(recipe.authority_id, recipe.id)
    log.info('Registry built: %s', ', '.join(registry.authorities()) or '(empty)')
    return registry


class ChallengeDispatcher:
    """Routes a challenge request to its capability and records the outcome."""

    def __init__(
        self,
        registry: Registry,
        records: RecordStore,
        evidence: EvidenceStore,
        sink: AlertSink,
        runner: RecipeRunner,
        api: TicketApi | None = None,
        solver: CaptchaSolver | None = None,
        headless: bool = False,
    ):
        self._registry = registry
        self._records = records
        self._evidence = evidence
        self._sink = sink
        self._runner = runner
        self._api = api
        self._solver = solver
        self._headless = headless

    @property
    def registry(self) -> Registry:
        return self._registry

    def _capability(self, authority_id: str) -> Capability:
        capability = self._registry.lookup(authority_id)
        if capability is None:
            raise AutomationNotReady(f'No automation registered for {authority_id}')
        return capability

    async def _ticket(self, ticket_id: str, ticket: dict | None) -> dict:
        if ticket is not None:
            return ticket
        if self._api is None:
            raise ValueError('No ticket supplied and no ticket store configured')
        found = await self._api.get_ticket(ticket_id)
        if found is None:
            raise KeyError(f'Ticket {ticket_id} not found')
        return found

    async def _narrative(self, pcn_number: str, reason: str, details: str) -> str:
        if self._api is None:
            return details or reason
        try:
            return await self._api.generate_narrative(pcn_number, reason, details)
        except (httpx.HTTPError, KeyError, TypeError, ValueError) as exc:
            # ValueError covers a non-JSON body
            log.warning('Narrative generation failed for %s, using raw reason: %s',
                        pcn_number, exc)
            return details or reason

    # ------------------------------------------------------------------
    # Submission
    # ------------------------------------------------------------------

    async def submit(
        self,
        ticket_id: str,
        authority_id: str,
        reason: str,
        details: str = '',
        dry_run: bool = False,
        ticket: dict | None = None,
    ) -> Challenge:
        """Run one challenge attempt end to end and return the stored record.

        Raises AutomationNotReady (before any session opens) when the
        authority has no usable capability.
        """
        capability = self._capability(authority_id)
        recipe = None
        if capability.kind == RECIPE:
            recipe = await self._records.get_recipe(capability.ref)
            if recipe is None:
                raise AutomationNotReady(f'Recipe {capability.ref} not found')
            check_ready(recipe)

        ticket = await self._ticket(ticket_id, ticket)
        pcn_number = ticket.get('pcnNumber') or ticket.get('pcn_number') or ''
        narrative = await self._narrative(pcn_number, reason, details)
        ctx = build_context(ticket, reason, narrative)

        challenge = await self._records.create_challenge(Challenge(
            id=str(uuid.uuid4()),
            ticket_id=ticket_id,
            authority_id=authority_id,
            method=capability.kind,
            automation_ref=capability.ref,
            narrative=narrative,
            dry_run=dry_run,
        ))
        log.info('Challenge %s: %s via %s %s%s', challenge.id, ticket_id,
                 capability.kind, capability.ref, ' (dry run)' if dry_run else '')

        if recipe is not None:
            await self._runner.run(recipe, ctx, challenge, dry_run=dry_run)
        else:
            await self._run_adapter(capability.adapter, ctx, challenge, dry_run)

        await self._records.finish_challenge(challenge)
        if not dry_run:
            await self._post_result(challenge)
        return challenge

    async def _run_adapter(
        self,
        adapter: IssuerAdapter,
        ctx: AutomationContext,
        challenge: Challenge,
        dry_run: bool,
    ) -> None:
        screenshots: list[str] = []
        try:
            async with browser.open_session(solver=self._solver, headless=self._headless) as session:
                args = IssuerArgs(
                    session=session,
                    ticket_id=challenge.ticket_id,
                    challenge_id=challenge.id,
                    ctx=ctx,
                    evidence=self._evidence,
                    sink=self._sink,
                    dry_run=dry_run,
                    screenshots=screenshots,
                )
                outcome = await adapter.challenge(args)
        except AutomationError as exc:
            challenge.status = ERROR
            challenge.failure_reason = exc.reason
            log.error('Adapter %s failed for %s: %s', adapter.authority_id, challenge.id, exc.reason)
        except Exception as exc:
            challenge.status = ERROR
            challenge.failure_reason = f'Unhandled exception: {exc}'
            log.exception('Adapter %s crashed for %s', adapter.authority_id, challenge.id)
        else:
            challenge.submitted = outcome.submitted
            if dry_run:
                challenge.status = PENDING
            else:
                challenge.status = SUCCESS if outcome.success else ERROR
        challenge.evidence_urls.extend(screenshots)

    async def _post_result(self, challenge: Challenge) -> None:
        if self._api is None:
            return
        try:
            await self._api.post_challenge_result(challenge)
        except httpx.HTTPError as exc:
            log.error('Could not post result for challenge %s: %s', challenge.id, exc)

    # ------------------------------------------------------------------
    # Evidence extraction
    # ------------------------------------------------------------------

    async def verify_ticket(
        self, ticket_id: str, authority_id: str, ticket: dict | None = None,
    ) -> dict:
        """Confirm the ticket on its portal and pull portal-hosted evidence.

        Idempotent: evidence already under the ticket's prefix is not fetched again.
        """
        capability = self._capability(authority_id)
        if capability.adapter is None:
            raise AutomationNotReady(f'Evidence extraction for {authority_id} needs an issuer adapter')

        ticket = await self._ticket(ticket_id, ticket)
        ctx = build_context(ticket, challenge_reason='')
        screenshots: list[str] = []
        async with browser.open_session(solver=self._solver, headless=self._headless) as session:
            verified = await capability.adapter.verify(IssuerArgs(
                session=session,
                ticket_id=ticket_id,
                challenge_id=f'verify-{uuid.uuid4()}',
                ctx=ctx,
                evidence=self._evidence,
                sink=self._sink,
                screenshots=screenshots,
            ))
        evidence = await self._evidence.list(evidence_prefix(ticket_id))
        return {
            'ticketId': ticket_id,
            'verified': verified,
            'evidence': evidence,
            'screenshots': screenshots,
        }
