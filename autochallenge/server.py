"""autochallenge worker: main entry point.

Listens for learning, challenge and review requests over HTTP and runs
browser automation in background tasks, one browser session per task.

Endpoints (all but /health need "Authorization: Bearer <WORKER_SECRET>"):
  POST /learn                   - learn a recipe for an authority
  POST /challenges              - submit a challenge (runs in background)
  POST /recipes/{id}/approve    - human approval -> VERIFIED
  POST /recipes/{id}/reject     - human rejection -> NEEDS_HUMAN_HELP
  POST /recipes/{id}/verify     - dry-run re-verification
  GET  /recipes/{id}            - recipe detail
  GET  /challenges/{id}         - challenge detail
  GET  /health                  - liveness check

Up to max_concurrent_jobs tasks run at once; beyond that requests get 409.
"""

from __future__ import annotations

import asyncio
import hmac
import logging
import signal
import time
import uuid
from dataclasses import dataclass, field

from aiohttp import web

from autochallenge.alerts import AlertSink
from autochallenge.api_client import TicketApi
from autochallenge.captcha import CaptchaSolver
from autochallenge.config import Settings
from autochallenge.dispatch import ChallengeDispatcher, build_registry
from autochallenge.errors import AutomationNotReady, InvalidTransition
from autochallenge.learner import RecipeLearner
from autochallenge.lifecycle import approve_recipe, reject_recipe
from autochallenge.records import RecordStore
from autochallenge.runner import RecipeRunner
from autochallenge.storage import EvidenceStore
from autochallenge.verifier import Verifier

log = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Active task state
# ---------------------------------------------------------------------------

@dataclass
class ActiveTask:
    """A learning pass or challenge running in the background."""

    task_id: str
    kind: str  # 'learn' or 'challenge'
    subject: str  # recipe id or ticket id
    task: asyncio.Task | None = None
    started_at: float = field(default_factory=time.monotonic)


# ---------------------------------------------------------------------------
# Worker server
# ---------------------------------------------------------------------------

class Worker:
    """HTTP front for the learner, dispatcher and verifier."""

    def __init__(
        self,
        settings: Settings,
        records: RecordStore,
        learner: RecipeLearner,
        dispatcher: ChallengeDispatcher,
        verifier: Verifier,
    ) -> None:
        self._settings = settings
        self._records = records
        self._learner = learner
        self._dispatcher = dispatcher
        self._verifier = verifier
        self._max_jobs = settings.max_concurrent_jobs

        self._app = web.Application(middlewares=[self._auth_middleware])
        self._runner: web.AppRunner | None = None

        self._active: dict[str, ActiveTask] = {}
        self._lock = asyncio.Lock()

        self._app.router.add_post('/learn', self._handle_learn)
        self._app.router.add_post('/challenges', self._handle_challenge)
        self._app.router.add_post('/recipes/{id}/approve', self._handle_approve)
        self._app.router.add_post('/recipes/{id}/reject', self._handle_reject)
        self._app.router.add_post('/recipes/{id}/verify', self._handle_verify)
        self._app.router.add_get('/recipes/{id}', self._handle_get_recipe)
        self._app.router.add_get('/challenges/{id}', self._handle_get_challenge)
        self._app.router.add_get('/health', self._handle_health)

    @property
    def app(self) -> web.Application:
        return self._app

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        self._runner = web.AppRunner(self._app)
        await self._runner.setup()
        site = web.TCPSite(self._runner, self._settings.worker_host, self._settings.worker_port)
        await site.start()
        log.info(
            'Worker listening on %s:%d (max_jobs=%d)',
            self._settings.worker_host, self._settings.worker_port, self._max_jobs,
        )

    async def stop(self) -> None:
        """Graceful shutdown: wait up to 30s for running tasks, then cancel."""
        tasks = [a.task for a in self._active.values() if a.task and not a.task.done()]
        if tasks:
            log.info('Waiting for %d active task(s) to complete...', len(tasks))
            _, pending = await asyncio.wait(tasks, timeout=30.0)
            for t in pending:
                log.warning('Task %s did not finish in 30s, cancelling', t.get_name())
                t.cancel()
                try:
                    await t
                except (asyncio.CancelledError, Exception):
                    pass

        if self._runner:
            await self._runner.cleanup()
            self._runner = None
        log.info('Worker stopped')

    # ------------------------------------------------------------------
    # Auth
    # ------------------------------------------------------------------

    def _authorized(self, request: web.Request) -> bool:
        header = request.headers.get('Authorization', '')
        if not header.startswith('Bearer ') or not self._settings.worker_secret:
            return False
        return hmac.compare_digest(header[len('Bearer '):], self._settings.worker_secret)

    @web.middleware
    async def _auth_middleware(self, request: web.Request, handler):
        if request.path != '/health' and not self._authorized(request):
            return web.json_response({'error': 'Unauthorized'}, status=401)
        return await handler(request)

    # ------------------------------------------------------------------
    # Background tasks
    # ------------------------------------------------------------------

    async def _reserve(self, kind: str, subject: str) -> ActiveTask | web.Response:
        async with self._lock:
            if len(self._active) >= self._max_jobs:
                log.warning(
                    'Rejected %s for %s: at capacity (%d/%d)',
                    kind, subject, len(self._active), self._max_jobs,
                )
                return web.json_response(
                    {'error': f'At capacity ({len(self._active)}/{self._max_jobs})'},
                    status=409,
                )
            active = ActiveTask(task_id=str(uuid.uuid4()), kind=kind, subject=subject)
            self._active[active.task_id] = active
            log.info('Accepted %s for %s [%d/%d slots]',
                     kind, subject, len(self._active), self._max_jobs)
            return active

    def _launch(self, active: ActiveTask, coro) -> None:
        active.task = asyncio.create_task(
            self._run_task(active, coro), name=f'{active.kind}-{active.subject}',
        )

    async def _run_task(self, active: ActiveTask, coro) -> None:
        try:
            await coro
        except AutomationNotReady as exc:
            log.warning('%s for %s not ready: %s', active.kind, active.subject, exc.reason)
        except Exception:
            log.exception('%s for %s crashed', active.kind, active.subject)
        finally:
            async with self._lock:
                self._active.pop(active.task_id, None)
            log.info('%s for %s finished in %.1fs', active.kind, active.subject,
                     time.monotonic() - active.started_at)

    # ------------------------------------------------------------------
    # HTTP handlers
    # ------------------------------------------------------------------

    @staticmethod
    async def _json(request: web.Request) -> dict | None:
        try:
            data = await request.json()
        except Exception:
            return None
        return data if isinstance(data, dict) else None

    async def _handle_learn(self, request: web.Request) -> web.Response:
        """POST /learn

        Body: {"recipeId": str, "authorityName": str, "seedUrl": str?}
        """
        data = await self._json(request)
        if data is None:
            return web.json_response({'error': 'Invalid JSON'}, status=400)
        recipe_id = data.get('recipeId')
        authority_name = data.get('authorityName')
        if not recipe_id or not authority_name:
            return web.json_response(
                {'error': 'Missing required fields (recipeId, authorityName)'}, status=400,
            )

        reserved = await self._reserve('learn', recipe_id)
        if isinstance(reserved, web.Response):
            return reserved
        self._launch(reserved, self._learner.learn(recipe_id, authority_name, data.get('seedUrl')))
        return web.json_response({'ok': True, 'recipeId': recipe_id}, status=202)

    async def _handle_challenge(self, request: web.Request) -> web.Response:
        """POST /challenges

        Body: {"ticketId": str, "authorityId": str, "reason": str,
               "details": str?, "dryRun": bool?}
        """
        data = await self._json(request)
        if data is None:
            return web.json_response({'error': 'Invalid JSON'}, status=400)
        ticket_id = data.get('ticketId')
        authority_id = data.get('authorityId')
        reason = data.get('reason')
        if not ticket_id or not authority_id or not reason:
            return web.json_response(
                {'error': 'Missing required fields (ticketId, authorityId, reason)'}, status=400,
            )
        if self._dispatcher.registry.lookup(authority_id) is None:
            return web.json_response(
                {'error': f'No automation registered for {authority_id}'}, status=422,
            )

        reserved = await self._reserve('challenge', ticket_id)
        if isinstance(reserved, web.Response):
            return reserved
        self._launch(reserved, self._dispatcher.submit(
            ticket_id, authority_id, reason,
            details=data.get('details') or '',
            dry_run=bool(data.get('dryRun', False)),
        ))
        return web.json_response({'ok': True, 'ticketId': ticket_id}, status=202)

    async def _handle_approve(self, request: web.Request) -> web.Response:
        recipe_id = request.match_info['id']
        try:
            recipe = await approve_recipe(self._records, recipe_id)
        except KeyError:
            return web.json_response({'error': f'Recipe {recipe_id} not found'}, status=404)
        except InvalidTransition as exc:
            return web.json_response({'error': exc.reason}, status=409)
        self._dispatcher.registry.register_recipe(recipe.authority_id, recipe.id)
        return web.json_response(recipe.to_dict())

    async def _handle_reject(self, request: web.Request) -> web.Response:
        """POST /recipes/{id}/reject  Body: {"reason": str}"""
        recipe_id = request.match_info['id']
        data = await self._json(request)
        reason = (data or {}).get('reason') or ''
        if not reason.strip():
            return web.json_response({'error': 'Missing reason'}, status=400)
        try:
            recipe = await reject_recipe(self._records, recipe_id, reason)
        except KeyError:
            return web.json_response({'error': f'Recipe {recipe_id} not found'}, status=404)
        except InvalidTransition as exc:
            return web.json_response({'error': exc.reason}, status=409)
        return web.json_response(recipe.to_dict())

    async def _handle_verify(self, request: web.Request) -> web.Response:
        recipe_id = request.match_info['id']
        if await self._records.get_recipe(recipe_id) is None:
            return web.json_response({'error': f'Recipe {recipe_id} not found'}, status=404)
        reserved = await self._reserve('verify', recipe_id)
        if isinstance(reserved, web.Response):
            return reserved
        self._launch(reserved, self._verifier.verify(recipe_id))
        return web.json_response({'ok': True, 'recipeId': recipe_id}, status=202)

    async def _handle_get_recipe(self, request: web.Request) -> web.Response:
        recipe = await self._records.get_recipe(request.match_info['id'])
        if recipe is None:
            return web.json_response({'error': 'Recipe not found'}, status=404)
        return web.json_response(recipe.to_dict())

    async def _handle_get_challenge(self, request: web.Request) -> web.Response:
        challenge = await self._records.get_challenge(request.match_info['id'])
        if challenge is None:
            return web.json_response({'error': 'Challenge not found'}, status=404)
        return web.json_response(challenge.to_dict())

    async def _handle_health(self, request: web.Request) -> web.Response:
        return web.json_response({
            'status': 'ok',
            'active': len(self._active),
            'maxJobs': self._max_jobs,
            'authorities': self._dispatcher.registry.authorities(),
        })


# ---------------------------------------------------------------------------
# Main
# ---------------------------------------------------------------------------

async def run(settings: Settings) -> None:
    """Wire collaborators, start the worker and verifier, run until shutdown."""
    records = RecordStore(settings.db_path)
    await records.connect()
    evidence = EvidenceStore(settings.evidence_dir, settings.evidence_base_url)
    sink = AlertSink(settings.alert_webhook_url)
    await sink.start()
    solver = CaptchaSolver(settings.captcha_api_key, timeout=settings.captcha_timeout_seconds)
    api = TicketApi(settings.api_base_url, settings.api_secret) if settings.api_base_url else None
    if api is not None:
        await api.start()
    else:
        log.warning('API_BASE_URL not set; challenges need an inline ticket')

    runner = RecipeRunner(
        evidence, sink, solver=solver,
        headless=settings.headless, record_video=settings.record_video,
    )
    registry = await build_registry(records)
    dispatcher = ChallengeDispatcher(
        registry, records, evidence, sink, runner,
        api=api, solver=solver, headless=settings.headless,
    )
    learner = RecipeLearner(records, evidence, sink, solver=solver, headless=settings.headless)
    verifier = Verifier(records, runner, sink, interval_seconds=settings.verify_interval_seconds)

    worker = Worker(settings, records, learner, dispatcher, verifier)
    await worker.start()
    await verifier.start()

    shutdown = asyncio.Event()
    loop = asyncio.get_running_loop()

    def _signal_handler() -> None:
        log.info('Shutdown signal received')
        shutdown.set()

    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, _signal_handler)

    await shutdown.wait()
    log.info('Shutting down...')
    await verifier.stop()
    await worker.stop()
    await solver.close()
    if api is not None:
        await api.close()
    await sink.close()
    await records.close()
    log.info('Shutdown complete')


def main() -> None:
    """Entry point: load env, configure logging, run the worker."""
    settings = Settings.load(require_worker=True)
    logging.basicConfig(
        level=getattr(logging, settings.log_level, logging.INFO),
        format='%(asctime)s %(levelname)s %(name)s: %(message)s',
    )
    try:
        asyncio.run(run(settings))
    except KeyboardInterrupt:
        pass


if __name__ == '__main__':
    main()
