"""Bearer-authenticated HTTP client for the ticket store API.

The ticket store owns tickets, vehicles and users; this worker only reads
the handful of fields it resolves into placeholders, asks for a generated
challenge narrative, and posts finished challenge outcomes back.
"""

from __future__ import annotations

import json
import logging

import httpx

from autochallenge.recipe import Challenge

log = logging.getLogger(__name__)


class TicketApi:
    """Persistent HTTP client for the ticket store."""

    def __init__(self, base_url: str, secret: str) -> None:
        self._base_url = base_url.rstrip('/')
        self._secret = secret
        self._client: httpx.AsyncClient | None = None

    async def start(self) -> None:
        """Create the persistent httpx.AsyncClient."""
        self._client = httpx.AsyncClient(timeout=15.0)

    async def close(self) -> None:
        if self._client:
            await self._client.aclose()
            self._client = None

    async def _request(
        self,
        method: str,
        path: str,
        payload: dict | None = None,
        timeout: float | None = None,
    ) -> httpx.Response:
        """Make an authenticated request. Raises RuntimeError if not started."""
        if self._client is None:
            raise RuntimeError('TicketApi not started. Call await client.start() first.')

        headers = {'Authorization': f'Bearer {self._secret}'}
        kwargs: dict = {'method': method, 'url': self._base_url + path, 'headers': headers}
        if payload is not None:
            headers['Content-Type'] = 'application/json'
            kwargs['content'] = json.dumps(payload)
        if timeout is not None:
            kwargs['timeout'] = timeout
        return await self._client.request(**kwargs)

    # -- Tickets -------------------------------------------------------------

    async def get_ticket(self, ticket_id: str) -> dict | None:
        """GET /api/tickets/{id}. Ticket with vehicle and user, or None on 404."""
        resp = await self._request('GET', f'/api/tickets/{ticket_id}')
        if resp.status_code == 404:
            return None
        resp.raise_for_status()
        return resp.json()

    # -- Narrative -----------------------------------------------------------

    async def generate_narrative(self, pcn_number: str, reason: str, details: str = '') -> str:
        """POST /api/narratives. Returns the generated challenge text."""
        resp = await self._request(
            'POST', '/api/narratives',
            payload={'pcnNumber': pcn_number, 'reason': reason, 'details': details},
            timeout=60.0,
        )
        resp.raise_for_status()
        return resp.json()['text']

    # -- Results -------------------------------------------------------------

    async def post_challenge_result(self, challenge: Challenge) -> None:
        """POST /api/tickets/{ticket}/challenges. Writes the outcome back."""
        resp = await self._request(
            'POST', f'/api/tickets/{challenge.ticket_id}/challenges',
            payload=challenge.to_dict(),
        )
        resp.raise_for_status()
        log.info('Posted challenge %s result (%s)', challenge.id, challenge.status)
