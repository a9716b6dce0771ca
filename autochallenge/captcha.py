"""CAPTCHA-solving service client (2Captcha in.php/res.php API).

A solve is one blocking call bounded by a timeout: submit the site key,
poll until a token comes back, inject the token into the page. Anything
short of a token raises CaptchaUnresolved.
"""

from __future__ import annotations

import asyncio
import logging

import httpx

from autochallenge.config import (
    CAPTCHA_API_URL,
    CAPTCHA_POLL_INTERVAL,
    CAPTCHA_TIMEOUT_DEFAULT,
)
from autochallenge.errors import CaptchaUnresolved

log = logging.getLogger(__name__)

# 2Captcha `method` per widget type
_METHODS = {
    'recaptcha': 'userrecaptcha',
    'hcaptcha': 'hcaptcha',
    'turnstile': 'turnstile',
}

# Returns {type, sitekey} for the first widget on the page, or null.
_FIND_WIDGET_JS = """
() => {
  const checks = [
    ['recaptcha', '.g-recaptcha[data-sitekey], [data-sitekey].g-recaptcha'],
    ['hcaptcha', '.h-captcha[data-sitekey]'],
    ['turnstile', '.cf-turnstile[data-sitekey]'],
  ];
  for (const [type, sel] of checks) {
    const el = document.querySelector(sel);
    if (el) return {type, sitekey: el.getAttribute('data-sitekey')};
  }
  const any = document.querySelector('[data-sitekey]');
  return any ? {type: 'recaptcha', sitekey: any.getAttribute('data-sitekey')} : null;
}
"""

_INJECT_TOKEN_JS = """
([type, token]) => {
  const names = {
    recaptcha: ['g-recaptcha-response'],
    hcaptcha: ['h-captcha-response', 'g-recaptcha-response'],
    turnstile: ['cf-turnstile-response'],
  }[type] || [];
  for (const name of names) {
    document.querySelectorAll(`[name="${name}"], #${name}`).forEach((el) => {
      el.value = token;
    });
  }
  const widget = document.querySelector('[data-callback]');
  const cb = widget && window[widget.getAttribute('data-callback')];
  if (typeof cb === 'function') cb(token);
  return true;
}
"""


class CaptchaSolver:
    """Async 2Captcha client."""

    def __init__(
        self,
        api_key: str,
        timeout: float = CAPTCHA_TIMEOUT_DEFAULT,
        poll_interval: float = CAPTCHA_POLL_INTERVAL,
        base_url: str = CAPTCHA_API_URL,
    ) -> None:
        self._api_key = api_key
        self._timeout = timeout
        self._poll_interval = poll_interval
        self._base_url = base_url.rstrip('/')
        self._client: httpx.AsyncClient | None = None

    @property
    def configured(self) -> bool:
        return bool(self._api_key)

    async def start(self) -> None:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=30.0)

    async def close(self) -> None:
        if self._client:
            await self._client.aclose()
            self._client = None

    # ------------------------------------------------------------------
    # Service calls
    # ------------------------------------------------------------------

    async def solve_token(self, captcha_type: str, sitekey: str, page_url: str) -> str:
        """Submit a task and poll for its token, bounded by the solver timeout."""
        if not self.configured:
            raise CaptchaUnresolved('CAPTCHA service not configured')
        method = _METHODS.get(captcha_type)
        if method is None:
            raise CaptchaUnresolved(f'Unsupported CAPTCHA type: {captcha_type}')
        if self._client is None:
            await self.start()

        try:
            return await asyncio.wait_for(
                self._submit_and_poll(method, sitekey, page_url),
                timeout=self._timeout,
            )
        except asyncio.TimeoutError as exc:
            raise CaptchaUnresolved(
                f'CAPTCHA not solved within {self._timeout:.0f}s'
            ) from exc
        except httpx.HTTPError as exc:
            raise CaptchaUnresolved(f'CAPTCHA service error: {exc}') from exc

    async def _submit_and_poll(self, method: str, sitekey: str, page_url: str) -> str:
        key_field = 'googlekey' if method == 'userrecaptcha' else 'sitekey'
        resp = await self._client.post(
            f'{self._base_url}/in.php',
            data={
                'key': self._api_key,
                'method': method,
                key_field: sitekey,
                'pageurl': page_url,
                'json': 1,
            },
        )
        resp.raise_for_status()
        body = resp.json()
        if body.get('status') != 1:
            raise CaptchaUnresolved(f"CAPTCHA submit rejected: {body.get('request')}")
        task_id = body['request']
        log.info('CAPTCHA task %s submitted (%s)', task_id, method)

        while True:
            await asyncio.sleep(self._poll_interval)
            resp = await self._client.get(
                f'{self._base_url}/res.php',
                params={'key': self._api_key, 'action': 'get', 'id': task_id, 'json': 1},
            )
            resp.raise_for_status()
            body = resp.json()
            if body.get('status') == 1:
                log.info('CAPTCHA task %s solved', task_id)
                return body['request']
            if body.get('request') != 'CAPCHA_NOT_READY':
                raise CaptchaUnresolved(f"CAPTCHA solve failed: {body.get('request')}")

    # ------------------------------------------------------------------
    # Page integration
    # ------------------------------------------------------------------

    async def solve_page(self, page) -> str | None:
        """Solve the first CAPTCHA widget on the page. Returns its type, or None if absent."""
        widget = await page.evaluate(_FIND_WIDGET_JS)
        if not widget or not widget.get('sitekey'):
            log.info('No CAPTCHA widget on %s', page.url)
            return None
        token = await self.solve_token(widget['type'], widget['sitekey'], page.url)
        await page.evaluate(_INJECT_TOKEN_JS, [widget['type'], token])
        return widget['type']
