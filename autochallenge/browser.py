"""
Browser Session Provider.

One Chromium process per execution (learner inspection, runner pass, adapter run),
never pooled or shared. Sessions present a fixed desktop viewport and carry
the CAPTCHA solver, so any step can solve a widget without extra wiring.

Usage:
    async with browser.open_session(solver=solver) as session:
        await session.page.goto(url)

Teardown runs on every exit path: success, step failure, or exception.
"""

from __future__ import annotations

import logging
import shutil
import tempfile
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass
from pathlib import Path

from playwright.async_api import Browser, BrowserContext, Page, async_playwright

from autochallenge.captcha import CaptchaSolver
from autochallenge.config import NAVIGATION_TIMEOUT_MS, SELECTOR_TIMEOUT_MS, VIEWPORT
from autochallenge.errors import CaptchaUnresolved

log = logging.getLogger(__name__)

LAUNCH_ARGS = [
    '--no-first-run',
    '--no-default-browser-check',
    '--disable-infobars',
    '--disable-notifications',
    '--disable-blink-features=AutomationControlled',
]


@dataclass
class BrowserSession:
    browser: Browser
    context: BrowserContext
    page: Page
    solver: CaptchaSolver | None = None
    video_dir: str = ''

    async def solve_captcha(self) -> str | None:
        """Solve a CAPTCHA on the current page. Returns its type, None if none present."""
        if self.solver is None:
            raise CaptchaUnresolved('No CAPTCHA solver attached to this session')
        return await self.solver.solve_page(self.page)

    async def video_file(self) -> Path | None:
        """Path of the finished recording. Only valid after the page is closed."""
        if not self.video_dir or self.page.video is None:
            return None
        return Path(await self.page.video.path())


@asynccontextmanager
async def open_session(
    solver: CaptchaSolver | None = None,
    headless: bool = False,
    record_video: bool = False,
) -> AsyncIterator[BrowserSession]:
    """Launch Chromium with a fresh context and yield the session. Always tears down."""
    video_dir = tempfile.mkdtemp(prefix='autochallenge-video-') if record_video else ''

    async with async_playwright() as pw:
        browser = await pw.chromium.launch(headless=headless, args=LAUNCH_ARGS)
        try:
            context_options: dict = {'viewport': dict(VIEWPORT)}
            if video_dir:
                context_options['record_video_dir'] = video_dir
                context_options['record_video_size'] = dict(VIEWPORT)
            context = await browser.new_context(**context_options)
            context.set_default_timeout(SELECTOR_TIMEOUT_MS)
            context.set_default_navigation_timeout(NAVIGATION_TIMEOUT_MS)
            page = await context.new_page()
            log.info(
                'Browser session started (%dx%d, headless=%s, video=%s)',
                VIEWPORT['width'], VIEWPORT['height'], headless, bool(video_dir),
            )
            yield BrowserSession(
                browser=browser,
                context=context,
                page=page,
                solver=solver,
                video_dir=video_dir,
            )
        finally:
            try:
                await browser.close()
            except Exception:
                log.warning('Failed to close browser', exc_info=True)
            if video_dir:
                shutil.rmtree(video_dir, ignore_errors=True)
            log.info('Browser session closed')
