"""Step primitives: the atomic browser actions a recipe is built from.

Each handler resolves its value against the context, performs the action,
and, when the step has a waitFor selector, blocks until it appears or the
bounded timeout elapses. Playwright timeouts surface as SelectorTimeout.
Nothing here catches broadly; the runner owns failure handling.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from pathlib import Path

from playwright.async_api import TimeoutError as PlaywrightTimeoutError

from autochallenge.browser import BrowserSession
from autochallenge.config import (
    MAX_WAIT_STEP_MS,
    NAVIGATION_TIMEOUT_MS,
    SELECTOR_TIMEOUT_MS,
    WAIT_FOR_TIMEOUT_MS,
)
from autochallenge.context import AutomationContext
from autochallenge.errors import CaptchaUnresolved, SelectorTimeout
from autochallenge.recipe import RecipeStep

log = logging.getLogger(__name__)

Handler = Callable[[RecipeStep, BrowserSession, AutomationContext], Awaitable[None]]


async def execute_step(
    step: RecipeStep, session: BrowserSession, ctx: AutomationContext,
) -> None:
    """Perform one step. Raises on failure."""
    handler = HANDLERS.get(step.action)
    if handler is None:
        raise ValueError(f'Unknown action: {step.action}')
    await handler(step, session, ctx)


# ---------------------------------------------------------------------------
# Waiting
# ---------------------------------------------------------------------------

async def wait_for_selector(
    session: BrowserSession, selector: str, timeout_ms: int, step: RecipeStep,
) -> None:
    """Block until selector is attached. Timeout is a hard SelectorTimeout."""
    try:
        await session.page.wait_for_selector(selector, timeout=timeout_ms)
    except PlaywrightTimeoutError as exc:
        raise SelectorTimeout(
            f'Timed out after {timeout_ms}ms waiting for {selector!r}',
            step_order=step.order,
        ) from exc


async def _post_condition(step: RecipeStep, session: BrowserSession) -> None:
    if step.wait_for:
        await wait_for_selector(session, step.wait_for, WAIT_FOR_TIMEOUT_MS, step)


def _require(step: RecipeStep, selector: bool = True, value: str | None = None) -> None:
    if selector and not step.selector:
        raise ValueError(f'{step.action} step {step.order} has no selector')
    if value is not None and not value:
        raise ValueError(f'{step.action} step {step.order} has no value')


# ---------------------------------------------------------------------------
# Handlers
# ---------------------------------------------------------------------------

async def _handle_navigate(
    step: RecipeStep, session: BrowserSession, ctx: AutomationContext,
) -> None:
    url = ctx.resolve(step.value)
    _require(step, selector=False, value=url)
    try:
        await session.page.goto(url, timeout=NAVIGATION_TIMEOUT_MS)
    except PlaywrightTimeoutError as exc:
        raise SelectorTimeout(f'Navigation to {url} timed out', step_order=step.order) from exc
    await _post_condition(step, session)


async def _handle_fill(
    step: RecipeStep, session: BrowserSession, ctx: AutomationContext,
) -> None:
    _require(step)
    value = ctx.resolve(step.value)
    await wait_for_selector(session, step.selector, SELECTOR_TIMEOUT_MS, step)
    await session.page.fill(step.selector, value)
    await _post_condition(step, session)


async def _handle_click(
    step: RecipeStep, session: BrowserSession, ctx: AutomationContext,
) -> None:
    _require(step)
    await wait_for_selector(session, step.selector, SELECTOR_TIMEOUT_MS, step)
    await session.page.click(step.selector)
    await _post_condition(step, session)


async def _handle_select(
    step: RecipeStep, session: BrowserSession, ctx: AutomationContext,
) -> None:
    _require(step)
    value = ctx.resolve(step.value)
    _require(step, selector=False, value=value)
    await wait_for_selector(session, step.selector, SELECTOR_TIMEOUT_MS, step)
    await session.page.select_option(step.selector, value)
    await _post_condition(step, session)


async def _handle_wait(
    step: RecipeStep, session: BrowserSession, ctx: AutomationContext,
) -> None:
    """Wait for a selector, or sleep `value` milliseconds (capped)."""
    if step.wait_for:
        await wait_for_selector(session, step.wait_for, WAIT_FOR_TIMEOUT_MS, step)
        return
    if not step.value:
        raise ValueError(f'wait step {step.order} has neither waitFor nor a duration')
    duration = min(int(ctx.resolve(step.value)), MAX_WAIT_STEP_MS)
    await session.page.wait_for_timeout(duration)


async def _handle_screenshot(
    step: RecipeStep, session: BrowserSession, ctx: AutomationContext,
) -> None:
    # The runner captures after every step; this step only waits when asked.
    await _post_condition(step, session)


async def _handle_solve_captcha(
    step: RecipeStep, session: BrowserSession, ctx: AutomationContext,
) -> None:
    solved = await session.solve_captcha()
    if solved is None:
        log.info('solve_captcha step %d: no widget present', step.order)
    await _post_condition(step, session)


async def _handle_upload_file(
    step: RecipeStep, session: BrowserSession, ctx: AutomationContext,
) -> None:
    _require(step)
    path = ctx.resolve(step.value)
    _require(step, selector=False, value=path)
    if not Path(path).is_file():
        raise FileNotFoundError(f'upload_file step {step.order}: no file at {path}')
    await wait_for_selector(session, step.selector, SELECTOR_TIMEOUT_MS, step)
    await session.page.set_input_files(step.selector, path)
    await _post_condition(step, session)


HANDLERS: dict[str, Handler] = {
    'navigate': _handle_navigate,
    'fill': _handle_fill,
    'click': _handle_click,
    'select': _handle_select,
    'wait': _handle_wait,
    'screenshot': _handle_screenshot,
    'solve_captcha': _handle_solve_captcha,
    'upload_file': _handle_upload_file,
}

# Step failures that leave the challenge outcome unchanged
NON_FATAL_ERRORS: tuple[type[Exception], ...] = (CaptchaUnresolved,)
