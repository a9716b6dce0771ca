"""Shared pytest configuration and fakes for autochallenge tests.

No real browser is launched: browser.open_session is replaced with a
counting factory that yields sessions over FakePage.
"""

from __future__ import annotations

import asyncio
import io
import sys
from contextlib import asynccontextmanager
from pathlib import Path

import pytest
import pytest_asyncio
from PIL import Image

# autochallenge/ is a namespace package (no __init__.py); the project root
# must be importable and the package directory itself must not shadow it.
_PROJECT_ROOT = str(Path(__file__).resolve().parent.parent.parent)
_PACKAGE_DIR = str(Path(__file__).resolve().parent.parent)
sys.path[:] = [p for p in sys.path if p != _PACKAGE_DIR]
if _PROJECT_ROOT not in sys.path:
    sys.path.insert(0, _PROJECT_ROOT)

from playwright.async_api import TimeoutError as PlaywrightTimeoutError  # noqa: E402

from autochallenge import browser  # noqa: E402
from autochallenge.alerts import AlertSink, Report  # noqa: E402
from autochallenge.browser import BrowserSession  # noqa: E402
from autochallenge.context import AutomationContext  # noqa: E402
from autochallenge.recipe import VERIFIED, Challenge, Recipe, RecipeStep  # noqa: E402
from autochallenge.records import RecordStore  # noqa: E402
from autochallenge.storage import EvidenceStore  # noqa: E402


def _png() -> bytes:
    buf = io.BytesIO()
    Image.new('RGB', (4, 4), (200, 30, 30)).save(buf, format='PNG')
    return buf.getvalue()


PNG_BYTES = _png()


# ---------------------------------------------------------------------------
# Fake Playwright objects
# ---------------------------------------------------------------------------

class FakeElement:
    def __init__(self, text: str = '', attrs: dict | None = None):
        self._text = text
        self._attrs = attrs or {}

    async def text_content(self):
        return self._text

    async def get_attribute(self, name):
        return self._attrs.get(name)


class FakeApiResponse:
    def __init__(self, data: bytes, status: int = 200):
        self._data = data
        self.status = status
        self.ok = 200 <= status < 300

    async def body(self):
        return self._data


class FakeRequestContext:
    def __init__(self, page: FakePage):
        self._page = page

    async def get(self, url):
        self._page.calls.append(('request', url))
        return FakeApiResponse(self._page.images.get(url, PNG_BYTES))


class FakeContext:
    def __init__(self):
        self.closed = False

    async def close(self):
        self.closed = True


class FakePage:
    """Records every call. Selectors in `missing` time out when waited on."""

    def __init__(
        self,
        missing: set[str] | None = None,
        errors: dict[str, Exception] | None = None,
        html: str = '<html><body></body></html>',
        text: str = '',
    ):
        self.calls: list[tuple] = []
        self.missing = set(missing or ())
        self.errors = dict(errors or {})
        self.html = html
        self.text = text
        self.url = 'about:blank'
        self.video = None
        self.request = FakeRequestContext(self)
        self.attributes: dict[tuple[str, str], str] = {}
        self.elements: dict[str, FakeElement] = {}
        self.element_lists: dict[str, list[FakeElement]] = {}
        self.evaluate_results: dict[str, object] = {}
        self.click_urls: dict[str, str] = {}
        self.images: dict[str, bytes] = {}
        self.goto_hook = None
        self.goto_delay = 0.0
        self.goto_count = 0
        self.screenshot_count = 0

    def _act(self, name: str, selector: str, *rest) -> None:
        self.calls.append((name, selector, *rest))
        if selector in self.errors:
            raise self.errors[selector]

    def actions(self, name: str) -> list[tuple]:
        return [c for c in self.calls if c[0] == name]

    async def goto(self, url, timeout=None):
        self.goto_count += 1
        self._act('goto', url)
        if self.goto_delay:
            await asyncio.sleep(self.goto_delay)
        self.url = url
        if self.goto_hook is not None:
            self.goto_hook(self)

    async def fill(self, selector, value):
        self._act('fill', selector, value)

    async def click(self, selector):
        self._act('click', selector)
        if selector in self.click_urls:
            self.url = self.click_urls[selector]

    async def check(self, selector):
        self._act('check', selector)

    async def select_option(self, selector, value):
        self._act('select', selector, value)

    async def set_input_files(self, selector, path):
        self._act('upload', selector, path)

    async def wait_for_selector(self, selector, timeout=None, state=None):
        self.calls.append(('wait_for_selector', selector))
        if selector in self.missing:
            raise PlaywrightTimeoutError(f'Timeout {timeout}ms exceeded waiting for {selector}')

    async def wait_for_url(self, pattern, timeout=None):
        self.calls.append(('wait_for_url', pattern))
        if pattern in self.missing:
            raise PlaywrightTimeoutError(f'Timeout exceeded waiting for {pattern}')

    async def wait_for_load_state(self, state='load', timeout=None):
        self.calls.append(('wait_for_load_state', state))

    async def wait_for_timeout(self, ms):
        self.calls.append(('wait_for_timeout', ms))

    async def screenshot(self, full_page=False):
        self.screenshot_count += 1
        return PNG_BYTES

    async def content(self):
        return self.html

    async def inner_text(self, selector):
        return self.text

    async def evaluate(self, script, arg=None):
        self.calls.append(('evaluate', script, arg))
        return self.evaluate_results.get(script)

    async def get_attribute(self, selector, name):
        return self.attributes.get((selector, name))

    async def query_selector(self, selector):
        return self.elements.get(selector)

    async def query_selector_all(self, selector):
        return self.element_lists.get(selector, [])


class SessionFactory:
    """Stands in for browser.open_session; counts sessions opened and closed."""

    def __init__(self):
        self.opened = 0
        self.closed = 0
        self.pages: list[FakePage] = []
        self.next_pages: list[FakePage] = []

    @asynccontextmanager
    async def __call__(self, solver=None, headless=False, record_video=False):
        self.opened += 1
        page = self.next_pages.pop(0) if self.next_pages else FakePage()
        self.pages.append(page)
        try:
            yield BrowserSession(browser=None, context=FakeContext(), page=page, solver=solver)
        finally:
            self.closed += 1


class RecordingSink(AlertSink):
    """AlertSink that keeps every report instead of posting it."""

    def __init__(self):
        super().__init__('')
        self.reports: list[Report] = []

    async def _deliver(self, report: Report) -> None:
        self.reports.append(report)

    @property
    def warnings(self) -> list[Report]:
        return [r for r in self.reports if r.level == 'warning']

    @property
    def errors(self) -> list[Report]:
        return [r for r in self.reports if r.level == 'error']


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def sessions(monkeypatch) -> SessionFactory:
    factory = SessionFactory()
    monkeypatch.setattr(browser, 'open_session', factory)
    return factory


@pytest.fixture
def sink() -> RecordingSink:
    return RecordingSink()


@pytest.fixture
def evidence(tmp_path) -> EvidenceStore:
    return EvidenceStore(tmp_path / 'evidence', base_url='https://evidence.test')


@pytest_asyncio.fixture
async def records():
    store = RecordStore(':memory:')
    await store.connect()
    yield store
    await store.close()


@pytest.fixture
def ctx() -> AutomationContext:
    return AutomationContext(
        pcn_number='PCN123456',
        vehicle_reg='AB12CDE',
        first_name='Jane',
        last_name='Doe',
        full_name='Jane Doe',
        email='jane@example.com',
        phone='07700900123',
        address_line1='1 High Street',
        address_line2='Flat 2',
        city='London',
        postcode='SE13 5AB',
        challenge_reason='contravention_did_not_occur',
        challenge_text='The parking app failed to take my payment.',
    )


def make_search_recipe(status: str = VERIFIED, recipe_id: str = 'r1') -> Recipe:
    """navigate, fill PCN, fill VRM, click submit (waitFor results)."""
    return Recipe(
        id=recipe_id,
        authority_id='camden',
        authority_name='London Borough of Camden',
        entry_url='https://portal.test/challenge',
        status=status,
        steps=(
            RecipeStep(order=1, action='navigate', value='https://portal.test/challenge',
                       description='Open portal'),
            RecipeStep(order=2, action='fill', selector='#pcn', value='{{pcnNumber}}',
                       description='Enter PCN number'),
            RecipeStep(order=3, action='fill', selector='#vrm', value='{{vehicleReg}}',
                       description='Enter vehicle registration'),
            RecipeStep(order=4, action='click', selector='#submit', wait_for='.results',
                       description='Submit challenge form'),
        ),
    )


def make_challenge(challenge_id: str = 'c1', ticket_id: str = 't1') -> Challenge:
    return Challenge(
        id=challenge_id,
        ticket_id=ticket_id,
        authority_id='camden',
        method='recipe',
        automation_ref='r1',
    )


def make_ticket(ticket_id: str = 't1') -> dict:
    return {
        'id': ticket_id,
        'pcnNumber': 'PCN123456',
        'vehicle': {
            'registrationNumber': 'AB12CDE',
            'user': {
                'name': 'Jane Doe',
                'email': 'jane@example.com',
                'phoneNumber': '07700900123',
                'address': {
                    'line1': '1 High Street',
                    'line2': '',
                    'city': 'London',
                    'postcode': 'SE13 5AB',
                },
            },
        },
    }


# ---------------------------------------------------------------------------
# Issuer portal pages
# ---------------------------------------------------------------------------

LEWISHAM_GALLERY = '#blueimp-image-gallery .slides img'


def lewisham_page(blocked_attempts: int = 0) -> FakePage:
    """Lewisham portal that reports non-human activity on the first N loads."""
    from autochallenge.issuers import lewisham

    page = FakePage()

    def on_goto(p: FakePage) -> None:
        if p.goto_count <= blocked_attempts:
            p.attributes[('#btn_Search', 'disabled')] = ''
            p.elements['.captchaVerificationStatus'] = FakeElement(lewisham.NON_HUMAN_TEXT)
        else:
            p.attributes.pop(('#btn_Search', 'disabled'), None)
            p.elements.pop('.captchaVerificationStatus', None)

    page.goto_hook = on_goto
    return page


def with_gallery(page: FakePage) -> FakePage:
    """Two full-size images and one thumbnail in the Lewisham gallery."""
    page.element_lists[LEWISHAM_GALLERY] = [
        FakeElement(attrs={'src': 'https://pcn.test/img?id=1&thumb=false'}),
        FakeElement(attrs={'src': 'https://pcn.test/img?id=1&thumb=true'}),
        FakeElement(attrs={'src': 'https://pcn.test/img?id=2&thumb=false'}),
    ]
    return page
