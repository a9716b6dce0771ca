"""Page detectors used by the learner.

Three independent checks run against a loaded portal page:
    - CAPTCHA: vendor markers in the HTML, classified by type.
    - Account gating: login/registration cues in the visible text.
    - Form fields: enumerated inputs, each mapped to a placeholder token.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass

from autochallenge.context import map_field_to_placeholder

log = logging.getLogger(__name__)

# Ordered: the first vendor whose marker matches names the type.
CAPTCHA_PATTERNS: tuple[tuple[str, re.Pattern], ...] = (
    ('recaptcha', re.compile(r'g-recaptcha|grecaptcha|recaptcha', re.I)),
    ('hcaptcha', re.compile(r'h-captcha|hcaptcha', re.I)),
    ('turnstile', re.compile(r'cf-turnstile|turnstile', re.I)),
    ('unknown', re.compile(r'captcha', re.I)),
)

LOGIN_PATTERN = re.compile(r'log\s*in|sign\s*in|password|username', re.I)
REGISTER_PATTERN = re.compile(r'register|create\s*account|sign\s*up', re.I)

SUBMIT_PATTERN = re.compile(r'submit|send|continue|next|challenge|appeal', re.I)

# Field types the learner turns into steps; everything else is ignored.
_FILLABLE_TYPES = frozenset({
    'text', 'email', 'tel', 'number', 'search', 'textarea', 'select', 'file', '',
})

# Enumerates visible form controls with their label text.
_FIELDS_JS = """
() => {
  const out = [];
  const controls = document.querySelectorAll('input, select, textarea');
  for (const el of controls) {
    const tag = el.tagName.toLowerCase();
    const type = tag === 'input' ? (el.getAttribute('type') || 'text').toLowerCase() : tag;
    if (['hidden', 'submit', 'button', 'image', 'reset'].includes(type)) continue;
    const style = window.getComputedStyle(el);
    if (style.display === 'none' || style.visibility === 'hidden') continue;
    let label = '';
    if (el.id) {
      const l = document.querySelector(`label[for="${CSS.escape(el.id)}"]`);
      if (l) label = l.textContent.trim();
    }
    if (!label && el.closest('label')) label = el.closest('label').textContent.trim();
    if (!label) label = el.getAttribute('aria-label') || '';
    const options = tag === 'select'
      ? Array.from(el.options).map((o) => o.value).filter((v) => v)
      : [];
    out.push({
      tag, type, label,
      id: el.id || '',
      name: el.getAttribute('name') || '',
      placeholder: el.getAttribute('placeholder') || '',
      required: el.required,
      options,
    });
  }
  return out;
}
"""

# Candidate submit controls in document order.
_SUBMIT_JS = """
() => Array.from(
  document.querySelectorAll('button, input[type="submit"], input[type="button"]')
).map((el) => ({
  id: el.id || '',
  name: el.getAttribute('name') || '',
  type: (el.getAttribute('type') || '').toLowerCase(),
  text: (el.textContent || el.value || '').trim(),
}))
"""


@dataclass(frozen=True)
class CaptchaDetection:
    detected: bool
    captcha_type: str | None = None


@dataclass(frozen=True)
class AccountDetection:
    has_login_form: bool
    has_register_form: bool

    @property
    def requires_account(self) -> bool:
        return self.has_login_form or self.has_register_form


@dataclass(frozen=True)
class FormField:
    """One enumerated form control."""

    tag: str
    field_type: str
    selector: str
    label: str = ''
    name: str = ''
    placeholder_text: str = ''
    required: bool = False
    options: tuple[str, ...] = ()
    placeholder: str | None = None  # inferred token name, e.g. 'pcnNumber'


# ---------------------------------------------------------------------------
# Pure detectors
# ---------------------------------------------------------------------------

def detect_captcha(html: str) -> CaptchaDetection:
    for captcha_type, pattern in CAPTCHA_PATTERNS:
        if pattern.search(html or ''):
            return CaptchaDetection(True, captcha_type)
    return CaptchaDetection(False)


def detect_account_requirement(text: str) -> AccountDetection:
    """Login/registration cues in the page text."""
    return AccountDetection(
        has_login_form=bool(LOGIN_PATTERN.search(text or '')),
        has_register_form=bool(REGISTER_PATTERN.search(text or '')),
    )


def selector_for(raw: dict) -> str:
    """Most stable CSS selector for an enumerated control: id, then name."""
    if raw.get('id'):
        return f"#{raw['id']}"
    if raw.get('name'):
        return f"{raw.get('tag') or 'input'}[name=\"{raw['name']}\"]"
    return ''


def fields_from_snapshot(snapshot: list[dict]) -> list[FormField]:
    """Turn the raw control list into FormFields with inferred placeholders.

    Controls with no usable selector or an unsupported type are dropped.
    """
    fields = []
    for raw in snapshot:
        field_type = (raw.get('type') or '').lower()
        if field_type not in _FILLABLE_TYPES:
            continue
        selector = selector_for(raw)
        if not selector:
            log.debug('Skipping control without id or name: %s', raw.get('label'))
            continue
        fields.append(FormField(
            tag=raw.get('tag') or 'input',
            field_type=field_type or 'text',
            selector=selector,
            label=raw.get('label') or '',
            name=raw.get('name') or '',
            placeholder_text=raw.get('placeholder') or '',
            required=bool(raw.get('required')),
            options=tuple(raw.get('options') or ()),
            placeholder=map_field_to_placeholder(
                raw.get('label') or '', raw.get('name') or '', raw.get('placeholder') or '',
            ),
        ))
    return fields


def pick_submit(candidates: list[dict]) -> str:
    """Selector of the most likely submit control, or a generic fallback."""
    for raw in candidates:
        is_submit = raw.get('type') == 'submit'
        if not (is_submit or SUBMIT_PATTERN.search(raw.get('text') or '')):
            continue
        if raw.get('id'):
            return f"#{raw['id']}"
        if is_submit:
            break
    return '[type="submit"]'


# ---------------------------------------------------------------------------
# Page checks
# ---------------------------------------------------------------------------

async def detect_form_fields(page) -> list[FormField]:
    snapshot = await page.evaluate(_FIELDS_JS)
    fields = fields_from_snapshot(snapshot or [])
    log.info('Detected %d form fields (%d mapped)', len(fields),
             sum(1 for f in fields if f.placeholder))
    return fields


async def detect_submit(page) -> str:
    return pick_submit(await page.evaluate(_SUBMIT_JS) or [])
