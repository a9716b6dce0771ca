"""Placeholder resolution: AutomationContext, {{token}} templates, field inference.

Runner side: a flat, read-only record of resolved values fills recipe step
values. Learner side: a discovered form field's label/name/placeholder text
is matched against an ordered pattern list to guess which token it wants.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, replace

from autochallenge.errors import UnresolvedPlaceholder

# ---------------------------------------------------------------------------
# Placeholders
# ---------------------------------------------------------------------------

PLACEHOLDERS = {
    'PCN_NUMBER': '{{pcnNumber}}',
    'VEHICLE_REG': '{{vehicleReg}}',
    'FIRST_NAME': '{{firstName}}',
    'LAST_NAME': '{{lastName}}',
    'FULL_NAME': '{{fullName}}',
    'EMAIL': '{{email}}',
    'PHONE': '{{phone}}',
    'ADDRESS_LINE1': '{{addressLine1}}',
    'ADDRESS_LINE2': '{{addressLine2}}',
    'CITY': '{{city}}',
    'POSTCODE': '{{postcode}}',
    'CHALLENGE_REASON': '{{challengeReason}}',
    'CHALLENGE_TEXT': '{{challengeText}}',
}

TOKEN_RE = re.compile(r'\{\{\s*([A-Za-z0-9_]+)\s*\}\}')
# Anything brace-delimited, well-formed or not
_ANY_TOKEN_RE = re.compile(r'\{\{[^{}]*\}\}')

# Token name -> AutomationContext attribute
_TOKEN_FIELDS = {
    'pcnNumber': 'pcn_number',
    'vehicleReg': 'vehicle_reg',
    'firstName': 'first_name',
    'lastName': 'last_name',
    'fullName': 'full_name',
    'email': 'email',
    'phone': 'phone',
    'addressLine1': 'address_line1',
    'addressLine2': 'address_line2',
    'city': 'city',
    'postcode': 'postcode',
    'challengeReason': 'challenge_reason',
    'challengeText': 'challenge_text',
}

# Ordered: first match wins. Name parts are checked before generic "name",
# free-text reason before free-text details.
FIELD_PATTERNS: tuple[tuple[re.Pattern, str], ...] = (
    (re.compile(r'pcn|penalty.*charge.*notice|ticket.*number', re.I), 'pcnNumber'),
    (re.compile(r'vehicle.*reg|registration|vrm|vrn', re.I), 'vehicleReg'),
    (re.compile(r'first.*name|forename', re.I), 'firstName'),
    (re.compile(r'last.*name|surname|family.*name', re.I), 'lastName'),
    (re.compile(r'full.*name|your.*name', re.I), 'fullName'),
    (re.compile(r'email', re.I), 'email'),
    (re.compile(r'phone|mobile|telephone', re.I), 'phone'),
    (re.compile(r'address.*line.*1|street.*address', re.I), 'addressLine1'),
    (re.compile(r'address.*line.*2', re.I), 'addressLine2'),
    (re.compile(r'city|town', re.I), 'city'),
    (re.compile(r'post.*code|zip', re.I), 'postcode'),
    (re.compile(r'reason|grounds|why', re.I), 'challengeReason'),
    (re.compile(r'details|description|explanation|comments|notes', re.I), 'challengeText'),
)


def map_field_to_placeholder(
    label: str = '', name: str = '', placeholder: str = '',
) -> str | None:
    """Return the token name (e.g. 'pcnNumber') a form field most likely wants."""
    text = f'{label} {name} {placeholder}'.lower()
    for pattern, placeholder_name in FIELD_PATTERNS:
        if pattern.search(text):
            return placeholder_name
    return None


def token(name: str) -> str:
    """'pcnNumber' -> '{{pcnNumber}}'."""
    return '{{' + name + '}}'


# ---------------------------------------------------------------------------
# AutomationContext
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class AutomationContext:
    """Resolved literal values for one challenge. Built once, read-only."""

    pcn_number: str
    vehicle_reg: str
    first_name: str = ''
    last_name: str = ''
    full_name: str = ''
    email: str = ''
    phone: str = ''
    address_line1: str = ''
    address_line2: str = ''
    city: str = ''
    postcode: str = ''
    challenge_reason: str = ''
    challenge_text: str = ''

    @classmethod
    def from_dict(cls, d: dict) -> AutomationContext:
        """Build from placeholder names (pcnNumber) or field names (pcn_number).

        Raises ValueError on unknown keys or a missing PCN number or
        registration.
        """
        fields = set(_TOKEN_FIELDS.values())
        values: dict[str, str] = {}
        unknown = []
        for key, value in d.items():
            attr = _TOKEN_FIELDS.get(key, key)
            if attr not in fields:
                unknown.append(key)
                continue
            values[attr] = '' if value is None else str(value)
        if unknown:
            raise ValueError(f'Unknown context keys: {", ".join(sorted(unknown))}')
        missing = [t for t in ('pcnNumber', 'vehicleReg') if not values.get(_TOKEN_FIELDS[t])]
        if missing:
            raise ValueError(f'Context is missing {", ".join(missing)}')
        return cls(**values)

    def value_for(self, name: str) -> str:
        """Value for a token name. Raises UnresolvedPlaceholder for unknown tokens."""
        attr = _TOKEN_FIELDS.get(name)
        if attr is None:
            raise UnresolvedPlaceholder(f'Unknown placeholder {token(name)}')
        return getattr(self, attr) or ''

    def resolve(self, template: str) -> str:
        """Replace every {{token}} in template. Total: nothing unresolved survives."""
        if not template or '{{' not in template:
            return template
        for match in _ANY_TOKEN_RE.finditer(template):
            if not TOKEN_RE.fullmatch(match.group(0)):
                raise UnresolvedPlaceholder(f'Malformed placeholder {match.group(0)!r}')
        return TOKEN_RE.sub(lambda m: self.value_for(m.group(1)), template)

    def with_narrative(self, text: str) -> AutomationContext:
        return replace(self, challenge_text=text)


def build_context(
    ticket: dict,
    challenge_reason: str,
    narrative: str = '',
) -> AutomationContext:
    """Build a context from a ticket record (ticket -> vehicle -> user).

    The user's name is split on whitespace: first word is the first name,
    the rest is the last name.
    """
    vehicle = ticket.get('vehicle') or {}
    user = vehicle.get('user') or {}
    address = user.get('address') or {}
    full_name = (user.get('name') or '').strip()
    name_parts = full_name.split()

    return AutomationContext(
        pcn_number=ticket.get('pcnNumber') or ticket.get('pcn_number') or '',
        vehicle_reg=(
            vehicle.get('registrationNumber')
            or vehicle.get('registration_number')
            or ''
        ),
        first_name=name_parts[0] if name_parts else '',
        last_name=' '.join(name_parts[1:]),
        full_name=full_name,
        email=user.get('email') or '',
        phone=user.get('phoneNumber') or user.get('phone_number') or '',
        address_line1=address.get('line1') or '',
        address_line2=address.get('line2') or '',
        city=address.get('city') or '',
        postcode=address.get('postcode') or '',
        challenge_reason=challenge_reason,
        challenge_text=narrative,
    )
