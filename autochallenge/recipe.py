"""Recipe data structures: step definitions, recipes, challenge records, results."""

from __future__ import annotations

import json
from dataclasses import dataclass, field, replace

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

ACTIONS = frozenset({
    'navigate',
    'fill',
    'click',
    'select',
    'wait',
    'screenshot',
    'solve_captcha',
    'upload_file',
})

# Recipe lifecycle
DRAFT = 'DRAFT'
LEARNING = 'LEARNING'
PENDING_REVIEW = 'PENDING_REVIEW'
VERIFIED = 'VERIFIED'
FAILED = 'FAILED'
NEEDS_HUMAN_HELP = 'NEEDS_HUMAN_HELP'

RECIPE_STATUSES = frozenset({
    DRAFT, LEARNING, PENDING_REVIEW, VERIFIED, FAILED, NEEDS_HUMAN_HELP,
})

# Challenge outcome
PENDING = 'PENDING'
SUCCESS = 'SUCCESS'
ERROR = 'ERROR'

CHALLENGE_STATUSES = frozenset({PENDING, SUCCESS, ERROR})

# Words in a step description that mark the final submission click.
_SUBMISSION_WORDS = ('submit',)


# ---------------------------------------------------------------------------
# RecipeStep
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class RecipeStep:
    """Single atomic browser action in a recipe."""

    order: int
    action: str
    selector: str = ''
    value: str = ''  # literal or {{placeholder}} template
    wait_for: str = ''
    optional: bool = False
    description: str = ''
    field_type: str = ''  # text, email, tel, textarea, select, file
    placeholder: str = ''  # placeholder key the learner inferred

    @property
    def is_submission(self) -> bool:
        """True for the click that sends the form. Dry runs never perform it."""
        if self.action != 'click':
            return False
        desc = self.description.lower()
        return any(word in desc for word in _SUBMISSION_WORDS)

    @staticmethod
    def from_dict(d: dict) -> RecipeStep:
        """Create from a JSON-parsed dict. Accepts camelCase keys from stored recipes."""
        action = d['action']
        if action not in ACTIONS:
            raise ValueError(f'Unknown step action: {action}')
        return RecipeStep(
            order=int(d['order']),
            action=action,
            selector=d.get('selector') or '',
            value=d.get('value') or '',
            wait_for=d.get('wait_for') or d.get('waitFor') or '',
            optional=bool(d.get('optional', False)),
            description=d.get('description') or '',
            field_type=d.get('field_type') or d.get('fieldType') or '',
            placeholder=d.get('placeholder') or '',
        )

    def to_dict(self) -> dict:
        """Serialize to a JSON-compatible dict. Omits default-value fields."""
        d: dict = {'order': self.order, 'action': self.action}
        if self.selector:
            d['selector'] = self.selector
        if self.value:
            d['value'] = self.value
        if self.wait_for:
            d['waitFor'] = self.wait_for
        if self.optional:
            d['optional'] = True
        if self.description:
            d['description'] = self.description
        if self.field_type:
            d['fieldType'] = self.field_type
        if self.placeholder:
            d['placeholder'] = self.placeholder
        return d


def validate_steps(steps: tuple[RecipeStep, ...] | list[RecipeStep]) -> None:
    """Orders must be unique and dense (1..n). Raises ValueError otherwise."""
    orders = sorted(s.order for s in steps)
    if len(set(orders)) != len(orders):
        raise ValueError(f'Duplicate step order in {orders}')
    if orders != list(range(1, len(orders) + 1)):
        raise ValueError(f'Step orders must run 1..{len(orders)} without gaps, got {orders}')


def steps_from_json(raw: str | None) -> tuple[RecipeStep, ...]:
    if not raw:
        return ()
    return tuple(RecipeStep.from_dict(s) for s in json.loads(raw))


def steps_to_json(steps: tuple[RecipeStep, ...] | list[RecipeStep]) -> str:
    return json.dumps([s.to_dict() for s in steps])


# ---------------------------------------------------------------------------
# Recipe
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Recipe:
    """Persisted description of one authority's challenge-submission flow.

    Immutable: the runner works on the snapshot it was handed, lifecycle
    changes produce a new Recipe via with_changes().
    """

    id: str
    authority_id: str
    authority_name: str = ''
    entry_url: str = ''
    captcha_type: str | None = None
    needs_account: bool = False
    status: str = DRAFT
    steps: tuple[RecipeStep, ...] = ()
    last_verified: str | None = None
    last_failed: str | None = None
    failure_reason: str = ''
    created_at: str = ''
    updated_at: str = ''

    def ordered_steps(self) -> list[RecipeStep]:
        """Steps in execution order."""
        return sorted(self.steps, key=lambda s: s.order)

    def with_changes(self, **changes) -> Recipe:
        return replace(self, **changes)

    @staticmethod
    def from_dict(d: dict) -> Recipe:
        steps = d.get('steps') or ()
        if isinstance(steps, str):
            parsed = steps_from_json(steps)
        else:
            parsed = tuple(
                s if isinstance(s, RecipeStep) else RecipeStep.from_dict(s)
                for s in steps
            )
        return Recipe(
            id=d['id'],
            authority_id=d['authority_id'],
            authority_name=d.get('authority_name') or '',
            entry_url=d.get('entry_url') or '',
            captcha_type=d.get('captcha_type'),
            needs_account=bool(d.get('needs_account', False)),
            status=d.get('status', DRAFT),
            steps=parsed,
            last_verified=d.get('last_verified'),
            last_failed=d.get('last_failed'),
            failure_reason=d.get('failure_reason') or '',
            created_at=d.get('created_at') or '',
            updated_at=d.get('updated_at') or '',
        )

    def to_dict(self) -> dict:
        return {
            'id': self.id,
            'authority_id': self.authority_id,
            'authority_name': self.authority_name,
            'entry_url': self.entry_url,
            'captcha_type': self.captcha_type,
            'needs_account': self.needs_account,
            'status': self.status,
            'steps': [s.to_dict() for s in self.ordered_steps()],
            'last_verified': self.last_verified,
            'last_failed': self.last_failed,
            'failure_reason': self.failure_reason,
            'created_at': self.created_at,
            'updated_at': self.updated_at,
        }


# ---------------------------------------------------------------------------
# Challenge
# ---------------------------------------------------------------------------

@dataclass
class Challenge:
    """One submission attempt against one ticket.

    `method` is 'recipe' or 'adapter'; `automation_ref` is the recipe id or
    the adapter's authority id. Terminal once status leaves PENDING after a
    live run; a re-attempt is a new Challenge.
    """

    id: str
    ticket_id: str
    authority_id: str
    method: str
    automation_ref: str
    status: str = PENDING
    evidence_urls: list[str] = field(default_factory=list)
    narrative: str = ''
    failure_reason: str = ''
    failed_step: int | None = None
    dry_run: bool = False
    submitted: bool = False
    captcha_encountered: bool = False
    video_url: str = ''
    created_at: str = ''
    completed_at: str | None = None

    @property
    def is_terminal(self) -> bool:
        return self.completed_at is not None

    def to_dict(self) -> dict:
        return {
            'id': self.id,
            'ticket_id': self.ticket_id,
            'authority_id': self.authority_id,
            'method': self.method,
            'automation_ref': self.automation_ref,
            'status': self.status,
            'evidence_urls': list(self.evidence_urls),
            'narrative': self.narrative,
            'failure_reason': self.failure_reason,
            'failed_step': self.failed_step,
            'dry_run': self.dry_run,
            'submitted': self.submitted,
            'captcha_encountered': self.captcha_encountered,
            'video_url': self.video_url,
            'created_at': self.created_at,
            'completed_at': self.completed_at,
        }


# ---------------------------------------------------------------------------
# StepResult
# ---------------------------------------------------------------------------

@dataclass
class StepResult:
    """Outcome of a single recipe step."""

    order: int
    action: str
    success: bool
    duration_seconds: float = 0.0
    error: str = ''
    skipped: bool = False
    screenshot_url: str = ''
