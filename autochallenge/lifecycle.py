"""Recipe lifecycle state machine and the human review actions.

    DRAFT -> LEARNING -> PENDING_REVIEW -> VERIFIED <-> FAILED / NEEDS_HUMAN_HELP

Only a human approval moves a recipe into VERIFIED. The learner stops at
PENDING_REVIEW; the verifier can only demote.
"""

from __future__ import annotations

import logging

from autochallenge.errors import InvalidTransition
from autochallenge.recipe import (
    DRAFT,
    FAILED,
    LEARNING,
    NEEDS_HUMAN_HELP,
    PENDING_REVIEW,
    VERIFIED,
    Recipe,
)
from autochallenge.records import RecordStore, utcnow

log = logging.getLogger(__name__)

TRANSITIONS: dict[str, frozenset[str]] = {
    DRAFT: frozenset({LEARNING}),
    LEARNING: frozenset({PENDING_REVIEW, NEEDS_HUMAN_HELP, FAILED}),
    PENDING_REVIEW: frozenset({VERIFIED, NEEDS_HUMAN_HELP, LEARNING}),
    VERIFIED: frozenset({FAILED, NEEDS_HUMAN_HELP, LEARNING, PENDING_REVIEW}),
    FAILED: frozenset({VERIFIED, LEARNING, PENDING_REVIEW, NEEDS_HUMAN_HELP}),
    NEEDS_HUMAN_HELP: frozenset({LEARNING, PENDING_REVIEW, VERIFIED}),
}


def can_transition(current: str, target: str) -> bool:
    return target in TRANSITIONS.get(current, frozenset())


def check_transition(current: str, target: str) -> None:
    """Raise InvalidTransition unless current -> target is allowed."""
    if not can_transition(current, target):
        raise InvalidTransition(f'Recipe cannot move from {current} to {target}')


async def transition(
    records: RecordStore,
    recipe_id: str,
    target: str,
    **fields,
) -> Recipe:
    """Move a stored recipe to `target`, writing any extra columns alongside.

    The write is a compare-and-set on the status read here; losing the race
    to another writer raises InvalidTransition.
    """
    recipe = await records.get_recipe(recipe_id)
    if recipe is None:
        raise KeyError(f'Recipe {recipe_id} not found')
    check_transition(recipe.status, target)

    updated = await records.update_recipe(
        recipe_id, status=target, expected_status=recipe.status, **fields,
    )
    if not updated:
        raise InvalidTransition(
            f'Recipe {recipe_id} changed status concurrently (was {recipe.status})'
        )
    log.info('Recipe %s: %s -> %s', recipe_id, recipe.status, target)
    return await records.get_recipe(recipe_id)


async def approve_recipe(records: RecordStore, recipe_id: str) -> Recipe:
    """Human approval: PENDING_REVIEW (or a demoted recipe) -> VERIFIED."""
    return await transition(
        records, recipe_id, VERIFIED,
        last_verified=utcnow(), failure_reason='',
    )


async def reject_recipe(records: RecordStore, recipe_id: str, reason: str) -> Recipe:
    """Human rejection with a reason: -> NEEDS_HUMAN_HELP."""
    if not reason.strip():
        raise ValueError('A rejection needs a reason')
    return await transition(records, recipe_id, NEEDS_HUMAN_HELP, failure_reason=reason)
