"""Tests for the SQLite record store.

Run: pytest autochallenge/tests/test_records.py -v
"""

import pytest

from autochallenge.errors import ChallengeFinalized
from autochallenge.recipe import (
    FAILED,
    PENDING_REVIEW,
    SUCCESS,
    VERIFIED,
    Recipe,
    RecipeStep,
)

from conftest import make_challenge, make_search_recipe


# -- Recipes ---------------------------------------------------------------


@pytest.mark.asyncio
async def test_recipe_round_trip(records):
    """A stored recipe comes back with its steps and timestamps."""
    await records.create_recipe(make_search_recipe())
    recipe = await records.get_recipe('r1')
    assert recipe.status == VERIFIED
    assert [s.order for s in recipe.steps] == [1, 2, 3, 4]
    assert recipe.steps[3].wait_for == '.results'
    assert recipe.created_at
    assert recipe.updated_at


@pytest.mark.asyncio
async def test_get_missing_recipe(records):
    assert await records.get_recipe('nope') is None


@pytest.mark.asyncio
async def test_list_recipes_by_status(records):
    await records.create_recipe(make_search_recipe(recipe_id='r1'))
    await records.create_recipe(make_search_recipe(status=PENDING_REVIEW, recipe_id='r2'))
    assert [r.id for r in await records.list_recipes()] == ['r1', 'r2']
    assert [r.id for r in await records.list_recipes(status=PENDING_REVIEW)] == ['r2']


@pytest.mark.asyncio
async def test_update_steps_and_fields(records):
    await records.create_recipe(Recipe(id='r1', authority_id='camden'))
    ok = await records.update_recipe(
        'r1',
        steps=[RecipeStep(order=2, action='click', selector='#go'),
               RecipeStep(order=1, action='navigate', value='https://x.test')],
        entry_url='https://x.test',
        needs_account=True,
    )
    assert ok
    recipe = await records.get_recipe('r1')
    assert recipe.entry_url == 'https://x.test'
    assert recipe.needs_account is True
    assert [s.action for s in recipe.steps] == ['navigate', 'click']


@pytest.mark.asyncio
async def test_create_rejects_duplicate_orders(records):
    recipe = make_search_recipe().with_changes(steps=(
        RecipeStep(order=1, action='navigate', value='https://x.test'),
        RecipeStep(order=1, action='click', selector='#go'),
    ))
    with pytest.raises(ValueError, match='Duplicate'):
        await records.create_recipe(recipe)
    assert await records.get_recipe('r1') is None


@pytest.mark.asyncio
async def test_update_rejects_gapped_orders(records):
    await records.create_recipe(make_search_recipe())
    with pytest.raises(ValueError, match='without gaps'):
        await records.update_recipe('r1', steps=[
            RecipeStep(order=1, action='navigate', value='https://x.test'),
            RecipeStep(order=3, action='click', selector='#go'),
        ])
    assert [s.order for s in (await records.get_recipe('r1')).steps] == [1, 2, 3, 4]


@pytest.mark.asyncio
async def test_update_unknown_column(records):
    await records.create_recipe(Recipe(id='r1', authority_id='camden'))
    with pytest.raises(ValueError, match='Cannot update'):
        await records.update_recipe('r1', id='r2')


@pytest.mark.asyncio
async def test_compare_and_set(records):
    """expected_status guards the write against a concurrent change."""
    await records.create_recipe(make_search_recipe())
    assert not await records.update_recipe('r1', status=FAILED, expected_status=PENDING_REVIEW)
    assert (await records.get_recipe('r1')).status == VERIFIED
    assert await records.update_recipe('r1', status=FAILED, expected_status=VERIFIED)
    assert (await records.get_recipe('r1')).status == FAILED


# -- Challenges ------------------------------------------------------------


@pytest.mark.asyncio
async def test_finish_challenge(records):
    challenge = await records.create_challenge(make_challenge())
    challenge.status = SUCCESS
    challenge.evidence_urls.append('https://evidence.test/1.png')
    challenge.submitted = True
    await records.finish_challenge(challenge)

    stored = await records.get_challenge('c1')
    assert stored.status == SUCCESS
    assert stored.evidence_urls == ['https://evidence.test/1.png']
    assert stored.submitted
    assert stored.is_terminal


@pytest.mark.asyncio
async def test_finished_challenge_is_immutable(records):
    challenge = await records.create_challenge(make_challenge())
    await records.finish_challenge(challenge)
    with pytest.raises(ChallengeFinalized):
        await records.finish_challenge(challenge)


@pytest.mark.asyncio
async def test_finish_missing_challenge(records):
    with pytest.raises(KeyError):
        await records.finish_challenge(make_challenge('ghost'))


@pytest.mark.asyncio
async def test_list_challenges_per_ticket(records):
    await records.create_challenge(make_challenge('c1', 't1'))
    await records.create_challenge(make_challenge('c2', 't1'))
    await records.create_challenge(make_challenge('c3', 't2'))
    assert {c.id for c in await records.list_challenges('t1')} == {'c1', 'c2'}
