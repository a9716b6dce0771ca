"""Tests for the recipe learner: portal discovery, drafting, human-help paths."""

import pytest

from autochallenge.detectors import _FIELDS_JS, _SUBMIT_JS, CaptchaDetection, FormField
from autochallenge.errors import TargetNotFound
from autochallenge.learner import SUBMIT_DESCRIPTION, RecipeLearner, build_draft_steps
from autochallenge.recipe import (
    FAILED,
    NEEDS_HUMAN_HELP,
    PENDING_REVIEW,
    VERIFIED,
    Recipe,
    RecipeStep,
)

from conftest import FakePage, make_search_recipe

PORTAL = 'https://camden.test/pcn'


def _portal_page(html='<div class="g-recaptcha" data-sitekey="k"></div>', text='Log in'):
    page = FakePage(html=html, text=text)
    page.evaluate_results[_FIELDS_JS] = [
        {'tag': 'input', 'type': 'text', 'id': 'pcn', 'label': 'PCN number', 'required': True},
        {'tag': 'input', 'type': 'text', 'id': 'vrm', 'label': 'Vehicle registration'},
        {'tag': 'input', 'type': 'email', 'id': 'mail', 'label': 'Email'},
        {'tag': 'input', 'type': 'text', 'id': 'colour', 'label': 'Favourite colour'},
    ]
    page.evaluate_results[_SUBMIT_JS] = [{'id': 'go', 'type': 'submit', 'text': 'Submit'}]
    return page


@pytest.fixture
def learner(records, evidence, sink):
    return RecipeLearner(records, evidence, sink, portal_urls={'camden': PORTAL})


class TestBuildDraftSteps:
    def test_field_steps_between_navigate_and_submit(self):
        fields = [
            FormField(tag='input', field_type='text', selector='#pcn', label='PCN',
                      placeholder='pcnNumber'),
            FormField(tag='select', field_type='select', selector='#why', label='Reason',
                      placeholder='challengeReason'),
            FormField(tag='input', field_type='file', selector='#photo', label='Photo',
                      placeholder='challengeText'),
        ]
        steps = build_draft_steps(PORTAL, 'Camden', fields, CaptchaDetection(False), '#go')
        assert [s.action for s in steps] == ['navigate', 'fill', 'select', 'upload_file', 'click']
        assert steps[1].value == '{{pcnNumber}}'
        assert not steps[1].optional
        assert steps[2].optional
        assert steps[-1].is_submission

    def test_unmapped_and_duplicate_fields_skipped(self):
        fields = [
            FormField(tag='input', field_type='text', selector='#pcn', placeholder='pcnNumber'),
            FormField(tag='input', field_type='text', selector='#pcn', placeholder='pcnNumber'),
            FormField(tag='input', field_type='text', selector='#misc', placeholder=None),
        ]
        steps = build_draft_steps(PORTAL, 'Camden', fields, CaptchaDetection(False), '#go')
        assert [s.selector for s in steps] == ['', '#pcn', '#go']

    def test_fallback_fields(self):
        steps = build_draft_steps(PORTAL, 'Camden', [], CaptchaDetection(False), '#go')
        assert [s.placeholder for s in steps[1:3]] == ['pcnNumber', 'vehicleReg']

    def test_captcha_step_before_submit(self):
        steps = build_draft_steps(PORTAL, 'Camden', [], CaptchaDetection(True, 'hcaptcha'), '#go')
        assert steps[-2].action == 'solve_captcha'
        assert [s.order for s in steps] == list(range(1, len(steps) + 1))


class TestFindPortal:
    @pytest.mark.asyncio
    async def test_seed_first(self, learner):
        assert await learner.find_portal('London Borough of Camden', 'https://seed.test') == \
            'https://seed.test'

    @pytest.mark.asyncio
    async def test_lookup_table(self, learner):
        assert await learner.find_portal('London Borough of Camden') == PORTAL

    @pytest.mark.asyncio
    async def test_search_fallback(self, records, evidence, sink):
        searched = []

        async def search(name):
            searched.append(name)
            return 'https://found.test'

        learner = RecipeLearner(records, evidence, sink, portal_urls={}, search=search)
        assert await learner.find_portal('Barnet Council') == 'https://found.test'
        assert searched == ['Barnet Council']

    @pytest.mark.asyncio
    async def test_dead_end(self, records, evidence, sink):
        learner = RecipeLearner(records, evidence, sink, portal_urls={})
        with pytest.raises(TargetNotFound, match='Manual URL required'):
            await learner.find_portal('Barnet Council')


class TestLearn:
    @pytest.mark.asyncio
    async def test_draft_pending_review(self, learner, records, sessions):
        sessions.next_pages.append(_portal_page())
        result = await learner.learn('r1', 'London Borough of Camden')

        assert result.success
        assert result.challenge_url == PORTAL
        assert result.captcha_type == 'recaptcha'
        assert result.needs_account
        assert len(result.screenshot_urls) == 1

        recipe = await records.get_recipe('r1')
        assert recipe.status == PENDING_REVIEW
        assert recipe.authority_id == 'camden'
        assert recipe.entry_url == PORTAL
        assert [s.action for s in recipe.ordered_steps()] == [
            'navigate', 'fill', 'fill', 'fill', 'solve_captcha', 'click',
        ]
        last = recipe.ordered_steps()[-1]
        assert last.selector == '#go'
        assert last.description == SUBMIT_DESCRIPTION

    @pytest.mark.asyncio
    async def test_never_verified(self, learner, records, sessions):
        sessions.next_pages.append(_portal_page())
        await learner.learn('r1', 'London Borough of Camden')
        assert (await records.get_recipe('r1')).status != VERIFIED

    @pytest.mark.asyncio
    async def test_dead_end_needs_human_help(self, records, evidence, sink, sessions):
        learner = RecipeLearner(records, evidence, sink, portal_urls={})
        result = await learner.learn('r1', 'Barnet Council')

        assert not result.success
        assert result.needs_human_help
        assert 'Manual URL required' in result.human_help_reason
        assert (await records.get_recipe('r1')).status == NEEDS_HUMAN_HELP
        assert sessions.opened == 0

        assert len(sink.warnings) == 1
        assert sink.warnings[0].tags['component'] == 'learner'
        assert sink.warnings[0].tags['authority'] == 'barnet'

    @pytest.mark.asyncio
    async def test_inspection_failure_marks_failed(self, learner, records, sessions):
        sessions.next_pages.append(FakePage(errors={PORTAL: RuntimeError('net::ERR_NAME_NOT_RESOLVED')}))
        result = await learner.learn('r1', 'London Borough of Camden')

        assert not result.success
        assert 'ERR_NAME_NOT_RESOLVED' in result.error
        recipe = await records.get_recipe('r1')
        assert recipe.status == FAILED
        assert recipe.last_failed is not None
        assert sessions.closed == 1


class TestRelearn:
    @pytest.mark.asyncio
    @pytest.mark.parametrize('status', [PENDING_REVIEW, VERIFIED])
    async def test_existing_recipe_relearned(self, learner, records, sessions, status):
        await records.create_recipe(Recipe(id='r9', authority_id='camden', status=status))
        sessions.next_pages.append(_portal_page())

        result = await learner.learn('r9', 'London Borough of Camden', seed_url=PORTAL)
        assert result.success
        recipe = await records.get_recipe('r9')
        assert recipe.status == PENDING_REVIEW
        assert recipe.ordered_steps()[-1].selector == '#go'


class TestContinueLearning:
    @pytest.mark.asyncio
    async def test_with_url_relearns(self, records, evidence, sink, sessions):
        learner = RecipeLearner(records, evidence, sink, portal_urls={})
        await learner.learn('r1', 'Barnet Council')

        sessions.next_pages.append(_portal_page(html='<form></form>', text='Enter your PCN'))
        result = await learner.continue_learning('r1', challenge_url='https://barnet.test/pcn')

        assert result.success
        assert not result.needs_account
        recipe = await records.get_recipe('r1')
        assert recipe.status == PENDING_REVIEW
        assert recipe.entry_url == 'https://barnet.test/pcn'

    @pytest.mark.asyncio
    async def test_with_recorded_steps(self, learner, records):
        await records.create_recipe(Recipe(id='r1', authority_id='barnet', status=NEEDS_HUMAN_HELP))
        steps = [
            RecipeStep(order=2, action='click', selector='#send', description='Submit'),
            RecipeStep(order=1, action='navigate', value='https://barnet.test'),
        ]
        result = await learner.continue_learning('r1', steps=steps)

        assert result.success
        assert [s.order for s in result.steps] == [1, 2]
        assert (await records.get_recipe('r1')).status == PENDING_REVIEW

    @pytest.mark.asyncio
    async def test_recorded_steps_send_verified_back_to_review(self, learner, records):
        await records.create_recipe(make_search_recipe())
        steps = [RecipeStep(order=1, action='navigate', value='https://camden.test/v2')]
        result = await learner.continue_learning('r1', steps=steps)

        assert result.success
        recipe = await records.get_recipe('r1')
        assert recipe.status == PENDING_REVIEW
        assert [s.value for s in recipe.steps] == ['https://camden.test/v2']

    @pytest.mark.asyncio
    async def test_recorded_steps_on_pending_review(self, learner, records):
        await records.create_recipe(make_search_recipe(status=PENDING_REVIEW))
        steps = [RecipeStep(order=1, action='navigate', value='https://camden.test/v2')]
        result = await learner.continue_learning('r1', steps=steps)

        assert not result.success
        assert 'PENDING_REVIEW' in result.error
        assert len((await records.get_recipe('r1')).steps) == 4

    @pytest.mark.asyncio
    async def test_invalid_recorded_steps(self, learner, records):
        await records.create_recipe(Recipe(id='r1', authority_id='barnet', status=NEEDS_HUMAN_HELP))
        with pytest.raises(ValueError):
            await learner.continue_learning('r1', steps=[RecipeStep(order=2, action='click')])

    @pytest.mark.asyncio
    async def test_nothing_supplied(self, learner, records):
        await records.create_recipe(Recipe(id='r1', authority_id='barnet', status=NEEDS_HUMAN_HELP))
        result = await learner.continue_learning('r1')
        assert not result.success
        assert result.error == 'No additional information provided'

    @pytest.mark.asyncio
    async def test_missing_recipe(self, learner):
        result = await learner.continue_learning('ghost', challenge_url='https://x.test')
        assert result.error == 'Recipe not found'
