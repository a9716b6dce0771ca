"""Tests for recipe data structures."""

import json

import pytest

from autochallenge.recipe import (
    DRAFT,
    ERROR,
    PENDING,
    Challenge,
    Recipe,
    RecipeStep,
    steps_from_json,
    steps_to_json,
    validate_steps,
)


class TestRecipeStep:
    def test_from_dict_accepts_camel_case(self):
        step = RecipeStep.from_dict({
            'order': '2',
            'action': 'fill',
            'selector': '#pcn',
            'value': '{{pcnNumber}}',
            'waitFor': '.ok',
            'fieldType': 'text',
            'optional': True,
        })
        assert step.order == 2
        assert step.wait_for == '.ok'
        assert step.field_type == 'text'
        assert step.optional is True

    def test_unknown_action_rejected(self):
        with pytest.raises(ValueError, match='Unknown step action'):
            RecipeStep.from_dict({'order': 1, 'action': 'hover'})

    def test_to_dict_omits_defaults(self):
        d = RecipeStep(order=1, action='navigate', value='https://x.test').to_dict()
        assert d == {'order': 1, 'action': 'navigate', 'value': 'https://x.test'}

    def test_to_dict_uses_camel_case(self):
        d = RecipeStep(order=3, action='click', selector='#go', wait_for='.done').to_dict()
        assert d['waitFor'] == '.done'
        assert 'wait_for' not in d

    def test_submission_click(self):
        assert RecipeStep(order=4, action='click', description='Submit challenge form').is_submission

    def test_non_submission_click(self):
        assert not RecipeStep(order=2, action='click', description='Accept cookies').is_submission

    def test_fill_is_never_submission(self):
        assert not RecipeStep(order=2, action='fill', description='Submit reason').is_submission


class TestValidateSteps:
    def test_dense_orders_pass(self):
        validate_steps([RecipeStep(order=2, action='click'), RecipeStep(order=1, action='navigate')])

    def test_duplicate_order(self):
        with pytest.raises(ValueError, match='Duplicate'):
            validate_steps([RecipeStep(order=1, action='navigate'), RecipeStep(order=1, action='click')])

    def test_gap_in_orders(self):
        with pytest.raises(ValueError, match='without gaps'):
            validate_steps([RecipeStep(order=1, action='navigate'), RecipeStep(order=3, action='click')])


class TestJson:
    def test_steps_json(self):
        steps = (
            RecipeStep(order=1, action='navigate', value='https://x.test'),
            RecipeStep(order=2, action='fill', selector='#a', value='{{email}}'),
        )
        raw = steps_to_json(steps)
        assert json.loads(raw)[1]['selector'] == '#a'
        assert steps_from_json(raw) == steps

    def test_empty_json(self):
        assert steps_from_json('') == ()
        assert steps_from_json(None) == ()


class TestRecipe:
    def test_ordered_steps(self):
        recipe = Recipe(id='r1', authority_id='camden', steps=(
            RecipeStep(order=3, action='click'),
            RecipeStep(order=1, action='navigate'),
            RecipeStep(order=2, action='fill'),
        ))
        assert [s.order for s in recipe.ordered_steps()] == [1, 2, 3]

    def test_defaults_to_draft(self):
        assert Recipe(id='r1', authority_id='camden').status == DRAFT

    def test_from_dict_parses_step_json_string(self):
        recipe = Recipe.from_dict({
            'id': 'r1',
            'authority_id': 'camden',
            'status': 'VERIFIED',
            'steps': '[{"order": 1, "action": "navigate", "value": "https://x.test"}]',
        })
        assert recipe.steps[0].value == 'https://x.test'

    def test_with_changes_leaves_original(self):
        recipe = Recipe(id='r1', authority_id='camden')
        changed = recipe.with_changes(status='VERIFIED')
        assert recipe.status == DRAFT
        assert changed.status == 'VERIFIED'


class TestChallenge:
    def test_not_terminal_until_completed(self):
        c = Challenge(id='c1', ticket_id='t1', authority_id='camden',
                      method='recipe', automation_ref='r1')
        assert c.status == PENDING
        assert not c.is_terminal
        c.completed_at = '2026-01-01T00:00:00+00:00'
        assert c.is_terminal

    def test_to_dict(self):
        c = Challenge(id='c1', ticket_id='t1', authority_id='camden', method='adapter',
                      automation_ref='lewisham', status=ERROR, failed_step=3)
        d = c.to_dict()
        assert d['status'] == ERROR
        assert d['failed_step'] == 3
        assert d['evidence_urls'] == []
