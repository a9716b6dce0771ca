#!/usr/bin/env python3
"""Recipe CLI: learn, review, run, and verify recipes from the terminal.

Commands:
    learn    <recipe-id> <authority> [--url <seed>]     Learn a draft recipe
    show     <recipe-id>                                Print recipe and steps
    approve  <recipe-id>                                PENDING_REVIEW -> VERIFIED
    reject   <recipe-id> --reason <text>                -> NEEDS_HUMAN_HELP
    run      <recipe-id> --context <ctx.json> [--dry-run]  Execute a recipe
    verify   [<recipe-id>]                              Dry-run re-verification
    list     [--status <s>]                             Table of all recipes
"""

import argparse
import asyncio
import json
import logging
import os
import sys
import uuid

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', '..'))


# ------------------------------------------------------------------
# Shared helpers
# ------------------------------------------------------------------

class Services:
    """Collaborators a command needs, opened and closed together."""

    def __init__(self, settings):
        from autochallenge.alerts import AlertSink
        from autochallenge.captcha import CaptchaSolver
        from autochallenge.records import RecordStore
        from autochallenge.storage import EvidenceStore

        self.settings = settings
        self.records = RecordStore(settings.db_path)
        self.evidence = EvidenceStore(settings.evidence_dir, settings.evidence_base_url)
        self.sink = AlertSink(settings.alert_webhook_url)
        self.solver = CaptchaSolver(settings.captcha_api_key, timeout=settings.captcha_timeout_seconds)

    def runner(self):
        from autochallenge.runner import RecipeRunner

        return RecipeRunner(
            self.evidence, self.sink, solver=self.solver,
            headless=self.settings.headless, record_video=self.settings.record_video,
        )

    async def __aenter__(self):
        await self.records.connect()
        await self.sink.start()
        return self

    async def __aexit__(self, *exc):
        await self.solver.close()
        await self.sink.close()
        await self.records.close()


def _print_recipe(recipe):
    print(f'Recipe:    {recipe.id}')
    print(f'Authority: {recipe.authority_name or recipe.authority_id} ({recipe.authority_id})')
    print(f'Status:    {recipe.status}')
    print(f'Entry URL: {recipe.entry_url or "-"}')
    print(f'CAPTCHA:   {recipe.captcha_type or "none"}   Account: {"yes" if recipe.needs_account else "no"}')
    print(f'Verified:  {recipe.last_verified or "never"}   Failed: {recipe.last_failed or "never"}')
    if recipe.failure_reason:
        print(f'Reason:    {recipe.failure_reason}')
    print()
    for step in recipe.ordered_steps():
        flags = []
        if step.optional:
            flags.append('optional')
        if step.is_submission:
            flags.append('submit')
        flag_str = f'  [{", ".join(flags)}]' if flags else ''
        target = step.selector or step.value
        print(f'  {step.order:>2}. {step.action:<13} {target}{flag_str}')
        if step.description:
            print(f'      {step.description}')
        if step.wait_for:
            print(f'      waitFor: {step.wait_for}')


# ------------------------------------------------------------------
# Commands
# ------------------------------------------------------------------

async def cmd_learn(svc, args):
    from autochallenge.learner import RecipeLearner

    learner = RecipeLearner(
        svc.records, svc.evidence, svc.sink,
        solver=svc.solver, headless=svc.settings.headless,
    )
    result = await learner.learn(args.recipe_id, args.authority, seed_url=args.url)
    if result.needs_human_help:
        print(f'Needs human help: {result.human_help_reason}')
        return 1
    if not result.success:
        print(f'Learning failed: {result.error}')
        return 1
    print(f'Drafted {len(result.steps)} steps from {result.challenge_url} (pending review)')
    _print_recipe(await svc.records.get_recipe(args.recipe_id))
    return 0


async def cmd_show(svc, args):
    recipe = await svc.records.get_recipe(args.recipe_id)
    if recipe is None:
        print(f'Recipe {args.recipe_id} not found')
        return 1
    _print_recipe(recipe)
    return 0


async def cmd_approve(svc, args):
    from autochallenge.lifecycle import approve_recipe

    recipe = await approve_recipe(svc.records, args.recipe_id)
    print(f'{recipe.id}: {recipe.status}')
    return 0


async def cmd_reject(svc, args):
    from autochallenge.lifecycle import reject_recipe

    recipe = await reject_recipe(svc.records, args.recipe_id, args.reason)
    print(f'{recipe.id}: {recipe.status} ({recipe.failure_reason})')
    return 0


async def cmd_run(svc, args):
    from autochallenge.context import AutomationContext
    from autochallenge.recipe import Challenge

    recipe = await svc.records.get_recipe(args.recipe_id)
    if recipe is None:
        print(f'Recipe {args.recipe_id} not found')
        return 1
    try:
        with open(args.context) as f:
            ctx = AutomationContext.from_dict(json.load(f))
    except (OSError, ValueError) as exc:
        print(f'Bad context file {args.context}: {exc}')
        return 1

    challenge = Challenge(
        id=str(uuid.uuid4()),
        ticket_id=args.ticket or 'cli',
        authority_id=recipe.authority_id,
        method='recipe',
        automation_ref=recipe.id,
    )
    challenge = await svc.runner().run(recipe, ctx, challenge, dry_run=args.dry_run)

    print(f'Result: {challenge.status}{" (dry run)" if args.dry_run else ""}')
    if challenge.failure_reason:
        print(f'Error: {challenge.failure_reason}')
    print(f'Screenshots: {len(challenge.evidence_urls)}')
    for url in challenge.evidence_urls:
        print(f'  {url}')
    if challenge.video_url:
        print(f'Video: {challenge.video_url}')
    return 0 if challenge.status != 'ERROR' else 1


async def cmd_verify(svc, args):
    from autochallenge.verifier import Verifier

    verifier = Verifier(svc.records, svc.runner(), svc.sink)
    if args.recipe_id:
        results = [await verifier.verify(args.recipe_id)]
    else:
        results = await verifier.verify_all()
    if not results:
        print('No VERIFIED recipes.')
    for r in results:
        status = 'ok' if r.success else f'FAILED: {r.error}'
        print(f'{r.recipe_id:<36} {status}')
    return 0 if all(r.success for r in results) else 1


async def cmd_list(svc, args):
    recipes = await svc.records.list_recipes(status=args.status)
    if not recipes:
        print('No recipes found.')
        return 0

    print(f'{"Recipe":<36} {"Authority":<20} {"Status":<17} {"Steps":>5} {"Last Verified":<25}')
    print('-' * 106)
    for r in recipes:
        print(
            f'{r.id:<36} {r.authority_id:<20} {r.status:<17} '
            f'{len(r.steps):>5} {r.last_verified or "never":<25}'
        )
    return 0


# ------------------------------------------------------------------
# main
# ------------------------------------------------------------------

def build_parser():
    parser = argparse.ArgumentParser(description='Challenge recipe learner, reviewer, and runner')
    sub = parser.add_subparsers(dest='command')

    p_learn = sub.add_parser('learn', help='Learn a draft recipe for an authority')
    p_learn.add_argument('recipe_id')
    p_learn.add_argument('authority', help='Authority name (e.g. "London Borough of Camden")')
    p_learn.add_argument('--url', default=None, help='Challenge portal URL, if known')

    p_show = sub.add_parser('show', help='Print a recipe and its steps')
    p_show.add_argument('recipe_id')

    p_approve = sub.add_parser('approve', help='Approve a reviewed recipe')
    p_approve.add_argument('recipe_id')

    p_reject = sub.add_parser('reject', help='Reject a recipe with a reason')
    p_reject.add_argument('recipe_id')
    p_reject.add_argument('--reason', required=True)

    p_run = sub.add_parser('run', help='Execute a recipe against a context file')
    p_run.add_argument('recipe_id')
    p_run.add_argument('--context', required=True, help='JSON file of AutomationContext fields')
    p_run.add_argument('--ticket', default='', help='Ticket id for storage paths')
    p_run.add_argument('--dry-run', action='store_true', dest='dry_run',
                       help='Skip the final submission step')

    p_verify = sub.add_parser('verify', help='Dry-run one or all VERIFIED recipes')
    p_verify.add_argument('recipe_id', nargs='?', default=None)

    p_list = sub.add_parser('list', help='List all recipes')
    p_list.add_argument('--status', default=None, help='Filter by lifecycle status')
    return parser


COMMANDS = {
    'learn': cmd_learn,
    'show': cmd_show,
    'approve': cmd_approve,
    'reject': cmd_reject,
    'run': cmd_run,
    'verify': cmd_verify,
    'list': cmd_list,
}


async def _main(args):
    from autochallenge.config import Settings

    settings = Settings.load()
    logging.basicConfig(
        level=getattr(logging, settings.log_level, logging.INFO),
        format='%(asctime)s %(levelname)s %(name)s: %(message)s',
    )
    async with Services(settings) as svc:
        return await COMMANDS[args.command](svc, args)


def main():
    parser = build_parser()
    args = parser.parse_args()

    if args.command is None:
        parser.print_help()
        sys.exit(1)

    from autochallenge.errors import AutomationError

    try:
        code = asyncio.run(_main(args))
    except AutomationError as exc:
        print(f'Error: {exc.reason}')
        code = 1
    except KeyError as exc:
        print(f'Error: {exc.args[0] if exc.args else exc}')
        code = 1
    sys.exit(code)


if __name__ == '__main__':
    main()
