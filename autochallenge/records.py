"""
Local SQLite persistence for recipes and challenge records.

Recipes are never deleted: a FAILED recipe stays for audit. Challenge rows
become immutable once finished; a re-attempt is a new row. Every write is
keyed by recipe or challenge id, so concurrent runs never contend on a row.
"""

from __future__ import annotations

import json
from datetime import datetime, timezone

import aiosqlite

from autochallenge.errors import ChallengeFinalized
from autochallenge.recipe import (
    Challenge,
    Recipe,
    RecipeStep,
    steps_from_json,
    steps_to_json,
    validate_steps,
)

_SCHEMA = """
CREATE TABLE IF NOT EXISTS recipes (
    id              TEXT PRIMARY KEY,
    authority_id    TEXT NOT NULL,
    authority_name  TEXT NOT NULL DEFAULT '',
    entry_url       TEXT NOT NULL DEFAULT '',
    captcha_type    TEXT,
    needs_account   INTEGER NOT NULL DEFAULT 0,
    status          TEXT NOT NULL,
    steps_json      TEXT NOT NULL DEFAULT '[]',
    last_verified   TEXT,
    last_failed     TEXT,
    failure_reason  TEXT NOT NULL DEFAULT '',
    created_at      TEXT NOT NULL,
    updated_at      TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS challenges (
    id                  TEXT PRIMARY KEY,
    ticket_id           TEXT NOT NULL,
    authority_id        TEXT NOT NULL,
    method              TEXT NOT NULL,
    automation_ref      TEXT NOT NULL,
    status              TEXT NOT NULL,
    evidence_json       TEXT NOT NULL DEFAULT '[]',
    narrative           TEXT NOT NULL DEFAULT '',
    failure_reason      TEXT NOT NULL DEFAULT '',
    failed_step         INTEGER,
    dry_run             INTEGER NOT NULL DEFAULT 0,
    submitted           INTEGER NOT NULL DEFAULT 0,
    captcha_encountered INTEGER NOT NULL DEFAULT 0,
    video_url           TEXT NOT NULL DEFAULT '',
    created_at          TEXT NOT NULL,
    completed_at        TEXT
);

CREATE INDEX IF NOT EXISTS idx_recipes_status ON recipes(status);
CREATE INDEX IF NOT EXISTS idx_recipes_authority ON recipes(authority_id);
CREATE INDEX IF NOT EXISTS idx_challenges_ticket ON challenges(ticket_id);
"""

# Columns update_recipe() may touch
_RECIPE_UPDATABLE = frozenset({
    'authority_name',
    'entry_url',
    'captcha_type',
    'needs_account',
    'status',
    'last_verified',
    'last_failed',
    'failure_reason',
})


def utcnow() -> str:
    return datetime.now(timezone.utc).isoformat()


def _recipe_from_row(row: aiosqlite.Row) -> Recipe:
    d = dict(row)
    return Recipe(
        id=d['id'],
        authority_id=d['authority_id'],
        authority_name=d['authority_name'],
        entry_url=d['entry_url'],
        captcha_type=d['captcha_type'],
        needs_account=bool(d['needs_account']),
        status=d['status'],
        steps=steps_from_json(d['steps_json']),
        last_verified=d['last_verified'],
        last_failed=d['last_failed'],
        failure_reason=d['failure_reason'],
        created_at=d['created_at'],
        updated_at=d['updated_at'],
    )


def _challenge_from_row(row: aiosqlite.Row) -> Challenge:
    d = dict(row)
    return Challenge(
        id=d['id'],
        ticket_id=d['ticket_id'],
        authority_id=d['authority_id'],
        method=d['method'],
        automation_ref=d['automation_ref'],
        status=d['status'],
        evidence_urls=json.loads(d['evidence_json']),
        narrative=d['narrative'],
        failure_reason=d['failure_reason'],
        failed_step=d['failed_step'],
        dry_run=bool(d['dry_run']),
        submitted=bool(d['submitted']),
        captcha_encountered=bool(d['captcha_encountered']),
        video_url=d['video_url'],
        created_at=d['created_at'],
        completed_at=d['completed_at'],
    )


class RecordStore:
    """Async SQLite store: recipe persistence API plus challenge records."""

    def __init__(self, db_path: str = 'autochallenge.db') -> None:
        self._db_path = db_path
        self._db: aiosqlite.Connection | None = None

    async def connect(self) -> None:
        """Open connection, enable WAL mode, create tables."""
        self._db = await aiosqlite.connect(self._db_path)
        self._db.row_factory = aiosqlite.Row
        await self._db.execute('PRAGMA journal_mode=WAL')
        await self._db.executescript(_SCHEMA)
        await self._db.commit()

    async def close(self) -> None:
        """Close the connection."""
        if self._db:
            await self._db.close()
            self._db = None

    # ------------------------------------------------------------------
    # Recipes
    # ------------------------------------------------------------------

    async def create_recipe(self, recipe: Recipe) -> Recipe:
        """Insert a new recipe.

        Raises ValueError on duplicate or gapped step orders and
        aiosqlite.IntegrityError on a duplicate id.
        """
        validate_steps(recipe.steps)
        now = utcnow()
        stored = recipe.with_changes(
            created_at=recipe.created_at or now,
            updated_at=now,
        )
        await self._db.execute(
            """INSERT INTO recipes
               (id, authority_id, authority_name, entry_url, captcha_type,
                needs_account, status, steps_json, last_verified, last_failed,
                failure_reason, created_at, updated_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            (
                stored.id, stored.authority_id, stored.authority_name,
                stored.entry_url, stored.captcha_type, int(stored.needs_account),
                stored.status, steps_to_json(stored.ordered_steps()),
                stored.last_verified, stored.last_failed, stored.failure_reason,
                stored.created_at, stored.updated_at,
            ),
        )
        await self._db.commit()
        return stored

    async def get_recipe(self, recipe_id: str) -> Recipe | None:
        """Fetch a single recipe by id."""
        cursor = await self._db.execute('SELECT * FROM recipes WHERE id = ?', (recipe_id,))
        row = await cursor.fetchone()
        return _recipe_from_row(row) if row else None

    async def list_recipes(self, status: str | None = None) -> list[Recipe]:
        """All recipes, optionally filtered by status, oldest first."""
        if status is None:
            cursor = await self._db.execute('SELECT * FROM recipes ORDER BY created_at')
        else:
            cursor = await self._db.execute(
                'SELECT * FROM recipes WHERE status = ? ORDER BY created_at', (status,)
            )
        return [_recipe_from_row(r) for r in await cursor.fetchall()]

    async def update_recipe(
        self,
        recipe_id: str,
        *,
        steps: tuple[RecipeStep, ...] | list[RecipeStep] | None = None,
        expected_status: str | None = None,
        **fields,
    ) -> bool:
        """Update status/steps/timestamps. Returns False if nothing was updated.

        With expected_status the write only lands while the row still has
        that status (compare-and-set), so a verifier cannot clobber a
        concurrent human decision.
        """
        unknown = set(fields) - _RECIPE_UPDATABLE
        if unknown:
            raise ValueError(f'Cannot update recipe columns: {sorted(unknown)}')

        sets = ['updated_at = ?']
        params: list = [utcnow()]
        for key, value in fields.items():
            if key == 'needs_account':
                value = int(bool(value))
            sets.append(f'{key} = ?')
            params.append(value)
        if steps is not None:
            validate_steps(steps)
            sets.append('steps_json = ?')
            params.append(steps_to_json(sorted(steps, key=lambda s: s.order)))

        where = 'id = ?'
        params.append(recipe_id)
        if expected_status is not None:
            where += ' AND status = ?'
            params.append(expected_status)

        cursor = await self._db.execute(
            f"UPDATE recipes SET {', '.join(sets)} WHERE {where}", params
        )
        await self._db.commit()
        return cursor.rowcount > 0

    # ------------------------------------------------------------------
    # Challenges
    # ------------------------------------------------------------------

    async def create_challenge(self, challenge: Challenge) -> Challenge:
        """Insert a PENDING challenge row."""
        if not challenge.created_at:
            challenge.created_at = utcnow()
        await self._db.execute(
            """INSERT INTO challenges
               (id, ticket_id, authority_id, method, automation_ref, status,
                evidence_json, narrative, failure_reason, failed_step, dry_run,
                submitted, captcha_encountered, video_url, created_at, completed_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            (
                challenge.id, challenge.ticket_id, challenge.authority_id,
                challenge.method, challenge.automation_ref, challenge.status,
                json.dumps(challenge.evidence_urls), challenge.narrative,
                challenge.failure_reason, challenge.failed_step,
                int(challenge.dry_run), int(challenge.submitted),
                int(challenge.captcha_encountered), challenge.video_url,
                challenge.created_at, challenge.completed_at,
            ),
        )
        await self._db.commit()
        return challenge

    async def get_challenge(self, challenge_id: str) -> Challenge | None:
        cursor = await self._db.execute(
            'SELECT * FROM challenges WHERE id = ?', (challenge_id,)
        )
        row = await cursor.fetchone()
        return _challenge_from_row(row) if row else None

    async def list_challenges(self, ticket_id: str) -> list[Challenge]:
        """Every attempt for a ticket, oldest first."""
        cursor = await self._db.execute(
            'SELECT * FROM challenges WHERE ticket_id = ? ORDER BY created_at',
            (ticket_id,),
        )
        return [_challenge_from_row(r) for r in await cursor.fetchall()]

    async def finish_challenge(self, challenge: Challenge) -> Challenge:
        """Write the final outcome. Raises ChallengeFinalized if already finished."""
        existing = await self.get_challenge(challenge.id)
        if existing is None:
            raise KeyError(f'Challenge {challenge.id} not found')
        if existing.is_terminal:
            raise ChallengeFinalized(f'Challenge {challenge.id} is already finished')

        challenge.completed_at = challenge.completed_at or utcnow()
        cursor = await self._db.execute(
            """UPDATE challenges
               SET status = ?, evidence_json = ?, narrative = ?,
                   failure_reason = ?, failed_step = ?, submitted = ?,
                   captcha_encountered = ?, video_url = ?, completed_at = ?
               WHERE id = ? AND completed_at IS NULL""",
            (
                challenge.status, json.dumps(challenge.evidence_urls),
                challenge.narrative, challenge.failure_reason,
                challenge.failed_step, int(challenge.submitted),
                int(challenge.captcha_encountered), challenge.video_url,
                challenge.completed_at, challenge.id,
            ),
        )
        await self._db.commit()
        if cursor.rowcount == 0:
            raise ChallengeFinalized(f'Challenge {challenge.id} is already finished')
        return challenge
