"""Evidence object storage: write-once artifacts addressed by composite paths.

Path convention:
    {feature}/{scope}/{authority-or-ticket}/{challenge}/{step}-{timestamp}.{ext}

    automation/runs/{recipe}/{challenge}/step-{order}-{ts}.png
    automation/dry-runs/{recipe}/{challenge}/step-{order}-{ts}.png
    automation/learning/{recipe}/step-{n}-{ts}.png
    automation/challenges/{ticket}/{challenge}/{name}-{ts}.png
    automation/challenges/{challenge}/video/recording-{ts}.webm
    tickets/{ticket}/evidence/{uuid}.jpg

A path is written at most once. Prefix listing lets callers detect evidence
that was already pulled before fetching it again.
"""

from __future__ import annotations

import asyncio
import io
import logging
import os
import uuid
from datetime import datetime, timezone
from pathlib import Path

from PIL import Image, UnidentifiedImageError

from autochallenge.errors import StorageUploadFailure

log = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Paths
# ---------------------------------------------------------------------------

def timestamp() -> str:
    """Filesystem-safe UTC timestamp with millisecond precision."""
    now = datetime.now(timezone.utc)
    return now.strftime('%Y-%m-%dT%H-%M-%S-') + f'{now.microsecond // 1000:03d}Z'


def run_screenshot_path(
    recipe_id: str, challenge_id: str, order: int, dry_run: bool = False, suffix: str = '',
) -> str:
    scope = 'dry-runs' if dry_run else 'runs'
    name = f'step-{order}{suffix}'
    return f'automation/{scope}/{recipe_id}/{challenge_id}/{name}-{timestamp()}.png'


def learning_screenshot_path(recipe_id: str, step_number: int) -> str:
    return f'automation/learning/{recipe_id}/step-{step_number}-{timestamp()}.png'


def adapter_screenshot_path(ticket_id: str, challenge_id: str, name: str) -> str:
    return f'automation/challenges/{ticket_id}/{challenge_id}/{name}-{timestamp()}.png'


def video_path(challenge_id: str, dry_run: bool = False) -> str:
    base = 'automation/dry-runs' if dry_run else 'automation/challenges'
    return f'{base}/{challenge_id}/video/recording-{timestamp()}.webm'


def evidence_prefix(ticket_id: str) -> str:
    return f'tickets/{ticket_id}/evidence/'


def evidence_path(ticket_id: str, evidence_id: str | None = None, ext: str = 'jpg') -> str:
    return f'{evidence_prefix(ticket_id)}{evidence_id or uuid.uuid4()}.{ext}'


def evidence_marker_path(ticket_id: str) -> str:
    """Written once every portal image for the ticket is stored."""
    return f'tickets/{ticket_id}/evidence.complete'


# ---------------------------------------------------------------------------
# Image normalisation
# ---------------------------------------------------------------------------

def to_jpeg(data: bytes, quality: int = 85) -> bytes:
    """Re-encode an image as JPEG. Returns data unchanged if it isn't an image."""
    try:
        img = Image.open(io.BytesIO(data))
        img.load()
    except (UnidentifiedImageError, OSError):
        log.debug('Evidence payload is not a decodable image; storing as-is')
        return data
    if img.format == 'JPEG':
        return data
    if img.mode not in ('RGB', 'L'):
        img = img.convert('RGB')
    buf = io.BytesIO()
    img.save(buf, format='JPEG', quality=quality)
    return buf.getvalue()


# ---------------------------------------------------------------------------
# Store
# ---------------------------------------------------------------------------

class EvidenceStore:
    """Filesystem-backed object store.

    Args:
        root: Directory holding every object.
        base_url: Public URL prefix the objects are served under. When empty,
            file:// URLs are returned.
    """

    def __init__(self, root: str | Path, base_url: str = '') -> None:
        self._root = Path(root)
        self._base_url = base_url.rstrip('/')

    def url_for(self, path: str) -> str:
        if self._base_url:
            return f'{self._base_url}/{path}'
        return (self._root / path).resolve().as_uri()

    def _full_path(self, path: str) -> Path:
        full = (self._root / path).resolve()
        if self._root.resolve() not in full.parents:
            raise StorageUploadFailure(f'Path escapes storage root: {path}')
        return full

    def _write_once(self, path: str, data: bytes) -> None:
        full = self._full_path(path)
        full.parent.mkdir(parents=True, exist_ok=True)
        # O_EXCL: a second writer to the same path fails instead of overwriting
        fd = os.open(full, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o644)
        try:
            with os.fdopen(fd, 'wb') as f:
                f.write(data)
        except OSError:
            # Partial objects would block the retry
            full.unlink(missing_ok=True)
            raise

    async def put(self, path: str, data: bytes, content_type: str = '') -> str:
        """Write an object once and return its URL. Raises StorageUploadFailure."""
        try:
            await asyncio.to_thread(self._write_once, path, data)
        except FileExistsError as exc:
            raise StorageUploadFailure(f'Object already exists: {path}') from exc
        except OSError as exc:
            raise StorageUploadFailure(f'Upload failed for {path}: {exc}') from exc
        log.debug('Stored %s (%d bytes, %s)', path, len(data), content_type or 'unknown')
        return self.url_for(path)

    def _list(self, prefix: str) -> list[str]:
        base = self._root / prefix
        directory = base if prefix.endswith('/') else base.parent
        if not directory.is_dir():
            return []
        root = self._root.resolve()
        found = []
        for p in directory.rglob('*'):
            if not p.is_file():
                continue
            rel = p.resolve().relative_to(root).as_posix()
            if rel.startswith(prefix):
                found.append(rel)
        return sorted(found)

    async def list(self, prefix: str) -> list[str]:
        """Object paths starting with prefix."""
        return await asyncio.to_thread(self._list, prefix)

    async def exists(self, prefix: str) -> bool:
        return bool(await self.list(prefix))


async def put_with_retry(
    store: EvidenceStore,
    path: str,
    data: bytes,
    content_type: str = '',
    attempts: int = 2,
) -> str:
    """Upload final-outcome evidence, retrying once. Raises after the last attempt."""
    last_exc: StorageUploadFailure | None = None
    for attempt in range(1, attempts + 1):
        try:
            return await store.put(path, data, content_type)
        except StorageUploadFailure as exc:
            last_exc = exc
            log.warning('Upload attempt %d/%d failed for %s: %s', attempt, attempts, path, exc.reason)
    raise last_exc
