"""Tests for the evidence store and its path conventions."""

import io

import pytest
from PIL import Image

from autochallenge.errors import StorageUploadFailure
from autochallenge.storage import (
    EvidenceStore,
    evidence_path,
    evidence_prefix,
    learning_screenshot_path,
    put_with_retry,
    run_screenshot_path,
    to_jpeg,
    video_path,
)

from conftest import PNG_BYTES


class TestPaths:
    def test_run_path(self):
        path = run_screenshot_path('r1', 'c1', 3)
        assert path.startswith('automation/runs/r1/c1/step-3-')
        assert path.endswith('.png')

    def test_dry_run_path(self):
        assert run_screenshot_path('r1', 'c1', 3, dry_run=True).startswith('automation/dry-runs/')

    def test_failed_suffix(self):
        assert '/step-4-failed-' in run_screenshot_path('r1', 'c1', 4, suffix='-failed')

    def test_learning_path(self):
        assert learning_screenshot_path('r1', 1).startswith('automation/learning/r1/step-1-')

    def test_video_path(self):
        assert video_path('c1').startswith('automation/challenges/c1/video/recording-')
        assert video_path('c1', dry_run=True).startswith('automation/dry-runs/c1/video/')

    def test_evidence_path(self):
        assert evidence_prefix('t1') == 'tickets/t1/evidence/'
        assert evidence_path('t1', 'e1') == 'tickets/t1/evidence/e1.jpg'


class TestEvidenceStore:
    @pytest.mark.asyncio
    async def test_put_returns_url(self, evidence):
        url = await evidence.put('a/b.png', b'data', 'image/png')
        assert url == 'https://evidence.test/a/b.png'

    @pytest.mark.asyncio
    async def test_write_once(self, evidence):
        await evidence.put('a/b.png', b'first')
        with pytest.raises(StorageUploadFailure, match='already exists'):
            await evidence.put('a/b.png', b'second')

    @pytest.mark.asyncio
    async def test_path_escape_rejected(self, evidence):
        with pytest.raises(StorageUploadFailure, match='escapes'):
            await evidence.put('../outside.png', b'x')

    @pytest.mark.asyncio
    async def test_list_and_exists(self, evidence):
        await evidence.put('tickets/t1/evidence/1.jpg', b'x')
        await evidence.put('tickets/t1/evidence/2.jpg', b'y')
        await evidence.put('tickets/t2/evidence/1.jpg', b'z')
        assert await evidence.list('tickets/t1/evidence/') == [
            'tickets/t1/evidence/1.jpg',
            'tickets/t1/evidence/2.jpg',
        ]
        assert await evidence.exists('tickets/t2/evidence/')
        assert not await evidence.exists('tickets/t3/evidence/')

    @pytest.mark.asyncio
    async def test_file_url_without_base(self, tmp_path):
        store = EvidenceStore(tmp_path)
        url = await store.put('x.png', b'x')
        assert url.startswith('file://')


class FlakyStore(EvidenceStore):
    def __init__(self, root, failures):
        super().__init__(root)
        self.failures = failures
        self.calls = 0

    async def put(self, path, data, content_type=''):
        self.calls += 1
        if self.calls <= self.failures:
            raise StorageUploadFailure('transient')
        return await super().put(path, data, content_type)


class TestPutWithRetry:
    @pytest.mark.asyncio
    async def test_retries_once(self, tmp_path):
        store = FlakyStore(tmp_path, failures=1)
        url = await put_with_retry(store, 'v.webm', b'x', 'video/webm')
        assert url.endswith('v.webm')
        assert store.calls == 2

    @pytest.mark.asyncio
    async def test_raises_after_last_attempt(self, tmp_path):
        store = FlakyStore(tmp_path, failures=5)
        with pytest.raises(StorageUploadFailure):
            await put_with_retry(store, 'v.webm', b'x')
        assert store.calls == 2


class TestToJpeg:
    def test_png_converted(self):
        out = to_jpeg(PNG_BYTES)
        assert Image.open(io.BytesIO(out)).format == 'JPEG'

    def test_rgba_converted(self):
        buf = io.BytesIO()
        Image.new('RGBA', (2, 2)).save(buf, format='PNG')
        assert to_jpeg(buf.getvalue())[:2] == b'\xff\xd8'

    def test_non_image_unchanged(self):
        assert to_jpeg(b'not an image') == b'not an image'
