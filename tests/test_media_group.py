"""
Tests for the media group collector.
"""

import asyncio

import pytest

from state.media_group import MediaGroupCollector, MediaGroupPhoto


def photo(n, caption=None):
    return MediaGroupPhoto(file_id=f"file-{n}", message_id=n, caption=caption)


class TestMediaGroupCollector:
    """Batch completeness and isolation."""

    @pytest.mark.asyncio
    async def test_single_batch_for_first_caller(self):
        collector = MediaGroupCollector(window=0.05)
        results = await asyncio.gather(
            *(collector.add_photo("g1", photo(i), chat_id=10, user_id=7) for i in range(5))
        )
        batches = [r for r in results if r is not None]
        assert len(batches) == 1
        assert results[0] is batches[0]
        assert [p.message_id for p in batches[0].photos] == [0, 1, 2, 3, 4]
        assert collector.open_groups == 0

    @pytest.mark.asyncio
    async def test_groups_do_not_mix(self):
        collector = MediaGroupCollector(window=0.05)
        results = await asyncio.gather(
            collector.add_photo("a", photo(1), chat_id=10, user_id=7),
            collector.add_photo("b", photo(2), chat_id=20, user_id=8),
            collector.add_photo("a", photo(3), chat_id=10, user_id=7),
            collector.add_photo("b", photo(4), chat_id=20, user_id=8),
        )
        a, b = results[0], results[1]
        assert [p.message_id for p in a.photos] == [1, 3]
        assert [p.message_id for p in b.photos] == [2, 4]
        assert results[2] is None and results[3] is None
        assert (a.chat_id, b.chat_id) == (10, 20)

    @pytest.mark.asyncio
    async def test_caption_from_any_photo(self):
        collector = MediaGroupCollector(window=0.05)
        results = await asyncio.gather(
            collector.add_photo("g", photo(1), chat_id=1, user_id=1),
            collector.add_photo("g", photo(2, caption="the heron"), chat_id=1, user_id=1),
        )
        assert results[0].caption == "the heron"

    @pytest.mark.asyncio
    async def test_late_photo_starts_new_group(self):
        collector = MediaGroupCollector(window=0.02)
        first = await collector.add_photo("g", photo(1), chat_id=1, user_id=1)
        second = await collector.add_photo("g", photo(2), chat_id=1, user_id=1)
        assert [p.message_id for p in first.photos] == [1]
        assert [p.message_id for p in second.photos] == [2]

    @pytest.mark.asyncio
    async def test_shutdown_cancels_waiters(self):
        collector = MediaGroupCollector(window=10)
        task = asyncio.ensure_future(collector.add_photo("g", photo(1), chat_id=1, user_id=1))
        await asyncio.sleep(0)
        collector.shutdown()
        with pytest.raises(asyncio.CancelledError):
            await task
        assert collector.open_groups == 0
