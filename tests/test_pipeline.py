"""
End-to-end tests for the identification pipeline with a recording chat
transport and mocked classifier / biodiversity lookups.
"""

import asyncio
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

import card_formatter as cards
from biodiversity import EBirdTaxon, GbifVerification, ReferencePhoto, SpeciesMatch
from limits.rate_limit import QuotaPolicy, WeeklyQuotaTracker
from photo_filter import normalize_image
from photo_handler import IdentificationPipeline, IncomingPhoto
from schemas import CachedResult, Identification, QualityFailure
from service import ClassifierUnavailable
from state.media_group import MediaGroupCollector
from state.requests import RequestManager
from state.result_cache import ResultCache
from tests.conftest import make_image
from transport import Button, DeliveryError

CHAT = 100
USER = 7

HERON = Identification.model_validate({
    "scientificName": "Ardea cinerea",
    "commonName": "Grey Heron",
    "taxonomy": {"class": "Aves", "family": "Ardeidae", "genus": "Ardea"},
    "similarSpeciesRuledOut": ["Great Egret", "Purple Heron"],
})
EGRET = Identification.model_validate({
    "scientificName": "Ardea alba",
    "commonName": "Great Egret",
    "taxonomy": {"class": "Aves"},
})
MACAQUE = Identification.model_validate({
    "scientificName": "Macaca fascicularis",
    "commonName": "Long-tailed Macaque",
    "taxonomy": {"class": "Mammalia"},
})


class FakeTransport:
    """Records everything sent; ``blocked`` chats refuse delivery."""

    bot_username = "wildlife_bot"

    def __init__(self):
        self.files = {}
        self.messages = []
        self.photos = []
        self.edits = []
        self.deleted = []
        self.blocked = set()
        self._last_id = 1000

    def _next_id(self):
        self._last_id += 1
        return self._last_id

    async def send_message(self, chat_id, text, thread_id=None, buttons=None):
        if chat_id in self.blocked:
            raise DeliveryError("bot was blocked by the user")
        message_id = self._next_id()
        self.messages.append(SimpleNamespace(chat_id=chat_id, text=text, thread_id=thread_id, buttons=buttons, id=message_id))
        return message_id

    async def send_photo(self, chat_id, photo, caption=None, thread_id=None, buttons=None, filename="identification.jpg"):
        if chat_id in self.blocked:
            raise DeliveryError("bot was blocked by the user")
        message_id = self._next_id()
        self.photos.append(
            SimpleNamespace(chat_id=chat_id, photo=photo, caption=caption, buttons=buttons, filename=filename, id=message_id)
        )
        return message_id

    async def edit_message(self, chat_id, message_id, text):
        self.edits.append((chat_id, message_id, text))
        return True

    async def delete_message(self, chat_id, message_id):
        self.deleted.append((chat_id, message_id))
        return True

    async def download_file(self, file_id):
        if file_id not in self.files:
            raise DeliveryError(f"file {file_id} not found")
        return self.files[file_id]

    async def answer_callback(self, callback_id, text=None, show_alert=False):
        pass

    def texts(self, chat_id=CHAT):
        return [m.text for m in self.messages if m.chat_id == chat_id]

    def message_with(self, fragment):
        return next(m for m in self.messages if fragment in m.text)


def make_biodiversity():
    bio = MagicMock()
    bio.verify_with_gbif = AsyncMock(return_value=GbifVerification())
    bio.ebird_lookup = AsyncMock(return_value=None)
    bio.find_reference_photo = AsyncMock(return_value=ReferencePhoto(found=False))
    bio.fetch_bytes = AsyncMock(return_value=None)
    bio.is_valid_url = AsyncMock(return_value=True)
    return bio


@pytest.fixture
def env(clock, date_clock):
    transport = FakeTransport()
    for i in range(6):
        transport.files[f"f{i}"] = make_image()
    quota = QuotaPolicy(
        group=WeeklyQuotaTracker(3, "Asia/Singapore", name="group", clock=date_clock),
        private=WeeklyQuotaTracker(10, "Asia/Singapore", name="private", clock=date_clock),
    )
    requests = RequestManager(clock=clock)
    results = ResultCache(ttl=300, clock=clock)
    delivered_images = ResultCache(ttl=300, clock=clock, name="hd-images")
    classifier = MagicMock()
    classifier.classify = AsyncMock(return_value=HERON)
    bio = make_biodiversity()
    composer = MagicMock(return_value=b"composite-card")
    sleep = AsyncMock()
    pipeline = IdentificationPipeline(
        transport,
        requests,
        quota,
        results,
        delivered_images,
        MediaGroupCollector(window=0.05),
        classifier,
        bio,
        composer=composer,
        sleep=sleep,
    )
    return SimpleNamespace(
        pipeline=pipeline,
        transport=transport,
        quota=quota,
        requests=requests,
        results=results,
        classifier=classifier,
        bio=bio,
        composer=composer,
        sleep=sleep,
        clock=clock,
    )


def photo(file_id="f0", message_id=10, caption=None, chat_id=CHAT, user_id=USER, chat_type="private", group=None):
    return IncomingPhoto(
        chat_id=chat_id,
        user_id=user_id,
        message_id=message_id,
        file_id=file_id,
        chat_type=chat_type,
        caption=caption,
        media_group_id=group,
    )


def used(env, chat_type="private", chat_id=CHAT, user_id=USER):
    return env.quota.check_limit(chat_type, chat_id, user_id).used


def with_gps():
    return patch("photo_handler.extract_gps", return_value=(1.35, 103.82))


class TestSinglePhoto:
    """One photo, from arrival to delivered result."""

    @pytest.mark.asyncio
    async def test_location_prompt_then_answer(self, env):
        request = await env.pipeline.handle_photo(photo())

        assert env.transport.texts() == [cards.ASK_LOCATION]
        prompt_id = env.transport.messages[0].id
        assert request.waiting_for == "location"
        assert request.prompt_message_id == prompt_id
        env.classifier.classify.assert_not_awaited()

        assert await env.pipeline.resume(USER, CHAT, "Singapore", reply_message_id=11)

        kwargs = env.classifier.classify.await_args.kwargs
        assert kwargs == {"location": "Singapore", "target": None}
        assert (CHAT, prompt_id) in env.transport.deleted
        assert (CHAT, 11) in env.transport.deleted
        result = env.transport.message_with("Ardea cinerea")
        assert result.buttons == [[
            Button(cards.BTN_DETAILS, "details_Ardea_cinerea"),
            Button(cards.BTN_SIMILAR, "similar_Ardea_cinerea"),
        ]]
        assert env.results.get("100_Ardea cinerea").identification.common_name == "Grey Heron"
        assert used(env) == 1
        assert env.quota.check_limit("private", CHAT, USER).remaining == 9
        assert env.requests.get_request(request.request_id) is None
        assert env.requests.stats.completed == 1

    @pytest.mark.asyncio
    async def test_analyzing_status_is_removed(self, env):
        with with_gps():
            await env.pipeline.handle_photo(photo(caption="heron"))
        status = env.transport.message_with(cards.ANALYZING)
        assert (CHAT, status.id) in env.transport.deleted

    @pytest.mark.asyncio
    async def test_gps_and_caption_go_straight_to_classifier(self, env):
        with with_gps():
            await env.pipeline.handle_photo(photo(caption="  heron  "))

        assert cards.ASK_LOCATION not in env.transport.texts()
        assert env.classifier.classify.await_args.kwargs == {"location": "1.3500, 103.8200", "target": "heron"}
        assert used(env) == 1

    @pytest.mark.asyncio
    async def test_gps_without_caption_asks_for_target(self, env):
        with with_gps():
            request = await env.pipeline.handle_photo(photo())
        assert env.transport.texts() == [cards.ASK_TARGET]
        assert request.waiting_for == "target"

        await env.pipeline.resume(USER, CHAT, "bird on the left")
        assert env.classifier.classify.await_args.kwargs == {"location": "1.3500, 103.8200", "target": "bird on the left"}

    @pytest.mark.asyncio
    async def test_skip_continues_without_location(self, env):
        await env.pipeline.handle_photo(photo())
        assert await env.pipeline.resume(USER, CHAT, None)
        assert env.classifier.classify.await_args.kwargs == {"location": None, "target": None}
        assert used(env) == 1

    @pytest.mark.asyncio
    async def test_skip_with_nothing_pending(self, env):
        assert not await env.pipeline.resume(USER, CHAT, None)
        assert env.transport.messages == []

    @pytest.mark.asyncio
    async def test_reply_in_other_chat_is_ignored(self, env):
        await env.pipeline.handle_photo(photo())
        assert not await env.pipeline.resume(USER, 999, "Singapore")
        env.classifier.classify.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_composite_card_with_links(self, env):
        env.bio.find_reference_photo.return_value = ReferencePhoto(
            found=True, photo_url="https://static.inaturalist.org/1/medium.jpg", source_id=5, source_name="Ardea cinerea"
        )
        env.bio.fetch_bytes.return_value = b"reference"
        with with_gps():
            await env.pipeline.handle_photo(photo(caption="heron"))

        env.composer.assert_called_once_with(b"reference", HERON)
        [sent] = env.transport.photos
        assert sent.photo == b"composite-card"
        assert "https://en.wikipedia.org/wiki/Ardea_cinerea" in sent.caption
        assert "https://www.inaturalist.org/taxa/5-Ardea-cinerea" in sent.caption

    @pytest.mark.asyncio
    async def test_broken_links_are_dropped(self, env):
        env.bio.is_valid_url.return_value = False
        with with_gps():
            await env.pipeline.handle_photo(photo(caption="heron"))
        assert "wikipedia" not in env.transport.message_with("Ardea cinerea").text


class TestFailures:
    """Nothing delivered means nothing consumed."""

    @pytest.mark.asyncio
    async def test_quality_failure_keeps_quota(self, env):
        env.classifier.classify.return_value = QualityFailure(reason="too_distant")
        with with_gps():
            request = await env.pipeline.handle_photo(photo(caption="heron"))

        assert any("Слишком далеко" in t for t in env.transport.texts())
        assert used(env) == 0
        assert request.reason == "too_distant"
        assert env.requests.stats.failed == 1

    @pytest.mark.asyncio
    async def test_classifier_unavailable(self, env):
        env.classifier.classify.side_effect = ClassifierUnavailable("all models failed")
        with with_gps():
            request = await env.pipeline.handle_photo(photo(caption="heron"))

        assert cards.CLASSIFIER_DOWN in env.transport.texts()
        assert request.reason == "classifier_unavailable"
        assert used(env) == 0

    @pytest.mark.asyncio
    async def test_download_failure(self, env):
        request = await env.pipeline.handle_photo(photo(file_id="missing"))
        assert any("Не удалось скачать" in t for t in env.transport.texts())
        assert request.reason == "download_failed"
        env.classifier.classify.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_unsupported_format(self, env):
        env.transport.files["bmp"] = make_image(fmt="BMP")
        request = await env.pipeline.handle_photo(photo(file_id="bmp"))
        assert request.reason == "unsupported_format"
        assert cards.ASK_LOCATION not in env.transport.texts()

    @pytest.mark.asyncio
    async def test_undeliverable_result_is_not_counted(self, env):
        with with_gps():
            env.transport.blocked.add(CHAT)
            request = await env.pipeline.handle_photo(photo(caption="heron"))
        assert request.reason == "delivery_failed"
        assert used(env) == 0


class TestQuota:
    @pytest.mark.asyncio
    async def test_exhausted_private_quota(self, env):
        for _ in range(10):
            env.quota.consume("private", CHAT, USER)

        assert await env.pipeline.handle_photo(photo()) is None

        [text] = env.transport.texts()
        assert "Недельный лимит исчерпан" in text
        assert "Вы использовали все 10" in text
        assert env.requests.get_stats()["total"] == 0

    @pytest.mark.asyncio
    async def test_group_members_share_chat_quota(self, env):
        for user in (1, 2, 3):
            env.quota.consume("supergroup", -500, user)

        assert await env.pipeline.handle_photo(photo(chat_id=-500, user_id=4, chat_type="supergroup")) is None
        assert "Этот чат использовал все 3" in env.transport.texts(-500)[0]

    @pytest.mark.asyncio
    async def test_limit_report(self, env):
        env.quota.consume("private", CHAT, USER)
        report = env.pipeline.limit_report("private", CHAT, USER)
        assert "1/10" in report
        assert "ваш личный" in report


class TestMediaGroup:
    """A burst of photos sharing a media group id is one batch."""

    async def send_group(self, env, count, caption=None):
        results = await asyncio.gather(*(
            env.pipeline.handle_photo(
                photo(file_id=f"f{i}", message_id=20 + i, caption=caption if i == 0 else None, group="g1")
            )
            for i in range(count)
        ))
        requests = [r for r in results if r is not None]
        assert len(requests) <= 1
        return requests[0] if requests else None

    @pytest.mark.asyncio
    async def test_one_prompt_one_reply(self, env):
        env.classifier.classify.side_effect = [
            HERON,
            HERON,
            QualityFailure(reason="no_animal"),
            EGRET,
            HERON,
        ]
        request = await self.send_group(env, 5, caption="heron")

        assert request.is_media_group
        assert env.transport.texts().count(cards.ASK_BATCH_LOCATION) == 1
        env.classifier.classify.assert_not_awaited()

        assert await env.pipeline.resume(USER, CHAT, "Singapore")

        assert env.classifier.classify.await_count == 5
        assert all(c.kwargs == {"location": "Singapore", "target": "heron"} for c in env.classifier.classify.await_args_list)
        assert len(env.transport.edits) == 4
        assert "Найдено видов: 2" in env.transport.message_with("Результаты определения").text
        heron = env.results.get("100_Ardea cinerea")
        assert heron.photo_count == 3
        assert env.results.get("100_Ardea alba").photo_count == 1
        assert any("На 1 фото не найдено" in t for t in env.transport.texts())
        assert used(env) == 4
        assert env.requests.stats.completed == 1

    @pytest.mark.asyncio
    async def test_gps_in_any_photo_skips_prompt(self, env):
        with with_gps():
            await self.send_group(env, 3)
        assert cards.ASK_BATCH_LOCATION not in env.transport.texts()
        assert env.classifier.classify.await_args.kwargs["location"] == "1.3500, 103.8200"
        assert used(env) == 3

    @pytest.mark.asyncio
    async def test_refused_when_quota_too_small(self, env):
        for _ in range(8):
            env.quota.consume("private", CHAT, USER)

        assert await self.send_group(env, 3) is None

        [text] = env.transport.texts()
        assert "осталось только 2" in text
        assert env.requests.get_stats()["total"] == 0
        assert used(env) == 8

    @pytest.mark.asyncio
    async def test_nothing_identified(self, env):
        env.classifier.classify.return_value = QualityFailure(reason="no_animal")
        with with_gps():
            request = await self.send_group(env, 2)
        assert request.reason == "nothing_identified"
        assert any("На 2 фото не найдено" in t for t in env.transport.texts())
        assert used(env) == 0

    @pytest.mark.asyncio
    async def test_all_downloads_failed(self, env):
        env.transport.files.clear()
        request = await self.send_group(env, 2)
        assert cards.ALL_PHOTOS_FAILED in env.transport.texts()
        assert cards.ASK_BATCH_LOCATION not in env.transport.texts()
        assert request.reason == "all_photos_failed"


class TestCrossReference:
    @pytest.mark.asyncio
    async def test_gbif_synonym_replaced_by_accepted_name(self, env):
        env.bio.verify_with_gbif.return_value = GbifVerification(
            verified=True,
            gbif_name="Egretta alba",
            species=SpeciesMatch(
                key=1, scientific_name="Egretta alba", canonical_name="Egretta alba",
                rank="SPECIES", is_synonym=True, accepted_name="Ardea alba",
            ),
        )
        stale = EGRET.model_copy(update={"scientific_name": "Egretta alba"})
        cross = await env.pipeline.cross_reference(stale, None)
        assert cross.identification.scientific_name == "Ardea alba"

    @pytest.mark.asyncio
    async def test_genus_match_does_not_replace_name(self, env):
        env.bio.verify_with_gbif.return_value = GbifVerification(
            verified=True,
            gbif_name="Ardea",
            species=SpeciesMatch(key=2, scientific_name="Ardea", canonical_name="Ardea", rank="GENUS"),
        )
        cross = await env.pipeline.cross_reference(HERON, None)
        assert cross.identification.scientific_name == "Ardea cinerea"

    @pytest.mark.asyncio
    async def test_ebird_name_wins_for_birds(self, env):
        env.bio.ebird_lookup.return_value = EBirdTaxon("graher1", "Grey Heron", "Ardea cinerea")
        stale = HERON.model_copy(update={"scientific_name": "Ardea cinereus"})
        cross = await env.pipeline.cross_reference(stale, None)
        assert cross.identification.scientific_name == "Ardea cinerea"
        assert cross.ebird.species_code == "graher1"

    @pytest.mark.asyncio
    async def test_ebird_not_asked_for_mammals(self, env):
        cross = await env.pipeline.cross_reference(MACAQUE, None)
        env.bio.ebird_lookup.assert_not_awaited()
        assert cross.ebird is None

    @pytest.mark.asyncio
    async def test_gbif_error_keeps_classifier_name(self, env):
        env.bio.verify_with_gbif.side_effect = RuntimeError("boom")
        cross = await env.pipeline.cross_reference(MACAQUE, "Bali")
        assert cross.identification.scientific_name == "Macaca fascicularis"

    def test_mammals_get_details_only(self):
        assert IdentificationPipeline.follow_up_buttons(MACAQUE) == [
            [Button(cards.BTN_DETAILS, "details_Macaca_fascicularis")]
        ]


class TestFollowUp:
    """Details / similar buttons answer in a private chat."""

    def cache(self, env, ident=HERON):
        env.results.set(
            ResultCache.make_key(CHAT, ident.scientific_name),
            CachedResult(identification=ident, image=normalize_image(make_image())),
        )

    @pytest.mark.asyncio
    async def test_expired_result(self, env):
        assert await env.pipeline.follow_up("details", "Ardea cinerea", CHAT, USER) == (cards.DATA_EXPIRED, False)

    @pytest.mark.asyncio
    async def test_result_expires_after_ttl(self, env):
        self.cache(env)
        env.clock.advance(301)
        answer, _ = await env.pipeline.follow_up("details", "Ardea cinerea", CHAT, USER)
        assert answer == cards.DATA_EXPIRED

    @pytest.mark.asyncio
    async def test_hd_photo_sent_once(self, env):
        self.cache(env)
        assert await env.pipeline.follow_up("details", "Ardea cinerea", CHAT, USER) == (cards.DETAILS_SENT, False)
        assert await env.pipeline.follow_up("similar", "Ardea cinerea", CHAT, USER) == (cards.SIMILAR_SENT, False)

        [hd] = env.transport.photos
        assert hd.chat_id == USER
        assert hd.filename == "photo_hd.jpg"
        private = env.transport.texts(USER)
        assert "Подробная информация" in private[0]
        assert "1. Great Egret" in private[1]

    @pytest.mark.asyncio
    async def test_no_similar_species(self, env):
        self.cache(env, EGRET)
        assert await env.pipeline.follow_up("similar", "Ardea alba", CHAT, USER) == (cards.NO_SIMILAR, False)

    @pytest.mark.asyncio
    async def test_user_never_started_bot(self, env):
        self.cache(env)
        env.transport.blocked.add(USER)
        answer, alert = await env.pipeline.follow_up("details", "Ardea cinerea", CHAT, USER)
        assert alert
        assert "@wildlife_bot" in answer


class TestClearChat:
    @pytest.mark.asyncio
    async def test_clears_state_and_messages(self, env):
        env.results.set(ResultCache.make_key(CHAT, "Ardea cinerea"), CachedResult(identification=HERON))
        env.results.set(ResultCache.make_key(200, "Ardea cinerea"), CachedResult(identification=HERON))
        await env.pipeline.handle_photo(photo())

        await env.pipeline.clear_chat(CHAT, USER, message_id=5)

        assert env.results.get("100_Ardea cinerea") is None
        assert env.results.get("200_Ardea cinerea") is not None
        assert env.requests.find_pending_request(USER, CHAT) is None
        assert {(CHAT, m) for m in range(1, 6)} <= set(env.transport.deleted)

        confirm = env.transport.message_with(cards.CHAT_CLEARED)
        for _ in range(5):
            await asyncio.sleep(0)
        env.sleep.assert_awaited_once_with(1.5)
        assert (CHAT, confirm.id) in env.transport.deleted
