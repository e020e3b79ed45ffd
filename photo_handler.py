import asyncio
import logging
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Tuple

import card_formatter as cards
from biodiversity import BiodiversityClient, EBirdTaxon, ReferencePhoto, wikipedia_url
from image_composer import render_composite
from limits.rate_limit import PRIVATE_CHAT, LimitCheck, QuotaPolicy
from photo_filter import check_photo, extract_gps, format_coordinates, normalize_image, to_hd_jpeg
from schemas import CachedResult, Identification, QualityFailure
from service import AnimalClassifier, ClassifierUnavailable
from state.media_group import MediaGroupBatch, MediaGroupCollector, MediaGroupPhoto
from state.requests import BatchPhoto, Request, RequestManager, RequestStatus
from state.result_cache import ResultCache
from state.timers import TaskSupervisor
from transport import Button, ChatTransport, DeliveryError

logger = logging.getLogger(__name__)

CLEAR_DEPTH = 200
CLEAR_CONFIRM_DELAY = 1.5
SIMILAR_LIMIT = 5
IMAGE_MIME = "image/png"

WAIT_LOCATION = "location"
WAIT_TARGET = "target"


@dataclass
class IncomingPhoto:
    chat_id: int
    user_id: int
    message_id: int
    file_id: str
    chat_type: str = PRIVATE_CHAT
    thread_id: Optional[int] = None
    caption: Optional[str] = None
    media_group_id: Optional[str] = None


@dataclass
class CrossReference:
    identification: Identification
    ebird: Optional[EBirdTaxon] = None


class IdentificationPipeline:
    """Drives a photo (or a media group) from raw bytes to a delivered result.

    Every collaborator is injected. Request state is committed before each
    suspension point, so a concurrent event for the same user sees it.
    """

    def __init__(
        self,
        transport: ChatTransport,
        requests: RequestManager,
        quota: QuotaPolicy,
        results: ResultCache,
        delivered_images: ResultCache,
        collector: MediaGroupCollector,
        classifier: AnimalClassifier,
        biodiversity: BiodiversityClient,
        tasks: Optional[TaskSupervisor] = None,
        composer: Callable[[bytes, Identification], Optional[bytes]] = render_composite,
        sleep: Callable[[float], object] = asyncio.sleep,
    ) -> None:
        self.transport = transport
        self.requests = requests
        self.quota = quota
        self.results = results
        self.delivered_images = delivered_images
        self.collector = collector
        self.classifier = classifier
        self.biodiversity = biodiversity
        self.tasks = tasks or TaskSupervisor("pipeline")
        self.composer = composer
        self._sleep = sleep

    # =========================
    #   Отправка
    # =========================
    async def _say(self, chat_id: int, text: str, thread_id: Optional[int] = None, buttons=None) -> Optional[int]:
        try:
            return await self.transport.send_message(chat_id, text, thread_id=thread_id, buttons=buttons)
        except DeliveryError as e:
            logger.error(f"[send] {chat_id}: {e}")
            return None

    async def _delete(self, chat_id: int, *message_ids: Optional[int]) -> None:
        ids = [m for m in message_ids if m]
        if ids:
            await asyncio.gather(*(self.transport.delete_message(chat_id, m) for m in ids))

    async def _delete_later(self, chat_id: int, message_id: int, delay: float) -> None:
        await self._sleep(delay)
        await self.transport.delete_message(chat_id, message_id)

    # =========================
    #   Лимиты
    # =========================
    def _timezone(self, chat_type: str):
        tracker, _ = self.quota.select(chat_type, 0, 0)
        return tracker.timezone

    def limit_report(self, chat_type: str, chat_id: int, user_id: int) -> str:
        check = self.quota.check_limit(chat_type, chat_id, user_id)
        seconds = self.quota.seconds_until_reset(chat_type, chat_id, user_id)
        return cards.limit_status(check, self._timezone(chat_type), seconds, chat_type == PRIVATE_CHAT)

    def _limit_reached_text(self, check: LimitCheck, chat_type: str, chat_id: int, user_id: int) -> str:
        seconds = self.quota.seconds_until_reset(chat_type, chat_id, user_id)
        return cards.limit_reached(check, self._timezone(chat_type), seconds, chat_type == PRIVATE_CHAT)

    def _consume(self, request_id: str, chat_type: str, chat_id: int, user_id: int, units: int = 1) -> None:
        for _ in range(units):
            consumed = self.quota.consume(chat_type, chat_id, user_id)
            if not consumed.success:
                logger.warning(f"[{request_id}] quota already exhausted when consuming")
                return
        logger.info(f"[{request_id}] quota consumed: {consumed.used} used, {consumed.remaining} remaining")

    # =========================
    #   Входящие фото
    # =========================
    async def handle_photo(self, photo: IncomingPhoto) -> Optional[Request]:
        """Entry point for every photo message (and for /identify on a replied photo)."""
        if photo.media_group_id:
            batch = await self.collector.add_photo(
                photo.media_group_id,
                MediaGroupPhoto(file_id=photo.file_id, message_id=photo.message_id, caption=photo.caption),
                chat_id=photo.chat_id,
                user_id=photo.user_id,
                chat_type=photo.chat_type,
                thread_id=photo.thread_id,
            )
            if batch is None:
                return None
            return await self.start_batch(batch)

        check = self.quota.check_limit(photo.chat_type, photo.chat_id, photo.user_id)
        if not check.allowed:
            logger.info(f"[handle_photo] limit exceeded for chat {photo.chat_id} ({check.used}/{check.limit})")
            await self._say(
                photo.chat_id,
                self._limit_reached_text(check, photo.chat_type, photo.chat_id, photo.user_id),
                photo.thread_id,
            )
            return None

        target = (photo.caption or "").strip() or None
        request = self.requests.create_request(
            photo.user_id,
            photo.chat_id,
            message_id=photo.message_id,
            thread_id=photo.thread_id,
            chat_type=photo.chat_type,
            target=target,
        )
        logger.info(f"[{request.request_id}] new photo from user {photo.user_id} ({check.remaining} requests remaining)")
        await self.prepare_single(request, photo.file_id)
        return request

    async def _load(self, file_id: str) -> Tuple[Optional[bytes], Optional[str], Optional[str]]:
        """Download, read GPS and normalise. Returns (image, location, failure code)."""
        try:
            raw = await self.transport.download_file(file_id)
        except DeliveryError as e:
            logger.error(f"[download] {file_id}: {e}")
            return None, None, "download_failed"

        # GPS читается из исходных байтов, до любых преобразований
        gps = await asyncio.to_thread(extract_gps, raw)
        problem = await asyncio.to_thread(check_photo, raw)
        if problem:
            return None, None, problem
        try:
            image = await asyncio.to_thread(normalize_image, raw)
        except OSError as e:
            logger.error(f"[normalize] {file_id}: {e}")
            return None, None, "unreadable"
        return image, format_coordinates(*gps) if gps else None, None

    async def prepare_single(self, request: Request, file_id: str) -> None:
        rid = request.request_id
        image, location, problem = await self._load(file_id)
        if self.requests.get_request(rid) is None:
            logger.info(f"[{rid}] dropped while downloading")
            return
        if problem:
            await self._say(request.chat_id, cards.quality_failure_message(QualityFailure(reason=problem)), request.thread_id)
            self.requests.fail_and_remove(rid, reason=problem)
            return

        self.requests.update(rid, buffer=image, location=location)
        if location and request.target:
            self.requests.update_status(rid, RequestStatus.PROCESSING)
            await self.run_single(request)
        elif location is None:
            logger.info(f"[{rid}] no EXIF GPS, asking for location")
            await self._ask(request, WAIT_LOCATION, cards.ASK_LOCATION)
        else:
            logger.info(f"[{rid}] EXIF location {location}, asking what to identify")
            await self._ask(request, WAIT_TARGET, cards.ASK_TARGET)

    async def _ask(self, request: Request, waiting_for: str, text: str) -> None:
        rid = request.request_id
        self.requests.update(rid, waiting_for=waiting_for)
        try:
            prompt_id = await self.transport.send_message(request.chat_id, text, thread_id=request.thread_id)
        except DeliveryError as e:
            logger.error(f"[{rid}] prompt failed: {e}")
            self.requests.fail_and_remove(rid, error=e, reason="prompt_failed")
            return
        current = self.requests.get_request(rid)
        if current is not None and current.awaiting_input:
            self.requests.update(rid, prompt_message_id=prompt_id)
            logger.info(f"[{rid}] waiting for {waiting_for}")
        else:
            # Ответ пришёл раньше, чем отправился вопрос
            await self.transport.delete_message(request.chat_id, prompt_id)

    async def start_batch(self, batch: MediaGroupBatch) -> Optional[Request]:
        count = len(batch.photos)
        check = self.quota.check_limit(batch.chat_type, batch.chat_id, batch.user_id)
        if not check.allowed:
            await self._say(
                batch.chat_id, self._limit_reached_text(check, batch.chat_type, batch.chat_id, batch.user_id), batch.thread_id
            )
            return None
        if check.remaining < count:
            logger.info(f"[media_group] {batch.group_id}: {count} photos, only {check.remaining} remaining")
            await self._say(
                batch.chat_id, cards.not_enough_quota(count, check, self._timezone(batch.chat_type)), batch.thread_id
            )
            return None

        target = (batch.caption or "").strip() or None
        request = self.requests.create_request(
            batch.user_id,
            batch.chat_id,
            message_id=batch.photos[0].message_id,
            thread_id=batch.thread_id,
            chat_type=batch.chat_type,
            is_media_group=True,
            target=target,
        )
        rid = request.request_id
        logger.info(f"[{rid}] media group with {count} photos ({check.remaining} remaining)")
        status_id = await self._say(batch.chat_id, cards.batch_started(count), batch.thread_id)
        self.requests.update(rid, status_message_id=status_id)

        loaded = await asyncio.gather(*(self._load(p.file_id) for p in batch.photos))
        photos = [
            BatchPhoto(index=i, image=image, location=location, error=problem)
            for i, (image, location, problem) in enumerate(loaded)
        ]
        if self.requests.get_request(rid) is None:
            logger.info(f"[{rid}] dropped while downloading")
            return request

        location = next((p.location for p in photos if p.location), None)
        self.requests.update(rid, batch_photos=photos, location=location)
        if all(p.image is None for p in photos):
            await self._delete(batch.chat_id, status_id)
            await self._say(batch.chat_id, cards.ALL_PHOTOS_FAILED, batch.thread_id)
            self.requests.fail_and_remove(rid, reason="all_photos_failed")
        elif location:
            logger.info(f"[{rid}] using EXIF location for media group: {location}")
            self.requests.update_status(rid, RequestStatus.PROCESSING)
            await self._delete(batch.chat_id, status_id)
            await self.run_batch(request)
        else:
            await self._ask(request, WAIT_LOCATION, cards.ASK_BATCH_LOCATION)
        return request

    # =========================
    #   Продолжение по ответу
    # =========================
    async def resume(
        self, user_id: int, chat_id: int, text: Optional[str], reply_message_id: Optional[int] = None
    ) -> bool:
        """Continue the latest waiting request of ``user_id`` in ``chat_id``.

        ``text`` fills the piece the request waits for; ``None`` means /skip.
        Returns False when nothing was waiting.
        """
        request = self.requests.find_pending_request(user_id, chat_id)
        if request is None:
            return False

        rid = request.request_id
        answer = (text or "").strip() or None
        if answer and request.waiting_for == WAIT_TARGET:
            self.requests.update(rid, target=answer)
        elif answer:
            self.requests.update(rid, location=answer)
        logger.info(f"[{rid}] {request.waiting_for or 'input'} received: {answer!r}")

        # Статус меняется до первого await
        self.requests.update_status(rid, RequestStatus.PROCESSING)
        await self._delete(chat_id, request.prompt_message_id, reply_message_id, request.status_message_id)

        if request.is_media_group:
            await self.run_batch(request)
        else:
            await self.run_single(request)
        return True

    # =========================
    #   Распознавание
    # =========================
    async def cross_reference(self, ident: Identification, location: Optional[str]) -> CrossReference:
        """Best-effort name correction: GBIF for everything, eBird for birds."""
        original = ident.scientific_name
        try:
            gbif = await self.biodiversity.verify_with_gbif(ident.scientific_name, location)
            species = gbif.species
            if gbif.verified and species and species.rank in ("SPECIES", "SUBSPECIES", "VARIETY"):
                if species.is_synonym and species.accepted_name:
                    logger.info(f"[gbif] synonym: {original} -> {species.accepted_name}")
                    ident = ident.model_copy(update={"scientific_name": species.accepted_name})
                elif not gbif.matches and gbif.gbif_name:
                    logger.info(f"[gbif] using GBIF name {gbif.gbif_name} (classifier said {original})")
                    ident = ident.model_copy(update={"scientific_name": gbif.gbif_name})
            if location and gbif.occurrences is not None:
                logger.info(f"[gbif] {gbif.occurrences.count} occurrences near {location!r}")
        except Exception as e:
            logger.error(f"[cross_reference] GBIF check failed for {original}: {e}")

        ebird = None
        if ident.is_bird:
            try:
                ebird = await self.biodiversity.ebird_lookup(ident.scientific_name, ident.common_name)
            except Exception as e:
                logger.error(f"[cross_reference] eBird check failed for {ident.scientific_name}: {e}")
            if ebird:
                if ebird.scientific_name != ident.scientific_name:
                    logger.info(f"[ebird] name update: {ident.scientific_name} -> {ebird.scientific_name}")
                ident = ident.model_copy(
                    update={"scientific_name": ebird.scientific_name, "common_name": ebird.common_name or ident.common_name}
                )
        return CrossReference(identification=ident, ebird=ebird)

    async def run_single(self, request: Request) -> None:
        rid, chat_id, thread_id = request.request_id, request.chat_id, request.thread_id
        image = request.buffer
        if image is None:
            await self._say(chat_id, cards.NO_PHOTO_DATA, thread_id)
            self.requests.fail_and_remove(rid, reason="no_photo_data")
            return

        status_id = await self._say(chat_id, cards.ANALYZING, thread_id)
        self.requests.update(rid, status_message_id=status_id)
        try:
            result = await self.classifier.classify(image, IMAGE_MIME, location=request.location, target=request.target)
        except ClassifierUnavailable as e:
            logger.error(f"[{rid}] classifier unavailable: {e}")
            await self._delete(chat_id, status_id)
            await self._say(chat_id, cards.CLASSIFIER_DOWN, thread_id)
            self.requests.fail_and_remove(rid, error=e, reason="classifier_unavailable")
            return

        if isinstance(result, QualityFailure):
            logger.info(f"[{rid}] not identified: {result.reason}")
            await self._delete(chat_id, status_id)
            await self._say(chat_id, cards.quality_failure_message(result), thread_id)
            self.requests.fail_and_remove(rid, reason=result.reason)
            return

        cross = await self.cross_reference(result, request.location)
        delivered = await self.deliver(chat_id, thread_id, cross, image, status_id=status_id, request_id=rid)
        if not delivered:
            self.requests.fail_and_remove(rid, reason="delivery_failed")
            return
        self._consume(rid, request.chat_type, chat_id, request.user_id)
        self.requests.complete_and_remove(rid)

    async def run_batch(self, request: Request) -> None:
        rid, chat_id, thread_id = request.request_id, request.chat_id, request.thread_id
        photos = list(request.batch_photos)
        valid = [p for p in photos if p.image is not None]
        failures: List[Tuple[int, QualityFailure]] = [
            (p.index, QualityFailure(reason=p.error or "unreadable")) for p in photos if p.image is None
        ]
        if not valid:
            await self._say(chat_id, cards.ALL_PHOTOS_FAILED, thread_id)
            self.requests.fail_and_remove(rid, reason="all_photos_failed")
            return

        progress_id = await self._say(chat_id, cards.batch_progress(1, len(valid)), thread_id)
        self.requests.update(rid, status_message_id=progress_id)

        # Группировка по виду; первое удачное фото вида становится представителем
        groups: Dict[str, Tuple[BatchPhoto, CrossReference, int]] = {}
        for position, photo in enumerate(valid, 1):
            if position > 1 and progress_id:
                await self.transport.edit_message(chat_id, progress_id, cards.batch_progress(position, len(valid)))
            try:
                result = await self.classifier.classify(
                    photo.image, IMAGE_MIME, location=request.location, target=request.target
                )
            except ClassifierUnavailable as e:
                logger.error(f"[{rid}] photo {photo.index + 1}: classifier unavailable: {e}")
                failures.append((photo.index, QualityFailure(reason="classifier_unavailable")))
                continue
            if isinstance(result, QualityFailure):
                failures.append((photo.index, result))
                continue
            cross = await self.cross_reference(result, request.location)
            name = cross.identification.scientific_name
            if name in groups:
                first, first_cross, count = groups[name]
                groups[name] = (first, first_cross, count + 1)
            else:
                groups[name] = (photo, cross, 1)

        await self._delete(chat_id, progress_id)
        failures.sort(key=lambda item: item[0])
        identified = sum(count for _, _, count in groups.values())

        if groups:
            summary = cards.batch_summary(
                len(valid), identified, len(failures), [(c.identification, n) for _, c, n in groups.values()]
            )
            await self._say(chat_id, summary, thread_id)
            for name, (first, cross, count) in groups.items():
                if await self.deliver(chat_id, thread_id, cross, first.image, photo_count=count, request_id=rid):
                    self._consume(rid, request.chat_type, chat_id, request.user_id, units=count)

        failure_text = cards.batch_failures(failures, everything_failed=not groups)
        if failure_text:
            await self._say(chat_id, failure_text, thread_id)

        if groups:
            self.requests.complete_and_remove(rid)
        else:
            self.requests.fail_and_remove(rid, reason="nothing_identified")

    # =========================
    #   Доставка результата
    # =========================
    @staticmethod
    def follow_up_buttons(ident: Identification) -> List[List[Button]]:
        row = [Button(cards.BTN_DETAILS, cards.callback_payload("details", ident.scientific_name))]
        if ident.is_bird and ident.similar_species:
            row.append(Button(cards.BTN_SIMILAR, cards.callback_payload("similar", ident.scientific_name)))
        return [row]

    async def collect_links(self, cross: CrossReference, ref: ReferencePhoto) -> List[Tuple[str, str]]:
        ident = cross.identification
        candidates = [("Wikipedia", wikipedia_url(ident.scientific_name))]
        if ref.page_url:
            candidates.append(("iNaturalist", ref.page_url))
        if ident.is_bird and cross.ebird:
            candidates.append(("eBird", cross.ebird.url))
        checks = await asyncio.gather(*(self.biodiversity.is_valid_url(url) for _, url in candidates))
        return [link for link, ok in zip(candidates, checks) if ok]

    async def deliver(
        self,
        chat_id: int,
        thread_id: Optional[int],
        cross: CrossReference,
        image: Optional[bytes],
        photo_count: int = 1,
        status_id: Optional[int] = None,
        request_id: str = "-",
    ) -> bool:
        ident = cross.identification
        key = ResultCache.make_key(chat_id, ident.scientific_name)
        self.results.set(key, CachedResult(identification=ident, image=image, photo_count=photo_count))
        logger.info(f"[{request_id}] cached result under {key}")

        ref = await self.biodiversity.find_reference_photo(ident.scientific_name)
        links = await self.collect_links(cross, ref)

        composite = None
        if ref.found and ref.photo_url:
            reference = await self.biodiversity.fetch_bytes(ref.photo_url)
            if reference:
                composite = await asyncio.to_thread(self.composer, reference, ident)

        buttons = self.follow_up_buttons(ident)
        await self._delete(chat_id, status_id)
        if composite:
            try:
                await self.transport.send_photo(
                    chat_id,
                    composite,
                    caption=cards.result_caption(ident, links, photo_count, composite=True),
                    thread_id=thread_id,
                    buttons=buttons,
                )
                logger.info(f"[{request_id}] result sent to chat {chat_id}")
                return True
            except DeliveryError as e:
                logger.error(f"[{request_id}] could not send composite: {e}")
        try:
            await self.transport.send_message(
                chat_id,
                cards.result_caption(ident, links, photo_count, composite=False),
                thread_id=thread_id,
                buttons=buttons,
            )
        except DeliveryError as e:
            logger.error(f"[{request_id}] could not send result: {e}")
            return False
        logger.info(f"[{request_id}] text result sent to chat {chat_id}")
        return True

    # =========================
    #   Кнопки под результатом
    # =========================
    async def follow_up(self, action: str, scientific_name: str, chat_id: int, user_id: int) -> Tuple[str, bool]:
        """Send details or similar species to the tapping user in private.

        Returns the callback answer text and whether it is an alert.
        """
        cached: Optional[CachedResult] = self.results.get(ResultCache.make_key(chat_id, scientific_name))
        if cached is None:
            return cards.DATA_EXPIRED, False
        ident = cached.identification

        if action == "similar":
            if not ident.similar_species:
                return cards.NO_SIMILAR, False
            text, done = cards.format_similar(ident, SIMILAR_LIMIT), cards.SIMILAR_SENT
        else:
            text, done = cards.format_details(ident), cards.DETAILS_SENT

        # HD-оригинал уходит пользователю один раз на вид
        image_key = ResultCache.make_key(user_id, scientific_name)
        try:
            if cached.image and self.delivered_images.get(image_key) is None:
                hd = await asyncio.to_thread(to_hd_jpeg, cached.image)
                await self.transport.send_photo(user_id, hd, filename="photo_hd.jpg")
                self.delivered_images.set(image_key, True)
            await self.transport.send_message(user_id, text)
        except DeliveryError as e:
            logger.info(f"[follow_up] cannot PM user {user_id}: {e}")
            return cards.cannot_pm(self.transport.bot_username), True
        return done, False

    # =========================
    #   /clear
    # =========================
    async def clear_chat(self, chat_id: int, user_id: int, message_id: int, thread_id: Optional[int] = None) -> None:
        self.requests.clear_user_requests(user_id)
        self.results.clear_chat(chat_id)
        self.delivered_images.clear_chat(user_id)
        logger.info(f"[clear] cleared caches for chat {chat_id}")

        ids = [message_id] + [message_id - i for i in range(1, CLEAR_DEPTH + 1) if message_id - i > 0]
        await self._delete(chat_id, *ids)

        confirm_id = await self._say(chat_id, cards.CHAT_CLEARED, thread_id)
        if confirm_id:
            self.tasks.spawn(self._delete_later(chat_id, confirm_id, CLEAR_CONFIRM_DELAY), name=f"clear:{chat_id}")
