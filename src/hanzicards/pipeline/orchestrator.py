"""Enrichment orchestrator.

Owns the four job queues and their handlers:

- bulk intake: create cards for an import, then queue collection enrichment
- collection enrichment: queue card jobs in small batches
- card enrichment: resolve reading -> shared cache -> generators -> persist
- admin re-enrichment: the card path with force/override for regeneration

Handlers push progress events onto an output channel that a pump task feeds
to the ``ProgressPublisher``.
"""

import asyncio
import logging
from collections import defaultdict
from datetime import UTC, datetime
from typing import Any, Dict, List, Optional, Set

from hanzicards.config import (
    QUEUE_ADMIN,
    QUEUE_BULK_INTAKE,
    QUEUE_CARD,
    QUEUE_COLLECTION,
    PipelineConfig,
)
from hanzicards.enrichers.disambiguator import Disambiguator
from hanzicards.exceptions import (
    DisambiguationRequired,
    JobParked,
    ProviderError,
    StaleWriteError,
    StorageError,
)
from hanzicards.generators.base import MediaGenerator
from hanzicards.models.card import (
    Card,
    CardStatus,
    EnrichedState,
    FailedState,
    MediaKind,
    MediaRef,
    PartiallyEnrichedState,
    PendingState,
    PronunciationSelection,
    Resolution,
    ResolvedReading,
)
from hanzicards.models.collection import Collection, CollectionStatus
from hanzicards.models.events import EventType, ProgressEvent
from hanzicards.models.job import Job, JobPayload, JobType
from hanzicards.pipeline.job_queue import JobHandle, JobQueue, JobRegistry
from hanzicards.pipeline.progress import ProgressPublisher
from hanzicards.pipeline.state_machine import apply_card_states
from hanzicards.storage.media_cache import SharedMediaCache
from hanzicards.storage.record_store import CardRepository, CollectionRepository
from hanzicards.utils.logging_helper import pipeline_stage_logger

logger = logging.getLogger(__name__)

MEDIA_FAILURES = (ProviderError, StorageError)

# Cards the collection job picks up when not forced
NEEDS_WORK = {CardStatus.UNENRICHED, CardStatus.PARTIALLY_ENRICHED, CardStatus.FAILED}


class EnrichmentOrchestrator:
    """Runs enrichment jobs against injected stores, cache and generators."""

    def __init__(
        self,
        cards: CardRepository,
        collections: CollectionRepository,
        disambiguator: Disambiguator,
        cache: SharedMediaCache,
        generators: Dict[MediaKind, MediaGenerator],
        publisher: ProgressPublisher,
        config: Optional[PipelineConfig] = None,
    ):
        self.cards = cards
        self.collections = collections
        self.disambiguator = disambiguator
        self.cache = cache
        self.generators = generators
        self.publisher = publisher
        self.config = config or PipelineConfig()

        self.registry = JobRegistry(
            keep_completed=self.config.keep_completed,
            keep_failed=self.config.keep_failed,
        )
        self.queues: Dict[str, JobQueue] = {
            QUEUE_BULK_INTAKE: self._build_queue(
                QUEUE_BULK_INTAKE, JobType.BULK_INTAKE, self._run_bulk_intake,
                max_attempts=1, on_failed=self._on_collection_job_failed,
            ),
            QUEUE_COLLECTION: self._build_queue(
                QUEUE_COLLECTION, JobType.COLLECTION_ENRICHMENT, self._run_collection_job,
                max_attempts=self.config.collection_max_attempts,
                on_failed=self._on_collection_job_failed,
            ),
            QUEUE_CARD: self._build_queue(
                QUEUE_CARD, JobType.CARD_ENRICHMENT, self._run_card_job,
                max_attempts=self.config.max_attempts, on_failed=self._on_card_job_failed,
            ),
            QUEUE_ADMIN: self._build_queue(
                QUEUE_ADMIN, JobType.ADMIN_REENRICHMENT, self._run_card_job,
                max_attempts=self.config.max_attempts, on_failed=self._on_card_job_failed,
            ),
        }

        # symbol -> ids of card jobs parked waiting for a pronunciation
        self._parked: Dict[str, Set[str]] = defaultdict(set)
        self._events: Optional[asyncio.Queue] = None
        self._pump: Optional[asyncio.Task] = None

    def _build_queue(self, name, job_type, handler, max_attempts, on_failed) -> JobQueue:
        return JobQueue(
            name=name,
            job_type=job_type,
            handler=handler,
            registry=self.registry,
            concurrency=self.config.concurrency_for(name),
            max_attempts=max_attempts,
            backoff_seconds=self.config.backoff_seconds,
            on_failed=on_failed,
        )

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        self._events = asyncio.Queue()
        self._pump = asyncio.create_task(self._pump_events(), name="progress-pump")
        for queue in self.queues.values():
            await queue.start()
        logger.info("✓ Orchestrator started")

    async def shutdown(self, drain: bool = True) -> None:
        """Stop all queues, upstream first so drained jobs can still enqueue downstream."""
        for name in (QUEUE_BULK_INTAKE, QUEUE_COLLECTION, QUEUE_CARD, QUEUE_ADMIN):
            await self.queues[name].shutdown(drain=drain)
        if self._events is not None:
            self._events.put_nowait(None)
            await self._pump
            self._events = None
            self._pump = None
        logger.info("✓ Orchestrator stopped")

    async def wait_until_idle(self) -> None:
        """Wait until no job is runnable on any queue and every event is published."""
        while True:
            for queue in self.queues.values():
                await queue.join()
            if all(queue.is_idle for queue in self.queues.values()):
                break
        if self._events is not None:
            await self._events.join()

    # ------------------------------------------------------------------
    # Enqueue API
    # ------------------------------------------------------------------

    def enqueue_bulk_intake(
        self,
        collection: Collection,
        symbols: List[str],
        selections: Optional[Dict[str, PronunciationSelection]] = None,
        requester: Optional[str] = None,
    ) -> JobHandle:
        payload = JobPayload(
            collection_id=collection.id,
            symbols=symbols,
            selections=selections or {},
            requester=requester or collection.owner,
            session_id=collection.session_id,
        )
        return self.queues[QUEUE_BULK_INTAKE].enqueue(payload)

    def enqueue_collection(self, collection: Collection, force: bool = False, requester: Optional[str] = None) -> JobHandle:
        payload = JobPayload(
            collection_id=collection.id,
            requester=requester or collection.owner,
            session_id=collection.session_id,
            force=force,
        )
        return self.queues[QUEUE_COLLECTION].enqueue(payload)

    def enqueue_card(
        self,
        card: Card,
        session_id: Optional[str] = None,
        force: bool = False,
        selection: Optional[PronunciationSelection] = None,
        override: bool = False,
        kinds: Optional[List[MediaKind]] = None,
        requester: Optional[str] = None,
        admin: bool = False,
    ) -> JobHandle:
        payload = JobPayload(
            collection_id=card.collection_id,
            card_id=card.id,
            requester=requester,
            session_id=session_id,
            force=force,
            selection=selection,
            override=override,
        )
        if kinds:
            payload.kinds = list(kinds)
        queue = self.queues[QUEUE_ADMIN if admin else QUEUE_CARD]
        return queue.enqueue(payload)

    def parked_jobs(self, symbol: str, collection_id: Optional[str] = None) -> List[Job]:
        jobs = []
        for job_id in sorted(self._parked.get(symbol, ())):
            job = self.registry.get(job_id)
            if collection_id and job.payload.collection_id != collection_id:
                continue
            jobs.append(job)
        return jobs

    def resume_parked(self, job: Job, selection: PronunciationSelection) -> JobHandle:
        """Resume a parked card job with a pronunciation selection."""
        payload = job.payload.model_copy(update={"selection": selection})
        handle = self.queues[job.queue].resume(job.id, payload)
        self._forget_parked(job.id)
        return handle

    def discard_parked_for_card(self, card_id: str) -> None:
        for symbol, job_ids in list(self._parked.items()):
            for job_id in list(job_ids):
                job = self.registry.get(job_id)
                if job.payload.card_id == card_id:
                    self.queues[job.queue].discard_parked(job_id, "card deleted")
                    job_ids.discard(job_id)
            if not job_ids:
                del self._parked[symbol]

    def _forget_parked(self, job_id: str) -> None:
        for symbol, job_ids in list(self._parked.items()):
            job_ids.discard(job_id)
            if not job_ids:
                del self._parked[symbol]

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------

    def _emit(self, event_type: EventType, collection: Collection, card: Optional[Card] = None, **data: Any) -> None:
        if self._events is None:
            return
        self._events.put_nowait(
            ProgressEvent(
                type=event_type,
                session_id=collection.session_id,
                collection_id=collection.id,
                card_id=card.id if card else None,
                data=data,
            )
        )

    async def _pump_events(self) -> None:
        while True:
            event = await self._events.get()
            try:
                if event is None:
                    return
                self.publisher.publish(event)
            except Exception:
                logger.exception("Failed to publish progress event")
            finally:
                self._events.task_done()

    # ------------------------------------------------------------------
    # Collection state
    # ------------------------------------------------------------------

    def refresh_collection(self, collection_id: str) -> Optional[Collection]:
        """Recompute a collection's status from its cards and publish the change.

        Runs without awaiting, so concurrent card jobs cannot interleave
        between the read and the write.
        """
        collection = self.collections.find(collection_id)
        if collection is None:
            return None
        if collection.status == CollectionStatus.IMPORTING:
            return collection

        previous = collection.status
        changed = apply_card_states(collection, self.cards.for_collection(collection))
        collection.updated_at = datetime.now(UTC)
        self.collections.put(collection)

        if changed and previous in (CollectionStatus.READY, CollectionStatus.FAILED):
            self._emit(EventType.ENRICHMENT_STARTED, collection, total=collection.progress.total)
        self._emit(
            EventType.PROGRESS,
            collection,
            status=collection.status.value,
            processed=collection.progress.processed,
            total=collection.progress.total,
            failed=collection.progress.failed,
            current_operation=collection.current_operation,
        )
        if changed and collection.status == CollectionStatus.READY:
            logger.info(
                f"✓ Collection {collection.id} ready: {collection.progress.processed}/"
                f"{collection.progress.total} processed, {collection.progress.failed} failed"
            )
            self._emit(EventType.COLLECTION_READY, collection, failed=collection.progress.failed)
        elif changed and collection.status == CollectionStatus.FAILED:
            logger.error(f"✗ Collection {collection.id} failed: every card failed")
            self._emit(EventType.COLLECTION_FAILED, collection, reason=collection.error or "all cards failed")
        return collection

    # ------------------------------------------------------------------
    # Bulk intake
    # ------------------------------------------------------------------

    async def _run_bulk_intake(self, job: Job) -> Dict[str, Any]:
        payload = job.payload
        collection = self.collections.get(payload.collection_id)

        with pipeline_stage_logger("bulk_intake", collection_id=collection.id, job_id=job.id) as log:
            collection.status = CollectionStatus.IMPORTING
            collection.error = None
            collection.current_operation = f"Importing {len(payload.symbols)} symbols"
            self.collections.put(collection)
            self._emit(EventType.IMPORT_STARTED, collection, total=len(payload.symbols))

            created = []
            for symbol in payload.symbols:
                selection = payload.selections.get(symbol)
                card = Card(
                    collection_id=collection.id,
                    symbol=symbol,
                    selection=selection,
                    disambiguated=selection is not None,
                )
                self.cards.put(card)
                created.append(card.id)
            job.progress = {"created": len(created), "total": len(payload.symbols)}

            collection.card_ids.extend(created)
            collection.status = CollectionStatus.PENDING
            collection.current_operation = None
            collection.progress.total = len(collection.card_ids)
            self.collections.put(collection)
            self._emit(EventType.IMPORT_COMPLETED, collection, created=len(created))
            log.info(f"Created {len(created)} cards")

            handle = self.enqueue_collection(collection, requester=payload.requester)

        return {"created": len(created), "card_ids": created, "collection_job_id": handle.id}

    # ------------------------------------------------------------------
    # Collection enrichment
    # ------------------------------------------------------------------

    async def _run_collection_job(self, job: Job) -> Dict[str, Any]:
        payload = job.payload
        collection = self.collections.get(payload.collection_id)
        force = payload.force

        with pipeline_stage_logger("collection_enrichment", collection_id=collection.id, job_id=job.id) as log:
            cards = self.cards.for_collection(collection)
            targets = cards if force else [c for c in cards if c.status in NEEDS_WORK]

            collection.error = None
            if targets:
                collection.current_operation = f"Queueing {len(targets)} cards"
            self.collections.put(collection)
            # A finished collection announces the restart from refresh_collection
            if targets and not collection.is_terminal:
                self._emit(EventType.ENRICHMENT_STARTED, collection, total=len(targets), force=force)

            # Every target is pending until its card job finishes, so the
            # collection cannot look finished while batches are still queued
            previous_states = {}
            for card in targets:
                previous_states[card.id] = card.state
                card.state = PendingState(reading=card.reading, image=card.image, audio=card.audio)
                card.force_refresh = force
                try:
                    self.cards.save(card, job.sequence)
                except StaleWriteError:
                    log.info(f"Card {card.id} was written by a newer job; leaving it")
            self.refresh_collection(collection.id)

            batch_size = self.config.batch_size
            queued = 0
            stopped = False
            for start in range(0, len(targets), batch_size):
                current = self.collections.get(collection.id)
                if current.stopped:
                    stopped = True
                    self._restore_unqueued(targets[start:], previous_states, job)
                    log.info(f"Collection stopped after queueing {queued}/{len(targets)} cards")
                    current = self.refresh_collection(collection.id) or current
                    self._emit(EventType.COLLECTION_STOPPED, current, queued=queued, total=len(targets))
                    break

                for card in targets[start:start + batch_size]:
                    self.enqueue_card(
                        card,
                        session_id=collection.session_id,
                        force=force,
                        requester=payload.requester,
                    )
                    queued += 1
                job.progress = {"queued": queued, "total": len(targets)}

                if start + batch_size < len(targets):
                    await asyncio.sleep(self.config.batch_delay_seconds)

            if not targets:
                log.info("No cards need enrichment")

        return {"queued": queued, "total": len(targets), "stopped": stopped}

    def _restore_unqueued(self, cards: List[Card], previous_states: Dict[str, Any], job: Job) -> None:
        for card in cards:
            current = self.cards.find(card.id)
            if current is None or current.stamp != job.sequence:
                continue
            current.state = previous_states[card.id]
            current.force_refresh = False
            self._save_card(current, job)

    async def _on_collection_job_failed(self, job: Job, error: BaseException) -> None:
        """A collection-level job failing is a pipeline error, not a card error."""
        collection = self.collections.find(job.payload.collection_id or "")
        if collection is None:
            return
        collection.error = f"{job.type.value} failed: {error}"
        collection.status = CollectionStatus.FAILED
        collection.current_operation = None
        collection.updated_at = datetime.now(UTC)
        self.collections.put(collection)
        logger.error(f"✗ Collection {collection.id} failed: {collection.error}")
        self._emit(EventType.COLLECTION_FAILED, collection, reason=collection.error)

    # ------------------------------------------------------------------
    # Card enrichment
    # ------------------------------------------------------------------

    def _save_card(self, card: Card, job: Job) -> bool:
        try:
            self.cards.save(card, job.sequence)
            return True
        except StaleWriteError as stale:
            logger.info(f"Job {job.id} superseded: {stale}")
            return False

    async def _run_card_job(self, job: Job) -> Dict[str, Any]:
        payload = job.payload
        card = self.cards.get(payload.card_id)
        collection = self.collections.get(card.collection_id)
        force = payload.force

        if payload.selection is not None:
            card.selection = payload.selection
            card.disambiguated = True
        elif force:
            # A forced refresh resolves the reading again from scratch
            card.selection = None
            card.disambiguated = False

        if not force and card.status == CardStatus.ENRICHED:
            logger.info(f"Card {card.id} ('{card.symbol}') already enriched; nothing to do")
            return self._card_result(card, noop=True)

        prior: Dict[MediaKind, Optional[MediaRef]] = {MediaKind.IMAGE: card.image, MediaKind.AUDIO: card.audio}
        prior_reading = card.reading
        card.force_refresh = force
        card.state = PendingState(reading=prior_reading, image=card.image, audio=card.audio)
        if not self._save_card(card, job):
            return {"card_id": card.id, "status": "superseded"}
        self.refresh_collection(collection.id)

        try:
            reading = await asyncio.to_thread(self.disambiguator.resolve, card.symbol, card.selection)
        except DisambiguationRequired as required:
            card.state = PendingState(
                disambiguation_required=True,
                candidates=required.candidates,
                reading=prior_reading,
                image=prior[MediaKind.IMAGE],
                audio=prior[MediaKind.AUDIO],
            )
            card.disambiguated = False
            if not self._save_card(card, job):
                return {"card_id": card.id, "status": "superseded"}
            self._parked[card.symbol].add(job.id)
            self.refresh_collection(collection.id)
            self._emit(
                EventType.DISAMBIGUATION_REQUIRED,
                collection,
                card,
                symbol=card.symbol,
                candidates=[c.model_dump(mode="json") for c in required.candidates],
            )
            raise JobParked(f"'{card.symbol}' has {len(required.candidates)} pronunciations")

        if reading.resolution in (Resolution.EXPLICIT, Resolution.DEFAULT):
            card.disambiguated = True

        try:
            return await self._produce_and_save(card, collection, reading, prior, job)
        finally:
            # Pinned keys are protected from reclaim until the card referencing them is saved
            self.cache.release_pins(job.id)

    async def _produce_and_save(
        self,
        card: Card,
        collection: Collection,
        reading: ResolvedReading,
        prior: Dict[MediaKind, Optional[MediaRef]],
        job: Job,
    ) -> Dict[str, Any]:
        payload = job.payload
        kinds = list(dict.fromkeys(payload.kinds))
        results = await asyncio.gather(
            *(self._produce(card, reading, kind, job) for kind in kinds),
            return_exceptions=True,
        )

        refs = dict(prior)
        errors: Dict[str, str] = {}
        skipped: Set[MediaKind] = set()
        first_failure: Optional[BaseException] = None
        for kind, result in zip(kinds, results):
            if isinstance(result, MEDIA_FAILURES):
                errors[kind.value] = str(result)
                first_failure = first_failure or result
            elif isinstance(result, BaseException):
                raise result
            elif result is None:
                skipped.add(kind)
                refs[kind] = None
            else:
                refs[kind] = result

        if errors and len(errors) == len(kinds):
            # Nothing was produced; let the queue retry the whole job
            raise first_failure

        if errors:
            logger.warning(f"Card {card.id} ('{card.symbol}') partially enriched: {errors}")
            card.state = PartiallyEnrichedState(
                reading=reading,
                image=refs[MediaKind.IMAGE],
                audio=refs[MediaKind.AUDIO],
                image_skipped=MediaKind.IMAGE in skipped,
                errors=errors,
            )
        else:
            card.state = EnrichedState(
                reading=reading,
                image=refs[MediaKind.IMAGE],
                audio=refs[MediaKind.AUDIO],
                image_skipped=MediaKind.IMAGE in skipped,
            )
        card.force_refresh = False
        card.last_enriched_at = datetime.now(UTC)

        if not self._save_card(card, job):
            # A newer job owns the card; drop what this one wrote for it alone
            for kind in kinds:
                if refs[kind] is not prior[kind]:
                    await self.cache.discard(refs[kind])
            return {"card_id": card.id, "status": "superseded"}

        for kind in kinds:
            old = prior[kind]
            if old is not None and not old.shared and (refs[kind] is None or refs[kind].key != old.key):
                await self.cache.discard(old)

        self._emit(
            EventType.CARD_ENRICHED,
            collection,
            card,
            symbol=card.symbol,
            status=card.status.value,
            pronunciation=reading.display,
            image=refs[MediaKind.IMAGE].key if refs[MediaKind.IMAGE] else None,
            audio=refs[MediaKind.AUDIO].key if refs[MediaKind.AUDIO] else None,
            errors=errors,
        )
        self.refresh_collection(collection.id)
        return self._card_result(card)

    async def _produce(self, card: Card, reading: ResolvedReading, kind: MediaKind, job: Job) -> Optional[MediaRef]:
        generator = self.generators.get(kind)
        if generator is None:
            return None

        async def generate():
            return await generator.generate(card.symbol, reading.meaning, reading.pronunciation)

        return await self.cache.get_or_generate(
            card.symbol,
            reading.pronunciation,
            kind,
            generate,
            owner=job.id,
            force=job.payload.force,
            override=job.payload.override,
        )

    async def _on_card_job_failed(self, job: Job, error: BaseException) -> None:
        """Mark the card failed, keeping whatever it referenced before."""
        self._forget_parked(job.id)
        card = self.cards.find(job.payload.card_id or "")
        if card is None:
            return
        card.state = FailedState(reason=str(error), reading=card.reading, image=card.image, audio=card.audio)
        card.force_refresh = False
        if not self._save_card(card, job):
            return
        collection = self.collections.find(card.collection_id)
        if collection is not None:
            # Card events go out before the collection can turn terminal and close the session
            self._emit(EventType.CARD_FAILED, collection, card, symbol=card.symbol, reason=str(error))
            self.refresh_collection(collection.id)

    @staticmethod
    def _card_result(card: Card, noop: bool = False) -> Dict[str, Any]:
        return {
            "card_id": card.id,
            "status": card.status.value,
            "noop": noop,
            "pronunciation": card.reading.pronunciation if card.reading else None,
            "image": card.image.key if card.image else None,
            "audio": card.audio.key if card.audio else None,
        }
