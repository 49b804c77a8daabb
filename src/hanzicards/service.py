"""Public entry point for the enrichment pipeline.

``EnrichmentService`` wires the stores, cache, generators and orchestrator
together and exposes the operations callers use. It is an async context
manager: workers start on enter and drain on exit.

Example:
    >>> async with EnrichmentService.from_config() as service:
    ...     collection = service.create_collection(owner="u1", name="HSK 1")
    ...     report, job_id = service.import_collection(collection.id, ["累", "長"])
"""

import logging
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Tuple

from pydantic import ValidationError

from hanzicards import constants
from hanzicards.config import PipelineConfig
from hanzicards.enrichers.disambiguator import Disambiguator, FrequencyPolicy
from hanzicards.enrichers.interpreter import SymbolInterpreter
from hanzicards.exceptions import NotFoundError, SymbolValidationError
from hanzicards.generators.base import MediaGenerator
from hanzicards.generators.image_generator import ImageGenerator
from hanzicards.generators.speech_generator import SpeechGenerator, SpeechTextBuilder
from hanzicards.models.card import Card, CardStatus, MediaKind, PronunciationSelection
from hanzicards.models.collection import Collection
from hanzicards.models.dictionary import DisambiguationPrompt
from hanzicards.models.events import EventType, ProgressEvent
from hanzicards.models.job import JobStatus
from hanzicards.pipeline.intake import ImportReport, normalize_import
from hanzicards.pipeline.orchestrator import EnrichmentOrchestrator
from hanzicards.pipeline.progress import ProgressPublisher, Subscription
from hanzicards.storage.media_cache import ReclaimReport, SharedMediaCache
from hanzicards.storage.record_store import CardRepository, CollectionRepository
from hanzicards.utils.dictionary import CedictDictionary, DictionaryLookup
from hanzicards.utils.elevenlabs_client import ElevenLabsClient
from hanzicards.utils.image_client import ImageClient
from hanzicards.utils.llm_client import LLMClient
from hanzicards.utils.object_store import LocalObjectStore, ObjectStore
from hanzicards.utils.rate_limiter import TokenBucket
from hanzicards.validators.symbol_validator import normalize_symbol

logger = logging.getLogger(__name__)


def build_object_store() -> ObjectStore:
    """R2 when credentials are configured, otherwise the local filesystem."""
    if constants.R2_ACCOUNT_ID and constants.R2_BUCKET_NAME:
        from hanzicards.utils.r2_client import R2ObjectStore

        return R2ObjectStore(public_url=constants.R2_PUBLIC_URL or None)
    logger.info(f"R2 not configured; storing media under {constants.LOCAL_MEDIA_ROOT}")
    return LocalObjectStore(constants.LOCAL_MEDIA_ROOT)


def build_generators(
    config: PipelineConfig,
    dictionary: Optional[DictionaryLookup] = None,
    llm: Optional[LLMClient] = None,
) -> Dict[MediaKind, MediaGenerator]:
    """Provider-backed generators sharing one token bucket per provider.

    With ``dictionary`` and ``llm``, ambiguous symbols missing from the known
    phrase table get a generated context phrase for speech.
    """
    return {
        MediaKind.IMAGE: ImageGenerator(
            ImageClient(model=constants.IMAGE_MODEL, size=constants.IMAGE_SIZE),
            rate_limiter=TokenBucket.from_config(config.image_rate, name="images"),
        ),
        MediaKind.AUDIO: SpeechGenerator(
            ElevenLabsClient(voice_id=constants.ELEVENLABS_VOICE_ID or None, model_id=constants.ELEVENLABS_MODEL_ID),
            rate_limiter=TokenBucket.from_config(config.speech_rate, name="speech"),
            text_builder=SpeechTextBuilder(llm=llm, dictionary=dictionary),
        ),
    }


class EnrichmentService:
    """Caller-facing API over the enrichment pipeline."""

    def __init__(
        self,
        dictionary: DictionaryLookup,
        store: ObjectStore,
        generators: Dict[MediaKind, MediaGenerator],
        config: Optional[PipelineConfig] = None,
        cards: Optional[CardRepository] = None,
        collections: Optional[CollectionRepository] = None,
        frequency_policy: Optional[FrequencyPolicy] = None,
        interpreter: Optional[SymbolInterpreter] = None,
    ):
        self.config = config or PipelineConfig()
        self.cards = cards or CardRepository()
        self.collections = collections or CollectionRepository()
        self.disambiguator = Disambiguator(dictionary, frequency_policy, interpreter)
        self.cache = SharedMediaCache(
            store,
            namespace=self.config.media_namespace,
            claim_ttl=self.config.claim_ttl_seconds,
        )
        self.publisher = ProgressPublisher(buffer=self.config.progress_buffer)
        self.orchestrator = EnrichmentOrchestrator(
            cards=self.cards,
            collections=self.collections,
            disambiguator=self.disambiguator,
            cache=self.cache,
            generators=generators,
            publisher=self.publisher,
            config=self.config,
        )
        self._started = False

    @classmethod
    def from_config(
        cls,
        config: Optional[PipelineConfig] = None,
        records_dir: Optional[str | Path] = constants.RECORDS_DIR,
    ) -> "EnrichmentService":
        """Build a service from environment configuration.

        Uses CC-CEDICT from CEDICT_PATH, R2 or local media storage, OpenAI
        images and ElevenLabs speech. One OpenAI chat client interprets
        symbols missing from the dictionary and writes speech context phrases.
        """
        config = config or PipelineConfig.from_env()
        cards_dir = Path(records_dir) / "cards" if records_dir else None
        collections_dir = Path(records_dir) / "collections" if records_dir else None
        dictionary = CedictDictionary(constants.CEDICT_PATH)
        llm = LLMClient(model=constants.LLM_MODEL)
        return cls(
            dictionary=dictionary,
            store=build_object_store(),
            generators=build_generators(config, dictionary, llm),
            config=config,
            cards=CardRepository(cards_dir),
            collections=CollectionRepository(collections_dir),
            interpreter=SymbolInterpreter(llm),
        )

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        if not self._started:
            await self.orchestrator.start()
            self._started = True

    async def shutdown(self, drain: bool = True) -> None:
        if self._started:
            await self.orchestrator.shutdown(drain=drain)
            self.publisher.close_all()
            self._started = False

    async def __aenter__(self) -> "EnrichmentService":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.shutdown(drain=exc_type is None)

    async def wait_until_idle(self) -> None:
        await self.orchestrator.wait_until_idle()

    # ------------------------------------------------------------------
    # Collections and import
    # ------------------------------------------------------------------

    def create_collection(self, owner: str, name: str) -> Collection:
        collection = self.collections.put(Collection(owner=owner, name=name))
        logger.info(f"Created collection {collection.id} '{name}' for {owner}")
        return collection

    def import_collection(
        self,
        collection_id: str,
        raw_symbols: Iterable[str],
        selections: Optional[Dict[str, PronunciationSelection]] = None,
    ) -> Tuple[ImportReport, str]:
        """Validate symbols and queue their import into a collection.

        Args:
            collection_id: Target collection
            raw_symbols: Raw user input
            selections: Readings already chosen (from ``check_disambiguation``), by symbol

        Returns:
            Tuple of (import report, bulk intake job id)

        Raises:
            NotFoundError: If the collection does not exist
            SymbolValidationError: If no symbol is valid
        """
        collection = self.collections.get(collection_id)
        report = normalize_import(raw_symbols)
        normalized = {normalize_symbol(s): sel for s, sel in (selections or {}).items()}
        handle = self.orchestrator.enqueue_bulk_intake(collection, report.symbols, normalized)
        return report, handle.id

    def get_collection_status(self, collection_id: str) -> Collection:
        return self.collections.get(collection_id)

    def get_card(self, card_id: str) -> Card:
        return self.cards.get(card_id)

    def list_cards(self, collection_id: str) -> List[Card]:
        return self.cards.for_collection(self.collections.get(collection_id))

    def stop_collection(self, collection_id: str) -> Collection:
        """Stop queueing further card jobs for a collection. Running jobs finish."""
        collection = self.collections.get(collection_id)
        collection.stopped = True
        collection = self.collections.put(collection)
        logger.info(f"Stop requested for collection {collection_id}")
        return collection

    # ------------------------------------------------------------------
    # Enrichment
    # ------------------------------------------------------------------

    def enqueue_card_enrichment(
        self,
        card_id: str,
        collection_id: str,
        force: bool = False,
        disambiguation_selection: Optional[PronunciationSelection] = None,
        override: bool = False,
    ) -> str:
        """Queue enrichment of one card.

        Returns:
            Job id

        Raises:
            NotFoundError: If the card is not in the collection
        """
        card = self.cards.get(card_id)
        if card.collection_id != collection_id:
            raise NotFoundError(f"Card {card_id} is not in collection {collection_id}")
        collection = self.collections.get(collection_id)
        handle = self.orchestrator.enqueue_card(
            card,
            session_id=collection.session_id,
            force=force,
            selection=disambiguation_selection,
            override=override,
            requester=collection.owner,
        )
        return handle.id

    def enqueue_collection_enrichment(self, collection_id: str, force: bool = False) -> str:
        """Queue enrichment of every card in a collection that needs it (all of them if forced)."""
        collection = self.collections.get(collection_id)
        if collection.stopped:
            collection.stopped = False
            collection = self.collections.put(collection)
        return self.orchestrator.enqueue_collection(collection, force=force).id

    def retry_failed_cards(self, collection_id: str) -> List[str]:
        """Queue failed and partially enriched cards again, leaving the rest alone."""
        collection = self.collections.get(collection_id)
        job_ids = []
        for card in self.cards.for_collection(collection):
            if card.status in (CardStatus.FAILED, CardStatus.PARTIALLY_ENRICHED):
                handle = self.orchestrator.enqueue_card(
                    card, session_id=collection.session_id, requester=collection.owner
                )
                job_ids.append(handle.id)
        logger.info(f"Retrying {len(job_ids)} cards in collection {collection_id}")
        return job_ids

    def regenerate_card_media(
        self,
        card_id: str,
        kinds: Optional[List[MediaKind]] = None,
        override: bool = True,
    ) -> str:
        """Force new media for one card on the admin queue.

        With ``override`` the new artifact gets a key of its own and other
        cards sharing the reading keep theirs. The stored reading is kept.
        """
        card = self.cards.get(card_id)
        collection = self.collections.get(card.collection_id)
        handle = self.orchestrator.enqueue_card(
            card,
            session_id=collection.session_id,
            force=True,
            selection=card.selection,
            override=override,
            kinds=kinds,
            admin=True,
        )
        return handle.id

    async def delete_card(self, card_id: str) -> None:
        """Delete a card and its per-card media. Shared media is left for reclaim."""
        card = self.cards.get(card_id)
        self.orchestrator.discard_parked_for_card(card_id)
        for ref in card.media_refs():
            await self.cache.discard(ref)
        self.cards.delete(card_id)

        collection = self.collections.find(card.collection_id)
        if collection is not None:
            collection.card_ids = [cid for cid in collection.card_ids if cid != card_id]
            self.collections.put(collection)
            self.orchestrator.refresh_collection(collection.id)
        logger.info(f"Deleted card {card_id} ('{card.symbol}')")

    def get_job_status(self, job_id: str) -> JobStatus:
        return self.orchestrator.registry.get(job_id).to_status()

    # ------------------------------------------------------------------
    # Disambiguation
    # ------------------------------------------------------------------

    def check_disambiguation(self, symbols: Iterable[str]) -> List[DisambiguationPrompt]:
        """List the symbols that have more than one reading, with their candidates."""
        return self.disambiguator.check(normalize_symbol(s) for s in symbols)

    def submit_disambiguation(
        self,
        symbol: str,
        chosen_pronunciation: Optional[str] = None,
        accept_default: bool = False,
        collection_id: Optional[str] = None,
    ) -> List[str]:
        """Store a reading for ``symbol`` and resume the cards waiting on it.

        Parked card jobs resume with the selection. Cards waiting without a
        parked job get a new card job, and unenriched cards keep the selection
        for when they are enriched.

        Args:
            symbol: Ambiguous symbol
            chosen_pronunciation: Pinyin (tone marks or numbers)
            accept_default: Use the frequency-ranked default instead
            collection_id: Limit to one collection; all collections otherwise

        Returns:
            Ids of resumed or newly queued jobs

        Raises:
            SymbolValidationError: If the choice is not a reading of the symbol
            NotFoundError: If the symbol has no dictionary entry
        """
        symbol = normalize_symbol(symbol)
        try:
            selection = PronunciationSelection(pronunciation=chosen_pronunciation, accept_default=accept_default)
        except ValidationError as e:
            raise SymbolValidationError(f"Invalid selection for '{symbol}': {e.errors()[0]['msg']}") from e
        chosen = self.disambiguator.validate_selection(symbol, selection)

        job_ids = []
        resumed_cards = set()
        for job in self.orchestrator.parked_jobs(symbol, collection_id):
            job_ids.append(self.orchestrator.resume_parked(job, selection).id)
            resumed_cards.add(job.payload.card_id)

        for card in self.cards.find_by_symbol(symbol):
            if card.id in resumed_cards:
                continue
            if collection_id and card.collection_id != collection_id:
                continue
            awaiting = card.status == CardStatus.PENDING and getattr(card.state, "disambiguation_required", False)
            if card.status == CardStatus.UNENRICHED:
                card.selection = selection
                card.disambiguated = True
                self.cards.save(card, card.stamp)
            elif awaiting:
                collection = self.collections.get(card.collection_id)
                handle = self.orchestrator.enqueue_card(
                    card, session_id=collection.session_id, selection=selection, requester=collection.owner
                )
                job_ids.append(handle.id)

        logger.info(f"Selected {chosen.display} for '{symbol}': {len(job_ids)} jobs queued")
        return job_ids

    # ------------------------------------------------------------------
    # Progress
    # ------------------------------------------------------------------

    def connect_progress(self, collection_id: str) -> Subscription:
        """Subscribe to a collection's progress events; the first event is ``connected``."""
        collection = self.collections.get(collection_id)
        return self.publisher.subscribe(collection.session_id, collection.id)

    # ------------------------------------------------------------------
    # Administration
    # ------------------------------------------------------------------

    def reclaim_media(self, dry_run: bool = False) -> ReclaimReport:
        """Delete stored media that no card references."""
        return self.cache.reclaim(self.cards.referenced_keys(), dry_run=dry_run)
