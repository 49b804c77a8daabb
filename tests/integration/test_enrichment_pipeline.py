"""End-to-end tests for collection enrichment through the service API."""

import asyncio
import threading
from unittest.mock import MagicMock

import pytest

from hanzicards.enrichers.interpreter import Interpretation, SymbolInterpreter
from hanzicards.models.card import CardStatus, MediaKind, Resolution
from hanzicards.models.collection import CollectionStatus
from hanzicards.models.events import EventType
from hanzicards.models.job import JobState
from hanzicards.service import EnrichmentService
from hanzicards.utils.llm_client import LLMClient


def queued_events(subscription):
    """Events already delivered to a subscription, without waiting."""
    events = []
    while not subscription.queue.empty():
        event = subscription.queue.get_nowait()
        if event is None:
            break
        events.append(event)
    return events


async def import_and_wait(service, owner, symbols, selections=None, name="deck"):
    collection = service.create_collection(owner=owner, name=name)
    _, job_id = service.import_collection(collection.id, symbols, selections)
    await service.wait_until_idle()
    return service.get_collection_status(collection.id), job_id


def cards_by_symbol(service, collection_id):
    return {card.symbol: card for card in service.list_cards(collection_id)}


class TestCollectionEnrichment:
    @pytest.mark.asyncio
    async def test_import_enriches_every_card(self, make_service, image_generator, audio_generator, store):
        async with make_service(image=image_generator, audio=audio_generator) as service:
            collection = service.create_collection(owner="u1", name="HSK 1")
            report, job_id = service.import_collection(collection.id, ["書", "水", "书", "貓", "水"])
            subscription = service.connect_progress(collection.id)
            await service.wait_until_idle()

            collection = service.get_collection_status(collection.id)
            cards = cards_by_symbol(service, collection.id)
            import_job = service.get_job_status(job_id)

        assert report.symbols == ["書", "水", "貓"]
        assert len(report.rejected) == 1
        assert import_job.state == JobState.COMPLETED
        assert import_job.result["created"] == 3

        assert collection.status == CollectionStatus.READY
        assert collection.progress.processed == 3
        assert collection.progress.failed == 0
        assert [service.get_card(card_id).symbol for card_id in collection.card_ids] == ["書", "水", "貓"]

        for card in cards.values():
            assert card.status == CardStatus.ENRICHED
            assert store.exists(card.image.key)
            assert store.exists(card.audio.key)
        assert cards["書"].reading.display == "shū"

        types = [event.type for event in queued_events(subscription)]
        assert types[0] == EventType.CONNECTED
        assert EventType.IMPORT_STARTED in types
        assert types.count(EventType.CARD_ENRICHED) == 3
        assert types[-1] == EventType.COLLECTION_READY

    @pytest.mark.asyncio
    async def test_shared_media_across_collections(self, make_service, image_generator, audio_generator):
        async with make_service(image=image_generator, audio=audio_generator) as service:
            first, _ = await import_and_wait(service, "u1", ["書", "水"])
            second, _ = await import_and_wait(service, "u2", ["書"])

            first_card = cards_by_symbol(service, first.id)["書"]
            second_card = cards_by_symbol(service, second.id)["書"]

        assert image_generator.calls == 2
        assert audio_generator.calls == 2
        assert second_card.image.key == first_card.image.key
        assert second_card.audio.key == first_card.audio.key
        assert second_card.image.cached is True

    @pytest.mark.asyncio
    async def test_concurrent_collections_generate_once(self, make_service, image_generator, audio_generator):
        async with make_service(image=image_generator, audio=audio_generator) as service:
            collections = [service.create_collection(owner=f"u{i}", name="deck") for i in range(3)]
            for collection in collections:
                service.import_collection(collection.id, ["書"])
            await service.wait_until_idle()

            keys = {cards_by_symbol(service, c.id)["書"].image.key for c in collections}

        assert image_generator.calls == 1
        assert audio_generator.calls == 1
        assert len(keys) == 1

    @pytest.mark.asyncio
    async def test_reenrichment_is_idempotent(self, make_service, image_generator, audio_generator):
        async with make_service(image=image_generator, audio=audio_generator) as service:
            collection, _ = await import_and_wait(service, "u1", ["書", "水"])
            before = cards_by_symbol(service, collection.id)

            collection_job = service.enqueue_collection_enrichment(collection.id)
            card_job = service.enqueue_card_enrichment(before["書"].id, collection.id)
            await service.wait_until_idle()

            after = cards_by_symbol(service, collection.id)
            collection_result = service.get_job_status(collection_job).result
            card_result = service.get_job_status(card_job).result
            status = service.get_collection_status(collection.id).status

        assert image_generator.calls == 2
        assert audio_generator.calls == 2
        assert collection_result["queued"] == 0
        assert card_result["noop"] is True
        assert status == CollectionStatus.READY
        for symbol, card in after.items():
            assert card.stamp == before[symbol].stamp
            assert card.image.key == before[symbol].image.key

    @pytest.mark.asyncio
    async def test_failed_card_does_not_fail_collection(self, make_service, fake_generator):
        image = fake_generator(MediaKind.IMAGE, fail_symbols={"貓"})
        audio = fake_generator(MediaKind.AUDIO, fail_symbols={"貓"})

        async with make_service(image=image, audio=audio) as service:
            collection = service.create_collection(owner="u1", name="deck")
            service.import_collection(collection.id, ["書", "水", "貓"])
            subscription = service.connect_progress(collection.id)
            await service.wait_until_idle()

            collection = service.get_collection_status(collection.id)
            cards = cards_by_symbol(service, collection.id)

        assert collection.status == CollectionStatus.READY
        assert collection.progress.processed == 3
        assert collection.progress.failed == 1
        assert cards["貓"].status == CardStatus.FAILED
        assert "cannot render" in cards["貓"].state.reason
        assert cards["書"].status == CardStatus.ENRICHED

        # One attempt per kind, then one retry of the job
        assert [r for r in image.requests if r[0] == "貓"] == [("貓", "mao1"), ("貓", "mao1")]

        types = [event.type for event in queued_events(subscription)]
        assert EventType.CARD_FAILED in types
        assert types[-1] == EventType.COLLECTION_READY

    @pytest.mark.asyncio
    async def test_every_card_failing_fails_collection(self, make_service, fake_generator):
        image = fake_generator(MediaKind.IMAGE, fail_symbols={"書", "水"})
        audio = fake_generator(MediaKind.AUDIO, fail_symbols={"書", "水"})

        async with make_service(image=image, audio=audio) as service:
            collection, _ = await import_and_wait(service, "u1", ["書", "水"])

        assert collection.status == CollectionStatus.FAILED
        assert collection.progress.failed == 2

    @pytest.mark.asyncio
    async def test_partial_enrichment(self, make_service, fake_generator, audio_generator):
        image = fake_generator(MediaKind.IMAGE, fail_symbols={"貓"})

        async with make_service(image=image, audio=audio_generator) as service:
            collection, _ = await import_and_wait(service, "u1", ["貓"])
            card = cards_by_symbol(service, collection.id)["貓"]

        assert card.status == CardStatus.PARTIALLY_ENRICHED
        assert card.image is None
        assert card.audio is not None
        assert "image" in card.state.errors
        assert collection.status == CollectionStatus.READY
        assert collection.progress.failed == 0

    @pytest.mark.asyncio
    async def test_retry_failed_cards(self, make_service, fake_generator, audio_generator):
        image = fake_generator(MediaKind.IMAGE, fail_symbols={"貓"})
        audio = fake_generator(MediaKind.AUDIO, fail_symbols={"貓"})

        async with make_service(image=image, audio=audio) as service:
            collection, _ = await import_and_wait(service, "u1", ["書", "貓"])
            assert collection.progress.failed == 1

            image.fail_symbols.clear()
            audio.fail_symbols.clear()
            job_ids = service.retry_failed_cards(collection.id)
            await service.wait_until_idle()

            collection = service.get_collection_status(collection.id)
            cards = cards_by_symbol(service, collection.id)

        assert len(job_ids) == 1
        assert cards["貓"].status == CardStatus.ENRICHED
        assert collection.status == CollectionStatus.READY
        assert collection.progress.failed == 0

    @pytest.mark.asyncio
    async def test_function_words_skip_images(self, make_service, fake_generator, audio_generator):
        image = fake_generator(MediaKind.IMAGE, skip_symbols={"的"})

        async with make_service(image=image, audio=audio_generator) as service:
            collection, _ = await import_and_wait(service, "u1", ["的"])
            card = cards_by_symbol(service, collection.id)["的"]

        assert card.status == CardStatus.ENRICHED
        assert card.state.image_skipped is True
        assert card.image is None
        assert card.audio is not None
        assert image.calls == 0

    @pytest.mark.asyncio
    async def test_unknown_symbol_fails_without_retry(self, make_service, image_generator, audio_generator):
        async with make_service(image=image_generator, audio=audio_generator) as service:
            collection, _ = await import_and_wait(service, "u1", ["龘", "書"])
            cards = cards_by_symbol(service, collection.id)

        assert cards["龘"].status == CardStatus.FAILED
        assert "No dictionary entry" in cards["龘"].state.reason
        assert collection.status == CollectionStatus.READY
        assert collection.progress.failed == 1

    @pytest.mark.asyncio
    async def test_unknown_symbol_is_interpreted(
        self, dictionary, store, fast_config, image_generator, audio_generator
    ):
        llm = MagicMock(spec=LLMClient)
        llm.generate.return_value = Interpretation(meaning="smart/clever", pinyin="cōng míng")
        service = EnrichmentService(
            dictionary=dictionary,
            store=store,
            generators={MediaKind.IMAGE: image_generator, MediaKind.AUDIO: audio_generator},
            config=fast_config,
            interpreter=SymbolInterpreter(llm),
        )
        async with service:
            collection, _ = await import_and_wait(service, "u1", ["聰明"])
            card = cards_by_symbol(service, collection.id)["聰明"]

        assert card.status == CardStatus.ENRICHED
        assert card.reading.resolution == Resolution.INTERPRETED
        assert card.reading.meaning == "smart/clever"
        assert image_generator.requests == [("聰明", "cong1 ming2")]
        assert collection.status == CollectionStatus.READY


class TestRegeneration:
    @pytest.mark.asyncio
    async def test_override_isolates_one_card(self, make_service, image_generator, audio_generator, store):
        async with make_service(image=image_generator, audio=audio_generator) as service:
            first, _ = await import_and_wait(service, "u1", ["書"])
            second, _ = await import_and_wait(service, "u2", ["書"])
            target = cards_by_symbol(service, first.id)["書"]
            shared_image = target.image.key

            service.regenerate_card_media(target.id)
            await service.wait_until_idle()
            regenerated = service.get_card(target.id)
            untouched = cards_by_symbol(service, second.id)["書"]

            service.regenerate_card_media(target.id, kinds=[MediaKind.IMAGE])
            await service.wait_until_idle()
            again = service.get_card(target.id)

        assert regenerated.status == CardStatus.ENRICHED
        assert regenerated.image.key != shared_image
        assert regenerated.image.shared is False
        assert untouched.image.key == shared_image
        assert store.exists(shared_image)

        # The second override replaced the first, which is deleted
        assert again.image.key != regenerated.image.key
        assert not store.exists(regenerated.image.key)
        assert again.audio.key == regenerated.audio.key
        assert image_generator.calls == 3
        assert audio_generator.calls == 2

    @pytest.mark.asyncio
    async def test_forced_collection_regenerates_shared_media(self, make_service, image_generator, audio_generator):
        async with make_service(image=image_generator, audio=audio_generator) as service:
            collection, _ = await import_and_wait(service, "u1", ["書"])
            before = cards_by_symbol(service, collection.id)["書"]

            service.enqueue_collection_enrichment(collection.id, force=True)
            await service.wait_until_idle()
            after = cards_by_symbol(service, collection.id)["書"]
            status = service.get_collection_status(collection.id).status

        assert image_generator.calls == 2
        assert after.image.key == before.image.key
        assert after.image.cached is False
        assert after.stamp > before.stamp
        assert status == CollectionStatus.READY


class TestCollectionManagement:
    @pytest.mark.asyncio
    async def test_stop_prevents_enqueues(self, make_service, image_generator, audio_generator):
        async with make_service(image=image_generator, audio=audio_generator) as service:
            collection = service.create_collection(owner="u1", name="deck")
            service.import_collection(collection.id, ["書", "水", "貓"])
            service.stop_collection(collection.id)
            subscription = service.connect_progress(collection.id)
            await service.wait_until_idle()

            stopped = cards_by_symbol(service, collection.id)
            calls_while_stopped = image_generator.calls
            events = [event.type for event in queued_events(subscription)]

            service.enqueue_collection_enrichment(collection.id)
            await service.wait_until_idle()
            resumed = service.get_collection_status(collection.id)

        assert calls_while_stopped == 0
        assert all(card.status == CardStatus.UNENRICHED for card in stopped.values())
        assert EventType.COLLECTION_STOPPED in events
        assert resumed.stopped is False
        assert resumed.status == CollectionStatus.READY
        assert image_generator.calls == 3

    @pytest.mark.asyncio
    async def test_delete_card_and_reclaim(self, make_service, image_generator, audio_generator, store):
        async with make_service(image=image_generator, audio=audio_generator) as service:
            collection, _ = await import_and_wait(service, "u1", ["書", "水"])
            water = cards_by_symbol(service, collection.id)["水"]

            await service.delete_card(water.id)
            collection = service.get_collection_status(collection.id)

            preview = service.reclaim_media(dry_run=True)
            assert store.exists(water.image.key)
            report = service.reclaim_media()

        assert water.id not in collection.card_ids
        assert collection.progress.total == 1
        assert sorted(preview.deleted) == sorted([water.image.key, water.audio.key])
        assert sorted(report.deleted) == sorted(preview.deleted)
        assert not store.exists(water.image.key)

    @pytest.mark.asyncio
    async def test_progress_for_finished_collection_closes_immediately(
        self, make_service, image_generator, audio_generator
    ):
        async with make_service(image=image_generator, audio=audio_generator) as service:
            collection, _ = await import_and_wait(service, "u1", ["書"])
            types = [event.type async for event in service.connect_progress(collection.id)]

        assert types == [EventType.CONNECTED]


def gated(generator_class, kind):
    """A generator that blocks in the provider call until its gate opens."""

    class GatedGenerator(generator_class):
        def __init__(self):
            super().__init__(kind)
            self.gate = threading.Event()

        def _generate_sync(self, symbol, meaning, pronunciation):
            self.gate.wait(timeout=5)
            return super()._generate_sync(symbol, meaning, pronunciation)

    return GatedGenerator()


class TestReclaimDuringEnrichment:
    @pytest.mark.asyncio
    async def test_media_written_before_card_save_survives_reclaim(
        self, make_service, image_generator, fake_generator, store
    ):
        audio = gated(fake_generator, MediaKind.AUDIO)
        async with make_service(image=image_generator, audio=audio) as service:
            collection = service.create_collection(owner="u1", name="deck")
            service.import_collection(collection.id, ["書"])
            image_key = service.cache.key_for("書", "shu1", MediaKind.IMAGE)
            try:
                # The image is stored while the audio is still being generated
                for _ in range(500):
                    if store.exists(image_key):
                        break
                    await asyncio.sleep(0.01)
                assert store.exists(image_key)
                assert not service.cards.referenced_keys()

                report = service.reclaim_media()
            finally:
                audio.gate.set()
            await service.wait_until_idle()

            card = cards_by_symbol(service, collection.id)["書"]
            after = service.reclaim_media()

        assert report.deleted == []
        assert image_key in report.skipped_in_use
        assert card.status == CardStatus.ENRICHED
        assert card.image.key == image_key
        assert store.exists(card.image.key)
        assert store.exists(card.audio.key)
        assert after.deleted == []
        assert after.skipped_in_use == []
