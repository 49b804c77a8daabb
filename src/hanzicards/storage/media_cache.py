"""Content-addressed media cache shared by every collection.

Keys derive only from (symbol, pronunciation), so every card with the same
reading points at one artifact. Generation for a key is guarded by a claim:

    UNCLAIMED -> CLAIMED{owner, expiry} -> PRESENT

A worker that loses the claim waits for the winner and then reads the result
as a cache hit instead of calling the provider again.

Every key handed to a job is also pinned to that job until the job releases
its pins, which it does once the card referencing the key is saved. Reclaim
never deletes a claimed or pinned key.
"""

import asyncio
import hashlib
import secrets
import threading
import time
import unicodedata
from collections import defaultdict
from dataclasses import dataclass, field
from enum import Enum
from typing import Awaitable, Callable, Dict, Iterable, List, Optional, Set

from loguru import logger
from pydantic import BaseModel, Field

from hanzicards.exceptions import CacheRaceError
from hanzicards.generators.base import GeneratedMedia
from hanzicards.models.card import MediaKind, MediaRef
from hanzicards.utils.object_store import ObjectStore
from hanzicards.utils.pinyin import normalize_pronunciation

HASH_PREFIX_LENGTH = 32

MEDIA_EXTENSIONS = {MediaKind.IMAGE: "png", MediaKind.AUDIO: "mp3"}
MEDIA_CONTENT_TYPES = {MediaKind.IMAGE: "image/png", MediaKind.AUDIO: "audio/mpeg"}


def derive_content_key(symbol: str, pronunciation: str) -> str:
    """Derive the content address for a (symbol, pronunciation) pair.

    The symbol is NFC-normalized and the pronunciation normalized to numbered
    pinyin, so ``("長", "zhǎng")`` and ``("長", "zhang3")`` share a key. The
    result is a SHA-256 hex digest; the symbol cannot be recovered from it.
    """
    normalized_symbol = unicodedata.normalize("NFC", symbol.strip())
    normalized_pronunciation = normalize_pronunciation(pronunciation)
    payload = f"{normalized_symbol}\x1f{normalized_pronunciation}"
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


def media_key(
    namespace: str,
    symbol: str,
    pronunciation: str,
    kind: MediaKind,
    override: bool = False,
) -> str:
    """Build the object store key for one artifact.

    Canonical keys are ``<namespace>/<hash-prefix>/<kind>.<ext>``. Override
    keys add a random suffix and belong to a single card.
    """
    prefix = derive_content_key(symbol, pronunciation)[:HASH_PREFIX_LENGTH]
    extension = MEDIA_EXTENSIONS[kind]
    if override:
        return f"{namespace}/{prefix}/{kind.value}-{secrets.token_hex(8)}.{extension}"
    return f"{namespace}/{prefix}/{kind.value}.{extension}"


class ClaimState(str, Enum):
    UNCLAIMED = "unclaimed"
    CLAIMED = "claimed"
    PRESENT = "present"


@dataclass
class _ClaimEntry:
    state: ClaimState = ClaimState.UNCLAIMED
    owner: Optional[str] = None
    expires_at: float = 0.0
    # State to restore if the current claim is released without a write
    previous: ClaimState = ClaimState.UNCLAIMED
    event: asyncio.Event = field(default_factory=asyncio.Event)

    def is_live_claim(self, now: float) -> bool:
        return self.state == ClaimState.CLAIMED and self.expires_at > now


class ClaimRegistry:
    """In-process claim table resolved by compare-and-set under a lock."""

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._entries: Dict[str, _ClaimEntry] = {}
        self._lock = threading.Lock()
        self._clock = clock

    def state(self, key: str) -> ClaimState:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return ClaimState.UNCLAIMED
            if entry.state == ClaimState.CLAIMED and entry.expires_at <= self._clock():
                return entry.previous
            return entry.state

    def is_claimed(self, key: str) -> bool:
        with self._lock:
            entry = self._entries.get(key)
            return entry is not None and entry.is_live_claim(self._clock())

    def claim(self, key: str, owner: str, ttl: float) -> None:
        """Take the generation claim for ``key``.

        Succeeds from UNCLAIMED, PRESENT or an expired claim.

        Raises:
            CacheRaceError: If another owner holds a live claim
        """
        with self._lock:
            now = self._clock()
            entry = self._entries.get(key)
            if entry is not None and entry.is_live_claim(now):
                if entry.owner == owner:
                    entry.expires_at = now + ttl
                    return
                raise CacheRaceError(key, entry.owner or "")

            if entry is None:
                entry = _ClaimEntry()
                self._entries[key] = entry
            elif entry.state == ClaimState.CLAIMED:
                logger.warning(f"Taking over expired claim on {key} from {entry.owner}")
                # Wake anyone still waiting on the abandoned claim
                entry.event.set()
            else:
                entry.previous = entry.state

            entry.state = ClaimState.CLAIMED
            entry.owner = owner
            entry.expires_at = now + ttl
            entry.event = asyncio.Event()

    def mark_present(self, key: str, owner: str) -> None:
        self._finish(key, owner, ClaimState.PRESENT)

    def release(self, key: str, owner: str) -> None:
        """Give up a claim without writing; the key returns to its prior state."""
        self._finish(key, owner, None)

    def _finish(self, key: str, owner: str, new_state: Optional[ClaimState]) -> None:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None or entry.state != ClaimState.CLAIMED or entry.owner != owner:
                logger.debug(f"Ignoring claim update on {key} from non-owner {owner}")
                return
            entry.state = new_state or entry.previous
            entry.previous = entry.state
            entry.owner = None
            entry.expires_at = 0.0
            entry.event.set()

    async def wait(self, key: str, timeout: Optional[float] = None) -> ClaimState:
        """Wait until the current claim on ``key`` is finished or expires."""
        with self._lock:
            entry = self._entries.get(key)
            if entry is None or entry.state != ClaimState.CLAIMED:
                return entry.state if entry else ClaimState.UNCLAIMED
            event = entry.event
            remaining = max(entry.expires_at - self._clock(), 0.0)

        if timeout is None or timeout > remaining:
            timeout = remaining
        try:
            await asyncio.wait_for(event.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning(f"Claim on {key} expired while waiting")
        return self.state(key)

    def forget(self, key: str) -> None:
        """Drop bookkeeping for a deleted key, unless it is claimed."""
        with self._lock:
            entry = self._entries.get(key)
            if entry is not None and not entry.is_live_claim(self._clock()):
                del self._entries[key]


class ReclaimReport(BaseModel):
    scanned: int = 0
    deleted: List[str] = Field(default_factory=list)
    skipped_in_use: List[str] = Field(default_factory=list)
    dry_run: bool = False


MediaFactory = Callable[[], Awaitable[Optional[GeneratedMedia]]]


class SharedMediaCache:
    """Get-or-generate access to content-addressed media."""

    def __init__(
        self,
        store: ObjectStore,
        namespace: str = "media",
        claim_ttl: float = 300.0,
        claims: Optional[ClaimRegistry] = None,
    ):
        self.store = store
        self.namespace = namespace.strip("/")
        self.claim_ttl = claim_ttl
        self.claims = claims or ClaimRegistry()
        self._pins: Dict[str, Set[str]] = defaultdict(set)
        self._pin_lock = threading.Lock()

        self.hits = 0
        self.misses = 0
        self.waits = 0

    def key_for(self, symbol: str, pronunciation: str, kind: MediaKind) -> str:
        return media_key(self.namespace, symbol, pronunciation, kind)

    def pin(self, key: str, owner: str) -> None:
        """Keep ``key`` out of reclaim until ``owner`` releases its pins."""
        with self._pin_lock:
            self._pins[owner].add(key)

    def release_pins(self, owner: str) -> int:
        """Release every pin held by ``owner``. Returns how many were held."""
        with self._pin_lock:
            keys = self._pins.pop(owner, set())
        if keys:
            logger.debug(f"{owner} released {len(keys)} pinned keys")
        return len(keys)

    def is_pinned(self, key: str) -> bool:
        with self._pin_lock:
            return any(key in keys for keys in self._pins.values())

    def _ref(self, key: str, kind: MediaKind, content_type: str, cached: bool, shared: bool) -> MediaRef:
        return MediaRef(
            key=key,
            kind=kind,
            content_type=content_type,
            cached=cached,
            shared=shared,
            url=self.store.url_for(key),
        )

    async def lookup(self, symbol: str, pronunciation: str, kind: MediaKind) -> Optional[MediaRef]:
        """Return the canonical artifact if it exists, without generating."""
        key = self.key_for(symbol, pronunciation, kind)
        if await asyncio.to_thread(self.store.exists, key):
            return self._ref(key, kind, MEDIA_CONTENT_TYPES[kind], cached=True, shared=True)
        return None

    async def get_or_generate(
        self,
        symbol: str,
        pronunciation: str,
        kind: MediaKind,
        generate: MediaFactory,
        owner: str,
        force: bool = False,
        override: bool = False,
    ) -> Optional[MediaRef]:
        """Return the artifact for (symbol, pronunciation, kind), generating it on a miss.

        Args:
            symbol: Card symbol
            pronunciation: Resolved pronunciation
            kind: Media kind
            generate: Coroutine factory producing the media, or None to skip
            owner: Claim owner id (the job id)
            force: Regenerate even if the canonical artifact exists
            override: With force, write a new per-card key instead of the shared one

        The returned key stays pinned to ``owner`` until ``release_pins``.

        Returns:
            MediaRef, or None if the generator skipped this symbol

        Raises:
            ProviderError, StorageError: Propagated from generation and writes;
                the claim is released first
        """
        if force and override:
            return await self._generate_override(symbol, pronunciation, kind, generate, owner)

        key = self.key_for(symbol, pronunciation, kind)
        self.pin(key, owner)
        need_fresh = force

        while True:
            if not need_fresh and await asyncio.to_thread(self.store.exists, key):
                self.hits += 1
                logger.debug(f"Cache hit {key}")
                return self._ref(key, kind, MEDIA_CONTENT_TYPES[kind], cached=True, shared=True)
            try:
                self.claims.claim(key, owner, self.claim_ttl)
                break
            except CacheRaceError as race:
                self.waits += 1
                logger.info(f"{owner} waiting for {race.owner} to finish {key}")
                await self.claims.wait(key, self.claim_ttl)
                # The winner produced a fresh artifact, which satisfies a forced refresh too
                need_fresh = False

        try:
            if not need_fresh and await asyncio.to_thread(self.store.exists, key):
                self.claims.mark_present(key, owner)
                self.hits += 1
                return self._ref(key, kind, MEDIA_CONTENT_TYPES[kind], cached=True, shared=True)

            media = await generate()
            if media is None:
                self.claims.release(key, owner)
                return None

            await asyncio.to_thread(self.store.put, key, media.data, media.content_type)
            self.claims.mark_present(key, owner)
        except BaseException:
            self.claims.release(key, owner)
            raise

        self.misses += 1
        logger.info(f"✓ Generated {kind.value} for '{symbol}' ({pronunciation}) -> {key}")
        return self._ref(key, kind, media.content_type, cached=False, shared=True)

    async def _generate_override(
        self,
        symbol: str,
        pronunciation: str,
        kind: MediaKind,
        generate: MediaFactory,
        owner: str,
    ) -> Optional[MediaRef]:
        media = await generate()
        if media is None:
            return None
        key = media_key(self.namespace, symbol, pronunciation, kind, override=True)
        self.pin(key, owner)
        await asyncio.to_thread(self.store.put, key, media.data, media.content_type)
        self.misses += 1
        logger.info(f"✓ Generated override {kind.value} for '{symbol}' ({pronunciation}) -> {key}")
        return self._ref(key, kind, media.content_type, cached=False, shared=False)

    async def discard(self, ref: Optional[MediaRef]) -> bool:
        """Delete a per-card override artifact. Shared artifacts are never deleted here."""
        if ref is None or ref.shared:
            return False
        return await asyncio.to_thread(self.store.delete, ref.key)

    def reclaim(self, referenced_keys: Iterable[str], dry_run: bool = False) -> ReclaimReport:
        """Delete artifacts under the namespace that no card references.

        Keys with a live generation claim, and keys pinned by a job whose card
        is not saved yet, are left alone.

        Args:
            referenced_keys: Every media key referenced by any card
            dry_run: Report what would be deleted without deleting

        Returns:
            ReclaimReport
        """
        referenced = set(referenced_keys)
        report = ReclaimReport(dry_run=dry_run)

        for key in self.store.list_keys(f"{self.namespace}/"):
            report.scanned += 1
            if key in referenced:
                continue
            if self.claims.is_claimed(key) or self.is_pinned(key):
                report.skipped_in_use.append(key)
                continue
            report.deleted.append(key)
            if not dry_run:
                self.store.delete(key)
                self.claims.forget(key)

        action = "Would delete" if dry_run else "Deleted"
        logger.info(
            f"Reclaim: scanned {report.scanned}, {action.lower()} {len(report.deleted)}, "
            f"skipped {len(report.skipped_in_use)} in use"
        )
        return report

    def get_statistics(self) -> dict:
        total = self.hits + self.misses
        return {
            "hits": self.hits,
            "misses": self.misses,
            "waits": self.waits,
            "hit_rate": round(self.hits / total * 100, 1) if total > 0 else 0,
        }
