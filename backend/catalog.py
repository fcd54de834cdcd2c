"""Client-facing views over the set of on-chain prediction cards.

The program can only list every account of a type or fetch one by address, so
every filter, sort and search here is an in-memory pass over a fresh snapshot
from ``ChainGateway.fetch_all_accounts``. Snapshots are per call and never
cached; two quick calls can disagree if the chain moved in between.
"""
import asyncio
import logging
import time
from typing import Callable, Dict, Iterable, List, Optional

from accounts import PRICE_PREDICTION_CARD, card_is_active, card_status, card_view, lamports_to_sol
from errors import InvalidQueryError, InvalidRangeError, NotFoundError, ProphetError, ValidationError
from tx_builder import card_pda, require_u64, to_pubkey

logger = logging.getLogger("prophet.catalog")

SORT_KEYS: Dict[str, str] = {
    "createdAt": "created_at",
    "deadline": "deadline",
    "totalPool": "total_pool",
    "totalBets": "total_bets",
}
SORT_ORDERS = ("asc", "desc")
MAX_RANGE_SPAN = 100
DEFAULT_LIMIT = 20


def summarize(cards: Iterable[dict], now: int) -> dict:
    """Counts and sums over ``cards`` in one pass."""
    counts = {"active": 0, "expired": 0, "settled": 0}
    total = 0
    pool = 0
    bets = 0
    for card in cards:
        counts[card_status(card, now)] += 1
        total += 1
        pool += int(card["total_pool"])
        bets += int(card["total_bets"])
    return {
        "totalCards": total,
        "activeCards": counts["active"],
        "expiredCards": counts["expired"],
        "settledCards": counts["settled"],
        "totalPool": str(pool),
        "totalPoolSOL": lamports_to_sol(pool),
        "totalBets": str(bets),
    }


def _check_paging(limit: int, offset: int = 0) -> None:
    if limit < 0:
        raise ValidationError(f"limit must be non-negative, got {limit}")
    if offset < 0:
        raise ValidationError(f"offset must be non-negative, got {offset}")


class CardCatalog:
    def __init__(self, gateway, clock: Callable[[], float] = time.time, range_concurrency: int = 10):
        self._gateway = gateway
        self._clock = clock
        self._range_concurrency = max(1, range_concurrency)

    def now(self) -> int:
        return int(self._clock())

    async def snapshot(self) -> List[dict]:
        return await self._gateway.fetch_all_accounts(PRICE_PREDICTION_CARD)

    async def list(
        self,
        limit: int = DEFAULT_LIMIT,
        offset: int = 0,
        include_settled: bool = True,
        sort_by: str = "createdAt",
        sort_order: str = "desc",
    ) -> dict:
        if sort_by not in SORT_KEYS:
            raise ValidationError(f"sortBy must be one of {', '.join(SORT_KEYS)}, got {sort_by!r}")
        if sort_order not in SORT_ORDERS:
            raise ValidationError(f"sortOrder must be asc or desc, got {sort_order!r}")
        _check_paging(limit, offset)

        now = self.now()
        cards = await self.snapshot()
        if not include_settled:
            cards = [card for card in cards if not card["is_settled"]]
        stats = summarize(cards, now)
        field = SORT_KEYS[sort_by]
        # sorted() is stable for reverse=True too, so ties keep fetch order.
        ordered = sorted(cards, key=lambda card: int(card[field]), reverse=sort_order == "desc")
        page = ordered[offset : offset + limit]
        return {
            "cards": [card_view(card, now) for card in page],
            "pagination": {
                "total": len(ordered),
                "limit": limit,
                "offset": offset,
                "hasMore": offset + limit < len(ordered),
            },
            "stats": stats,
        }

    async def active(self, limit: int = DEFAULT_LIMIT) -> List[dict]:
        _check_paging(limit)
        now = self.now()
        live = [card for card in await self.snapshot() if card_is_active(card, now)]
        live.sort(key=lambda card: int(card["deadline"]))
        return [card_view(card, now) for card in live[:limit]]

    async def by_creator(self, creator, limit: int = DEFAULT_LIMIT) -> List[dict]:
        _check_paging(limit)
        creator_key = to_pubkey(creator, "creator public key")
        now = self.now()
        mine = [card for card in await self.snapshot() if card["creator"] == creator_key]
        mine.sort(key=lambda card: int(card["created_at"]), reverse=True)
        return [card_view(card, now) for card in mine[:limit]]

    async def search(self, query: Optional[str], limit: int = DEFAULT_LIMIT) -> List[dict]:
        needle = (query or "").strip().lower()
        if not needle:
            raise InvalidQueryError("Search query must not be empty")
        _check_paging(limit)
        now = self.now()
        hits: List[dict] = []
        for card in await self.snapshot():
            if len(hits) >= limit:
                break
            haystacks = (card["asset_symbol"], card["description"], str(card["id"]))
            if any(needle in text.lower() for text in haystacks):
                hits.append(card_view(card, now))
        return hits

    async def by_range(self, start_id: int, end_id: int) -> dict:
        """Fetch every id in ``[start_id, end_id]``.

        Ids are caller-chosen (usually timestamps) so most of a range is empty;
        missing cards are skipped and only real failures are reported.
        """
        require_u64(start_id, "startId")
        require_u64(end_id, "endId")
        if end_id < start_id:
            raise InvalidRangeError(f"endId {end_id} is before startId {start_id}")
        if end_id - start_id > MAX_RANGE_SPAN:
            raise InvalidRangeError(f"Range spans more than {MAX_RANGE_SPAN} ids")

        program_id = self._gateway.program_id
        gate = asyncio.Semaphore(self._range_concurrency)

        async def fetch(card_id: int):
            async with gate:
                try:
                    return await self._gateway.fetch_account(PRICE_PREDICTION_CARD, card_pda(program_id, card_id)[0])
                except NotFoundError:
                    return None
                except ProphetError as exc:
                    return exc

        ids = list(range(start_id, end_id + 1))
        results = await asyncio.gather(*(fetch(card_id) for card_id in ids))
        now = self.now()
        cards: List[dict] = []
        errors: List[dict] = []
        for card_id, result in zip(ids, results):
            if result is None:
                continue
            if isinstance(result, ProphetError):
                errors.append({"cardId": str(card_id), "message": result.message})
            else:
                cards.append(card_view(result, now))
        if errors:
            logger.warning("by_range start=%s end=%s errors=%s", start_id, end_id, len(errors))
        return {
            "cards": cards,
            "errors": errors,
            "range": {"startId": str(start_id), "endId": str(end_id), "requested": len(ids), "found": len(cards)},
        }

    async def stats(self) -> dict:
        return summarize(await self.snapshot(), self.now())
