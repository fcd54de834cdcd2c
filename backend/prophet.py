"""Business operations of the Prophet backend.

Each public coroutine is a short composition of address derivation, account
assembly and one gateway call. ``ProphetOperations`` holds no state of its own
beyond its collaborators, so tests swap in a fake gateway.
"""
import functools
import logging
from datetime import datetime, timezone
from typing import Optional

from accounts import (
    PLATFORM_CONFIG,
    PRICE_PREDICTION_CARD,
    USER_PRICE_BET,
    bet_view,
    card_view,
    lamports_to_sol,
    platform_view,
)
from catalog import DEFAULT_LIMIT, CardCatalog
from errors import (
    AlreadyExistsError,
    AlreadyInitializedError,
    NotFoundError,
    PlatformNotInitializedError,
    ProphetError,
)
from tx_builder import (
    build_create_card_ix,
    build_distribute_rewards_ix,
    build_initialize_platform_ix,
    build_mark_winner_ix,
    build_place_bet_ix,
    build_settle_ix,
    card_pda,
    card_treasury_pda,
    instruction_to_dict,
    message_from_instructions,
    place_bet_addresses,
    platform_config_pda,
    platform_treasury_pda,
    require_bps,
    to_pubkey,
    user_bet_pda,
)

logger = logging.getLogger("prophet")

DEFAULT_PLATFORM_FEE_RATE = 500  # 5%
DEFAULT_CREATOR_REWARD_RATE = 300  # 3%
DEFAULT_MIN_BET_LAMPORTS = 10_000_000  # 0.01 SOL


def operation(name: str):
    """Tag every ``ProphetError`` leaving the wrapped coroutine with ``name``.

    Anything else is logged and re-raised as a plain ``ProphetError`` so raw
    transport or library exceptions never reach the HTTP layer.
    """

    def decorator(fn):
        @functools.wraps(fn)
        async def wrapper(self, *args, **kwargs):
            try:
                return await fn(self, *args, **kwargs)
            except ProphetError as exc:
                if exc.operation is None:
                    exc.operation = name
                raise
            except Exception as exc:
                logger.exception("operation_failed op=%s", name)
                raise ProphetError(f"{name} failed: {exc}", operation=name) from exc

        return wrapper

    return decorator


class ProphetOperations:
    def __init__(self, gateway, catalog: CardCatalog, network: str = ""):
        self.gateway = gateway
        self.catalog = catalog
        self.network = network

    @property
    def program_id(self):
        return self.gateway.program_id

    async def _require_platform(self) -> dict:
        try:
            return await self.gateway.fetch_account(PLATFORM_CONFIG, platform_config_pda(self.program_id)[0])
        except NotFoundError as exc:
            raise PlatformNotInitializedError() from exc

    async def _reject_existing_bet(self, card_id: int, user) -> None:
        bet, _ = user_bet_pda(self.program_id, card_id, user)
        if await self.gateway.account_exists(USER_PRICE_BET, bet):
            raise AlreadyExistsError(f"User {user} already has a bet on card {card_id} at {bet}")

    # ---- writes ----

    @operation("initializePlatform")
    async def initialize_platform(
        self,
        platform_fee_rate: int = DEFAULT_PLATFORM_FEE_RATE,
        creator_reward_rate: int = DEFAULT_CREATOR_REWARD_RATE,
    ) -> dict:
        require_bps(platform_fee_rate, "platformFeeRate")
        require_bps(creator_reward_rate, "creatorRewardRate")
        config, bump = platform_config_pda(self.program_id)
        if await self.gateway.account_exists(PLATFORM_CONFIG, config):
            raise AlreadyInitializedError(str(config))

        authority = self.gateway.payer_pubkey
        ix = build_initialize_platform_ix(self.program_id, authority, platform_fee_rate, creator_reward_rate)
        signature = await self.gateway.submit(ix, "initializePlatform")
        logger.info("platform_initialized config=%s fee=%s reward=%s", config, platform_fee_rate, creator_reward_rate)
        return {
            "txHash": signature,
            "platformConfigPda": str(config),
            "authority": str(authority),
            "platformFeeRate": platform_fee_rate,
            "creatorRewardRate": creator_reward_rate,
            "bump": bump,
        }

    @operation("createPricePredictionCard")
    async def create_card(
        self,
        card_id: int,
        asset_symbol: str,
        current_price: int,
        deadline: int,
        min_bet_amount: int = DEFAULT_MIN_BET_LAMPORTS,
        image_uri: str = "",
        description: str = "",
        creator=None,
    ) -> dict:
        creator_key = self.gateway.payer_pubkey if creator is None else to_pubkey(creator, "creator public key")
        ix = build_create_card_ix(
            self.program_id,
            creator_key,
            card_id,
            asset_symbol,
            current_price,
            deadline,
            min_bet_amount,
            image_uri,
            description,
        )
        self.gateway.check_signers(ix, "createPricePredictionCard")
        signature = await self.gateway.submit(ix, "createPricePredictionCard", requires_platform=True)
        card, _ = card_pda(self.program_id, card_id)
        treasury, _ = card_treasury_pda(self.program_id, card_id)
        logger.info("card_created card_id=%s symbol=%s card=%s", card_id, asset_symbol, card)
        return {
            "txHash": signature,
            "cardId": str(card_id),
            "pricePredictionCardPda": str(card),
            "cardTreasuryPda": str(treasury),
        }

    @operation("placePriceBet")
    async def place_bet(self, card_id: int, predicted_price: int, bet_amount: int, user=None) -> dict:
        user_key = self.gateway.payer_pubkey if user is None else to_pubkey(user, "user public key")
        ix = build_place_bet_ix(self.program_id, user_key, card_id, predicted_price, bet_amount)
        self.gateway.check_signers(ix, "placePriceBet")
        await self._require_platform()
        await self._reject_existing_bet(card_id, user_key)

        signature = await self.gateway.submit(ix, "placePriceBet")
        addrs = place_bet_addresses(self.program_id, card_id, user_key)
        logger.info("bet_placed card_id=%s user=%s amount=%s", card_id, user_key, bet_amount)
        return {
            "txHash": signature,
            "cardId": str(card_id),
            "userPriceBetPda": str(addrs["user_price_bet"]),
            "nftMint": str(addrs["nft_mint"]),
            "userNftAccount": str(addrs["user_nft_account"]),
            "metadataAccount": str(addrs["metadata_account"]),
        }

    @operation("settlePricePrediction")
    async def settle_card(self, card_id: int, actual_price: int) -> dict:
        ix = build_settle_ix(self.program_id, self.gateway.payer_pubkey, card_id, actual_price)
        signature = await self.gateway.submit(ix, "settlePricePrediction", requires_platform=True)
        logger.info("card_settled card_id=%s actual_price=%s", card_id, actual_price)
        return {
            "txHash": signature,
            "cardId": str(card_id),
            "actualPrice": str(actual_price),
            "pricePredictionCardPda": str(card_pda(self.program_id, card_id)[0]),
        }

    @operation("markPriceBetWinner")
    async def mark_winner(self, card_id: int, user) -> dict:
        user_key = to_pubkey(user, "user public key")
        ix = build_mark_winner_ix(self.program_id, self.gateway.payer_pubkey, card_id, user_key)
        signature = await self.gateway.submit(ix, "markPriceBetWinner", requires_platform=True)
        return {
            "txHash": signature,
            "cardId": str(card_id),
            "user": str(user_key),
            "userPriceBetPda": str(user_bet_pda(self.program_id, card_id, user_key)[0]),
        }

    @operation("distributePricePredictionRewards")
    async def distribute_rewards(self, card_id: int, winner) -> dict:
        winner_key = to_pubkey(winner, "winner public key")
        config = await self._require_platform()
        card = await self.gateway.fetch_account(PRICE_PREDICTION_CARD, card_pda(self.program_id, card_id)[0])
        ix = build_distribute_rewards_ix(
            self.program_id, card_id, winner_key, card["creator"], config["platform_treasury"]
        )
        signature = await self.gateway.submit(ix, "distributePricePredictionRewards")
        logger.info("rewards_distributed card_id=%s winner=%s", card_id, winner_key)
        return {
            "txHash": signature,
            "cardId": str(card_id),
            "winner": str(winner_key),
            "creator": str(card["creator"]),
            "platformTreasury": str(config["platform_treasury"]),
            "cardTreasuryPda": str(card_treasury_pda(self.program_id, card_id)[0]),
        }

    # ---- unsigned transactions for wallet signing ----

    @operation("buildCreatePricePredictionCard")
    async def build_create_card_transaction(
        self,
        card_id: int,
        asset_symbol: str,
        current_price: int,
        deadline: int,
        creator,
        min_bet_amount: int = DEFAULT_MIN_BET_LAMPORTS,
        image_uri: str = "",
        description: str = "",
    ) -> dict:
        creator_key = to_pubkey(creator, "creator public key")
        ix = build_create_card_ix(
            self.program_id,
            creator_key,
            card_id,
            asset_symbol,
            current_price,
            deadline,
            min_bet_amount,
            image_uri,
            description,
        )
        await self._require_platform()
        blockhash = await self.gateway.latest_blockhash()
        return {
            "message": message_from_instructions([ix], creator_key, blockhash),
            "recentBlockhash": blockhash,
            "feePayer": str(creator_key),
            "instruction": instruction_to_dict(ix),
            "cardId": str(card_id),
            "pricePredictionCardPda": str(card_pda(self.program_id, card_id)[0]),
            "cardTreasuryPda": str(card_treasury_pda(self.program_id, card_id)[0]),
        }

    @operation("buildPlacePriceBet")
    async def build_place_bet_transaction(self, card_id: int, predicted_price: int, bet_amount: int, user) -> dict:
        user_key = to_pubkey(user, "user public key")
        ix = build_place_bet_ix(self.program_id, user_key, card_id, predicted_price, bet_amount)
        await self._require_platform()
        await self._reject_existing_bet(card_id, user_key)
        blockhash = await self.gateway.latest_blockhash()
        addrs = place_bet_addresses(self.program_id, card_id, user_key)
        return {
            "message": message_from_instructions([ix], user_key, blockhash),
            "recentBlockhash": blockhash,
            "feePayer": str(user_key),
            "instruction": instruction_to_dict(ix),
            "cardId": str(card_id),
            "userPriceBetPda": str(addrs["user_price_bet"]),
            "nftMint": str(addrs["nft_mint"]),
            "userNftAccount": str(addrs["user_nft_account"]),
            "metadataAccount": str(addrs["metadata_account"]),
        }

    # ---- reads ----

    @operation("getPlatformInfo")
    async def get_platform_info(self) -> dict:
        config, _ = platform_config_pda(self.program_id)
        treasury, _ = platform_treasury_pda(self.program_id)
        try:
            cfg = await self.gateway.fetch_account(PLATFORM_CONFIG, config)
        except NotFoundError:
            return {
                "isInitialized": False,
                "message": "Platform is not initialized",
                "platformConfigPda": str(config),
                "platformTreasuryPda": str(treasury),
            }
        balance = await self.gateway.get_balance(treasury)
        info = platform_view(cfg)
        info.update(
            isInitialized=True,
            platformConfigPda=str(config),
            platformTreasuryPda=str(treasury),
            treasuryBalance=balance,
            treasuryBalanceSOL=lamports_to_sol(balance),
        )
        return info

    @operation("getPricePredictionCard")
    async def get_card(self, card_id: int) -> dict:
        card = await self.gateway.fetch_account(PRICE_PREDICTION_CARD, card_pda(self.program_id, card_id)[0])
        return card_view(card, self.catalog.now())

    @operation("getUserPriceBet")
    async def get_user_bet(self, card_id: int, user) -> dict:
        bet = await self.gateway.fetch_account(USER_PRICE_BET, user_bet_pda(self.program_id, card_id, user)[0])
        return bet_view(bet)

    @operation("getBalance")
    async def get_balance(self, public_key) -> dict:
        key = to_pubkey(public_key)
        balance = await self.gateway.get_balance(key)
        return {"publicKey": str(key), "balance": balance, "balanceSOL": lamports_to_sol(balance)}

    @operation("getSystemStatus")
    async def get_system_status(self) -> dict:
        wallet = self.gateway.payer_pubkey
        balance = await self.gateway.get_balance(wallet)
        info = await self.get_platform_info()
        initialized = bool(info.get("isInitialized"))
        return {
            "wallet": {"address": str(wallet), "balance": balance, "balanceSOL": lamports_to_sol(balance)},
            "platform": {"isInitialized": initialized, "info": info if initialized else None},
            "program": {"id": str(self.program_id), "network": self.network, "endpoint": self.gateway.endpoint},
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }

    @operation("health")
    async def health(self) -> dict:
        wallet = self.gateway.payer_pubkey
        balance = await self.gateway.get_balance(wallet)
        return {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "network": self.network,
            "wallet": str(wallet),
            "balance": balance,
            "balanceSOL": lamports_to_sol(balance),
        }

    # ---- catalog ----

    @operation("listCards")
    async def list_cards(
        self,
        limit: int = DEFAULT_LIMIT,
        offset: int = 0,
        include_settled: bool = True,
        sort_by: str = "createdAt",
        sort_order: str = "desc",
    ) -> dict:
        return await self.catalog.list(limit, offset, include_settled, sort_by, sort_order)

    @operation("getActiveCards")
    async def active_cards(self, limit: int = DEFAULT_LIMIT) -> list:
        return await self.catalog.active(limit)

    @operation("getCardsByCreator")
    async def cards_by_creator(self, creator, limit: int = DEFAULT_LIMIT) -> list:
        return await self.catalog.by_creator(creator, limit)

    @operation("searchCards")
    async def search_cards(self, query: Optional[str], limit: int = DEFAULT_LIMIT) -> list:
        return await self.catalog.search(query, limit)

    @operation("getCardsByRange")
    async def cards_by_range(self, start_id: int, end_id: int) -> dict:
        return await self.catalog.by_range(start_id, end_id)

    @operation("getCardStats")
    async def card_stats(self) -> dict:
        return await self.catalog.stats()
