"""
Pytest configuration and fixtures.
"""

from typing import Dict, List, Optional, Tuple

import pytest
from solders.hash import Hash
from solders.keypair import Keypair
from solders.pubkey import Pubkey

from accounts import LAYOUTS, PLATFORM_CONFIG, PRICE_PREDICTION_CARD, PUBKEY_FIELDS, USER_PRICE_BET, account_discriminator
from catalog import CardCatalog
from errors import NotFoundError, PlatformNotInitializedError, ValidationError
from prophet import ProphetOperations
from tx_builder import card_pda, platform_config_pda, platform_treasury_pda, signer_keys, user_bet_pda

NOW = 1_700_000_000


class FakeGateway:
    """In-memory stand-in for ChainGateway.

    Accounts live in a dict keyed by address; ``submit`` records what it was
    given instead of talking to a cluster.
    """

    def __init__(self, program_id: Pubkey, payer: Keypair):
        self.program_id = program_id
        self._payer = payer
        self.endpoint = "http://fake-rpc"
        self.accounts: Dict[Pubkey, Tuple[str, dict]] = {}
        self.failures: Dict[Pubkey, Exception] = {}
        self.balances: Dict[Pubkey, int] = {}
        self.submitted: List[Tuple[str, object]] = []
        self.fetches: List[Pubkey] = []
        self.blockhash = str(Hash.default())

    @property
    def payer_pubkey(self) -> Pubkey:
        return self._payer.pubkey()

    def put(self, kind: str, address: Pubkey, fields: dict) -> dict:
        stored = dict(fields)
        stored["pda"] = address
        self.accounts[address] = (kind, stored)
        return stored

    async def fetch_account(self, kind: str, address: Pubkey) -> dict:
        self.fetches.append(address)
        if address in self.failures:
            raise self.failures[address]
        stored = self.accounts.get(address)
        if stored is None or stored[0] != kind:
            raise NotFoundError(kind, str(address))
        return dict(stored[1])

    async def account_exists(self, kind: str, address: Pubkey) -> bool:
        try:
            await self.fetch_account(kind, address)
        except NotFoundError:
            return False
        return True

    async def fetch_all_accounts(self, kind: str) -> List[dict]:
        return [dict(fields) for k, fields in self.accounts.values() if k == kind]

    async def get_balance(self, key) -> int:
        return self.balances.get(Pubkey.from_string(str(key)), 2_000_000_000)

    async def latest_blockhash(self) -> str:
        return self.blockhash

    def check_signers(self, ix, name: str) -> None:
        if any(key != self.payer_pubkey for key in signer_keys(ix)):
            raise ValidationError(f"{name} needs a signer this service does not hold")

    async def submit(self, ix, name: str, requires_platform: bool = False) -> str:
        self.check_signers(ix, name)
        if requires_platform and not await self.account_exists(PLATFORM_CONFIG, platform_config_pda(self.program_id)[0]):
            raise PlatformNotInitializedError()
        self.submitted.append((name, ix))
        return f"sig-{len(self.submitted)}"

    async def close(self) -> None:
        pass


def encode_account(kind: str, fields: dict) -> bytes:
    """Borsh-encode ``fields`` with the account discriminator, as the program stores it."""
    raw = dict(fields)
    for key in PUBKEY_FIELDS:
        if raw.get(key) is not None:
            raw[key] = list(bytes(raw[key]))
    return account_discriminator(kind) + LAYOUTS[kind].build(raw)


def card_fields(card_id: int, creator: Optional[Pubkey] = None, **overrides) -> dict:
    fields = {
        "id": card_id,
        "creator": creator or Pubkey.new_unique(),
        "asset_symbol": "BTC/USD",
        "current_price": 50_000_000_000,
        "deadline": NOW + 3600,
        "min_bet_amount": 10_000_000,
        "image_uri": "",
        "description": "",
        "total_pool": 0,
        "total_bets": 0,
        "is_settled": False,
        "actual_price": 0,
        "winner": None,
        "created_at": NOW - 600,
        "settled_at": None,
        "bump": 255,
    }
    fields.update(overrides)
    return fields


def platform_fields(program_id: Pubkey, authority: Pubkey) -> dict:
    return {
        "authority": authority,
        "platform_fee_rate": 500,
        "creator_reward_rate": 300,
        "platform_treasury": platform_treasury_pda(program_id)[0],
        "is_paused": False,
        "min_bet_amount": 10_000_000,
        "max_bet_amount": 1_000_000_000_000,
        "created_at": NOW - 86_400,
        "updated_at": NOW - 86_400,
        "bump": 254,
    }


@pytest.fixture
def program_id() -> Pubkey:
    return Pubkey.new_unique()


@pytest.fixture
def payer() -> Keypair:
    return Keypair()


@pytest.fixture
def gateway(program_id, payer) -> FakeGateway:
    return FakeGateway(program_id, payer)


@pytest.fixture
def catalog(gateway) -> CardCatalog:
    return CardCatalog(gateway, clock=lambda: NOW)


@pytest.fixture
def operations(gateway, catalog) -> ProphetOperations:
    return ProphetOperations(gateway, catalog, network="devnet")


@pytest.fixture
def add_card(gateway, program_id):
    """Store a PricePredictionCard at its real PDA and return the stored fields."""

    def _add(card_id: int, **overrides) -> dict:
        return gateway.put(PRICE_PREDICTION_CARD, card_pda(program_id, card_id)[0], card_fields(card_id, **overrides))

    return _add


@pytest.fixture
def init_platform(gateway, program_id, payer):
    def _init() -> dict:
        address = platform_config_pda(program_id)[0]
        return gateway.put(PLATFORM_CONFIG, address, platform_fields(program_id, payer.pubkey()))

    return _init


@pytest.fixture
def add_bet(gateway, program_id):
    def _add(card_id: int, user: Pubkey, **overrides) -> dict:
        fields = {
            "card_id": card_id,
            "user": user,
            "predicted_price": 51_000_000_000,
            "bet_amount": 20_000_000,
            "nft_mint": Pubkey.new_unique(),
            "timestamp": NOW - 60,
            "is_winner": False,
            "bump": 253,
        }
        fields.update(overrides)
        return gateway.put(USER_PRICE_BET, user_bet_pda(program_id, card_id, user)[0], fields)

    return _add
