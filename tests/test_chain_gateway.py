"""
Tests for ChainGateway with a mocked AsyncClient.
"""

from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest
from solana.rpc.core import RPCException
from solders.hash import Hash
from solders.pubkey import Pubkey
from solders.signature import Signature
from solders.transaction_status import TransactionConfirmationStatus

from accounts import PLATFORM_CONFIG, PRICE_PREDICTION_CARD
from chain_gateway import ChainGateway, custom_error_code, decode_send_error, decode_transaction_error
from conftest import card_fields, encode_account
from errors import (
    AlreadyExistsError,
    ConfirmationTimeoutError,
    InsufficientFundsError,
    NetworkError,
    NotFoundError,
    PlatformNotInitializedError,
    ProphetError,
    SubmissionError,
    ValidationError,
)
from tx_builder import build_create_card_ix, build_initialize_platform_ix, card_pda


def account_info(owner: Pubkey, data: bytes):
    return MagicMock(owner=owner, data=data)


@pytest.fixture
def client():
    mock = AsyncMock()
    mock.get_balance.return_value = MagicMock(value=1_000_000_000)
    mock.get_latest_blockhash.return_value = MagicMock(value=MagicMock(blockhash=Hash.default()))
    mock.send_raw_transaction.return_value = MagicMock(value=Signature.default())
    mock.get_signature_statuses.return_value = MagicMock(
        value=[MagicMock(err=None, confirmation_status=TransactionConfirmationStatus.Confirmed)]
    )
    mock.get_account_info.return_value = MagicMock(value=None)
    return mock


@pytest.fixture
def chain(client, payer, program_id):
    return ChainGateway(client, payer, program_id, confirm_timeout=0.05, poll_interval=0.01)


@pytest.mark.asyncio
class TestFetch:
    async def test_missing_account_is_not_found(self, chain):
        with pytest.raises(NotFoundError) as exc_info:
            await chain.fetch_account(PRICE_PREDICTION_CARD, Pubkey.new_unique())
        assert exc_info.value.kind == PRICE_PREDICTION_CARD

    async def test_account_exists(self, chain, client, program_id):
        assert await chain.account_exists(PRICE_PREDICTION_CARD, Pubkey.new_unique()) is False
        data = encode_account(PRICE_PREDICTION_CARD, card_fields(1))
        client.get_account_info.return_value = MagicMock(value=account_info(program_id, data))
        assert await chain.account_exists(PRICE_PREDICTION_CARD, Pubkey.new_unique()) is True

    async def test_decodes_and_tags_address(self, chain, client, program_id):
        address = card_pda(program_id, 1)[0]
        data = encode_account(PRICE_PREDICTION_CARD, card_fields(1, total_pool=9))
        client.get_account_info.return_value = MagicMock(value=account_info(program_id, data))
        card = await chain.fetch_account(PRICE_PREDICTION_CARD, address)
        assert card["total_pool"] == 9
        assert card["pda"] == address

    async def test_foreign_owner(self, chain, client):
        data = encode_account(PRICE_PREDICTION_CARD, card_fields(1))
        client.get_account_info.return_value = MagicMock(value=account_info(Pubkey.new_unique(), data))
        with pytest.raises(ProphetError) as exc_info:
            await chain.fetch_account(PRICE_PREDICTION_CARD, Pubkey.new_unique())
        assert not isinstance(exc_info.value, NotFoundError)

    async def test_transport_failure(self, chain, client):
        client.get_account_info.side_effect = httpx.ConnectError("connection refused")
        with pytest.raises(NetworkError):
            await chain.fetch_account(PRICE_PREDICTION_CARD, Pubkey.new_unique())

    async def test_fetch_all_skips_garbage(self, chain, client, program_id):
        good = encode_account(PRICE_PREDICTION_CARD, card_fields(1))
        keyed = [
            MagicMock(pubkey=Pubkey.new_unique(), account=account_info(program_id, good)),
            MagicMock(pubkey=Pubkey.new_unique(), account=account_info(program_id, good[:12])),
        ]
        client.get_program_accounts.return_value = MagicMock(value=keyed)
        cards = await chain.fetch_all_accounts(PRICE_PREDICTION_CARD)
        assert [card["pda"] for card in cards] == [keyed[0].pubkey]


@pytest.mark.asyncio
class TestSubmit:
    async def test_success(self, chain, client, payer, program_id):
        ix = build_initialize_platform_ix(program_id, payer.pubkey(), 500, 300)
        signature = await chain.submit(ix, "initializePlatform")
        assert signature == str(Signature.default())
        client.send_raw_transaction.assert_awaited_once()

    async def test_foreign_signer(self, chain, client, program_id):
        ix = build_create_card_ix(program_id, Pubkey.new_unique(), 1, "BTC", 1, 1, 1)
        with pytest.raises(ValidationError):
            await chain.submit(ix, "createPricePredictionCard")
        client.send_raw_transaction.assert_not_awaited()

    async def test_check_signers_needs_no_rpc(self, chain, client, program_id):
        ix = build_create_card_ix(program_id, Pubkey.new_unique(), 1, "BTC", 1, 1, 1)
        with pytest.raises(ValidationError):
            chain.check_signers(ix, "createPricePredictionCard")
        client.get_account_info.assert_not_awaited()
        client.get_balance.assert_not_awaited()

    async def test_foreign_signer_checked_before_platform(self, chain, client, program_id):
        ix = build_create_card_ix(program_id, Pubkey.new_unique(), 1, "BTC", 1, 1, 1)
        with pytest.raises(ValidationError):
            await chain.submit(ix, "createPricePredictionCard", requires_platform=True)
        client.get_account_info.assert_not_awaited()

    async def test_platform_required(self, chain, client, payer, program_id):
        ix = build_create_card_ix(program_id, payer.pubkey(), 1, "BTC", 1, 1, 1)
        with pytest.raises(PlatformNotInitializedError):
            await chain.submit(ix, "createPricePredictionCard", requires_platform=True)
        client.send_raw_transaction.assert_not_awaited()

    async def test_platform_present(self, chain, client, payer, program_id):
        config = {
            "authority": payer.pubkey(),
            "platform_fee_rate": 500,
            "creator_reward_rate": 300,
            "platform_treasury": Pubkey.new_unique(),
            "is_paused": False,
            "min_bet_amount": 1,
            "max_bet_amount": 2,
            "created_at": 0,
            "updated_at": 0,
            "bump": 255,
        }
        data = encode_account(PLATFORM_CONFIG, config)
        client.get_account_info.return_value = MagicMock(value=account_info(program_id, data))
        ix = build_create_card_ix(program_id, payer.pubkey(), 1, "BTC", 1, 1, 1)
        await chain.submit(ix, "createPricePredictionCard", requires_platform=True)
        client.send_raw_transaction.assert_awaited_once()

    async def test_insufficient_funds(self, chain, client, payer, program_id):
        client.get_balance.return_value = MagicMock(value=9_999_999)
        ix = build_initialize_platform_ix(program_id, payer.pubkey(), 500, 300)
        with pytest.raises(InsufficientFundsError):
            await chain.submit(ix, "initializePlatform")
        client.send_raw_transaction.assert_not_awaited()

    async def test_balance_at_reserve_is_insufficient(self, chain, client, payer, program_id):
        client.get_balance.return_value = MagicMock(value=10_000_000)
        ix = build_initialize_platform_ix(program_id, payer.pubkey(), 500, 300)
        with pytest.raises(InsufficientFundsError) as exc_info:
            await chain.submit(ix, "initializePlatform")
        assert exc_info.value.required == 10_000_000
        client.send_raw_transaction.assert_not_awaited()

    async def test_balance_above_reserve(self, chain, client, payer, program_id):
        client.get_balance.return_value = MagicMock(value=10_000_001)
        ix = build_initialize_platform_ix(program_id, payer.pubkey(), 500, 300)
        await chain.submit(ix, "initializePlatform")
        client.send_raw_transaction.assert_awaited_once()

    async def test_program_rejection_is_decoded(self, chain, client, payer, program_id):
        logs = ["Program log: AnchorError occurred. Error Code: DeadlinePassed. Error Number: 6003."]
        payload = MagicMock(message="Transaction simulation failed", data=MagicMock(err=None, logs=logs))
        client.send_raw_transaction.side_effect = RPCException(payload)
        ix = build_initialize_platform_ix(program_id, payer.pubkey(), 500, 300)
        with pytest.raises(SubmissionError) as exc_info:
            await chain.submit(ix, "initializePlatform")
        assert (exc_info.value.code, exc_info.value.name) == (6003, "DeadlinePassed")

    async def test_confirmation_timeout(self, chain, client, payer, program_id):
        client.get_signature_statuses.return_value = MagicMock(value=[None])
        ix = build_initialize_platform_ix(program_id, payer.pubkey(), 500, 300)
        with pytest.raises(ConfirmationTimeoutError):
            await chain.submit(ix, "initializePlatform")

    async def test_failed_after_landing(self, chain, client, payer, program_id):
        failed = MagicMock(err=MagicMock(err=MagicMock(code=6004)), confirmation_status=None)
        client.get_signature_statuses.return_value = MagicMock(value=[failed])
        ix = build_initialize_platform_ix(program_id, payer.pubkey(), 500, 300)
        with pytest.raises(SubmissionError) as exc_info:
            await chain.submit(ix, "initializePlatform")
        assert exc_info.value.name == "BetTooLow"


class TestErrorDecoding:
    def test_code_from_hex_log(self):
        assert custom_error_code(None, ["Program failed: custom program error: 0x1771"]) == 6001

    def test_code_missing(self):
        assert custom_error_code(None, ["Program log: hello"]) is None

    def test_account_in_use(self):
        err = decode_transaction_error(None, ["Program failed: custom program error: 0x0"], "boom")
        assert isinstance(err, AlreadyExistsError)

    def test_unknown_code(self):
        err = decode_transaction_error(None, ["custom program error: 0x2710"], "boom")
        assert isinstance(err, SubmissionError)
        assert (err.code, err.name, err.message) == (10000, "UnknownError", "boom")

    def test_send_error_without_payload(self):
        err = decode_send_error(RPCException("node unhealthy"))
        assert err.message == "node unhealthy"
        assert err.code == -1


@pytest.mark.asyncio
class TestConnection:
    async def test_check_connection(self, chain, client):
        client.get_version.return_value = MagicMock(value=MagicMock(solana_core="1.18.26"))
        assert await chain.check_connection() is True

    async def test_check_connection_failure(self, chain, client):
        client.get_version.side_effect = httpx.ConnectTimeout("timed out")
        assert await chain.check_connection() is False
