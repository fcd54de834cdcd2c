import base64
import hashlib
from typing import List, Tuple

from borsh_construct import CStruct, I64, String, U16, U64
from solders.hash import Hash
from solders.instruction import AccountMeta, Instruction
from solders.message import MessageV0, to_bytes_versioned
from solders.pubkey import Pubkey

from errors import ValidationError

SYS_PROGRAM_ID = Pubkey.from_string("11111111111111111111111111111111")
TOKEN_PROGRAM_ID = Pubkey.from_string("TokenkegQfeZyiNwAJbNbGKPFXCWuBvf9Ss623VQ5DA")
# Standard SPL Associated Token Program ID (same across clusters)
ASSOCIATED_TOKEN_PROGRAM_ID = Pubkey.from_string("ATokenGPvbdGVxr1b2hvZbsiqW5xWH25efTNsLJA8knL")
TOKEN_METADATA_PROGRAM_ID = Pubkey.from_string("metaqbxxUerdq28cj1RbAWkYQm3ybzjb6a8bt518x1s")
SYSVAR_RENT_PUBKEY = Pubkey.from_string("SysvarRent111111111111111111111111111111111")

PLATFORM_CONFIG_SEED = b"platform_config"
PLATFORM_TREASURY_SEED = b"platform_treasury"
PRICE_PREDICTION_CARD_SEED = b"price_prediction_card"
PRICE_CARD_TREASURY_SEED = b"price_card_treasury"
USER_PRICE_BET_SEED = b"user_price_bet"
PRICE_BET_NFT_MINT_SEED = b"price_bet_nft_mint"
METADATA_SEED = b"metadata"

U64_MAX = 2**64 - 1
I64_MIN = -(2**63)
I64_MAX = 2**63 - 1
BPS_MAX = 10_000

InitializePlatformLayout = CStruct(
    "platform_fee_rate" / U16,
    "creator_reward_rate" / U16,
)
CreateCardLayout = CStruct(
    "card_id" / U64,
    "asset_symbol" / String,
    "current_price" / U64,
    "deadline" / I64,
    "min_bet_amount" / U64,
    "image_uri" / String,
    "description" / String,
)
PlaceBetLayout = CStruct(
    "card_id" / U64,
    "predicted_price" / U64,
    "bet_amount" / U64,
)
SettleLayout = CStruct("card_id" / U64, "actual_price" / U64)
CardIdLayout = CStruct("card_id" / U64)


def sighash(name: str) -> bytes:
    return hashlib.sha256(f"global:{name}".encode()).digest()[:8]


def to_pubkey(value, field: str = "public key") -> Pubkey:
    if isinstance(value, Pubkey):
        return value
    try:
        return Pubkey.from_string(str(value))
    except Exception as exc:  # noqa: BLE001
        raise ValidationError(f"Invalid {field} {value!r}: {exc}") from exc


def require_u64(value: int, field: str) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValidationError(f"{field} must be an integer, got {value!r}")
    if value < 0 or value > U64_MAX:
        raise ValidationError(f"{field} must fit in an unsigned 64-bit integer, got {value}")
    return value


def require_i64(value: int, field: str) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValidationError(f"{field} must be an integer, got {value!r}")
    if value < I64_MIN or value > I64_MAX:
        raise ValidationError(f"{field} must fit in a signed 64-bit integer, got {value}")
    return value


def card_id_bytes(card_id: int) -> bytes:
    return require_u64(card_id, "cardId").to_bytes(8, "little")


def platform_config_pda(program_id: Pubkey) -> Tuple[Pubkey, int]:
    return Pubkey.find_program_address([PLATFORM_CONFIG_SEED], program_id)


def platform_treasury_pda(program_id: Pubkey) -> Tuple[Pubkey, int]:
    return Pubkey.find_program_address([PLATFORM_TREASURY_SEED], program_id)


def card_pda(program_id: Pubkey, card_id: int) -> Tuple[Pubkey, int]:
    return Pubkey.find_program_address([PRICE_PREDICTION_CARD_SEED, card_id_bytes(card_id)], program_id)


def card_treasury_pda(program_id: Pubkey, card_id: int) -> Tuple[Pubkey, int]:
    return Pubkey.find_program_address([PRICE_CARD_TREASURY_SEED, card_id_bytes(card_id)], program_id)


def user_bet_pda(program_id: Pubkey, card_id: int, user: Pubkey) -> Tuple[Pubkey, int]:
    return Pubkey.find_program_address(
        [USER_PRICE_BET_SEED, card_id_bytes(card_id), bytes(to_pubkey(user, "user public key"))],
        program_id,
    )


def nft_mint_pda(program_id: Pubkey, card_id: int, user: Pubkey) -> Tuple[Pubkey, int]:
    return Pubkey.find_program_address(
        [PRICE_BET_NFT_MINT_SEED, card_id_bytes(card_id), bytes(to_pubkey(user, "user public key"))],
        program_id,
    )


def metadata_pda(mint: Pubkey) -> Tuple[Pubkey, int]:
    # Owned by the Token Metadata program, not by Prophet.
    return Pubkey.find_program_address(
        [METADATA_SEED, bytes(TOKEN_METADATA_PROGRAM_ID), bytes(mint)],
        TOKEN_METADATA_PROGRAM_ID,
    )


def derive_ata(owner: Pubkey, mint: Pubkey) -> Pubkey:
    return Pubkey.find_program_address(
        [bytes(owner), bytes(TOKEN_PROGRAM_ID), bytes(mint)],
        ASSOCIATED_TOKEN_PROGRAM_ID,
    )[0]


def require_bps(value: int, field: str) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValidationError(f"{field} must be an integer number of basis points, got {value!r}")
    if value < 0 or value > BPS_MAX:
        raise ValidationError(f"{field} must be between 0 and {BPS_MAX} basis points, got {value}")
    return value


def encode_initialize_platform(platform_fee_rate: int, creator_reward_rate: int) -> bytes:
    data = InitializePlatformLayout.build(
        {
            "platform_fee_rate": require_bps(platform_fee_rate, "platformFeeRate"),
            "creator_reward_rate": require_bps(creator_reward_rate, "creatorRewardRate"),
        }
    )
    return sighash("initialize_platform") + data


def encode_create_card(
    card_id: int,
    asset_symbol: str,
    current_price: int,
    deadline: int,
    min_bet_amount: int,
    image_uri: str,
    description: str,
) -> bytes:
    data = CreateCardLayout.build(
        {
            "card_id": require_u64(card_id, "cardId"),
            "asset_symbol": asset_symbol,
            "current_price": require_u64(current_price, "currentPrice"),
            "deadline": require_i64(deadline, "deadline"),
            "min_bet_amount": require_u64(min_bet_amount, "minBetAmount"),
            "image_uri": image_uri or "",
            "description": description or "",
        }
    )
    return sighash("create_price_prediction_card") + data


def encode_place_bet(card_id: int, predicted_price: int, bet_amount: int) -> bytes:
    data = PlaceBetLayout.build(
        {
            "card_id": require_u64(card_id, "cardId"),
            "predicted_price": require_u64(predicted_price, "predictedPrice"),
            "bet_amount": require_u64(bet_amount, "betAmount"),
        }
    )
    return sighash("place_price_bet") + data


def encode_settle(card_id: int, actual_price: int) -> bytes:
    data = SettleLayout.build(
        {"card_id": require_u64(card_id, "cardId"), "actual_price": require_u64(actual_price, "actualPrice")}
    )
    return sighash("settle_price_prediction") + data


def encode_mark_winner(card_id: int) -> bytes:
    return sighash("mark_price_bet_winner") + CardIdLayout.build({"card_id": require_u64(card_id, "cardId")})


def encode_distribute_rewards(card_id: int) -> bytes:
    return sighash("distribute_price_prediction_rewards") + CardIdLayout.build(
        {"card_id": require_u64(card_id, "cardId")}
    )


def build_initialize_platform_ix(
    program_id: Pubkey,
    authority: Pubkey,
    platform_fee_rate: int,
    creator_reward_rate: int,
) -> Instruction:
    data = encode_initialize_platform(platform_fee_rate, creator_reward_rate)
    platform_config, _ = platform_config_pda(program_id)
    accounts = [
        AccountMeta(pubkey=platform_config, is_signer=False, is_writable=True),
        AccountMeta(pubkey=to_pubkey(authority, "authority"), is_signer=True, is_writable=True),
        AccountMeta(pubkey=SYS_PROGRAM_ID, is_signer=False, is_writable=False),
    ]
    return Instruction(program_id=program_id, data=data, accounts=accounts)


def build_create_card_ix(
    program_id: Pubkey,
    creator: Pubkey,
    card_id: int,
    asset_symbol: str,
    current_price: int,
    deadline: int,
    min_bet_amount: int,
    image_uri: str = "",
    description: str = "",
) -> Instruction:
    creator = to_pubkey(creator, "creator public key")
    data = encode_create_card(card_id, asset_symbol, current_price, deadline, min_bet_amount, image_uri, description)
    card, _ = card_pda(program_id, card_id)
    treasury, _ = card_treasury_pda(program_id, card_id)
    accounts = [
        AccountMeta(pubkey=card, is_signer=False, is_writable=True),
        AccountMeta(pubkey=treasury, is_signer=False, is_writable=True),
        AccountMeta(pubkey=creator, is_signer=True, is_writable=True),
        AccountMeta(pubkey=SYS_PROGRAM_ID, is_signer=False, is_writable=False),
    ]
    return Instruction(program_id=program_id, data=data, accounts=accounts)


def place_bet_addresses(program_id: Pubkey, card_id: int, user: Pubkey) -> dict:
    """Every address a bet touches, keyed by its IDL account name."""
    user = to_pubkey(user, "user public key")
    nft_mint, _ = nft_mint_pda(program_id, card_id, user)
    return {
        "price_prediction_card": card_pda(program_id, card_id)[0],
        "user_price_bet": user_bet_pda(program_id, card_id, user)[0],
        "card_treasury": card_treasury_pda(program_id, card_id)[0],
        "nft_mint": nft_mint,
        "user_nft_account": derive_ata(user, nft_mint),
        "metadata_account": metadata_pda(nft_mint)[0],
        "user": user,
    }


def build_place_bet_ix(
    program_id: Pubkey,
    user: Pubkey,
    card_id: int,
    predicted_price: int,
    bet_amount: int,
) -> Instruction:
    data = encode_place_bet(card_id, predicted_price, bet_amount)
    addrs = place_bet_addresses(program_id, card_id, user)
    # Positional order must match the deployed program's IDL.
    named_accounts: List[Tuple[str, AccountMeta]] = [
        ("price_prediction_card", AccountMeta(pubkey=addrs["price_prediction_card"], is_signer=False, is_writable=True)),
        ("user_price_bet", AccountMeta(pubkey=addrs["user_price_bet"], is_signer=False, is_writable=True)),
        ("card_treasury", AccountMeta(pubkey=addrs["card_treasury"], is_signer=False, is_writable=True)),
        ("nft_mint", AccountMeta(pubkey=addrs["nft_mint"], is_signer=False, is_writable=True)),
        ("user_nft_account", AccountMeta(pubkey=addrs["user_nft_account"], is_signer=False, is_writable=True)),
        ("metadata_account", AccountMeta(pubkey=addrs["metadata_account"], is_signer=False, is_writable=True)),
        ("user", AccountMeta(pubkey=addrs["user"], is_signer=True, is_writable=True)),
        ("token_program", AccountMeta(pubkey=TOKEN_PROGRAM_ID, is_signer=False, is_writable=False)),
        ("associated_token_program", AccountMeta(pubkey=ASSOCIATED_TOKEN_PROGRAM_ID, is_signer=False, is_writable=False)),
        ("metadata_program", AccountMeta(pubkey=TOKEN_METADATA_PROGRAM_ID, is_signer=False, is_writable=False)),
        ("system_program", AccountMeta(pubkey=SYS_PROGRAM_ID, is_signer=False, is_writable=False)),
        ("rent", AccountMeta(pubkey=SYSVAR_RENT_PUBKEY, is_signer=False, is_writable=False)),
    ]
    accounts: List[AccountMeta] = [meta for _, meta in named_accounts]
    return Instruction(program_id=program_id, data=data, accounts=accounts)


def build_settle_ix(program_id: Pubkey, authority: Pubkey, card_id: int, actual_price: int) -> Instruction:
    data = encode_settle(card_id, actual_price)
    accounts = [
        AccountMeta(pubkey=card_pda(program_id, card_id)[0], is_signer=False, is_writable=True),
        AccountMeta(pubkey=platform_config_pda(program_id)[0], is_signer=False, is_writable=False),
        AccountMeta(pubkey=to_pubkey(authority, "authority"), is_signer=True, is_writable=False),
    ]
    return Instruction(program_id=program_id, data=data, accounts=accounts)


def build_mark_winner_ix(program_id: Pubkey, authority: Pubkey, card_id: int, user: Pubkey) -> Instruction:
    data = encode_mark_winner(card_id)
    accounts = [
        AccountMeta(pubkey=user_bet_pda(program_id, card_id, user)[0], is_signer=False, is_writable=True),
        AccountMeta(pubkey=card_pda(program_id, card_id)[0], is_signer=False, is_writable=False),
        AccountMeta(pubkey=platform_config_pda(program_id)[0], is_signer=False, is_writable=False),
        AccountMeta(pubkey=to_pubkey(authority, "authority"), is_signer=True, is_writable=False),
    ]
    return Instruction(program_id=program_id, data=data, accounts=accounts)


def build_distribute_rewards_ix(
    program_id: Pubkey,
    card_id: int,
    winner: Pubkey,
    creator: Pubkey,
    platform_treasury: Pubkey,
) -> Instruction:
    data = encode_distribute_rewards(card_id)
    accounts = [
        AccountMeta(pubkey=card_pda(program_id, card_id)[0], is_signer=False, is_writable=False),
        AccountMeta(pubkey=platform_config_pda(program_id)[0], is_signer=False, is_writable=False),
        AccountMeta(pubkey=card_treasury_pda(program_id, card_id)[0], is_signer=False, is_writable=True),
        AccountMeta(pubkey=to_pubkey(winner, "winner public key"), is_signer=False, is_writable=True),
        AccountMeta(pubkey=to_pubkey(creator, "creator public key"), is_signer=False, is_writable=True),
        AccountMeta(pubkey=to_pubkey(platform_treasury, "platform treasury"), is_signer=False, is_writable=True),
    ]
    return Instruction(program_id=program_id, data=data, accounts=accounts)


def signer_keys(ix: Instruction) -> List[Pubkey]:
    return [meta.pubkey for meta in ix.accounts if meta.is_signer]


def instruction_to_dict(ix: Instruction) -> dict:
    return {
        "program_id": str(ix.program_id),
        "keys": [
            {
                "pubkey": str(k.pubkey),
                "is_signer": k.is_signer,
                "is_writable": k.is_writable,
            }
            for k in ix.accounts
        ],
        "data": base64.b64encode(ix.data).decode(),
    }


def message_from_instructions(ixs: List[Instruction], payer: Pubkey, blockhash: str) -> str:
    message = MessageV0.try_compile(payer, ixs, [], Hash.from_string(blockhash))
    return base64.b64encode(to_bytes_versioned(message)).decode()
