"""On-chain account layouts for the Prophet program and their JSON views.

Anchor prefixes every account with ``sha256("account:<Name>")[:8]``; the rest
is borsh. Decoded accounts are plain dicts with snake_case keys and
``Pubkey`` values. Views turn them into camelCase JSON with every u64/i64 as a
decimal string so clients never lose precision.
"""
import hashlib
from typing import Dict, Optional

from borsh_construct import Bool, CStruct, I64, Option, String, U8, U16, U64
from solders.pubkey import Pubkey

LAMPORTS_PER_SOL = 1_000_000_000

PLATFORM_CONFIG = "PlatformConfig"
PRICE_PREDICTION_CARD = "PricePredictionCard"
USER_PRICE_BET = "UserPriceBet"

PlatformConfigLayout = CStruct(
    "authority" / U8[32],
    "platform_fee_rate" / U16,
    "creator_reward_rate" / U16,
    "platform_treasury" / U8[32],
    "is_paused" / Bool,
    "min_bet_amount" / U64,
    "max_bet_amount" / U64,
    "created_at" / I64,
    "updated_at" / I64,
    "bump" / U8,
)
PricePredictionCardLayout = CStruct(
    "id" / U64,
    "creator" / U8[32],
    "asset_symbol" / String,
    "current_price" / U64,
    "deadline" / I64,
    "min_bet_amount" / U64,
    "image_uri" / String,
    "description" / String,
    "total_pool" / U64,
    "total_bets" / U64,
    "is_settled" / Bool,
    "actual_price" / U64,
    "winner" / Option(U8[32]),
    "created_at" / I64,
    "settled_at" / Option(I64),
    "bump" / U8,
)
UserPriceBetLayout = CStruct(
    "card_id" / U64,
    "user" / U8[32],
    "predicted_price" / U64,
    "bet_amount" / U64,
    "nft_mint" / U8[32],
    "timestamp" / I64,
    "is_winner" / Bool,
    "bump" / U8,
)

LAYOUTS = {
    PLATFORM_CONFIG: PlatformConfigLayout,
    PRICE_PREDICTION_CARD: PricePredictionCardLayout,
    USER_PRICE_BET: UserPriceBetLayout,
}
PUBKEY_FIELDS = {"authority", "platform_treasury", "creator", "winner", "user", "nft_mint"}


def account_discriminator(kind: str) -> bytes:
    return hashlib.sha256(f"account:{kind}".encode()).digest()[:8]


def parse_account(kind: str, data: bytes) -> Optional[dict]:
    """Decode raw account bytes, or None when the bytes are not a ``kind`` account."""
    layout = LAYOUTS[kind]
    if len(data) < 8 or data[:8] != account_discriminator(kind):
        return None
    try:
        parsed = layout.parse(data[8:])
    except Exception:  # noqa: BLE001
        return None
    out: Dict[str, object] = {}
    for key, value in parsed.items():
        if key.startswith("_"):
            continue
        if key in PUBKEY_FIELDS and value is not None:
            value = Pubkey.from_bytes(bytes(value))
        out[key] = value
    return out


def lamports_to_sol(lamports: int) -> float:
    return int(lamports) / LAMPORTS_PER_SOL


def _opt_str(value) -> Optional[str]:
    return None if value is None else str(value)


def platform_view(cfg: dict) -> dict:
    return {
        "authority": str(cfg["authority"]),
        "platformFeeRate": str(cfg["platform_fee_rate"]),
        "creatorRewardRate": str(cfg["creator_reward_rate"]),
        "platformTreasury": str(cfg["platform_treasury"]),
        "isPaused": bool(cfg["is_paused"]),
        "minBetAmount": str(cfg["min_bet_amount"]),
        "maxBetAmount": str(cfg["max_bet_amount"]),
        "createdAt": str(cfg["created_at"]),
        "updatedAt": str(cfg["updated_at"]),
        "bump": cfg["bump"],
    }


def card_is_active(card: dict, now: int) -> bool:
    return not card["is_settled"] and now < int(card["deadline"])


def card_is_expired(card: dict, now: int) -> bool:
    return not card["is_settled"] and now >= int(card["deadline"])


def card_status(card: dict, now: int) -> str:
    if card["is_settled"]:
        return "settled"
    return "active" if now < int(card["deadline"]) else "expired"


def card_view(card: dict, now: Optional[int] = None) -> dict:
    view = {
        "id": str(card["id"]),
        "creator": str(card["creator"]),
        "assetSymbol": card["asset_symbol"],
        "currentPrice": str(card["current_price"]),
        "deadline": str(card["deadline"]),
        "minBetAmount": str(card["min_bet_amount"]),
        "imageUri": card["image_uri"],
        "description": card["description"],
        "totalPool": str(card["total_pool"]),
        "totalPoolSOL": lamports_to_sol(card["total_pool"]),
        "totalBets": str(card["total_bets"]),
        "isSettled": bool(card["is_settled"]),
        "actualPrice": str(card["actual_price"]),
        "winner": _opt_str(card.get("winner")),
        "createdAt": str(card["created_at"]),
        "settledAt": _opt_str(card.get("settled_at")),
        "bump": card["bump"],
    }
    if card.get("pda") is not None:
        view["pda"] = str(card["pda"])
    if now is not None:
        view["isActive"] = card_is_active(card, now)
        view["isExpired"] = card_is_expired(card, now)
        view["status"] = card_status(card, now)
    return view


def bet_view(bet: dict) -> dict:
    view = {
        "cardId": str(bet["card_id"]),
        "user": str(bet["user"]),
        "predictedPrice": str(bet["predicted_price"]),
        "betAmount": str(bet["bet_amount"]),
        "nftMint": str(bet["nft_mint"]),
        "timestamp": str(bet["timestamp"]),
        "isWinner": bool(bet["is_winner"]),
        "bump": bet["bump"],
    }
    if bet.get("pda") is not None:
        view["pda"] = str(bet["pda"])
    return view
