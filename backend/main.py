from __future__ import annotations

import json
import logging
import os
import time
from typing import Optional

from fastapi import APIRouter, Depends, FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field
from pydantic_settings import BaseSettings
from solana.rpc.async_api import AsyncClient
from solana.rpc.commitment import Confirmed
from solders.keypair import Keypair as SoldersKeypair
from solders.pubkey import Pubkey
from starlette.exceptions import HTTPException as StarletteHTTPException

from catalog import DEFAULT_LIMIT, CardCatalog
from chain_gateway import ChainGateway
from errors import ProphetError, ValidationError
from prophet import (
    DEFAULT_CREATOR_REWARD_RATE,
    DEFAULT_MIN_BET_LAMPORTS,
    DEFAULT_PLATFORM_FEE_RATE,
    ProphetOperations,
)

API_PREFIX = "/api/betting"
CARD_STATUSES = ("active", "expired", "settled", "all")


class Settings(BaseSettings):
    solana_rpc: str = "https://api.devnet.solana.com"
    solana_network: str = "devnet"
    program_id: Optional[str] = None
    wallet_private_key: Optional[str] = None  # JSON array of the 64 secret key bytes
    wallet_keypair_path: Optional[str] = None
    min_payer_balance_lamports: int = 10_000_000
    low_balance_warning_lamports: int = 100_000_000
    confirm_timeout_seconds: float = 30.0
    confirm_poll_seconds: float = 0.8
    rpc_timeout_seconds: float = 10.0
    range_fetch_concurrency: int = 10
    log_level: str = "INFO"

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"


settings = Settings()
logging.basicConfig(level=getattr(logging, settings.log_level.upper(), logging.INFO))
logger = logging.getLogger("prophet")


def _keypair_from_json(data, source: str) -> SoldersKeypair:
    if isinstance(data, list):
        secret_bytes = bytes(data)
    elif isinstance(data, dict) and "secretKey" in data:
        secret_bytes = bytes(data["secretKey"])
    else:
        raise RuntimeError(f"Unsupported keypair format in {source}")
    try:
        return SoldersKeypair.from_bytes(secret_bytes)
    except Exception as exc:  # noqa: BLE001
        raise RuntimeError(f"Failed to parse keypair from {source}: {exc}") from exc


def load_keypair(cfg: Settings) -> SoldersKeypair:
    """Service keypair from WALLET_PRIVATE_KEY, WALLET_KEYPAIR_PATH or a throwaway one."""
    if cfg.wallet_private_key:
        try:
            data = json.loads(cfg.wallet_private_key)
        except ValueError as exc:
            raise RuntimeError(f"WALLET_PRIVATE_KEY is not valid JSON: {exc}") from exc
        return _keypair_from_json(data, "WALLET_PRIVATE_KEY")
    if cfg.wallet_keypair_path:
        path = cfg.wallet_keypair_path
        if not os.path.exists(path):
            raise RuntimeError(f"Wallet keypair file not found: {path}")
        with open(path, "r", encoding="utf-8") as fh:
            data = json.load(fh)
        return _keypair_from_json(data, path)
    keypair = SoldersKeypair()
    logger.warning(
        "wallet_ephemeral pubkey=%s; set WALLET_PRIVATE_KEY or WALLET_KEYPAIR_PATH to use a funded wallet",
        keypair.pubkey(),
    )
    return keypair


def build_operations(cfg: Settings) -> ProphetOperations:
    if not cfg.program_id:
        raise RuntimeError("PROGRAM_ID not configured")
    client = AsyncClient(cfg.solana_rpc, commitment=Confirmed, timeout=cfg.rpc_timeout_seconds)
    gateway = ChainGateway(
        client,
        load_keypair(cfg),
        Pubkey.from_string(cfg.program_id),
        min_payer_balance=cfg.min_payer_balance_lamports,
        low_balance_warning=cfg.low_balance_warning_lamports,
        confirm_timeout=cfg.confirm_timeout_seconds,
        poll_interval=cfg.confirm_poll_seconds,
        endpoint=cfg.solana_rpc,
    )
    catalog = CardCatalog(gateway, range_concurrency=cfg.range_fetch_concurrency)
    return ProphetOperations(gateway, catalog, network=cfg.solana_network)


def get_operations(request: Request) -> ProphetOperations:
    return request.app.state.operations


def ok(data=None, message: Optional[str] = None) -> dict:
    body = {"success": True}
    if message:
        body["message"] = message
    body["data"] = data
    return body


class CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class InitializePlatformRequest(CamelModel):
    platform_fee_rate: int = Field(DEFAULT_PLATFORM_FEE_RATE, alias="platformFeeRate")
    creator_reward_rate: int = Field(DEFAULT_CREATOR_REWARD_RATE, alias="creatorRewardRate")


class CreateCardRequest(CamelModel):
    card_id: int = Field(alias="cardId")
    asset_symbol: str = Field(alias="assetSymbol")
    current_price: int = Field(alias="currentPrice")
    deadline: int
    min_bet_amount: int = Field(DEFAULT_MIN_BET_LAMPORTS, alias="minBetAmount")
    image_uri: str = Field("", alias="imageUri")
    description: str = ""
    creator_public_key: Optional[str] = Field(None, alias="creatorPublicKey")


class PlaceBetRequest(CamelModel):
    card_id: int = Field(alias="cardId")
    predicted_price: int = Field(alias="predictedPrice")
    bet_amount: int = Field(alias="betAmount")
    user_public_key: str = Field(alias="userPublicKey")


class SettleCardRequest(CamelModel):
    actual_price: int = Field(alias="actualPrice")


class DistributeRewardsRequest(CamelModel):
    winner_public_key: str = Field(alias="winnerPublicKey")


app = FastAPI(title="Prophet Betting API", version="1.0.0")
router = APIRouter(prefix=API_PREFIX)


@app.on_event("startup")
async def startup_event():
    operations = build_operations(settings)
    app.state.operations = operations
    logger.info(
        "startup network=%s rpc=%s program=%s wallet=%s",
        settings.solana_network,
        settings.solana_rpc,
        operations.program_id,
        operations.gateway.payer_pubkey,
    )
    await operations.gateway.check_connection()


@app.on_event("shutdown")
async def shutdown_event():
    operations = getattr(app.state, "operations", None)
    if operations is not None:
        await operations.gateway.close()


@app.middleware("http")
async def log_requests(request: Request, call_next):
    start = time.perf_counter()
    response = await call_next(request)
    logger.info(
        "request method=%s path=%s status=%s ms=%.0f",
        request.method,
        request.url.path,
        response.status_code,
        (time.perf_counter() - start) * 1000,
    )
    return response


@app.exception_handler(ProphetError)
async def prophet_error_handler(request: Request, exc: ProphetError) -> JSONResponse:
    if exc.http_status >= 500:
        logger.error("request_failed path=%s op=%s error=%s", request.url.path, exc.operation, exc.message)
    return JSONResponse(status_code=exc.http_status, content=exc.to_dict())


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    problems = []
    for err in exc.errors():
        where = ".".join(str(part) for part in err.get("loc", ()) if part != "body")
        problems.append(f"{where}: {err.get('msg')}" if where else str(err.get("msg")))
    message = "Invalid request: " + "; ".join(problems)
    return JSONResponse(status_code=400, content={"success": False, "message": message})


@app.exception_handler(StarletteHTTPException)
async def http_error_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    message = f"Route not found: {request.method} {request.url.path}" if exc.status_code == 404 else str(exc.detail)
    return JSONResponse(status_code=exc.status_code, content={"success": False, "message": message})


@app.get("/")
def index():
    return {
        "message": "Prophet Betting API Server",
        "version": app.version,
        "endpoints": {
            "health": f"GET {API_PREFIX}/health",
            "status": f"GET {API_PREFIX}/status",
            "initialize": f"POST {API_PREFIX}/platform/initialize",
            "platformInfo": f"GET {API_PREFIX}/platform/info",
            "createCard": f"POST {API_PREFIX}/prediction-card",
            "buildCreateCard": f"POST {API_PREFIX}/prediction-card/build",
            "getCard": f"GET {API_PREFIX}/prediction-card/:cardId",
            "settleCard": f"POST {API_PREFIX}/prediction-card/:cardId/settle",
            "distributeRewards": f"POST {API_PREFIX}/prediction-card/:cardId/distribute",
            "placeBet": f"POST {API_PREFIX}/bet",
            "buildPlaceBet": f"POST {API_PREFIX}/bet/build",
            "getUserBet": f"GET {API_PREFIX}/bet/:cardId/:userPublicKey",
            "markWinner": f"POST {API_PREFIX}/bet/:cardId/:userPublicKey/winner",
            "getBalance": f"GET {API_PREFIX}/balance/:publicKey",
            "cards": f"GET {API_PREFIX}/cards",
            "activeCards": f"GET {API_PREFIX}/cards/active",
            "cardsByCreator": f"GET {API_PREFIX}/cards/creator/:creatorPublicKey",
            "searchCards": f"GET {API_PREFIX}/cards/search?q=",
            "cardsByRange": f"GET {API_PREFIX}/cards/range/:startId/:endId",
            "cardStats": f"GET {API_PREFIX}/cards/stats",
        },
    }


@router.get("/health")
async def health(ops: ProphetOperations = Depends(get_operations)):
    return ok(await ops.health(), message="Prophet Betting API is running")


@router.get("/status")
async def system_status(ops: ProphetOperations = Depends(get_operations)):
    return ok(await ops.get_system_status())


@router.post("/platform/initialize")
async def initialize_platform(
    req: Optional[InitializePlatformRequest] = None,
    ops: ProphetOperations = Depends(get_operations),
):
    req = req or InitializePlatformRequest()
    result = await ops.initialize_platform(req.platform_fee_rate, req.creator_reward_rate)
    return ok(result, message="Platform initialized")


@router.get("/platform/info")
async def platform_info(ops: ProphetOperations = Depends(get_operations)):
    return ok(await ops.get_platform_info())


@router.post("/prediction-card")
async def create_card(req: CreateCardRequest, ops: ProphetOperations = Depends(get_operations)):
    result = await ops.create_card(
        req.card_id,
        req.asset_symbol,
        req.current_price,
        req.deadline,
        min_bet_amount=req.min_bet_amount,
        image_uri=req.image_uri,
        description=req.description,
        creator=req.creator_public_key,
    )
    return ok(result, message="Prediction card created")


@router.post("/prediction-card/build")
async def build_create_card(req: CreateCardRequest, ops: ProphetOperations = Depends(get_operations)):
    if not req.creator_public_key:
        raise ValidationError("creatorPublicKey is required to build a transaction for wallet signing")
    result = await ops.build_create_card_transaction(
        req.card_id,
        req.asset_symbol,
        req.current_price,
        req.deadline,
        req.creator_public_key,
        min_bet_amount=req.min_bet_amount,
        image_uri=req.image_uri,
        description=req.description,
    )
    return ok(result)


@router.get("/prediction-card/{cardId}")
async def get_card(cardId: int, ops: ProphetOperations = Depends(get_operations)):
    return ok(await ops.get_card(cardId))


@router.post("/prediction-card/{cardId}/settle")
async def settle_card(cardId: int, req: SettleCardRequest, ops: ProphetOperations = Depends(get_operations)):
    return ok(await ops.settle_card(cardId, req.actual_price), message="Prediction card settled")


@router.post("/prediction-card/{cardId}/distribute")
async def distribute_rewards(
    cardId: int,
    req: DistributeRewardsRequest,
    ops: ProphetOperations = Depends(get_operations),
):
    return ok(await ops.distribute_rewards(cardId, req.winner_public_key), message="Rewards distributed")


@router.post("/bet")
async def place_bet(req: PlaceBetRequest, ops: ProphetOperations = Depends(get_operations)):
    result = await ops.place_bet(req.card_id, req.predicted_price, req.bet_amount, req.user_public_key)
    return ok(result, message="Bet placed")


@router.post("/bet/build")
async def build_place_bet(req: PlaceBetRequest, ops: ProphetOperations = Depends(get_operations)):
    result = await ops.build_place_bet_transaction(
        req.card_id, req.predicted_price, req.bet_amount, req.user_public_key
    )
    return ok(result)


@router.get("/bet/{cardId}/{userPublicKey}")
async def get_user_bet(cardId: int, userPublicKey: str, ops: ProphetOperations = Depends(get_operations)):
    return ok(await ops.get_user_bet(cardId, userPublicKey))


@router.post("/bet/{cardId}/{userPublicKey}/winner")
async def mark_winner(cardId: int, userPublicKey: str, ops: ProphetOperations = Depends(get_operations)):
    return ok(await ops.mark_winner(cardId, userPublicKey), message="Bet marked as winner")


@router.get("/balance/{publicKey}")
async def get_balance(publicKey: str, ops: ProphetOperations = Depends(get_operations)):
    return ok(await ops.get_balance(publicKey))


@router.get("/cards")
async def list_cards(
    limit: int = DEFAULT_LIMIT,
    offset: int = 0,
    includeSettled: bool = True,
    sortBy: str = "createdAt",
    sortOrder: str = "desc",
    status: Optional[str] = None,
    ops: ProphetOperations = Depends(get_operations),
):
    if status is not None and status not in CARD_STATUSES:
        raise ValidationError(f"status must be one of {', '.join(CARD_STATUSES)}, got {status!r}")
    result = await ops.list_cards(limit, offset, includeSettled, sortBy, sortOrder)
    # Applied to the already paginated page; pagination and stats still describe the unfiltered set.
    if status and status != "all":
        result["cards"] = [card for card in result["cards"] if card["status"] == status]
    return ok(result)


@router.get("/cards/active")
async def active_cards(limit: int = DEFAULT_LIMIT, ops: ProphetOperations = Depends(get_operations)):
    cards = await ops.active_cards(limit)
    return ok({"cards": cards, "count": len(cards)})


@router.get("/cards/creator/{creatorPublicKey}")
async def cards_by_creator(
    creatorPublicKey: str,
    limit: int = DEFAULT_LIMIT,
    ops: ProphetOperations = Depends(get_operations),
):
    cards = await ops.cards_by_creator(creatorPublicKey, limit)
    return ok({"creator": creatorPublicKey, "cards": cards, "count": len(cards)})


@router.get("/cards/search")
async def search_cards(
    q: Optional[str] = None,
    limit: int = DEFAULT_LIMIT,
    ops: ProphetOperations = Depends(get_operations),
):
    cards = await ops.search_cards(q, limit)
    return ok({"query": q, "cards": cards, "count": len(cards)})


@router.get("/cards/range/{startId}/{endId}")
async def cards_by_range(startId: int, endId: int, ops: ProphetOperations = Depends(get_operations)):
    return ok(await ops.cards_by_range(startId, endId))


@router.get("/cards/stats")
async def card_stats(ops: ProphetOperations = Depends(get_operations)):
    return ok(await ops.card_stats())


app.include_router(router)
