import asyncio
import logging
import re
from typing import Awaitable, List, Optional, TypeVar

import httpx
from solana.exceptions import SolanaRpcException
from solana.rpc.async_api import AsyncClient
from solana.rpc.commitment import Confirmed
from solana.rpc.core import RPCException
from solana.rpc.types import MemcmpOpts, TxOpts
from solders.hash import Hash
from solders.instruction import Instruction
from solders.keypair import Keypair
from solders.message import MessageV0
from solders.pubkey import Pubkey
from solders.signature import Signature
from solders.transaction import VersionedTransaction
from solders.transaction_status import TransactionConfirmationStatus

from accounts import PLATFORM_CONFIG, account_discriminator, lamports_to_sol, parse_account
from errors import (
    AlreadyExistsError,
    ConfirmationTimeoutError,
    InsufficientFundsError,
    NetworkError,
    NotFoundError,
    PlatformNotInitializedError,
    ProphetError,
    ValidationError,
    program_error,
)
from tx_builder import platform_config_pda, signer_keys, to_pubkey

logger = logging.getLogger("prophet.gateway")

T = TypeVar("T")

MIN_PAYER_BALANCE_LAMPORTS = 10_000_000  # 0.01 SOL
LOW_BALANCE_WARNING_LAMPORTS = 100_000_000  # 0.1 SOL
CONFIRMED_LEVELS = (TransactionConfirmationStatus.Confirmed, TransactionConfirmationStatus.Finalized)
# System program: AccountAlreadyInUse. Raised when an `init` target PDA is already allocated.
ACCOUNT_ALREADY_IN_USE = 0
ANCHOR_ERROR_NUMBER_RE = re.compile(r"Error Number: (\d+)")
CUSTOM_ERROR_RE = re.compile(r"custom program error: 0x([0-9a-fA-F]+)")
TRANSPORT_ERRORS = (SolanaRpcException, httpx.HTTPError, OSError)


def custom_error_code(err, logs: List[str]) -> Optional[int]:
    """Pull the custom program error code out of a transaction error or its logs."""
    inner = getattr(err, "err", None)
    code = getattr(inner, "code", None)
    if isinstance(code, int):
        return code
    for line in logs:
        match = ANCHOR_ERROR_NUMBER_RE.search(line)
        if match:
            return int(match.group(1))
        match = CUSTOM_ERROR_RE.search(line)
        if match:
            return int(match.group(1), 16)
    return None


def decode_transaction_error(err, logs: List[str], fallback: str) -> ProphetError:
    code = custom_error_code(err, logs)
    if code == ACCOUNT_ALREADY_IN_USE:
        return AlreadyExistsError("Derived account already exists on-chain")
    return program_error(code, fallback)


def decode_send_error(exc: RPCException) -> ProphetError:
    payload = exc.args[0] if exc.args else None
    message = getattr(payload, "message", None) or str(exc)
    data = getattr(payload, "data", None)
    logs = list(getattr(data, "logs", None) or [])
    return decode_transaction_error(getattr(data, "err", None), logs, message)


class ChainGateway:
    """Submits Prophet instructions and reads Prophet accounts over one RPC client.

    The client and payer keypair are created at process start and shared read-only
    across requests; nothing else is cached.
    """

    def __init__(
        self,
        client: AsyncClient,
        payer: Keypair,
        program_id: Pubkey,
        min_payer_balance: int = MIN_PAYER_BALANCE_LAMPORTS,
        low_balance_warning: int = LOW_BALANCE_WARNING_LAMPORTS,
        confirm_timeout: float = 30.0,
        poll_interval: float = 0.8,
        endpoint: str = "",
    ):
        self._client = client
        self._payer = payer
        self.program_id = program_id
        self.min_payer_balance = min_payer_balance
        self.low_balance_warning = low_balance_warning
        self.confirm_timeout = confirm_timeout
        self.poll_interval = poll_interval
        self.endpoint = endpoint

    @property
    def payer_pubkey(self) -> Pubkey:
        return self._payer.pubkey()

    async def _call(self, what: str, awaitable: Awaitable[T]) -> T:
        try:
            return await awaitable
        except RPCException as exc:
            raise NetworkError(f"RPC {what} rejected: {exc}") from exc
        except TRANSPORT_ERRORS as exc:
            raise NetworkError(f"RPC {what} failed: {exc}") from exc

    async def get_balance(self, key) -> int:
        pubkey = to_pubkey(key)
        resp = await self._call("getBalance", self._client.get_balance(pubkey, commitment=Confirmed))
        return int(resp.value)

    async def fetch_account(self, kind: str, address: Pubkey) -> dict:
        resp = await self._call("getAccountInfo", self._client.get_account_info(address, commitment=Confirmed))
        info = resp.value
        if info is None or info.data is None:
            raise NotFoundError(kind, str(address))
        if info.owner != self.program_id:
            raise ProphetError(f"Account {address} is not owned by program {self.program_id}")
        parsed = parse_account(kind, bytes(info.data))
        if parsed is None:
            raise ProphetError(f"Unable to parse {kind} account at {address}")
        parsed["pda"] = address
        return parsed

    async def account_exists(self, kind: str, address: Pubkey) -> bool:
        try:
            await self.fetch_account(kind, address)
        except NotFoundError:
            return False
        return True

    async def fetch_all_accounts(self, kind: str) -> List[dict]:
        """Every ``kind`` account owned by the program right now.

        getProgramAccounts is a full scan on the RPC node; its cost grows with the
        number of accounts of this type and there is no server-side paging.
        """
        memcmp = MemcmpOpts(offset=0, bytes=account_discriminator(kind))
        resp = await self._call(
            "getProgramAccounts",
            self._client.get_program_accounts(
                self.program_id,
                commitment=Confirmed,
                encoding="base64",
                filters=[memcmp],
            ),
        )
        out: List[dict] = []
        skipped = 0
        for acc in resp.value or []:
            info = acc.account
            if not info or info.owner != self.program_id:
                continue
            parsed = parse_account(kind, bytes(info.data))
            if parsed is None:
                skipped += 1
                continue
            parsed["pda"] = acc.pubkey
            out.append(parsed)
        if skipped:
            logger.warning("fetch_all_accounts kind=%s unparseable=%s", kind, skipped)
        return out

    async def latest_blockhash(self) -> str:
        resp = await self._call("getLatestBlockhash", self._client.get_latest_blockhash(commitment=Confirmed))
        return str(resp.value.blockhash)

    async def ensure_payer_funded(self) -> int:
        balance = await self.get_balance(self.payer_pubkey)
        if balance <= self.min_payer_balance:
            raise InsufficientFundsError(balance, self.min_payer_balance)
        return balance

    def check_signers(self, ix: Instruction, name: str) -> None:
        """Raise ``ValidationError`` if ``ix`` needs a signature other than the service keypair's."""
        foreign = [str(key) for key in signer_keys(ix) if key != self.payer_pubkey]
        if foreign:
            raise ValidationError(
                f"{name} must be signed by {', '.join(foreign)}, which this service does not hold; "
                "build the transaction for wallet signing instead"
            )

    async def submit(self, ix: Instruction, name: str, requires_platform: bool = False) -> str:
        """Sign ``ix`` with the service keypair, send it and wait for "confirmed"."""
        self.check_signers(ix, name)
        if requires_platform:
            config, _ = platform_config_pda(self.program_id)
            if not await self.account_exists(PLATFORM_CONFIG, config):
                raise PlatformNotInitializedError()
        await self.ensure_payer_funded()

        blockhash = await self.latest_blockhash()
        message = MessageV0.try_compile(self.payer_pubkey, [ix], [], Hash.from_string(blockhash))
        tx = VersionedTransaction(message, [self._payer])
        logger.info("submit ix=%s payer=%s blockhash=%s", name, self.payer_pubkey, blockhash)
        try:
            resp = await self._client.send_raw_transaction(
                bytes(tx), opts=TxOpts(skip_preflight=False, preflight_commitment=Confirmed)
            )
        except RPCException as exc:
            err = decode_send_error(exc)
            logger.warning("submit_rejected ix=%s error=%s", name, err.message)
            raise err from exc
        except TRANSPORT_ERRORS as exc:
            raise NetworkError(f"Failed to send {name}: {exc}") from exc
        signature = resp.value
        await self.wait_for_confirmation(signature)
        logger.info("submit_confirmed ix=%s signature=%s", name, signature)
        return str(signature)

    async def wait_for_confirmation(self, signature: Signature) -> None:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.confirm_timeout
        while True:
            resp = await self._call("getSignatureStatuses", self._client.get_signature_statuses([signature]))
            status = resp.value[0] if resp.value else None
            if status is not None:
                if status.err is not None:
                    raise decode_transaction_error(status.err, [], f"Transaction {signature} failed: {status.err}")
                if status.confirmation_status in CONFIRMED_LEVELS:
                    return
            if loop.time() >= deadline:
                raise ConfirmationTimeoutError(str(signature), self.confirm_timeout)
            await asyncio.sleep(self.poll_interval)

    async def check_connection(self) -> bool:
        try:
            version = await self._call("getVersion", self._client.get_version())
            balance = await self.get_balance(self.payer_pubkey)
        except ProphetError as exc:
            logger.error("solana_connection_failed error=%s", exc.message)
            return False
        logger.info(
            "solana_connected version=%s program=%s payer=%s balance_sol=%s",
            version.value.solana_core,
            self.program_id,
            self.payer_pubkey,
            lamports_to_sol(balance),
        )
        if balance < self.low_balance_warning:
            logger.warning("payer_balance_low balance_sol=%s", lamports_to_sol(balance))
        return True

    async def close(self) -> None:
        await self._client.close()
