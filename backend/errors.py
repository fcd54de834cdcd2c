"""Error taxonomy for the Prophet backend.

Every failure that leaves an operation is a ``ProphetError``; the HTTP layer
turns it into ``{"success": false, "message": ..., "operation": ...}`` using
``http_status``.
"""
from typing import Dict, Optional, Tuple


class ProphetError(Exception):
    http_status = 500

    def __init__(self, message: str, operation: Optional[str] = None) -> None:
        self.message = message
        self.operation = operation
        super().__init__(message)

    def to_dict(self) -> dict:
        body = {"success": False, "message": self.message}
        if self.operation:
            body["operation"] = self.operation
        return body


class ValidationError(ProphetError):
    http_status = 400


class NotFoundError(ProphetError):
    http_status = 404

    def __init__(self, kind: str, address: str) -> None:
        self.kind = kind
        self.address = address
        super().__init__(f"{kind} account does not exist: {address}")


class AlreadyExistsError(ProphetError):
    pass


class AlreadyInitializedError(AlreadyExistsError):
    def __init__(self, address: str) -> None:
        super().__init__(f"Platform already initialized at {address}")


class PlatformNotInitializedError(ProphetError):
    def __init__(self) -> None:
        super().__init__("Platform is not initialized; call platform/initialize first")


class InsufficientFundsError(ProphetError):
    def __init__(self, balance: int, required: int) -> None:
        self.balance = balance
        self.required = required
        super().__init__(
            f"Payer balance {balance} lamports must exceed the {required} lamport reserve for transaction fees"
        )


class SubmissionError(ProphetError):
    def __init__(self, message: str, code: int = -1, name: str = "UnknownError") -> None:
        self.code = code
        self.name = name
        super().__init__(message)

    def to_dict(self) -> dict:
        body = super().to_dict()
        body["error"] = {"code": self.code, "name": self.name}
        return body


class ConfirmationTimeoutError(ProphetError):
    def __init__(self, signature: str, timeout: float) -> None:
        self.signature = signature
        super().__init__(
            f"Transaction {signature} not confirmed within {timeout:g}s; it may still land"
        )


class NetworkError(ProphetError):
    pass


class InvalidRangeError(ProphetError):
    http_status = 400


class InvalidQueryError(ProphetError):
    http_status = 400


# Published error table of the on-chain program (Anchor custom errors start at 6000).
PROGRAM_ERRORS: Dict[int, Tuple[str, str]] = {
    6000: ("InvalidDeadline", "Invalid deadline: must be in the future"),
    6001: ("InvalidBetAmount", "Invalid bet amount: must be greater than 0"),
    6002: ("CardAlreadySettled", "Prediction card already settled"),
    6003: ("DeadlinePassed", "Deadline has passed: betting is closed"),
    6004: ("BetTooLow", "Bet amount is below the card minimum"),
    6005: ("DeadlineNotReached", "Deadline not reached: cannot settle yet"),
    6006: ("CardNotSettled", "Prediction card not settled: cannot distribute rewards"),
    6007: ("InvalidPrediction", "Invalid predicted price: must be greater than 0"),
    6008: ("InvalidActualPrice", "Invalid actual price: must be greater than 0"),
    6009: ("InvalidPredictionType", "Prediction type does not match this operation"),
    6010: ("InvalidAssetSymbol", "Invalid asset symbol: must not be empty"),
    6011: ("InvalidCurrentPrice", "Invalid current price: must be greater than 0"),
    6012: ("FeeRateTooHigh", "Fee rate exceeds the maximum allowed"),
    6013: ("StringTooLong", "String exceeds the maximum length"),
    6014: ("MathOverflow", "Arithmetic overflow"),
}


def program_error(code: Optional[int], fallback: str) -> SubmissionError:
    """Map a program error code to a ``SubmissionError``."""
    if code is not None and code in PROGRAM_ERRORS:
        name, msg = PROGRAM_ERRORS[code]
        return SubmissionError(msg, code=code, name=name)
    return SubmissionError(fallback or "Unknown error", code=-1 if code is None else code)
