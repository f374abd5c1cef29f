"""
Error taxonomy for Evermark creation.

Every terminal failure of the creation pipeline is one of these exceptions.
Each carries a single human-readable ``message`` and, where one exists, the
transaction hash so the caller always has something concrete to investigate.
"""

from __future__ import annotations

from enum import Enum
from typing import Optional


class EvermarkError(Exception):
    """Base class for all creation pipeline failures."""

    def __init__(self, message: str, stage: str = ""):
        super().__init__(message)
        self.message = message
        self.stage = stage


class ValidationError(EvermarkError):
    """Input rejected before any network call."""

    def __init__(self, errors: list[dict], stage: str = "validating"):
        self.errors = errors
        summary = ", ".join(e["message"] for e in errors) or "Invalid input"
        super().__init__(f"Validation failed: {summary}", stage)


class ConfigurationError(EvermarkError):
    """Contract address, signer or storage client misconfigured."""


class StorageError(EvermarkError):
    """Image or metadata upload failure on a required backend."""

    def __init__(self, message: str, backend: str = "primary", stage: str = ""):
        super().__init__(message, stage)
        self.backend = backend


class PersistenceError(EvermarkError):
    """Index store write failed. Never fatal to a creation."""


class DuplicateError(EvermarkError):
    """Creation blocked by the duplicate guard."""

    def __init__(self, message: str, check, requires_override: bool = False):
        super().__init__(message, "checking_duplicates")
        self.check = check
        self.requires_override = requires_override


# ---------------------------------------------------------------------------
# Chain errors
# ---------------------------------------------------------------------------


class ChainErrorKind(str, Enum):
    INVALID_CONFIG = "InvalidConfig"
    INVALID_ACCOUNT = "InvalidAccount"
    INVALID_PARAMS = "InvalidParams"
    CONTRACT_PAUSED = "ContractPaused"
    INSUFFICIENT_FUNDS = "InsufficientFunds"
    USER_REJECTED = "UserRejected"
    NETWORK_ERROR = "NetworkError"
    NONCE_ERROR = "NonceError"
    UNKNOWN = "UnknownChainError"
    # Only reachable after broadcast; always carry a tx hash.
    RECEIPT_TIMEOUT = "ReceiptTimeout"
    TRANSACTION_REVERTED = "TransactionReverted"


CHAIN_ERROR_MESSAGES: dict[ChainErrorKind, str] = {
    ChainErrorKind.INVALID_CONFIG: "Blockchain service not configured",
    ChainErrorKind.INVALID_ACCOUNT: "Invalid account address provided",
    ChainErrorKind.INVALID_PARAMS: "Invalid minting parameters",
    ChainErrorKind.CONTRACT_PAUSED: "Contract is currently paused - minting is temporarily disabled",
    ChainErrorKind.INSUFFICIENT_FUNDS: "Insufficient funds for minting fee and gas",
    ChainErrorKind.USER_REJECTED: "Transaction was rejected by user",
    ChainErrorKind.NETWORK_ERROR: "Network error - please check your connection and try again",
    ChainErrorKind.NONCE_ERROR: "Transaction nonce error - please try again",
    ChainErrorKind.UNKNOWN: "Blockchain transaction failed",
    ChainErrorKind.RECEIPT_TIMEOUT: (
        "Transaction submitted but not confirmed in time - check the transaction hash on the explorer"
    ),
    ChainErrorKind.TRANSACTION_REVERTED: "Transaction was mined but reverted",
}


class ChainError(EvermarkError):
    """Mint step failure, classified into a ``ChainErrorKind``."""

    def __init__(
        self,
        kind: ChainErrorKind,
        message: Optional[str] = None,
        tx_hash: Optional[str] = None,
        state: str = "",
        detail: str = "",
    ):
        super().__init__(message or CHAIN_ERROR_MESSAGES[kind], state)
        self.kind = kind
        self.tx_hash = tx_hash
        self.detail = detail

    @property
    def submitted(self) -> bool:
        """True when the transaction left this process (funds may be spent)."""
        return bool(self.tx_hash)
