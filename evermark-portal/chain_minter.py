"""
Chain Minter — fee discovery, affordability, submission and receipt parsing.

States (``MintState``):

    validating_config -> validating_account -> validating_params
      -> discovering_fee -> checking_paused -> checking_affordability
      -> submitting -> awaiting_receipt -> parsing_receipt -> done

Any state may end in ``ChainError``. Errors raised before ``submitting`` have
no side effects. Errors raised after broadcast always carry the tx hash,
including a broadcast whose node answer was lost.

The submission itself is never retried: a slow transaction that is retried is
a double mint. View calls are retried inside the fan-out helper.
"""

from __future__ import annotations

import asyncio
import logging
import re
import time
from enum import Enum
from typing import Callable, Optional

from eth_utils import to_checksum_address

from errors import ChainError, ChainErrorKind
from evermark_contract import TRANSFER_EVENT_TOPIC, EvermarkContract
from fanout import FallbackRead, read_all
from models import BatchMintItem, BatchMintReceipt, ContractInfo, MintReceipt

logger = logging.getLogger("evermark-portal.chain")

# Last known-good MINTING_FEE (0.001 ETH); used when the fee read fails
FALLBACK_MINTING_FEE_WEI = 1_000_000_000_000_000
FALLBACK_REFERRAL_PERCENTAGE = 10
FALLBACK_MAX_BATCH_SIZE = 10
GAS_BUFFER_WEI = 1_000_000_000_000_000
MAX_TITLE_LENGTH = 100

RECEIPT_TIMEOUT_SECONDS = 120.0
RECEIPT_POLL_INTERVAL = 2.0

ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"
_ADDRESS_RE = re.compile(r"^0x[0-9a-fA-F]{40}$")
_UNSAFE_CHARS = re.compile(r"[^\x20-\x7E]")


class MintState(str, Enum):
    VALIDATING_CONFIG = "validating_config"
    VALIDATING_ACCOUNT = "validating_account"
    VALIDATING_PARAMS = "validating_params"
    DISCOVERING_FEE = "discovering_fee"
    CHECKING_PAUSED = "checking_paused"
    CHECKING_AFFORDABILITY = "checking_affordability"
    SUBMITTING = "submitting"
    AWAITING_RECEIPT = "awaiting_receipt"
    PARSING_RECEIPT = "parsing_receipt"
    DONE = "done"


def is_address(value: Optional[str]) -> bool:
    return bool(value) and bool(_ADDRESS_RE.match(value))


def clean_param(value: str, max_length: Optional[int] = None) -> str:
    """Trim and drop non-printable / non-ASCII characters before ABI encoding."""
    cleaned = _UNSAFE_CHARS.sub("", value or "").strip()
    if max_length is not None:
        cleaned = cleaned[:max_length].rstrip()
    return cleaned


def classify_chain_error(exc: BaseException | str) -> ChainErrorKind:
    """Map a transport/wallet error message onto the chain error taxonomy."""
    if isinstance(exc, str):
        text = exc.lower()
    else:
        text = f"{type(exc).__name__} {exc}".lower()
        if getattr(exc, "code", None) == 4001:
            return ChainErrorKind.USER_REJECTED

    if "insufficient funds" in text:
        return ChainErrorKind.INSUFFICIENT_FUNDS
    if "user rejected" in text or "user denied" in text or "denied" in text:
        return ChainErrorKind.USER_REJECTED
    if "nonce" in text:
        return ChainErrorKind.NONCE_ERROR
    if "paused" in text:
        return ChainErrorKind.CONTRACT_PAUSED
    if "network" in text or "connect" in text or "timeout" in text or "timed out" in text:
        return ChainErrorKind.NETWORK_ERROR
    return ChainErrorKind.UNKNOWN


def _mint_token_ids(receipt: dict) -> list[tuple[dict, str]]:
    """(log, token id) for every mint Transfer in the receipt, in log order.

    A mint is a Transfer whose indexed ``from`` (topic 1) is the zero address;
    the token id is topic 3.
    """
    found = []
    for log in receipt.get("logs") or []:
        topics = log.get("topics") or []
        if len(topics) < 4 or str(topics[0]).lower() != TRANSFER_EVENT_TOPIC:
            continue
        try:
            if int(str(topics[1]), 16) != 0:
                continue
            found.append((log, str(int(str(topics[3]), 16))))
        except ValueError:
            continue
    return found


def _from_contract(candidates: list[tuple[dict, str]], contract_address: Optional[str]) -> list[tuple[dict, str]]:
    if not contract_address:
        return candidates
    own = [c for c in candidates if str(c[0].get("address", "")).lower() == contract_address.lower()]
    return own or candidates


def extract_token_id(receipt: dict, contract_address: Optional[str] = None) -> Optional[str]:
    """Token id from the mint Transfer log of a receipt, or None.

    When several mints appear, a log emitted by ``contract_address`` wins.
    """
    candidates = _from_contract(_mint_token_ids(receipt), contract_address)
    return candidates[0][1] if candidates else None


def extract_token_ids(receipt: dict, contract_address: Optional[str] = None) -> list[str]:
    """Every minted token id, restricted to ``contract_address`` logs when it emitted any."""
    return [token_id for _, token_id in _from_contract(_mint_token_ids(receipt), contract_address)]


def _hex_int(value) -> Optional[int]:
    if value is None:
        return None
    if isinstance(value, int):
        return value
    try:
        return int(str(value), 16)
    except ValueError:
        return None


class ChainMinter:
    """Runs one mint through the state machine.

    Args:
        contract: EvermarkContract bound to the deployed address (None when
            unconfigured).
        signer: object exposing ``address`` and ``send_transaction(to, data, value)``.
    """

    def __init__(
        self,
        contract: Optional[EvermarkContract],
        signer,
        receipt_timeout: float = RECEIPT_TIMEOUT_SECONDS,
        poll_interval: float = RECEIPT_POLL_INTERVAL,
        read_retry_delay: float = 0.5,
    ):
        self.contract = contract
        self.signer = signer
        self.receipt_timeout = receipt_timeout
        self.poll_interval = poll_interval
        self.read_retry_delay = read_retry_delay

    @property
    def is_configured(self) -> bool:
        return (
            self.contract is not None
            and is_address(self.contract.address)
            and self.signer is not None
        )

    async def contract_info(self) -> ContractInfo:
        """Fee, paused flag, supply, referral share and batch limit; each read falls back independently."""
        self._require_contract()
        c = self.contract
        reads = await read_all(
            FallbackRead("fee", c.minting_fee, default=FALLBACK_MINTING_FEE_WEI),
            FallbackRead("paused", c.is_paused, default=False),
            FallbackRead("supply", c.total_supply, default=0),
            FallbackRead("referral", c.referral_percentage, default=FALLBACK_REFERRAL_PERCENTAGE),
            FallbackRead("max_batch", c.max_batch_size, default=FALLBACK_MAX_BATCH_SIZE),
            retry_delay=self.read_retry_delay,
        )
        return ContractInfo(
            minting_fee_wei=reads["fee"].value,
            is_paused=reads["paused"].value,
            total_supply=reads["supply"].value,
            referral_percentage=reads["referral"].value,
            max_batch_size=reads["max_batch"].value,
            fallbacks=[name for name, r in reads.items() if r.used_fallback],
        )

    async def mint(
        self,
        metadata_uri: str,
        title: str,
        creator: str,
        referrer: Optional[str] = None,
        on_state: Optional[Callable[[MintState], None]] = None,
    ) -> MintReceipt:
        run = _MintRun(on_state)
        account = self._validate_signer(run)

        run.enter(MintState.VALIDATING_PARAMS)
        clean_uri, clean_title, clean_creator = self._clean_item(metadata_uri, title, creator, run)
        self._check_referrer(referrer, run)
        use_referral = self._use_referral(referrer, account)

        run.enter(MintState.DISCOVERING_FEE)
        c = self.contract
        reads = await read_all(
            FallbackRead("fee", c.minting_fee, default=FALLBACK_MINTING_FEE_WEI),
            FallbackRead("paused", c.is_paused, default=False),
            FallbackRead("balance", lambda: c.native_balance(account), default=None),
            FallbackRead("supply", c.total_supply, default=0),
            retry_delay=self.read_retry_delay,
        )
        fee = reads["fee"].value
        if reads["fee"].used_fallback:
            logger.warning("Minting fee read failed, using fallback %d wei", fee)

        run.enter(MintState.CHECKING_PAUSED)
        if reads["paused"].value:
            raise ChainError(ChainErrorKind.CONTRACT_PAUSED, state=run.value)

        run.enter(MintState.CHECKING_AFFORDABILITY)
        if not self._can_afford(reads["balance"].value, fee):
            raise ChainError(ChainErrorKind.INSUFFICIENT_FUNDS, state=run.value)

        run.enter(MintState.SUBMITTING)
        if use_referral:
            data = c.encode_mint_with_referral(
                clean_uri, clean_title, clean_creator, to_checksum_address(referrer.strip()),
            )
        else:
            data = c.encode_mint(clean_uri, clean_title, clean_creator)
        tx_hash = await self._submit(data, fee, run.value, "Mint")
        logger.info(
            "Mint submitted tx=%s referral=%s fee=%d supply_before=%s",
            tx_hash, use_referral, fee, reads["supply"].value,
        )

        receipt = await self._confirm(tx_hash, run)
        token_id = extract_token_id(receipt, c.address)
        warning = None
        if token_id is None:
            warning = "Mint confirmed but token id could not be read from the receipt logs"
            logger.warning("%s (tx=%s)", warning, tx_hash)

        run.enter(MintState.DONE)
        return MintReceipt(
            tx_hash=tx_hash,
            token_id=token_id,
            block_number=_hex_int(receipt.get("blockNumber")),
            gas_used=_hex_int(receipt.get("gasUsed")),
            warning=warning,
        )

    async def batch_mint(
        self,
        items: list[BatchMintItem],
        referrer: Optional[str] = None,
        on_state: Optional[Callable[[MintState], None]] = None,
    ) -> BatchMintReceipt:
        """Mint several Evermarks in one transaction paying ``fee * len(items)``.

        The contract always takes a referrer address; without a distinct one
        the signer's own address is sent.
        """
        run = _MintRun(on_state)
        account = self._validate_signer(run)

        run.enter(MintState.VALIDATING_PARAMS)
        if not items:
            raise ChainError(ChainErrorKind.INVALID_PARAMS, "No evermarks to mint", state=run.value)
        cleaned = [self._clean_item(i.metadata_uri, i.title, i.creator, run) for i in items]
        self._check_referrer(referrer, run)
        referral = to_checksum_address(referrer.strip()) if self._use_referral(referrer, account) else account

        run.enter(MintState.DISCOVERING_FEE)
        c = self.contract
        reads = await read_all(
            FallbackRead("fee", c.minting_fee, default=FALLBACK_MINTING_FEE_WEI),
            FallbackRead("paused", c.is_paused, default=False),
            FallbackRead("balance", lambda: c.native_balance(account), default=None),
            FallbackRead("max_batch", c.max_batch_size, default=FALLBACK_MAX_BATCH_SIZE),
            retry_delay=self.read_retry_delay,
        )
        max_batch = reads["max_batch"].value
        if len(items) > max_batch:
            raise ChainError(
                ChainErrorKind.INVALID_PARAMS,
                f"Maximum {max_batch} evermarks per batch",
                state=run.value,
            )
        total_fee = reads["fee"].value * len(items)

        run.enter(MintState.CHECKING_PAUSED)
        if reads["paused"].value:
            raise ChainError(ChainErrorKind.CONTRACT_PAUSED, state=run.value)

        run.enter(MintState.CHECKING_AFFORDABILITY)
        if not self._can_afford(reads["balance"].value, total_fee):
            raise ChainError(
                ChainErrorKind.INSUFFICIENT_FUNDS,
                "Insufficient funds for batch minting fee and gas",
                state=run.value,
            )

        run.enter(MintState.SUBMITTING)
        uris, titles, creators = (list(column) for column in zip(*cleaned))
        data = c.encode_mint_batch(uris, titles, creators, referral)
        tx_hash = await self._submit(data, total_fee, run.value, "Batch mint")
        logger.info("Batch mint submitted tx=%s count=%d fee=%d", tx_hash, len(items), total_fee)

        receipt = await self._confirm(tx_hash, run)
        token_ids = extract_token_ids(receipt, c.address)
        warning = None
        if len(token_ids) != len(items):
            warning = f"Batch confirmed but {len(token_ids)} of {len(items)} token ids were read from the receipt logs"
            logger.warning("%s (tx=%s)", warning, tx_hash)

        run.enter(MintState.DONE)
        return BatchMintReceipt(
            tx_hash=tx_hash,
            token_ids=token_ids,
            block_number=_hex_int(receipt.get("blockNumber")),
            gas_used=_hex_int(receipt.get("gasUsed")),
            warning=warning,
        )

    async def pending_referral_payment(self, address: str) -> int:
        self._require_contract()
        if not is_address(address):
            raise ChainError(ChainErrorKind.INVALID_ACCOUNT)
        try:
            return await self.contract.pending_referral_payment(address)
        except Exception as exc:
            raise ChainError(classify_chain_error(exc), detail=str(exc)) from exc

    async def claim_referral_payment(self) -> MintReceipt:
        """Withdraw accrued referral fees for the signer account."""
        self._require_contract()
        if self.signer is None or not is_address(getattr(self.signer, "address", "")):
            raise ChainError(ChainErrorKind.INVALID_ACCOUNT)
        tx_hash = await self._submit(self.contract.encode_claim_referral(), 0, "", "Referral claim")
        receipt = await self._wait_for_receipt(tx_hash, MintState.AWAITING_RECEIPT.value)
        if _hex_int(receipt.get("status")) == 0:
            raise ChainError(ChainErrorKind.TRANSACTION_REVERTED, tx_hash=tx_hash)
        return MintReceipt(
            tx_hash=tx_hash,
            block_number=_hex_int(receipt.get("blockNumber")),
            gas_used=_hex_int(receipt.get("gasUsed")),
        )

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _require_contract(self):
        if self.contract is None or not is_address(self.contract.address):
            raise ChainError(
                ChainErrorKind.INVALID_CONFIG,
                detail="contract address missing or malformed",
                state=MintState.VALIDATING_CONFIG.value,
            )

    def _validate_signer(self, run: "_MintRun") -> str:
        run.enter(MintState.VALIDATING_CONFIG)
        self._require_contract()
        if self.signer is None:
            raise ChainError(ChainErrorKind.INVALID_CONFIG, detail="no signer configured", state=run.value)

        run.enter(MintState.VALIDATING_ACCOUNT)
        account = getattr(self.signer, "address", "")
        if not is_address(account):
            raise ChainError(ChainErrorKind.INVALID_ACCOUNT, state=run.value)
        return account

    @staticmethod
    def _clean_item(metadata_uri: str, title: str, creator: str, run: "_MintRun") -> tuple[str, str, str]:
        clean_uri = clean_param(metadata_uri)
        clean_title = clean_param(title, MAX_TITLE_LENGTH)
        clean_creator = clean_param(creator)
        if not clean_uri or not clean_title or not clean_creator:
            raise ChainError(ChainErrorKind.INVALID_PARAMS, state=run.value)
        return clean_uri, clean_title, clean_creator

    @staticmethod
    def _check_referrer(referrer: Optional[str], run: "_MintRun"):
        if referrer and not is_address(referrer.strip()):
            raise ChainError(ChainErrorKind.INVALID_PARAMS, "Invalid referrer address", state=run.value)

    @staticmethod
    def _use_referral(referrer: Optional[str], account: str) -> bool:
        if not referrer:
            return False
        ref = referrer.strip().lower()
        return ref != account.lower() and ref != ZERO_ADDRESS

    @staticmethod
    def _can_afford(balance: Optional[int], fee: int) -> bool:
        if balance is None:
            logger.warning("Balance unavailable, refusing to mint on an unknown balance")
            return False
        required = fee + GAS_BUFFER_WEI
        logger.info("Balance check: balance=%d required=%d", balance, required)
        return balance >= required

    async def _submit(self, data: str, value: int, state: str, label: str) -> str:
        """Send once. A failure that still knows its tx hash counts as broadcast."""
        try:
            return await self.signer.send_transaction(self.contract.address, data, value)
        except Exception as exc:
            kind = classify_chain_error(exc)
            tx_hash = getattr(exc, "tx_hash", None)
            if tx_hash:
                logger.error("%s %s sent but unconfirmed (%s): %s", label, tx_hash, kind.value, exc)
            else:
                logger.error("%s submission failed (%s): %s", label, kind.value, exc)
            raise ChainError(kind, tx_hash=tx_hash, state=state, detail=str(exc)) from exc

    async def _confirm(self, tx_hash: str, run: "_MintRun") -> dict:
        run.enter(MintState.AWAITING_RECEIPT)
        receipt = await self._wait_for_receipt(tx_hash, run.value)

        run.enter(MintState.PARSING_RECEIPT)
        if _hex_int(receipt.get("status")) == 0:
            raise ChainError(ChainErrorKind.TRANSACTION_REVERTED, tx_hash=tx_hash, state=run.value)
        return receipt

    async def _wait_for_receipt(self, tx_hash: str, state: str) -> dict:
        deadline = time.monotonic() + self.receipt_timeout
        while True:
            try:
                receipt = await self.contract.get_receipt(tx_hash)
                if receipt:
                    return receipt
            except Exception as exc:
                logger.warning("Receipt poll for %s failed: %s", tx_hash, exc)
            if time.monotonic() >= deadline:
                logger.error("No receipt for %s after %.0fs", tx_hash, self.receipt_timeout)
                raise ChainError(ChainErrorKind.RECEIPT_TIMEOUT, tx_hash=tx_hash, state=state)
            await asyncio.sleep(self.poll_interval)


class _MintRun:
    """Current state of one mint, reported to an optional observer."""

    def __init__(self, on_state: Optional[Callable[[MintState], None]]):
        self.on_state = on_state
        self.state = MintState.VALIDATING_CONFIG

    @property
    def value(self) -> str:
        return self.state.value

    def enter(self, state: MintState):
        self.state = state
        logger.debug("mint state -> %s", state.value)
        if self.on_state:
            self.on_state(state)
