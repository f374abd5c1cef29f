"""
Evermark NFT contract surface.

View calls: MINTING_FEE, paused, totalSupply, REFERRAL_PERCENTAGE,
MAX_BATCH_SIZE, pendingReferralPayments. Payable writes: mintEvermark,
mintEvermarkWithReferral and mintEvermarkBatch. Payable-free write:
claimPendingReferralPayment.
"""

from __future__ import annotations

from eth_abi import decode, encode
from eth_utils import function_signature_to_4byte_selector

from chain_client import JsonRpcClient

MINTING_FEE = "MINTING_FEE()"
PAUSED = "paused()"
TOTAL_SUPPLY = "totalSupply()"
REFERRAL_PERCENTAGE = "REFERRAL_PERCENTAGE()"
MAX_BATCH_SIZE = "MAX_BATCH_SIZE()"
PENDING_REFERRAL_PAYMENTS = "pendingReferralPayments(address)"
MINT = "mintEvermark(string,string,string)"
MINT_WITH_REFERRAL = "mintEvermarkWithReferral(string,string,string,address)"
MINT_BATCH = "mintEvermarkBatch(string[],string[],string[],address)"
CLAIM_REFERRAL = "claimPendingReferralPayment()"

# keccak256("Transfer(address,address,uint256)")
TRANSFER_EVENT_TOPIC = "0xddf252ad1be2c89b69c2b068fc378daa952ba7f163c4a11628f55a4df523b3ef"


def encode_call(signature: str, types: list[str] | None = None, args: list | None = None) -> str:
    """ABI-encode a call as a 0x-prefixed hex string."""
    selector = function_signature_to_4byte_selector(signature)
    body = encode(types, args) if types else b""
    return "0x" + (selector + body).hex()


def _decode_hex(types: list[str], result: str) -> tuple:
    data = bytes.fromhex(result[2:] if result.startswith("0x") else result)
    return decode(types, data)


class EvermarkContract:
    """Read/encode helper bound to one deployed contract address."""

    def __init__(self, rpc: JsonRpcClient, address: str):
        self.rpc = rpc
        self.address = address

    async def _view_uint(self, signature: str, types: list[str] | None = None, args: list | None = None) -> int:
        result = await self.rpc.eth_call(self.address, encode_call(signature, types, args))
        return int(_decode_hex(["uint256"], result)[0])

    async def minting_fee(self) -> int:
        return await self._view_uint(MINTING_FEE)

    async def is_paused(self) -> bool:
        result = await self.rpc.eth_call(self.address, encode_call(PAUSED))
        return bool(_decode_hex(["bool"], result)[0])

    async def total_supply(self) -> int:
        return await self._view_uint(TOTAL_SUPPLY)

    async def referral_percentage(self) -> int:
        return await self._view_uint(REFERRAL_PERCENTAGE)

    async def max_batch_size(self) -> int:
        return await self._view_uint(MAX_BATCH_SIZE)

    async def pending_referral_payment(self, address: str) -> int:
        return await self._view_uint(PENDING_REFERRAL_PAYMENTS, ["address"], [address])

    async def native_balance(self, address: str) -> int:
        return await self.rpc.get_balance(address)

    async def get_receipt(self, tx_hash: str) -> dict | None:
        return await self.rpc.get_transaction_receipt(tx_hash)

    @staticmethod
    def encode_mint(metadata_uri: str, title: str, creator: str) -> str:
        return encode_call(MINT, ["string", "string", "string"], [metadata_uri, title, creator])

    @staticmethod
    def encode_mint_with_referral(metadata_uri: str, title: str, creator: str, referrer: str) -> str:
        return encode_call(
            MINT_WITH_REFERRAL,
            ["string", "string", "string", "address"],
            [metadata_uri, title, creator, referrer],
        )

    @staticmethod
    def encode_mint_batch(metadata_uris: list[str], titles: list[str], creators: list[str], referrer: str) -> str:
        return encode_call(
            MINT_BATCH,
            ["string[]", "string[]", "string[]", "address"],
            [metadata_uris, titles, creators, referrer],
        )

    @staticmethod
    def encode_claim_referral() -> str:
        return encode_call(CLAIM_REFERRAL)
