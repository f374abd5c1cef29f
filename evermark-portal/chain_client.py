"""
Chain transport — JSON-RPC over httpx plus transaction signers.

Two signers are supported:
  - LocalAccountSigner: server-custodied minting key, signs with eth-account
    and broadcasts via ``eth_sendRawTransaction``.
  - WalletRpcSigner: delegates signing to a wallet endpoint via
    ``eth_sendTransaction``; the wallet owner may reject the prompt.

The chain node returns no structured error taxonomy, so errors surface as
``ChainRpcError`` carrying the node's message for pattern classification.
A broadcast that times out raises ``BroadcastError`` with the locally
computed tx hash, since the transaction may already be in the mempool.
"""

from __future__ import annotations

import itertools
import logging
from typing import Any, Optional

import httpx
from eth_account import Account
from eth_utils import to_checksum_address

logger = logging.getLogger("evermark-portal.chain.rpc")

RPC_TIMEOUT = 30.0
GAS_LIMIT_MULTIPLIER = 1.2


class ChainRpcError(Exception):
    """JSON-RPC error object returned by the node or wallet."""

    def __init__(self, message: str, code: Optional[int] = None, data: Any = None):
        super().__init__(message)
        self.code = code
        self.data = data


class BroadcastError(ChainRpcError):
    """A signed transaction was sent but the node's answer never arrived.

    The node may or may not have accepted it, so ``tx_hash`` (computed
    locally from the signed bytes) must be followed up on chain.
    """

    def __init__(self, message: str, tx_hash: str):
        super().__init__(message)
        self.tx_hash = tx_hash


class JsonRpcClient:
    """Minimal async JSON-RPC 2.0 client."""

    def __init__(self, rpc_url: str, timeout: float = RPC_TIMEOUT, client: Optional[httpx.AsyncClient] = None):
        self.rpc_url = rpc_url
        self._timeout = timeout
        self._client = client
        self._ids = itertools.count(1)

    async def request(self, method: str, params: Optional[list] = None) -> Any:
        payload = {
            "jsonrpc": "2.0",
            "id": next(self._ids),
            "method": method,
            "params": params or [],
        }
        if self._client is not None:
            resp = await self._client.post(self.rpc_url, json=payload)
        else:
            async with httpx.AsyncClient(timeout=self._timeout) as client:
                resp = await client.post(self.rpc_url, json=payload)

        if resp.status_code != 200:
            raise ChainRpcError(f"RPC network error: HTTP {resp.status_code} from {method}")

        body = resp.json()
        if "error" in body and body["error"]:
            err = body["error"]
            raise ChainRpcError(err.get("message", "Unknown RPC error"), err.get("code"), err.get("data"))
        return body.get("result")

    async def eth_call(self, to: str, data: str) -> str:
        return await self.request("eth_call", [{"to": to, "data": data}, "latest"])

    async def get_balance(self, address: str) -> int:
        return int(await self.request("eth_getBalance", [address, "latest"]), 16)

    async def get_transaction_receipt(self, tx_hash: str) -> Optional[dict]:
        return await self.request("eth_getTransactionReceipt", [tx_hash])


# ---------------------------------------------------------------------------
# Signers
# ---------------------------------------------------------------------------


class LocalAccountSigner:
    """Signs locally with a private key held by the service."""

    def __init__(self, private_key: str, rpc: JsonRpcClient, chain_id: int):
        self._account = Account.from_key(private_key)
        self._rpc = rpc
        self._chain_id = chain_id

    @property
    def address(self) -> str:
        return self._account.address

    async def send_transaction(self, to: str, data: str, value: int = 0) -> str:
        call = {"from": self.address, "to": to, "data": data, "value": hex(value)}
        nonce = int(await self._rpc.request("eth_getTransactionCount", [self.address, "pending"]), 16)
        gas = int(await self._rpc.request("eth_estimateGas", [call]), 16)
        gas_price = int(await self._rpc.request("eth_gasPrice"), 16)

        tx = {
            "to": to_checksum_address(to),
            "value": value,
            "data": data,
            "gas": int(gas * GAS_LIMIT_MULTIPLIER),
            "gasPrice": gas_price,
            "nonce": nonce,
            "chainId": self._chain_id,
        }
        signed = self._account.sign_transaction(tx)
        raw = "0x" + bytes(signed.raw_transaction).hex()
        tx_hash = "0x" + bytes(signed.hash).hex()
        try:
            node_hash = await self._rpc.request("eth_sendRawTransaction", [raw])
        except ChainRpcError as exc:
            # An error object with a code is an explicit rejection; anything
            # else is an HTTP failure after the bytes left.
            if exc.code is not None:
                raise
            logger.error("Broadcast of %s unanswered: %s", tx_hash, exc)
            raise BroadcastError(str(exc), tx_hash) from exc
        except httpx.HTTPError as exc:
            logger.error("Broadcast of %s unanswered: %s", tx_hash, exc)
            raise BroadcastError(f"RPC network error: {type(exc).__name__} {exc}", tx_hash) from exc
        logger.info("Broadcast tx %s from %s (nonce=%d)", tx_hash, self.address[:10], nonce)
        return node_hash or tx_hash


class WalletRpcSigner:
    """Asks an external wallet to sign and broadcast."""

    def __init__(self, address: str, wallet_rpc: JsonRpcClient):
        self._address = address
        self._rpc = wallet_rpc

    @property
    def address(self) -> str:
        return self._address

    async def send_transaction(self, to: str, data: str, value: int = 0) -> str:
        tx_hash = await self._rpc.request(
            "eth_sendTransaction",
            [{"from": self._address, "to": to, "data": data, "value": hex(value)}],
        )
        logger.info("Wallet broadcast tx %s from %s", tx_hash, self._address[:10])
        return tx_hash
