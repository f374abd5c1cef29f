"""Tests for the JSON-RPC transport, signers and contract encoding."""

import asyncio
import json

import httpx
import pytest
from eth_abi import decode, encode
from eth_account import Account
from eth_utils import function_signature_to_4byte_selector, keccak

from chain_client import BroadcastError, ChainRpcError, JsonRpcClient, LocalAccountSigner, WalletRpcSigner
from chain_minter import ChainMinter, MintState
from errors import ChainError, ChainErrorKind
from evermark_contract import (
    MAX_BATCH_SIZE,
    MINT_BATCH,
    MINT_WITH_REFERRAL,
    PENDING_REFERRAL_PAYMENTS,
    EvermarkContract,
    encode_call,
)

from conftest import ACCOUNT, CONTRACT_ADDRESS, REFERRER, TX_HASH

TEST_KEY = "0x4c0883a69102937d6231471b5dbb6204fe5129617082792ae468d01a3f362318"


def rpc_with(handler):
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return JsonRpcClient("https://rpc.test", client=client)


class RecordingRpc:
    """Answers JSON-RPC methods from a canned table."""

    def __init__(self, answers):
        self.answers = answers
        self.calls: list[tuple[str, list]] = []

    async def request(self, method, params=None):
        self.calls.append((method, params or []))
        return self.answers[method]

    async def eth_call(self, to, data):
        self.calls.append(("eth_call", [to, data]))
        return self.answers["eth_call"]


class TestJsonRpcClient:
    def test_returns_result(self):
        seen = []

        def handler(request):
            body = json.loads(request.content)
            seen.append(body)
            return httpx.Response(200, json={"jsonrpc": "2.0", "id": body["id"], "result": "0x2a"})

        rpc = rpc_with(handler)
        assert asyncio.run(rpc.request("eth_blockNumber")) == "0x2a"
        assert seen[0]["method"] == "eth_blockNumber"
        assert seen[0]["params"] == []

    def test_error_object_raises(self):
        def handler(request):
            return httpx.Response(200, json={"jsonrpc": "2.0", "id": 1, "error": {"code": -32000, "message": "nonce too low"}})

        with pytest.raises(ChainRpcError) as exc:
            asyncio.run(rpc_with(handler).request("eth_sendRawTransaction", ["0x00"]))
        assert exc.value.code == -32000
        assert "nonce too low" in str(exc.value)

    def test_http_status_raises_network_error(self):
        rpc = rpc_with(lambda request: httpx.Response(503, text="unavailable"))
        with pytest.raises(ChainRpcError, match="network error"):
            asyncio.run(rpc.request("eth_chainId"))

    def test_balance_is_decoded(self):
        rpc = rpc_with(lambda request: httpx.Response(200, json={"jsonrpc": "2.0", "id": 1, "result": "0xde0b6b3a7640000"}))
        assert asyncio.run(rpc.get_balance(ACCOUNT)) == 10**18


class TestSigners:
    def test_local_signer_broadcasts_raw_transaction(self):
        rpc = RecordingRpc({
            "eth_getTransactionCount": "0x7",
            "eth_estimateGas": "0x5208",
            "eth_gasPrice": "0x3b9aca00",
            "eth_sendRawTransaction": TX_HASH,
        })
        signer = LocalAccountSigner(TEST_KEY, rpc, chain_id=8453)

        tx_hash = asyncio.run(signer.send_transaction(CONTRACT_ADDRESS, "0x1234", value=10**15))

        assert tx_hash == TX_HASH
        assert signer.address == Account.from_key(TEST_KEY).address
        methods = [m for m, _ in rpc.calls]
        assert methods[-1] == "eth_sendRawTransaction"
        assert rpc.calls[0][1] == [signer.address, "pending"]
        estimate = rpc.calls[1][1][0]
        assert estimate["value"] == hex(10**15)
        assert rpc.calls[-1][1][0].startswith("0x")

    def test_invalid_key_rejected(self):
        with pytest.raises(Exception):
            LocalAccountSigner("not-a-key", RecordingRpc({}), chain_id=8453)

    def test_wallet_signer_delegates(self):
        rpc = RecordingRpc({"eth_sendTransaction": TX_HASH})
        signer = WalletRpcSigner(ACCOUNT, rpc)
        assert asyncio.run(signer.send_transaction(CONTRACT_ADDRESS, "0xabcd", value=5)) == TX_HASH
        method, params = rpc.calls[0]
        assert method == "eth_sendTransaction"
        assert params[0] == {"from": ACCOUNT, "to": CONTRACT_ADDRESS, "data": "0xabcd", "value": "0x5"}


class TestBroadcastOutcome:
    """What the local signer reports when eth_sendRawTransaction does not answer cleanly."""

    @staticmethod
    def node(on_send):
        sent = []

        def handler(request):
            body = json.loads(request.content)
            answers = {"eth_getTransactionCount": "0x7", "eth_estimateGas": "0x5208", "eth_gasPrice": "0x3b9aca00"}
            if body["method"] == "eth_sendRawTransaction":
                sent.append(body["params"][0])
                return on_send(request)
            return httpx.Response(200, json={"jsonrpc": "2.0", "id": body["id"], "result": answers[body["method"]]})

        return LocalAccountSigner(TEST_KEY, rpc_with(handler), chain_id=8453), sent

    def test_read_timeout_carries_locally_computed_hash(self):
        def timeout(request):
            raise httpx.ReadTimeout("timed out", request=request)

        signer, sent = self.node(timeout)
        with pytest.raises(BroadcastError) as exc:
            asyncio.run(signer.send_transaction(CONTRACT_ADDRESS, "0x1234", value=10**15))
        assert len(sent) == 1
        assert exc.value.tx_hash == "0x" + keccak(hexstr=sent[0]).hex()

    def test_gateway_error_after_send_carries_hash(self):
        signer, sent = self.node(lambda request: httpx.Response(502, text="bad gateway"))
        with pytest.raises(BroadcastError) as exc:
            asyncio.run(signer.send_transaction(CONTRACT_ADDRESS, "0x1234"))
        assert exc.value.tx_hash == "0x" + keccak(hexstr=sent[0]).hex()

    def test_node_rejection_is_not_a_broadcast(self):
        def rejected(request):
            return httpx.Response(200, json={"jsonrpc": "2.0", "id": 4, "error": {"code": -32000, "message": "nonce too low"}})

        signer, _ = self.node(rejected)
        with pytest.raises(ChainRpcError) as exc:
            asyncio.run(signer.send_transaction(CONTRACT_ADDRESS, "0x1234"))
        assert not isinstance(exc.value, BroadcastError)

    def test_minter_reports_timed_out_broadcast_as_submitted(self, contract):
        def timeout(request):
            raise httpx.ReadTimeout("timed out", request=request)

        signer, sent = self.node(timeout)
        minter = ChainMinter(contract, signer, receipt_timeout=0.05, poll_interval=0, read_retry_delay=0)
        with pytest.raises(ChainError) as exc:
            asyncio.run(minter.mint("ipfs://bafymeta", "Paper X", "A. Author"))
        assert exc.value.kind == ChainErrorKind.NETWORK_ERROR
        assert exc.value.submitted
        assert exc.value.tx_hash == "0x" + keccak(hexstr=sent[0]).hex()
        assert exc.value.stage == MintState.SUBMITTING.value


class TestEvermarkContract:
    def test_uint_view_is_decoded(self):
        rpc = RecordingRpc({"eth_call": "0x" + encode(["uint256"], [2 * 10**15]).hex()})
        contract = EvermarkContract(rpc, CONTRACT_ADDRESS)
        assert asyncio.run(contract.minting_fee()) == 2 * 10**15
        assert rpc.calls[0][1][0] == CONTRACT_ADDRESS

    def test_paused_is_decoded(self):
        rpc = RecordingRpc({"eth_call": "0x" + encode(["bool"], [True]).hex()})
        assert asyncio.run(EvermarkContract(rpc, CONTRACT_ADDRESS).is_paused()) is True

    def test_pending_referral_encodes_address(self):
        rpc = RecordingRpc({"eth_call": "0x" + encode(["uint256"], [7]).hex()})
        assert asyncio.run(EvermarkContract(rpc, CONTRACT_ADDRESS).pending_referral_payment(REFERRER)) == 7
        data = rpc.calls[0][1][1]
        assert data.startswith("0x" + function_signature_to_4byte_selector(PENDING_REFERRAL_PAYMENTS).hex())
        assert data.endswith("22" * 20)

    def test_mint_with_referral_round_trips(self):
        data = EvermarkContract.encode_mint_with_referral("ipfs://bafymeta", "Title", "Author", REFERRER)
        selector = "0x" + function_signature_to_4byte_selector(MINT_WITH_REFERRAL).hex()
        assert data.startswith(selector)
        args = decode(["string", "string", "string", "address"], bytes.fromhex(data[len(selector):]))
        assert args[:3] == ("ipfs://bafymeta", "Title", "Author")
        assert args[3].lower() == REFERRER

    def test_encode_call_without_args_is_selector(self):
        assert len(encode_call("paused()")) == 10

    def test_max_batch_size_view(self):
        rpc = RecordingRpc({"eth_call": "0x" + encode(["uint256"], [20]).hex()})
        assert asyncio.run(EvermarkContract(rpc, CONTRACT_ADDRESS).max_batch_size()) == 20
        assert rpc.calls[0][1][1] == "0x" + function_signature_to_4byte_selector(MAX_BATCH_SIZE).hex()

    def test_mint_batch_encodes_parallel_arrays(self):
        data = EvermarkContract.encode_mint_batch(["ipfs://a", "ipfs://b"], ["A", "B"], ["X", "Y"], REFERRER)
        selector = "0x" + function_signature_to_4byte_selector(MINT_BATCH).hex()
        assert data.startswith(selector)
        uris, titles, creators, referrer = decode(
            ["string[]", "string[]", "string[]", "address"], bytes.fromhex(data[len(selector):]),
        )
        assert list(uris) == ["ipfs://a", "ipfs://b"]
        assert list(titles) == ["A", "B"]
        assert list(creators) == ["X", "Y"]
        assert referrer.lower() == REFERRER
