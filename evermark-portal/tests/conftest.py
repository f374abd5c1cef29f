"""Shared fakes and fixtures for the Evermark portal test suite."""

import hashlib
import io

import pytest
from PIL import Image

from asset_store import AssetStore
from chain_minter import ChainMinter
from duplicate_guard import DuplicateGuard
from evermark_contract import TRANSFER_EVENT_TOPIC, EvermarkContract
from orchestrator import CreationOrchestrator
from persistence_sync import PersistenceSync
from season_oracle import SeasonOracle

CONTRACT_ADDRESS = "0x" + "ab" * 20
ACCOUNT = "0x" + "11" * 20
REFERRER = "0x" + "22" * 20
TX_HASH = "0x" + "ef" * 32
ZERO_TOPIC = "0x" + "0" * 64


def make_image(fmt: str = "PNG", size=(64, 48)) -> bytes:
    buf = io.BytesIO()
    Image.new("RGB", size, (200, 120, 40)).save(buf, format=fmt)
    return buf.getvalue()


def topic(value: int | str) -> str:
    if isinstance(value, str):
        value = int(value, 16)
    return "0x" + format(value, "064x")


def transfer_log(token_id: int, from_addr: str = ZERO_TOPIC, to_addr: str = ACCOUNT, address: str = CONTRACT_ADDRESS) -> dict:
    return {
        "address": address,
        "topics": [TRANSFER_EVENT_TOPIC, topic(from_addr), topic(to_addr), topic(token_id)],
        "data": "0x",
    }


def make_receipt(logs=None, status: str = "0x1") -> dict:
    return {
        "transactionHash": TX_HASH,
        "status": status,
        "blockNumber": "0x1a4",
        "gasUsed": "0x2dc6c",
        "logs": logs or [],
    }


# ---------------------------------------------------------------------------
# Storage fakes
# ---------------------------------------------------------------------------


class FakeObjectStore:
    """In-memory stand-in for GcsObjectStore."""

    def __init__(self):
        self.objects: dict[str, tuple[bytes, str]] = {}
        self.calls: list[tuple] = []
        self.fail_put = False
        self.fail_copy = False

    def public_url(self, path):
        return f"https://storage.test/evermark-images/{path}"

    def resolve(self, url):
        """HTTP-ish GET: 200 when the object behind a public URL exists."""
        prefix = self.public_url("")
        path = url[len(prefix):] if url.startswith(prefix) else None
        return 200 if path in self.objects else 404

    async def put(self, path, data, content_type):
        self.calls.append(("put", path))
        if self.fail_put:
            raise ConnectionError("bucket unavailable")
        self.objects[path] = (data, content_type)
        return self.public_url(path)

    async def copy(self, src, dst):
        self.calls.append(("copy", src, dst))
        if self.fail_copy:
            raise ConnectionError("copy failed")
        self.objects[dst] = self.objects[src]
        return self.public_url(dst)

    async def delete(self, path):
        self.calls.append(("delete", path))
        self.objects.pop(path, None)

    async def list(self, prefix):
        self.calls.append(("list", prefix))
        return sorted(p for p in self.objects if p.startswith(prefix))


class FakeContentStore:
    """In-memory stand-in for PinataClient."""

    def __init__(self, enabled=True):
        self.enabled = enabled
        self.fail = False
        self.pins: list[str] = []

    def gateway_url(self, cid):
        return f"https://ipfs.test/ipfs/{cid}"

    async def pin_file(self, data, filename, mime_type, name=None):
        if self.fail:
            raise ConnectionError("pinata down")
        cid = "bafy" + hashlib.sha256(data).hexdigest()[:20]
        self.pins.append(cid)
        return cid

    async def pin_json(self, document, name):
        if self.fail:
            raise ConnectionError("pinata down")
        cid = "bafj" + hashlib.sha256(repr(sorted(document)).encode()).hexdigest()[:20]
        self.pins.append(cid)
        return cid


class FakeIndexStore:
    """In-memory stand-in for FirestoreIndexStore."""

    def __init__(self):
        self.records: dict[str, dict] = {}
        self.unreconciled: dict[str, dict] = {}
        self.season_override = None
        self.fail_reads = False
        self.fail_writes = 0  # number of upcoming writes that raise
        self.queries: list[tuple] = []
        self.write_attempts = 0

    async def find_by_identifier(self, key):
        return self._find("content_identifier", key)

    async def find_by_normalized_url(self, url):
        return self._find("normalized_url", url)

    def _find(self, field, value):
        self.queries.append((field, value))
        if self.fail_reads:
            raise ConnectionError("firestore unavailable")
        for token_id, doc in self.records.items():
            if doc.get(field) == value:
                return {**doc, "token_id": doc.get("token_id") or token_id}
        return None

    async def _write(self):
        self.write_attempts += 1
        if self.fail_writes:
            self.fail_writes -= 1
            raise ConnectionError("firestore write failed")

    async def put_record(self, token_id, document):
        await self._write()
        self.records[str(token_id)] = document

    async def put_unreconciled(self, tx_hash, document):
        await self._write()
        self.unreconciled[tx_hash] = document

    async def get_season_override(self):
        if self.fail_reads:
            raise ConnectionError("firestore unavailable")
        return self.season_override


# ---------------------------------------------------------------------------
# Chain fakes
# ---------------------------------------------------------------------------


class FakeContract(EvermarkContract):
    """Contract with canned view results; encoders are the real ones."""

    def __init__(self, address=CONTRACT_ADDRESS):
        super().__init__(rpc=None, address=address)
        self.fee = 2_000_000_000_000_000
        self.paused = False
        self.balance = 10**18
        self.supply = 41
        self.referral = 10
        self.max_batch = 10
        self.pending = 5 * 10**14
        self.failures: dict[str, Exception] = {}
        self.receipts: list = [make_receipt([transfer_log(42)])]
        self.reads: list[str] = []

    async def _read(self, name, value):
        self.reads.append(name)
        if name in self.failures:
            raise self.failures[name]
        return value

    async def minting_fee(self):
        return await self._read("fee", self.fee)

    async def is_paused(self):
        return await self._read("paused", self.paused)

    async def total_supply(self):
        return await self._read("supply", self.supply)

    async def referral_percentage(self):
        return await self._read("referral", self.referral)

    async def max_batch_size(self):
        return await self._read("max_batch", self.max_batch)

    async def pending_referral_payment(self, address):
        return await self._read("pending", self.pending)

    async def native_balance(self, address):
        return await self._read("balance", self.balance)

    async def get_receipt(self, tx_hash):
        self.reads.append("receipt")
        if len(self.receipts) > 1:
            return self.receipts.pop(0)
        return self.receipts[0]


class FakeSigner:
    def __init__(self, address=ACCOUNT, tx_hash=TX_HASH):
        self.address = address
        self.tx_hash = tx_hash
        self.sent: list[dict] = []
        self.error: Exception | None = None

    async def send_transaction(self, to, data, value=0):
        if self.error:
            raise self.error
        self.sent.append({"to": to, "data": data, "value": value})
        return self.tx_hash


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def object_store():
    return FakeObjectStore()


@pytest.fixture
def content_store():
    return FakeContentStore()


@pytest.fixture
def index_store():
    return FakeIndexStore()


@pytest.fixture
def contract():
    return FakeContract()


@pytest.fixture
def signer():
    return FakeSigner()


@pytest.fixture
def minter(contract, signer):
    return ChainMinter(contract, signer, receipt_timeout=0.05, poll_interval=0, read_retry_delay=0)


@pytest.fixture
def asset_store(object_store, content_store):
    return AssetStore(object_store, content_store, secondary_timeout=1.0)


@pytest.fixture
def persistence(index_store):
    return PersistenceSync(index_store, cache_images_url="", cast_image_url="", write_backoff=[0, 0])


@pytest.fixture
def orchestrator(index_store, asset_store, minter, persistence):
    return CreationOrchestrator(
        DuplicateGuard(index_store),
        asset_store,
        minter,
        persistence,
        SeasonOracle(index_store),
    )


@pytest.fixture
def png_bytes():
    return make_image("PNG")
