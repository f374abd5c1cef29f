"""Tests for the HTTP surface, driven through the real app with fake services."""

from types import SimpleNamespace

import pytest
from fastapi.testclient import TestClient

import main
from asset_store import MAX_IMAGE_BYTES
from duplicate_guard import DuplicateGuard
from image_fetcher import ImageFetchError
from models import CreationResult, CreationStatus
from routes.evermarks import creation_status_code
from season_oracle import SeasonOracle

from conftest import REFERRER, TX_HASH, make_image, make_receipt, transfer_log


class FakeFetcher:
    def __init__(self):
        self.fetched: list[str] = []
        self.fail = False

    async def fetch_image(self, url):
        self.fetched.append(url)
        if self.fail:
            raise ImageFetchError(f"Image not found (HTTP 404): {url}")
        return make_image("JPEG"), "image/jpeg"

    async def fetch_book_cover(self, isbn):
        return await self.fetch_image(f"cover:{isbn}")

    async def close(self):
        pass


@pytest.fixture
def fetcher():
    return FakeFetcher()


@pytest.fixture
def client(monkeypatch, orchestrator, index_store, minter, asset_store, persistence, fetcher):
    services = SimpleNamespace(
        db=None,
        index=index_store,
        minter=minter,
        assets=asset_store,
        duplicate_guard=DuplicateGuard(index_store),
        season_oracle=SeasonOracle(index_store),
        persistence=persistence,
        image_fetcher=fetcher,
        orchestrator=orchestrator,
    )
    monkeypatch.setattr(main, "create_services", lambda: services)
    with TestClient(main.app) as test_client:
        yield test_client


DOI_FORM = {"title": "Paper X", "author": "A. Author", "content_type": "DOI", "doi": "10.1000/test"}


class TestCreationStatusCode:
    @pytest.mark.parametrize("status,kind,code", [
        (CreationStatus.SUCCEEDED, None, 201),
        (CreationStatus.PARTIAL, "ReceiptTimeout", 202),
        (CreationStatus.REJECTED, "ValidationError", 400),
        (CreationStatus.REJECTED, "DuplicateError", 409),
        (CreationStatus.FAILED, "InvalidConfig", 503),
        (CreationStatus.FAILED, "StorageError", 502),
        (CreationStatus.FAILED, "InsufficientFunds", 502),
        (CreationStatus.FAILED, "UnexpectedError", 500),
    ])
    def test_mapping(self, status, kind, code):
        assert creation_status_code(CreationResult(status=status, message="m", error_kind=kind)) == code


class TestHealth:
    def test_health(self, client):
        body = client.get("/health").json()
        assert body["status"] == "ok"
        assert body["service"] == "evermark-portal"
        assert body["chain_configured"] is True


class TestCreateEvermark:
    def test_upload_creates(self, client, png_bytes):
        resp = client.post("/evermarks", data=DOI_FORM, files={"image": ("cover.png", png_bytes, "image/png")})
        assert resp.status_code == 201
        body = resp.json()
        assert body["success"] is True
        assert body["tx_hash"] == TX_HASH
        assert body["token_id"] == "42"
        assert body["record"]["content_reference"]["content_type"] == "DOI"

    def test_tags_and_referrer_form_fields(self, client, png_bytes):
        form = {**DOI_FORM, "tags": "science, open-access", "referrer": REFERRER}
        resp = client.post("/evermarks", data=form, files={"image": ("cover.png", png_bytes, "image/png")})
        record = resp.json()["record"]
        assert record["tags"] == ["science", "open-access"]
        assert record["referrer_address"] == REFERRER

    def test_image_url_is_fetched(self, client, fetcher):
        resp = client.post("/evermarks", data={**DOI_FORM, "image_url": "https://img.test/a.jpg"})
        assert resp.status_code == 201
        assert fetcher.fetched == ["https://img.test/a.jpg"]

    def test_book_cover_fallback(self, client, fetcher):
        form = {"title": "SICP", "author": "Abelson", "content_type": "ISBN", "isbn": "9780262033848"}
        resp = client.post("/evermarks", data=form)
        assert resp.status_code == 201
        assert fetcher.fetched == ["cover:9780262033848"]

    def test_failed_fetch_is_400(self, client, fetcher):
        fetcher.fail = True
        resp = client.post("/evermarks", data={**DOI_FORM, "image_url": "https://img.test/missing.jpg"})
        assert resp.status_code == 400

    def test_image_required(self, client):
        resp = client.post("/evermarks", data=DOI_FORM)
        assert resp.status_code == 400
        assert "image" in resp.json()["detail"]

    def test_validation_error_before_fetch(self, client, fetcher):
        resp = client.post("/evermarks", data={**DOI_FORM, "doi": "bad", "image_url": "https://img.test/a.jpg"})
        assert resp.status_code == 400
        assert resp.json()["detail"]["errors"][0]["field"] == "doi"
        assert fetcher.fetched == []

    def test_bad_provider_json(self, client, png_bytes):
        resp = client.post(
            "/evermarks",
            data={**DOI_FORM, "provider_fields": "{not json"},
            files={"image": ("cover.png", png_bytes, "image/png")},
        )
        assert resp.status_code == 400

    def test_duplicate_is_409(self, client, index_store, png_bytes):
        index_store.records["7"] = {"content_identifier": "doi:10.1000/test", "token_id": "7"}
        resp = client.post("/evermarks", data=DOI_FORM, files={"image": ("cover.png", png_bytes, "image/png")})
        assert resp.status_code == 409
        assert resp.json()["duplicate"]["matched_record_id"] == "7"

    def test_unconfirmed_is_202(self, client, contract, png_bytes):
        contract.receipts = [None]
        resp = client.post("/evermarks", data=DOI_FORM, files={"image": ("cover.png", png_bytes, "image/png")})
        assert resp.status_code == 202
        assert resp.json()["tx_hash"] == TX_HASH

    def test_insufficient_funds_is_502(self, client, contract, png_bytes):
        contract.balance = 0
        resp = client.post("/evermarks", data=DOI_FORM, files={"image": ("cover.png", png_bytes, "image/png")})
        assert resp.status_code == 502
        assert resp.json()["error_kind"] == "InsufficientFunds"

    def test_oversized_upload_is_400_before_pipeline(self, client, object_store, signer, png_bytes):
        big = png_bytes + b"\0" * MAX_IMAGE_BYTES
        resp = client.post("/evermarks", data=DOI_FORM, files={"image": ("cover.png", big, "image/png")})
        assert resp.status_code == 400
        assert "too large" in resp.json()["detail"]
        assert object_store.calls == []
        assert signer.sent == []


class TestQueries:
    def test_duplicates(self, client, index_store):
        index_store.records["7"] = {"content_identifier": "doi:10.1000/test", "token_id": "7"}
        body = client.get("/evermarks/duplicates", params={"content_type": "DOI", "doi": "10.1000/test"}).json()
        assert body["exists"] is True
        assert body["confidence"] == "exact"

    def test_duplicates_requires_reference(self, client):
        assert client.get("/evermarks/duplicates").status_code == 400

    def test_contract_info(self, client, contract):
        body = client.get("/evermarks/contract").json()
        assert body["minting_fee_wei"] == contract.fee
        assert body["minting_fee_eth"] == "0.002"
        assert body["is_paused"] is False

    def test_contract_info_reports_batch_limit(self, client, contract):
        contract.max_batch = 25
        assert client.get("/evermarks/contract").json()["max_batch_size"] == 25

    def test_batch_mint(self, client, contract, signer):
        contract.receipts = [make_receipt([transfer_log(42), transfer_log(43)])]
        items = [{"metadata_uri": f"ipfs://bafy{i}", "title": f"Paper {i}", "creator": "A. Author"} for i in range(2)]
        resp = client.post("/evermarks/batch", json={"items": items})
        assert resp.status_code == 201
        assert resp.json()["token_ids"] == ["42", "43"]
        assert signer.sent[0]["value"] == contract.fee * 2

    def test_batch_over_limit_is_400(self, client, contract, signer):
        contract.max_batch = 1
        items = [{"metadata_uri": "ipfs://a", "title": "A", "creator": "X"}, {"metadata_uri": "ipfs://b", "title": "B", "creator": "Y"}]
        resp = client.post("/evermarks/batch", json={"items": items})
        assert resp.status_code == 400
        assert resp.json()["detail"]["message"] == "Maximum 1 evermarks per batch"
        assert signer.sent == []

    def test_batch_unconfirmed_is_202(self, client, contract):
        contract.receipts = [None]
        resp = client.post("/evermarks/batch", json={"items": [{"metadata_uri": "ipfs://a", "title": "A", "creator": "X"}]})
        assert resp.status_code == 202
        assert resp.json()["tx_hash"] == TX_HASH

    def test_pending_referral(self, client, contract):
        body = client.get(f"/evermarks/referrals/{REFERRER}").json()
        assert body["pending_wei"] == contract.pending

    def test_pending_referral_bad_address(self, client):
        resp = client.get("/evermarks/referrals/0x123")
        assert resp.status_code == 400
        assert resp.json()["detail"]["error_kind"] == "InvalidAccount"

    def test_claim_referral(self, client, signer):
        resp = client.post("/evermarks/referrals/claim")
        assert resp.status_code == 200
        assert resp.json()["tx_hash"] == TX_HASH
        assert signer.sent[0]["value"] == 0

    def test_current_season(self, client):
        body = client.get("/seasons/current").json()
        assert body["number"] >= 1
        assert body["seconds_remaining"] >= 0
