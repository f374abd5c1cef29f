"""
Evermark Creation Routes
========================
Create Evermarks and query the state that creation depends on.

  POST /evermarks                        — run the creation pipeline
  GET  /evermarks/duplicates             — duplicate-guard verdict for a reference
  GET  /evermarks/contract               — fee / paused / supply / referral share / batch limit
  POST /evermarks/batch                  — mint several published metadata URIs at once
  GET  /evermarks/referrals/{address}    — pending referral payment
  POST /evermarks/referrals/claim        — withdraw the minter's referral payment

Status codes for creation:
  201 created · 202 broadcast but unconfirmed (follow up with tx hash)
  400 invalid input · 409 duplicate · 503 chain not configured · 502 upstream failure
"""

from __future__ import annotations

import json
import logging
from typing import Optional

from fastapi import APIRouter, File, Form, HTTPException, Request, UploadFile
from fastapi.responses import JSONResponse

from asset_store import MAX_IMAGE_BYTES
from errors import ChainError, ChainErrorKind, ValidationError
from image_fetcher import ImageFetchError
from models import BatchMintRequest, ContentReference, ContentType, CreationResult, CreationStatus, EvermarkInput
from validation import validate_input

logger = logging.getLogger("evermark-portal.routes.evermarks")

router = APIRouter(prefix="/evermarks", tags=["evermarks"])


def creation_status_code(result: CreationResult) -> int:
    if result.status == CreationStatus.SUCCEEDED:
        return 201
    if result.status == CreationStatus.PARTIAL:
        return 202
    if result.status == CreationStatus.REJECTED:
        return 409 if result.error_kind == "DuplicateError" else 400
    if result.error_kind == ChainErrorKind.INVALID_CONFIG.value:
        return 503
    if result.error_kind in (ChainErrorKind.INVALID_ACCOUNT.value, ChainErrorKind.INVALID_PARAMS.value):
        return 400
    if result.error_kind == "UnexpectedError":
        return 500
    return 502


def chain_http_error(error: ChainError) -> HTTPException:
    if error.kind == ChainErrorKind.INVALID_CONFIG:
        status = 503
    elif error.kind in (ChainErrorKind.INVALID_ACCOUNT, ChainErrorKind.INVALID_PARAMS):
        status = 400
    else:
        status = 502
    return HTTPException(
        status_code=status,
        detail={"error_kind": error.kind.value, "message": error.message, "tx_hash": error.tx_hash},
    )


def _parse_json_field(raw: Optional[str], field: str, expected: type):
    if not raw:
        return expected()
    try:
        value = json.loads(raw)
    except json.JSONDecodeError:
        raise HTTPException(status_code=400, detail=f"{field} must be valid JSON")
    if not isinstance(value, expected):
        raise HTTPException(status_code=400, detail=f"{field} must be a JSON {expected.__name__}")
    return value


async def _resolve_image(request: Request, data: EvermarkInput, image: Optional[UploadFile], image_url: str) -> tuple[bytes, str]:
    """Uploaded file, then image URL, then Open Library cover for books."""
    if image is not None and image.filename:
        # Read one byte past the limit so oversize is detected without buffering it all
        data = await image.read(MAX_IMAGE_BYTES + 1)
        if len(data) > MAX_IMAGE_BYTES:
            raise HTTPException(
                status_code=400,
                detail=f"Image too large. Maximum size is {MAX_IMAGE_BYTES // (1024 * 1024)}MB.",
            )
        return data, image.content_type or ""

    fetcher = request.state.image_fetcher
    try:
        if image_url:
            return await fetcher.fetch_image(image_url)
        if data.isbn and data.content_type in (ContentType.ISBN, ContentType.BOOK_RECORD):
            return await fetcher.fetch_book_cover(data.isbn)
    except ImageFetchError as e:
        logger.warning("Image fetch for creation failed: %s", e)
        raise HTTPException(status_code=400, detail=f"Could not fetch image: {e}")

    raise HTTPException(status_code=400, detail="An image upload or image_url is required")


@router.post("")
async def create_evermark(
    request: Request,
    title: str = Form(...),
    author: str = Form(...),
    description: str = Form(""),
    content_type: ContentType = Form(ContentType.CUSTOM),
    source_url: str = Form(""),
    doi: Optional[str] = Form(None),
    isbn: Optional[str] = Form(None),
    tags: str = Form(""),
    custom_fields: Optional[str] = Form(None),
    provider_fields: Optional[str] = Form(None),
    creator_address: str = Form(""),
    referrer: Optional[str] = Form(None),
    allow_duplicate: bool = Form(False),
    image_url: str = Form(""),
    image: Optional[UploadFile] = File(None),
):
    """Create an Evermark from a content reference and an image.

    ``tags`` is comma-separated. ``custom_fields`` is a JSON list of
    ``{"key", "value"}`` objects; ``provider_fields`` is the JSON object
    produced by the external metadata lookups (journal, publisher, cast ...).
    Its cast ``verified_addresses`` are taken as submitted, so the record's
    ``verified`` flag is unauthenticated.
    """
    data = EvermarkInput(
        title=title,
        author=author,
        description=description,
        content_type=content_type,
        source_url=source_url,
        doi=doi or None,
        isbn=isbn or None,
        tags=[t.strip() for t in tags.split(",") if t.strip()],
        custom_fields=_parse_json_field(custom_fields, "custom_fields", list),
        creator_address=creator_address.strip(),
        referrer=(referrer or "").strip() or None,
        allow_duplicate=allow_duplicate,
    )
    providers = _parse_json_field(provider_fields, "provider_fields", dict)

    # Reject bad input before fetching anything remote
    try:
        validate_input(data)
    except ValidationError as e:
        raise HTTPException(status_code=400, detail={"message": e.message, "errors": e.errors})

    image_bytes, image_type = await _resolve_image(request, data, image, image_url.strip())

    result = await request.state.orchestrator.create(
        data, image_bytes, image_type, provider_fields=providers,
    )
    return JSONResponse(status_code=creation_status_code(result), content=result.model_dump(mode="json"))


@router.get("/duplicates")
async def check_duplicates(
    request: Request,
    source_url: str = "",
    content_type: ContentType = ContentType.URL,
    doi: Optional[str] = None,
    isbn: Optional[str] = None,
):
    """Duplicate-guard verdict without creating anything."""
    if not (source_url or doi or isbn):
        raise HTTPException(status_code=400, detail="source_url, doi or isbn is required")
    reference = ContentReference(source_url=source_url.strip(), content_type=content_type)
    check = await request.state.duplicate_guard.check(reference, doi, isbn)
    return check.model_dump(mode="json")


@router.get("/contract")
async def contract_info(request: Request):
    """Current minting fee, pause state, supply, referral percentage and batch limit.

    Each value falls back independently; ``fallbacks`` names the ones that
    could not be read live.
    """
    try:
        info = await request.state.minter.contract_info()
    except ChainError as e:
        raise chain_http_error(e)
    return {
        **info.model_dump(mode="json"),
        "minting_fee_eth": str(info.minting_fee_wei / 10**18),
    }


@router.post("/batch")
async def batch_mint(body: BatchMintRequest, request: Request):
    """Mint already-published metadata URIs in one transaction.

    Each item needs its own metadata URI; nothing is uploaded here. The
    contract's ``MAX_BATCH_SIZE`` caps the item count.
    """
    try:
        receipt = await request.state.minter.batch_mint(body.items, referrer=body.referrer)
    except ChainError as e:
        if e.submitted:
            logger.error("Batch mint %s broadcast but not confirmed (%s)", e.tx_hash, e.kind.value)
            return JSONResponse(
                status_code=202,
                content={"error_kind": e.kind.value, "message": e.message, "tx_hash": e.tx_hash},
            )
        raise chain_http_error(e)
    logger.info("Batch minted %d evermarks tx=%s", len(receipt.token_ids), receipt.tx_hash)
    return JSONResponse(status_code=201, content=receipt.model_dump(mode="json"))


@router.get("/referrals/{address}")
async def pending_referral(address: str, request: Request):
    try:
        pending = await request.state.minter.pending_referral_payment(address)
    except ChainError as e:
        raise chain_http_error(e)
    return {"address": address, "pending_wei": pending, "pending_eth": str(pending / 10**18)}


@router.post("/referrals/claim")
async def claim_referral(request: Request):
    """Withdraw referral fees accrued by the service's minting account."""
    try:
        receipt = await request.state.minter.claim_referral_payment()
    except ChainError as e:
        raise chain_http_error(e)
    logger.info("Referral payment claimed tx=%s", receipt.tx_hash)
    return receipt.model_dump(mode="json")
