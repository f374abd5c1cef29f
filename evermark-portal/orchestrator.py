"""
Creation Orchestrator — sequences one Evermark creation end to end.

    validate -> duplicate check -> upload image -> build metadata
      -> upload metadata -> mint -> move image -> persist -> done

Progress is reported as a monotonic percentage plus a step label after each
transition. Collaborators are injected so every stage can be replaced in
tests.

Outcome rules:
  * Anything failing before the mint transaction is broadcast ends the run
    with no chain side effect (``rejected`` or ``failed``).
  * A chain failure that still produced a tx hash is ``partial``: funds may be
    spent and a token may exist.
  * Post-mint steps (image move, index write, triggers) only add warnings.
"""

from __future__ import annotations

import logging
import uuid
from typing import Any, Callable, Optional

import metadata_builder
from chain_minter import ChainMinter, MintState
from content_identifiers import comparison_key, extract_content_identifier
from duplicate_guard import DuplicateGuard, blocks_creation, reference_lookup_string, requires_override
from errors import (
    CHAIN_ERROR_MESSAGES,
    ChainError,
    ChainErrorKind,
    ConfigurationError,
    DuplicateError,
    EvermarkError,
    StorageError,
    ValidationError,
)
from models import (
    ContentType,
    CreationResult,
    CreationStatus,
    DuplicateCheck,
    EvermarkInput,
    EvermarkRecord,
    ProgressEvent,
    StepStatus,
)
from validation import validate_input

logger = logging.getLogger("evermark-portal.orchestrator")

ProgressCallback = Callable[[int, str], None]

STAGE_VALIDATING = "validating"
STAGE_DUPLICATES = "checking_duplicates"
STAGE_IMAGE = "uploading_image"
STAGE_METADATA = "building_metadata"
STAGE_METADATA_UPLOAD = "uploading_metadata"
STAGE_MINTING = "minting"
STAGE_MOVING = "moving_image"
STAGE_PERSISTING = "persisting"
STAGE_DONE = "done"

# Mint states that move the progress bar
MINT_PROGRESS = {
    MintState.SUBMITTING: (70, "Submitting transaction"),
    MintState.AWAITING_RECEIPT: (80, "Waiting for confirmation"),
}


class _Run:
    """Per-request progress and warning accumulator."""

    def __init__(self, on_progress: Optional[ProgressCallback]):
        self.on_progress = on_progress
        self.percent = 0
        self.stage = STAGE_VALIDATING
        self.events: list[ProgressEvent] = []
        self.warnings: list[str] = []

    def report(self, percent: int, step: str, stage: Optional[str] = None):
        if stage:
            self.stage = stage
        if percent < self.percent:
            return
        self.percent = percent
        self.events.append(ProgressEvent(percent=percent, step=step))
        logger.info("[%3d%%] %s", percent, step)
        if self.on_progress:
            try:
                self.on_progress(percent, step)
            except Exception as e:
                logger.warning("Progress callback raised: %s", e)

    def result(self, status: CreationStatus, message: str, **fields) -> CreationResult:
        return CreationResult(
            status=status,
            message=message,
            stage=self.stage,
            progress=self.percent,
            warnings=list(self.warnings),
            events=list(self.events),
            **fields,
        )


class CreationOrchestrator:
    def __init__(
        self,
        duplicate_guard: DuplicateGuard,
        asset_store,
        minter: ChainMinter,
        persistence,
        season_oracle,
        build_metadata=metadata_builder.build,
    ):
        self.duplicate_guard = duplicate_guard
        self.asset_store = asset_store
        self.minter = minter
        self.persistence = persistence
        self.season_oracle = season_oracle
        self.build_metadata = build_metadata

    async def create(
        self,
        data: EvermarkInput,
        image: bytes,
        image_type: str = "",
        provider_fields: Optional[dict[str, Any]] = None,
        on_progress: Optional[ProgressCallback] = None,
        temp_id: Optional[str] = None,
    ) -> CreationResult:
        run = _Run(on_progress)
        temp_id = temp_id or uuid.uuid4().hex
        reference = data.content_reference
        receipt = None

        try:
            # 1. Validate (no network)
            run.report(5, "Validating input", STAGE_VALIDATING)
            validate_input(data)
            if not self.minter.is_configured:
                raise ConfigurationError(CHAIN_ERROR_MESSAGES[ChainErrorKind.INVALID_CONFIG], STAGE_VALIDATING)

            # 2. Duplicate guard
            run.report(10, "Checking for duplicates", STAGE_DUPLICATES)
            check = await self.duplicate_guard.check(reference, data.doi, data.isbn)
            self._apply_duplicate_policy(check, data.allow_duplicate)

            # 3. Image (primary required, IPFS best-effort)
            run.report(20, "Uploading image", STAGE_IMAGE)
            upload = await self.asset_store.upload_image(image, image_type, temp_id)
            asset = upload.asset
            run.warnings += upload.warnings

            # 4-5. Metadata
            run.report(40, "Building metadata", STAGE_METADATA)
            document = self.build_metadata(reference, asset, data, provider_fields)
            run.report(50, "Uploading metadata", STAGE_METADATA_UPLOAD)
            meta = await self.asset_store.upload_metadata(document)
            run.warnings += meta.warnings

            # 6. Mint
            run.report(60, "Checking contract state", STAGE_MINTING)

            def on_state(state: MintState):
                if state in MINT_PROGRESS:
                    run.report(*MINT_PROGRESS[state])

            receipt = await self.minter.mint(
                meta.published.uri,
                data.title,
                data.author,
                referrer=data.referrer,
                on_state=on_state,
            )
            if receipt.warning:
                run.warnings.append(receipt.warning)

        except ValidationError as e:
            logger.info("Creation rejected: %s", e.message)
            return run.result(
                CreationStatus.REJECTED, e.message,
                error_kind="ValidationError", field_errors=e.errors,
            )
        except DuplicateError as e:
            return run.result(CreationStatus.REJECTED, e.message, error_kind="DuplicateError", duplicate=e.check)
        except ConfigurationError as e:
            logger.error("Creation refused, service misconfigured: %s", e.message)
            return run.result(CreationStatus.FAILED, e.message, error_kind=ChainErrorKind.INVALID_CONFIG.value)
        except ChainError as e:
            return self._chain_failure(e, run)
        except StorageError as e:
            logger.error("Creation failed at %s: %s", run.stage, e.message)
            return run.result(CreationStatus.FAILED, e.message, error_kind="StorageError")
        except EvermarkError as e:
            logger.error("Creation failed at %s: %s", run.stage, e.message)
            return run.result(CreationStatus.FAILED, e.message, error_kind=type(e).__name__)
        except Exception:
            logger.exception("Unexpected error during creation at %s", run.stage)
            return run.result(CreationStatus.FAILED, "Failed to create Evermark", error_kind="UnexpectedError")

        # Past this point the mint is a fact; nothing below may fail the run.
        return await self._finalize(data, provider_fields, temp_id, asset, document, meta.published.uri, receipt, run)

    # ------------------------------------------------------------------

    @staticmethod
    def _apply_duplicate_policy(check: DuplicateCheck, allow_duplicate: bool) -> None:
        """Raise ``DuplicateError`` for exact matches and un-overridden high ones."""
        if blocks_creation(check):
            logger.info("Creation blocked: exact duplicate of #%s", check.matched_record_id)
            raise DuplicateError(
                f"{check.message}. Vote on the existing Evermark instead of creating a new one.",
                check,
            )
        if requires_override(check) and not allow_duplicate:
            logger.info("Creation paused: likely duplicate of #%s needs override", check.matched_record_id)
            raise DuplicateError(
                f"{check.message}. Confirm to create a new Evermark anyway.",
                check,
                requires_override=True,
            )
        if check.exists:
            logger.info(
                "Possible duplicate of #%s (confidence=%s), proceeding",
                check.matched_record_id, check.confidence.value,
            )

    def _chain_failure(self, error: ChainError, run: _Run) -> CreationResult:
        if error.submitted:
            logger.error(
                "Mint %s broadcast but not confirmed (%s); needs follow-up",
                error.tx_hash, error.kind.value,
            )
            return run.result(
                CreationStatus.PARTIAL,
                f"{error.message}. Transaction: {error.tx_hash}",
                error_kind=error.kind.value,
                tx_hash=error.tx_hash,
                needs_reconciliation=True,
            )
        logger.error("Mint failed before broadcast at %s: %s", error.stage or run.stage, error.kind.value)
        return run.result(CreationStatus.FAILED, error.message, error_kind=error.kind.value)

    async def _finalize(self, data, provider_fields, temp_id, asset, document, metadata_uri, receipt, run: _Run) -> CreationResult:
        needs_reconciliation = receipt.token_id is None

        # 7. Re-address the image under the token id
        if receipt.token_id:
            run.report(85, "Finalizing image location", STAGE_MOVING)
            # Metadata already points at the temporary URL when IPFS was unavailable
            keep_source = document.image == asset.primary_url
            moved = await self.asset_store.move_asset(temp_id, receipt.token_id, asset, keep_source=keep_source)
            if moved.value is not None:
                asset = moved.value
            if moved.warning:
                run.warnings.append(moved.warning)

        # 8. Index store
        run.report(90, "Saving record", STAGE_PERSISTING)
        record = self._build_record(data, provider_fields, asset, document, metadata_uri, receipt)
        try:
            season = await self.season_oracle.current_season()
            record.season = season.number
        except Exception as e:
            logger.warning("Season unavailable for %s: %s", receipt.tx_hash, e)

        outcome = await self.persistence.sync(record)
        if outcome.status == StepStatus.ERR:
            run.warnings.append(outcome.error)
            needs_reconciliation = True
        elif outcome.warning:
            run.warnings.append(outcome.warning)

        run.report(100, "Complete", STAGE_DONE)
        logger.info(
            "Evermark created token=%s tx=%s warnings=%d",
            receipt.token_id or "?", receipt.tx_hash, len(run.warnings),
        )
        return run.result(
            CreationStatus.SUCCEEDED,
            "Evermark created successfully",
            tx_hash=receipt.tx_hash,
            token_id=receipt.token_id,
            metadata_uri=metadata_uri,
            image=asset,
            receipt=receipt,
            record=record,
            needs_reconciliation=needs_reconciliation,
        )

    def _build_record(self, data: EvermarkInput, provider_fields, asset, document, metadata_uri, receipt) -> EvermarkRecord:
        reference = data.content_reference
        lookup = reference_lookup_string(reference, data.doi, data.isbn)
        creator = data.creator_address or getattr(self.minter.signer, "address", "")
        return EvermarkRecord(
            token_id=receipt.token_id,
            tx_hash=receipt.tx_hash,
            content_reference=reference,
            metadata_uri=metadata_uri,
            image_asset=asset,
            title=data.title.strip(),
            author=data.author.strip(),
            description=document.description,
            tags=list(data.tags),
            creator_address=creator,
            referrer_address=data.referrer or None,
            content_identifier=extract_content_identifier(lookup).key if lookup else "",
            normalized_url=comparison_key(lookup) if lookup else "",
            verified=is_verified_cast(reference.content_type, creator, provider_fields),
            metadata=document.evermark,
        )


def is_verified_cast(content_type: ContentType, creator: str, provider_fields: Optional[dict]) -> bool:
    """A social post whose creator address is among the cast author's verified wallets.

    Both inputs are asserted by the client: ``creator`` comes from the form
    (or is the service key in custodial mode) and ``verified_addresses`` from
    the submitted provider fields. Nothing here proves wallet ownership, so
    the flag is a display hint and must not gate payouts or permissions.
    """
    if content_type != ContentType.SOCIAL_POST or not creator:
        return False
    cast = (provider_fields or {}).get("cast") or {}
    verified = {str(a).lower() for a in cast.get("verified_addresses") or []}
    return creator.lower() in verified
