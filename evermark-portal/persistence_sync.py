"""
Persistence Sync — write the finalized record into the index store.

Best-effort by contract: ``sync`` never raises. It returns a ``StepOutcome``
the orchestrator folds into the creation result as a reconciliation warning.
The mint has already happened when this runs; a lost index entry is degraded
service, not data loss.

After a successful write, derived-artifact jobs (image cache warm-up, cast
preview image) are fired in the background. Their failures are logged and
otherwise ignored.
"""

from __future__ import annotations

import asyncio
import logging
import os
from typing import Optional

import httpx

from errors import PersistenceError
from models import ContentType, EvermarkRecord, StepOutcome

logger = logging.getLogger("evermark-portal.persistence")

CACHE_IMAGES_URL = os.environ.get("CACHE_IMAGES_URL", "")
CAST_IMAGE_URL = os.environ.get("CAST_IMAGE_URL", "")

WRITE_ATTEMPTS = 3
WRITE_BACKOFF = [1.0, 3.0]
TRIGGER_ATTEMPTS = 2
TRIGGER_TIMEOUT = 30.0


class PersistenceSync:
    def __init__(
        self,
        index_store,
        cache_images_url: str = CACHE_IMAGES_URL,
        cast_image_url: str = CAST_IMAGE_URL,
        write_backoff: Optional[list[float]] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self._index = index_store
        self.cache_images_url = cache_images_url
        self.cast_image_url = cast_image_url
        self._backoff = WRITE_BACKOFF if write_backoff is None else write_backoff
        self._http = http_client
        self._background: set[asyncio.Task] = set()

    async def sync(self, record: EvermarkRecord) -> StepOutcome:
        document = record.to_document()
        if record.token_id:
            write = lambda: self._index.put_record(record.token_id, document)
            target = f"evermarks/{record.token_id}"
        else:
            write = lambda: self._index.put_unreconciled(record.tx_hash, document)
            target = f"unreconciled_mints/{record.tx_hash}"

        try:
            await self._write_with_retry(write, target)
        except PersistenceError as e:
            logger.error("Index write %s failed after %d attempts: %s", target, WRITE_ATTEMPTS, e.message)
            return StepOutcome.err(
                "persistence",
                f"Evermark minted (tx {record.tx_hash}) but could not be saved to the index: {e.message}",
            )

        if not record.token_id:
            logger.warning("Mint %s saved for reconciliation (token id unknown)", record.tx_hash)
            return StepOutcome.ok_with_warning(
                "persistence",
                "Token id could not be determined; record saved for manual reconciliation",
                target,
            )

        logger.info("Index record written: %s", target)
        self.trigger_derived_artifacts(record)
        return StepOutcome.ok("persistence", target)

    async def _write_with_retry(self, write, target: str) -> None:
        last_error = ""
        for attempt in range(WRITE_ATTEMPTS):
            try:
                await write()
                return
            except Exception as e:
                last_error = str(e) or type(e).__name__
                logger.warning("Index write %s attempt %d/%d failed: %s", target, attempt + 1, WRITE_ATTEMPTS, e)
            if attempt < WRITE_ATTEMPTS - 1 and attempt < len(self._backoff):
                await asyncio.sleep(self._backoff[attempt])
        raise PersistenceError(last_error, stage="persisting")

    # ------------------------------------------------------------------
    # Derived artifacts (fire-and-forget)
    # ------------------------------------------------------------------

    def trigger_derived_artifacts(self, record: EvermarkRecord) -> list[asyncio.Task]:
        jobs = []
        if self.cache_images_url:
            jobs.append((self.cache_images_url, {"trigger": "creation", "tokenIds": [int(record.token_id)]}))
        if self.cast_image_url and record.content_reference.content_type == ContentType.SOCIAL_POST:
            jobs.append((self.cast_image_url, {"token_id": int(record.token_id)}))

        tasks = []
        for url, payload in jobs:
            task = asyncio.create_task(self._post_trigger(url, payload))
            self._background.add(task)
            task.add_done_callback(self._background.discard)
            tasks.append(task)
        return tasks

    async def _post_trigger(self, url: str, payload: dict) -> bool:
        for attempt in range(TRIGGER_ATTEMPTS):
            try:
                if self._http is not None:
                    resp = await self._http.post(url, json=payload)
                else:
                    async with httpx.AsyncClient(timeout=TRIGGER_TIMEOUT) as client:
                        resp = await client.post(url, json=payload)
                resp.raise_for_status()
                logger.info("Derived-artifact trigger %s ok for %s", url, payload)
                return True
            except Exception as e:
                logger.warning(
                    "Derived-artifact trigger %s attempt %d/%d failed: %s",
                    url, attempt + 1, TRIGGER_ATTEMPTS, e,
                )
        return False

    async def drain(self):
        """Wait for in-flight trigger tasks (shutdown and tests)."""
        if self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)
