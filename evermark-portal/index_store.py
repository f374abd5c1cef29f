"""
Index store — Firestore-backed queryable projection of minted Evermarks.

Collections:
  evermarks/{token_id}          — finalized records
  unreconciled_mints/{tx_hash}  — mints whose token id could not be parsed
  season_state/current          — optional season override
"""

from __future__ import annotations

import logging
from typing import Optional

from google.cloud.firestore import AsyncClient

logger = logging.getLogger("evermark-portal.index")

RECORDS_COLLECTION = "evermarks"
UNRECONCILED_COLLECTION = "unreconciled_mints"
SEASON_COLLECTION = "season_state"


class FirestoreIndexStore:
    """Thin async wrapper over the Firestore collections this service owns."""

    def __init__(self, db: AsyncClient):
        self._db = db

    async def find_by_identifier(self, identifier_key: str) -> Optional[dict]:
        """Return the first record whose ``content_identifier`` equals the key."""
        return await self._first_match("content_identifier", identifier_key)

    async def find_by_normalized_url(self, normalized_url: str) -> Optional[dict]:
        return await self._first_match("normalized_url", normalized_url)

    async def _first_match(self, field: str, value: str) -> Optional[dict]:
        query = self._db.collection(RECORDS_COLLECTION).where(field, "==", value).limit(1)
        docs = [doc async for doc in query.stream()]
        if not docs:
            return None
        data = docs[0].to_dict() or {}
        data.setdefault("token_id", docs[0].id)
        return data

    async def put_record(self, token_id: str, document: dict) -> None:
        """Insert or overwrite ``evermarks/{token_id}``. Safe to retry."""
        await self._db.collection(RECORDS_COLLECTION).document(str(token_id)).set(document)

    async def put_unreconciled(self, tx_hash: str, document: dict) -> None:
        await self._db.collection(UNRECONCILED_COLLECTION).document(tx_hash).set(document)

    async def get_season_override(self) -> Optional[dict]:
        doc = await self._db.collection(SEASON_COLLECTION).document("current").get()
        if doc.exists:
            return doc.to_dict()
        return None
