"""
Duplicate Guard — advisory duplicate detection ahead of minting.

Looks up the index store for an existing record carrying the same content
identifier (or, failing that, the same normalized URL) and grades the match:

  exact   — blocks creation; the caller should vote on the existing record
  high    — creation requires an explicit override
  medium  — logged, creation proceeds
  low     — logged, creation proceeds

Nothing here is a uniqueness constraint: two concurrent submissions of the
same reference can both pass. An unreachable index store degrades to "allow".
"""

from __future__ import annotations

import logging

from content_identifiers import (
    comparison_key,
    duplicate_message,
    extract_content_identifier,
)
from models import ContentReference, ContentType, DuplicateCheck, DuplicateConfidence
from validation import ISBN_PATTERN, clean_isbn

logger = logging.getLogger("evermark-portal.duplicates")


def reference_lookup_string(reference: ContentReference, doi: str | None = None, isbn: str | None = None) -> str:
    """The string identifiers are extracted from.

    DOI/ISBN content carries its identifier in its own field. A well-formed
    identifier wins over the source URL, so the same book or paper submitted
    once with a review link and once without still collides.
    """
    if reference.content_type == ContentType.DOI and doi:
        return doi.strip()
    if reference.content_type in (ContentType.ISBN, ContentType.BOOK_RECORD) and isbn:
        cleaned = clean_isbn(isbn)
        if ISBN_PATTERN.match(cleaned) or not reference.source_url:
            return cleaned
    return reference.source_url


class DuplicateGuard:
    """Grades how likely a content reference is already preserved."""

    def __init__(self, index_store):
        self._index = index_store

    async def check(
        self,
        reference: ContentReference,
        doi: str | None = None,
        isbn: str | None = None,
    ) -> DuplicateCheck:
        lookup = reference_lookup_string(reference, doi, isbn)
        if not lookup:
            return DuplicateCheck(message="No source reference to check")

        identifier = extract_content_identifier(lookup)

        try:
            match = await self._index.find_by_identifier(identifier.key)
            confidence = identifier.confidence
            if match is None and identifier.type != "normalized_url":
                # Legacy records predate identifier extraction
                match = await self._index.find_by_normalized_url(comparison_key(lookup))
                confidence = DuplicateConfidence.MEDIUM
        except Exception as exc:
            logger.warning("Duplicate check unavailable for %s: %s", identifier.key, exc)
            return DuplicateCheck(
                exists=False,
                confidence=DuplicateConfidence.LOW,
                duplicate_type=identifier.type,
                message="Unable to check for duplicates",
            )

        if match is None:
            return DuplicateCheck(
                exists=False,
                confidence=identifier.confidence,
                duplicate_type=identifier.type,
            )

        token_id = str(match.get("token_id", "")) or None
        verdict = DuplicateCheck(
            exists=True,
            confidence=confidence,
            matched_record_id=token_id,
            duplicate_type=identifier.type,
            message=duplicate_message(identifier.type, token_id),
        )
        logger.info(
            "Duplicate candidate %s -> #%s (confidence=%s)",
            identifier.key, token_id, confidence.value,
        )
        return verdict


def blocks_creation(check: DuplicateCheck) -> bool:
    return check.exists and check.confidence == DuplicateConfidence.EXACT


def requires_override(check: DuplicateCheck) -> bool:
    return check.exists and check.confidence == DuplicateConfidence.HIGH
