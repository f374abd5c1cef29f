"""
Content identifier extraction and URL normalization.

Derives the most specific identifier a source reference carries (cast hash,
DOI, ISBN, tweet id, ...) together with how confidently two references
sharing that identifier denote the same content. The duplicate guard queries
the index store on these keys.
"""

from __future__ import annotations

import re
from typing import NamedTuple
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

from models import DuplicateConfidence

TRACKING_PARAMS = frozenset({
    "utm_source", "utm_medium", "utm_campaign", "utm_content", "utm_term",
    "utm_id", "utm_source_platform", "utm_creative_format", "utm_marketing_tactic",
    "ref", "source", "fbclid", "gclid", "msclkid", "twclid",
    "igshid", "tt_content", "tt_medium", "mc_cid", "mc_eid",
    "_ga", "_gl", "_hsenc", "_hsmi", "hsctatracking",
    "campaign", "medium", "content", "term",
})

_CAST_URL = re.compile(r"(?:farcaster\.xyz|warpcast\.com|supercast\.xyz)/[^/]+/0x([a-fA-F0-9]{8,64})")
_CAST_HASH = re.compile(r"^0x[a-fA-F0-9]{8,64}$")
_TWEET = re.compile(r"(?:twitter\.com|x\.com)/\w+/status/(\d+)")
_DOI_URL = re.compile(r"doi\.org/(.+)$")
_DOI_BARE = re.compile(r"(10\.\d+/[^\s/?#]+)")
_ISBN = re.compile(r"(?:isbn[:\s]?)?(\d{13}|\d{9}[\dX])", re.IGNORECASE)
_ISBN_CONTEXT = re.compile(r"book|isbn|amazon|goodreads|worldcat|openlibrary", re.IGNORECASE)
_YOUTUBE = re.compile(r"(?:youtube\.com/watch\?v=|youtu\.be/)([a-zA-Z0-9_-]{11})")
_GITHUB = re.compile(r"github\.com/([^/]+/[^/?#]+)(?:/.*)?$")
_GITHUB_COMMIT = re.compile(r"github\.com/([^/]+/[^/]+)/(?:commit|tree)/([a-fA-F0-9]{40})")
_GITHUB_TAG = re.compile(r"github\.com/([^/]+/[^/]+)/releases/tag/([^/?#]+)")


class ContentIdentifier(NamedTuple):
    id: str
    type: str
    confidence: DuplicateConfidence
    original_url: str

    @property
    def key(self) -> str:
        """Index-store key, e.g. ``doi:10.1000/test``."""
        return f"{self.type}:{self.id}"


def normalize_url(url: str) -> str:
    """Canonical form of a URL for deduplication.

    Lower-cased, https, no ``www.``, no trailing slash, tracking parameters
    removed and the remaining query parameters sorted.
    """
    normalized = url.strip().lower()
    if not normalized:
        return ""
    if not normalized.startswith("http"):
        normalized = f"https://{normalized}"
    normalized = re.sub(r"^http:", "https:", normalized)

    parts = urlsplit(normalized)
    host = re.sub(r"^www\.", "", parts.netloc)
    path = parts.path
    if path.endswith("/") and len(path) > 1:
        path = path.rstrip("/")
    if path == "/":
        path = ""
    query = sorted(
        (k, v) for k, v in parse_qsl(parts.query, keep_blank_values=True)
        if k not in TRACKING_PARAMS
    )
    return urlunsplit(("https", host, path, urlencode(query), ""))


def comparison_key(url: str) -> str:
    """Host and path only: the string compared when no better identifier exists."""
    parts = urlsplit(normalize_url(url))
    return f"{parts.netloc}{parts.path}"


def extract_content_identifier(url: str) -> ContentIdentifier:
    """Return the most specific identifier available in ``url``."""
    raw = url.strip()

    match = _CAST_URL.search(raw)
    if match:
        return ContentIdentifier(f"0x{match.group(1).lower()}", "cast_hash", DuplicateConfidence.EXACT, raw)
    if _CAST_HASH.match(raw):
        return ContentIdentifier(raw.lower(), "cast_hash", DuplicateConfidence.EXACT, raw)

    # Tweets before ISBN: status ids are long digit runs
    tweet = _TWEET.search(raw)
    if tweet:
        return ContentIdentifier(tweet.group(1), "tweet_id", DuplicateConfidence.HIGH, raw)

    match = _DOI_URL.search(raw) or _DOI_BARE.search(raw)
    if match:
        return ContentIdentifier(match.group(1).lower(), "doi", DuplicateConfidence.EXACT, raw)

    cleaned = re.sub(r"[-\s]", "", raw)
    match = _ISBN.search(cleaned)
    if match and (_ISBN_CONTEXT.search(raw) or cleaned.upper() == match.group(1).upper()):
        return ContentIdentifier(match.group(1).upper(), "isbn", DuplicateConfidence.EXACT, raw)

    match = _YOUTUBE.search(raw)
    if match:
        return ContentIdentifier(match.group(1), "youtube_id", DuplicateConfidence.HIGH, raw)

    match = _GITHUB.search(raw)
    if match:
        commit = _GITHUB_COMMIT.search(raw)
        tag = _GITHUB_TAG.search(raw)
        repo = match.group(1).lower()
        if commit:
            repo = f"{commit.group(1).lower()}@{commit.group(2).lower()}"
        elif tag:
            repo = f"{tag.group(1).lower()}@{tag.group(2)}"
        return ContentIdentifier(repo, "github_resource", DuplicateConfidence.MEDIUM, raw)

    return ContentIdentifier(comparison_key(raw), "normalized_url", DuplicateConfidence.LOW, raw)


def duplicate_message(identifier_type: str, token_id: str | None = None) -> str:
    ref = f" (Evermark #{token_id})" if token_id else ""
    messages = {
        "cast_hash": "This Farcaster cast has already been preserved",
        "doi": "This research paper (DOI) has already been preserved",
        "isbn": "This book (ISBN) has already been preserved",
        "tweet_id": "This tweet appears to already be preserved",
        "youtube_id": "This YouTube video appears to already be preserved",
        "github_resource": "This GitHub resource appears to already be preserved",
        "normalized_url": "Similar content appears to already exist",
    }
    return messages.get(identifier_type, "This content might already exist") + ref
