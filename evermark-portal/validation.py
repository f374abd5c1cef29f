"""
Input validation for Evermark creation.

All checks run before any network call. Errors are collected and raised
together as one ``ValidationError`` so the caller can show every problem at
once.
"""

from __future__ import annotations

import re
from urllib.parse import urlsplit

from errors import ValidationError
from models import ContentType, EvermarkInput

MAX_TITLE = 100
MAX_AUTHOR = 50
MAX_DESCRIPTION = 1000
MAX_TAGS = 10

DOI_PATTERN = re.compile(r"^10\.\d{4,}/\S+$")
ISBN_PATTERN = re.compile(r"^(?:\d{9}[\dX]|\d{13})$")
TAG_PATTERN = re.compile(r"^[A-Za-z0-9_-]{1,30}$")
CAST_URL_PATTERNS = [
    re.compile(r"^https://warpcast\.com/[^/]+/0x[a-fA-F0-9]+"),
    re.compile(r"^https://farcaster\.xyz/[^/]+/0x[a-fA-F0-9]+"),
    re.compile(r"^https://supercast\.xyz/[^/]+/0x[a-fA-F0-9]+"),
]
CAST_HASH_PATTERN = re.compile(r"^0x[a-fA-F0-9]{8,64}$")
TWEET_URL_PATTERN = re.compile(r"^https?://(?:www\.)?(?:twitter\.com|x\.com)/\w+/status/\d+")


def clean_isbn(isbn: str) -> str:
    return re.sub(r"[-\s]", "", isbn).upper()


def is_http_url(value: str) -> bool:
    parts = urlsplit(value)
    return parts.scheme in ("http", "https") and bool(parts.netloc)


def is_social_post_reference(value: str) -> bool:
    return (
        any(p.match(value) for p in CAST_URL_PATTERNS)
        or bool(CAST_HASH_PATTERN.match(value))
        or bool(TWEET_URL_PATTERN.match(value))
    )


def validate_input(data: EvermarkInput) -> None:
    """Raise ``ValidationError`` listing every field problem; return None when valid."""
    errors: list[dict] = []

    def fail(field: str, message: str):
        errors.append({"field": field, "message": message})

    title = data.title.strip()
    if not title:
        fail("title", "Title is required")
    elif len(title) > MAX_TITLE:
        fail("title", f"Title must be {MAX_TITLE} characters or less")

    author = data.author.strip()
    if not author:
        fail("author", "Author is required")
    elif len(author) > MAX_AUTHOR:
        fail("author", f"Author name must be {MAX_AUTHOR} characters or less")

    if len(data.description) > MAX_DESCRIPTION:
        fail("description", f"Description must be {MAX_DESCRIPTION} characters or less")

    source = data.source_url.strip()
    ctype = data.content_type

    # A bare cast hash is a valid SocialPost source but not a URL
    if source and not is_http_url(source) and not (ctype == ContentType.SOCIAL_POST and CAST_HASH_PATTERN.match(source)):
        fail("source_url", "Source URL must be a valid URL")

    doi = (data.doi or "").strip()
    if ctype == ContentType.DOI and not doi:
        fail("doi", "DOI is required for academic papers")
    elif doi and not DOI_PATTERN.match(doi):
        fail("doi", "Invalid DOI format")

    isbn = (data.isbn or "").strip()
    if ctype == ContentType.ISBN and not isbn:
        fail("isbn", "ISBN is required for books")
    elif isbn and not ISBN_PATTERN.match(clean_isbn(isbn)):
        fail("isbn", "Invalid ISBN format")

    if ctype == ContentType.SOCIAL_POST:
        if not source:
            fail("source_url", "Cast URL or hash is required for social posts")
        elif not is_social_post_reference(source):
            fail("source_url", "Invalid Farcaster cast URL, cast hash or X post URL")
    elif ctype == ContentType.URL and not source:
        fail("source_url", "Source URL is required for web content")
    elif ctype == ContentType.BOOK_RECORD and not source and not isbn:
        fail("source_url", "Book records need a source URL or an ISBN")

    if len(data.tags) > MAX_TAGS:
        fail("tags", f"Maximum {MAX_TAGS} tags allowed")
    elif any(not TAG_PATTERN.match(tag) for tag in data.tags):
        fail("tags", "Tags must be alphanumeric and under 30 characters")

    if errors:
        raise ValidationError(errors)
