"""
Metadata Builder — assemble the token metadata document.

Three layers are merged, highest priority last:

  1. provider fields   (journal, publisher, cast data ... from external lookups)
  2. content-type fields (DOI, ISBN, cast URL, source URL)
  3. user fields       (title, description, tags, custom fields)

A provider lookup that failed upstream simply arrives as an empty dict. This
module never performs network calls.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Optional

from models import ContentReference, ContentType, EvermarkInput, ImageAsset, MetadataDocument

METADATA_VERSION = "1.0"
CAST_DESCRIPTION_CHARS = 200

# provider key -> (evermark namespace key, attribute trait)
PROVIDER_ATTRIBUTES = {
    "journal": ("journal", "Journal"),
    "publisher": ("publisher", "Publisher"),
    "publication_date": ("publicationDate", "Publication Date"),
    "language": ("language", "Language"),
    "page_count": ("pageCount", "Pages"),
}


def image_reference(asset: ImageAsset) -> str:
    """Content-addressed reference when replication worked, else the primary URL."""
    if not asset.primary_url:
        raise ValueError("Image must be uploaded before metadata is built")
    if asset.content_hash:
        return f"ipfs://{asset.content_hash}"
    return asset.primary_url


def build(
    reference: ContentReference,
    image_asset: ImageAsset,
    user_fields: EvermarkInput,
    provider_fields: Optional[dict[str, Any]] = None,
    created_at: Optional[datetime] = None,
) -> MetadataDocument:
    provider = provider_fields or {}
    created = (created_at or datetime.now(timezone.utc)).isoformat()
    content_type = reference.content_type.value

    namespace: dict[str, Any] = {"version": METADATA_VERSION}
    traits: dict[str, Any] = {}

    # 1. provider layer
    for key, (ns_key, trait) in PROVIDER_ATTRIBUTES.items():
        value = provider.get(key)
        if value not in (None, ""):
            namespace[ns_key] = value
            traits[trait] = value
    if provider.get("authors"):
        namespace["authors"] = list(provider["authors"])
    cast = provider.get("cast")
    if cast:
        namespace["castData"] = cast
    if provider:
        namespace["provenance"] = {
            "source": provider.get("source", "external"),
            "fetchedAt": provider.get("fetched_at"),
        }

    # 2. content-type layer
    namespace["contentType"] = content_type
    namespace["sourceUrl"] = reference.source_url
    if reference.content_type == ContentType.DOI and user_fields.doi:
        namespace["doi"] = user_fields.doi.strip()
        traits["DOI"] = namespace["doi"]
    if reference.content_type in (ContentType.ISBN, ContentType.BOOK_RECORD) and user_fields.isbn:
        namespace["isbn"] = user_fields.isbn.strip()
        traits["ISBN"] = namespace["isbn"]
    if reference.content_type == ContentType.SOCIAL_POST:
        namespace["castUrl"] = reference.source_url
    if reference.content_type == ContentType.URL:
        namespace["url"] = reference.source_url

    # 3. user layer
    namespace["tags"] = list(user_fields.tags)
    namespace["customFields"] = [dict(f) for f in user_fields.custom_fields]
    for field in user_fields.custom_fields:
        if field.get("key"):
            traits[field["key"]] = field.get("value", "")

    description = user_fields.description.strip()
    if not description:
        description = _provider_description(provider)

    attributes = [
        {"trait_type": "Content Type", "value": content_type},
        {"trait_type": "Author", "value": user_fields.author.strip()},
        {"trait_type": "Created At", "value": created},
    ]
    attributes += [{"trait_type": k, "value": v} for k, v in traits.items()]

    return MetadataDocument(
        name=user_fields.title.strip(),
        description=description,
        image=image_reference(image_asset),
        external_url=reference.source_url or None,
        attributes=attributes,
        evermark=namespace,
    )


def _provider_description(provider: dict[str, Any]) -> str:
    if provider.get("description"):
        return str(provider["description"])
    cast = provider.get("cast") or {}
    content = str(cast.get("content", ""))
    if len(content) > CAST_DESCRIPTION_CHARS:
        return content[:CAST_DESCRIPTION_CHARS] + "..."
    return content
