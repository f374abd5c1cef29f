"""
Asset Store — dual-backend image and metadata storage.

Primary backend: a GCS bucket, addressed by path, served publicly. Required;
a primary failure is a ``StorageError`` that stops the pipeline.

Secondary backend: IPFS via Pinata (content-addressed). Best-effort; runs
concurrently with the primary upload and its failure only produces a warning.

Layout in the primary bucket:
    evermarks/pending/{temp_id}/image.{ext}   pre-mint upload
    evermarks/{token_id}/image.{ext}          after ``move_asset``
    metadata/{sha256}.json                    token metadata (never moved)
"""

from __future__ import annotations

import asyncio
import hashlib
import io
import json
import logging
import os
from typing import NamedTuple, Optional

from google.cloud import storage
from PIL import Image, UnidentifiedImageError

from errors import StorageError, ValidationError
from ipfs_client import PinataClient
from models import ImageAsset, MetadataDocument, PublishedMetadata, StepOutcome

logger = logging.getLogger("evermark-portal.assets")

PUBLIC_STORAGE_BASE = os.environ.get("PUBLIC_STORAGE_BASE", "https://storage.googleapis.com")

MAX_IMAGE_BYTES = 10 * 1024 * 1024  # 10MB
ALLOWED_IMAGE_TYPES = {
    "JPEG": ("image/jpeg", "jpg"),
    "PNG": ("image/png", "png"),
    "GIF": ("image/gif", "gif"),
    "WEBP": ("image/webp", "webp"),
}
SECONDARY_TIMEOUT = 10.0

PENDING_PREFIX = "evermarks/pending"
FINAL_PREFIX = "evermarks"
METADATA_PREFIX = "metadata"


def pending_prefix(temp_id: str) -> str:
    return f"{PENDING_PREFIX}/{temp_id}/"


def final_prefix(token_id: str) -> str:
    return f"{FINAL_PREFIX}/{token_id}/"


class InspectedImage(NamedTuple):
    mime_type: str
    extension: str
    width: int
    height: int


class ImageUpload(NamedTuple):
    asset: ImageAsset
    warnings: list[str]


class MetadataUpload(NamedTuple):
    published: PublishedMetadata
    warnings: list[str]


def inspect_image(data: bytes, type_hint: str = "") -> InspectedImage:
    """Validate an image against the allow-list and size ceiling.

    The bytes are sniffed with Pillow; ``type_hint`` (the client's declared
    content type) is rejected early when it names a type outside the list.
    Raises ``ValidationError`` without touching any backend.
    """
    errors = []
    allowed_mimes = {mime for mime, _ in ALLOWED_IMAGE_TYPES.values()}
    if not data:
        errors.append({"field": "image", "message": "Image is empty"})
    elif len(data) > MAX_IMAGE_BYTES:
        errors.append({
            "field": "image",
            "message": f"Image too large. Maximum size is {MAX_IMAGE_BYTES // (1024 * 1024)}MB.",
        })
    if type_hint and type_hint not in allowed_mimes and type_hint != "application/octet-stream":
        errors.append({"field": "image", "message": f"Unsupported image type: {type_hint}"})
    if errors:
        raise ValidationError(errors)

    try:
        with Image.open(io.BytesIO(data)) as img:
            fmt = img.format
            width, height = img.size
    except (UnidentifiedImageError, OSError) as exc:
        raise ValidationError([{"field": "image", "message": "File is not a readable image"}]) from exc

    if fmt not in ALLOWED_IMAGE_TYPES:
        raise ValidationError([{"field": "image", "message": f"Unsupported image format: {fmt}"}])
    mime, ext = ALLOWED_IMAGE_TYPES[fmt]
    return InspectedImage(mime, ext, width, height)


# ---------------------------------------------------------------------------
# Primary backend
# ---------------------------------------------------------------------------


class GcsObjectStore:
    """PUT / COPY / DELETE / LIST over one GCS bucket.

    The storage client is synchronous; every call runs in the default
    executor so the event loop is never blocked.
    """

    def __init__(self, bucket_name: str, client: Optional[storage.Client] = None, public_base: str = PUBLIC_STORAGE_BASE):
        self.bucket_name = bucket_name
        self._client = client
        self._bucket = None
        self._public_base = public_base.rstrip("/")

    def _get_bucket(self):
        if self._bucket is None:
            if self._client is None:
                self._client = storage.Client()
            self._bucket = self._client.bucket(self.bucket_name)
        return self._bucket

    def public_url(self, path: str) -> str:
        return f"{self._public_base}/{self.bucket_name}/{path}"

    async def _run(self, fn):
        return await asyncio.get_event_loop().run_in_executor(None, fn)

    async def put(self, path: str, data: bytes, content_type: str) -> str:
        def _upload():
            blob = self._get_bucket().blob(path)
            blob.cache_control = "public, max-age=31536000"
            blob.upload_from_string(data, content_type=content_type)
        await self._run(_upload)
        return self.public_url(path)

    async def copy(self, src_path: str, dst_path: str) -> str:
        def _copy():
            bucket = self._get_bucket()
            bucket.copy_blob(bucket.blob(src_path), bucket, dst_path)
        await self._run(_copy)
        return self.public_url(dst_path)

    async def delete(self, path: str) -> None:
        await self._run(lambda: self._get_bucket().blob(path).delete())

    async def list(self, prefix: str) -> list[str]:
        def _list():
            return [blob.name for blob in self._get_bucket().list_blobs(prefix=prefix)]
        return await self._run(_list)


# ---------------------------------------------------------------------------
# Composition
# ---------------------------------------------------------------------------


class AssetStore:
    """Primary object store plus optional content-addressed replication."""

    def __init__(
        self,
        objects: GcsObjectStore,
        content: Optional[PinataClient] = None,
        secondary_timeout: float = SECONDARY_TIMEOUT,
    ):
        self.objects = objects
        self.content = content
        self.secondary_timeout = secondary_timeout

    @property
    def replication_enabled(self) -> bool:
        return self.content is not None and self.content.enabled

    async def upload_image(self, data: bytes, type_hint: str, temp_id: str) -> ImageUpload:
        """Upload a pre-mint image under ``temp_id``.

        The IPFS pin runs alongside the primary upload and is awaited, because
        its CID becomes the ``ipfs://`` image reference in the metadata. A slow
        pin therefore delays every creation by up to ``secondary_timeout``;
        past that the image ships with its primary URL and a warning.

        Raises:
            ValidationError: disallowed type or oversized, before any network call.
            StorageError: the primary backend failed.
        """
        info = inspect_image(data, type_hint)
        path = f"{pending_prefix(temp_id)}image.{info.extension}"

        primary, secondary = await asyncio.gather(
            self._put_primary(path, data, info.mime_type),
            self._replicate(
                lambda: self.content.pin_file(data, f"image.{info.extension}", info.mime_type, name=f"evermark-{temp_id}"),
                f"image {temp_id}",
            ),
            return_exceptions=True,
        )
        if isinstance(primary, BaseException):
            raise primary

        asset = ImageAsset(
            primary_url=primary,
            storage_path=path,
            byte_size=len(data),
            mime_type=info.mime_type,
            dimensions=f"{info.width}x{info.height}",
        )
        warnings = []
        if secondary.succeeded and secondary.value:
            asset.content_hash = secondary.value
            asset.secondary_url = self.content.gateway_url(secondary.value)
        elif secondary.warning:
            warnings.append(secondary.warning)

        logger.info(
            "Image uploaded path=%s size=%d dims=%s ipfs=%s",
            path, asset.byte_size, asset.dimensions, asset.content_hash or "-",
        )
        return ImageUpload(asset, warnings)

    async def upload_metadata(self, document: MetadataDocument) -> MetadataUpload:
        """Publish a metadata document; ``uri`` prefers the IPFS gateway URL.

        The primary copy lives at a content-derived path so it never needs
        re-addressing after mint.
        """
        payload = document.model_dump(mode="json", exclude_none=True)
        body = json.dumps(payload, sort_keys=True, ensure_ascii=False).encode("utf-8")
        digest = hashlib.sha256(body).hexdigest()
        path = f"{METADATA_PREFIX}/{digest}.json"

        primary, secondary = await asyncio.gather(
            self._put_primary(path, body, "application/json"),
            self._replicate(
                lambda: self.content.pin_json(payload, name=f"evermark-metadata-{digest[:12]}"),
                f"metadata {digest[:12]}",
            ),
            return_exceptions=True,
        )
        if isinstance(primary, BaseException):
            raise primary

        warnings = []
        cid = secondary.value if secondary.succeeded else None
        if secondary.warning:
            warnings.append(secondary.warning)
        uri = self.content.gateway_url(cid) if cid else primary
        logger.info("Metadata published uri=%s", uri)
        return MetadataUpload(PublishedMetadata(uri=uri, primary_url=primary, content_hash=cid), warnings)

    async def move_asset(self, temp_id: str, final_id: str, asset: ImageAsset, keep_source: bool = False) -> StepOutcome:
        """Re-address a pre-mint upload to its token-id location.

        Copy then delete; nothing is re-encoded or re-uploaded. When
        ``keep_source`` is set (published metadata still points at the
        temporary URL) the source objects are left in place.
        """
        src_prefix = pending_prefix(temp_id)
        dst_prefix = final_prefix(final_id)
        try:
            paths = await self.objects.list(src_prefix)
            if not paths:
                return StepOutcome.ok_with_warning("move_asset", f"No pending objects under {src_prefix}", asset)

            moved = asset.model_copy()
            for src in paths:
                dst = dst_prefix + src[len(src_prefix):]
                url = await self.objects.copy(src, dst)
                if src == asset.storage_path:
                    moved.primary_url = url
                    moved.storage_path = dst
        except Exception as exc:
            logger.warning("Asset move %s -> %s failed: %s", src_prefix, dst_prefix, exc)
            return StepOutcome.ok_with_warning(
                "move_asset", f"Image left at temporary location: {exc}", asset,
            )

        if keep_source:
            logger.info("Asset copied to %s; temporary copy kept (referenced by metadata)", dst_prefix)
            return StepOutcome.ok("move_asset", moved)

        failed_deletes = 0
        for src in paths:
            try:
                await self.objects.delete(src)
            except Exception as exc:
                failed_deletes += 1
                logger.warning("Could not delete %s after move: %s", src, exc)
        logger.info("Asset moved %s -> %s", src_prefix, dst_prefix)
        if failed_deletes:
            return StepOutcome.ok_with_warning(
                "move_asset", f"{failed_deletes} temporary object(s) not cleaned up", moved,
            )
        return StepOutcome.ok("move_asset", moved)

    # ------------------------------------------------------------------

    async def _put_primary(self, path: str, data: bytes, content_type: str) -> str:
        try:
            return await self.objects.put(path, data, content_type)
        except Exception as exc:
            logger.error("Primary upload failed for %s: %s", path, exc)
            raise StorageError(f"Upload failed: {exc}", backend="primary") from exc

    async def _replicate(self, pin, label: str) -> StepOutcome:
        if not self.replication_enabled:
            return StepOutcome.ok("replicate")
        try:
            cid = await asyncio.wait_for(pin(), timeout=self.secondary_timeout)
            return StepOutcome.ok("replicate", cid)
        except asyncio.TimeoutError:
            logger.warning("IPFS replication of %s timed out", label)
            return StepOutcome.ok_with_warning("replicate", f"IPFS replication of {label} timed out")
        except Exception as exc:
            logger.warning("IPFS replication of %s failed: %s", label, exc)
            return StepOutcome.ok_with_warning("replicate", f"IPFS replication of {label} failed")
