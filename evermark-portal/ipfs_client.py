"""
Content-addressed storage via the Pinata pinning API.

``pin_file`` / ``pin_json`` return the IPFS content hash (CID); content is
resolvable at ``{IPFS_GATEWAY}/{cid}``. A client built without a JWT is
disabled and every pin raises ``StorageError(backend="secondary")``.
"""

from __future__ import annotations

import json
import logging
import os
from typing import Optional

import httpx

from errors import StorageError

logger = logging.getLogger("evermark-portal.ipfs")

PINATA_API_URL = os.environ.get("PINATA_API_URL", "https://api.pinata.cloud")
IPFS_GATEWAY = os.environ.get("IPFS_GATEWAY", "https://gateway.pinata.cloud/ipfs")
PIN_TIMEOUT = 30.0


class PinataClient:
    def __init__(
        self,
        jwt: str,
        api_url: str = PINATA_API_URL,
        gateway: str = IPFS_GATEWAY,
        timeout: float = PIN_TIMEOUT,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self._jwt = jwt
        self._client = client
        self.api_url = api_url.rstrip("/")
        self.gateway = gateway.rstrip("/")
        self._timeout = timeout

    @property
    def enabled(self) -> bool:
        return bool(self._jwt)

    def gateway_url(self, cid: str) -> str:
        return f"{self.gateway}/{cid}"

    async def pin_file(self, data: bytes, filename: str, mime_type: str, name: Optional[str] = None) -> str:
        """Pin raw bytes; returns the CID."""
        files = {"file": (filename, data, mime_type)}
        form = {"pinataMetadata": json.dumps({"name": name or filename})}
        return await self._pin("/pinning/pinFileToIPFS", files=files, data=form)

    async def pin_json(self, document: dict, name: str) -> str:
        """Pin a JSON document; returns the CID."""
        payload = {"pinataContent": document, "pinataMetadata": {"name": name}}
        return await self._pin("/pinning/pinJSONToIPFS", json=payload)

    async def _pin(self, path: str, **kwargs) -> str:
        if not self.enabled:
            raise StorageError("IPFS pinning not configured", backend="secondary")

        headers = {"Authorization": f"Bearer {self._jwt}"}
        try:
            if self._client is not None:
                resp = await self._client.post(f"{self.api_url}{path}", headers=headers, **kwargs)
            else:
                async with httpx.AsyncClient(timeout=self._timeout) as client:
                    resp = await client.post(f"{self.api_url}{path}", headers=headers, **kwargs)
            resp.raise_for_status()
            cid = resp.json().get("IpfsHash")
        except httpx.HTTPStatusError as exc:
            raise StorageError(
                f"IPFS pin failed: HTTP {exc.response.status_code}", backend="secondary",
            ) from exc
        except httpx.RequestError as exc:
            raise StorageError(f"IPFS unreachable: {exc}", backend="secondary") from exc

        if not cid:
            raise StorageError("IPFS pin returned no content hash", backend="secondary")
        logger.info("Pinned %s -> %s", path.rsplit("/", 1)[-1], cid)
        return cid
