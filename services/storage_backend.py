import json
import os
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any

import httpx


class UploadError(Exception):
    pass


@dataclass(frozen=True)
class StorageReceipt:
    content_id: str
    proof_handle: str | None
    size: int


class StorageBackend(ABC):
    @abstractmethod
    async def upload(self, data: bytes, metadata: dict[str, Any]) -> StorageReceipt:
        """Persist data and return its content id plus proof-of-storage handle"""
        pass

    async def aclose(self) -> None:
        return None


class HttpStorageBackend(StorageBackend):
    def __init__(
        self,
        base_url: str,
        request_timeout: float = 60.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        if not base_url:
            raise ValueError("STORAGE_BACKEND_URL is required")

        self.base_url = base_url.rstrip("/")
        self.request_timeout = request_timeout
        self._client = httpx.AsyncClient(timeout=request_timeout, transport=transport)

    @classmethod
    def from_env(cls) -> "HttpStorageBackend":
        return cls(
            base_url=os.getenv("STORAGE_BACKEND_URL", "http://localhost:3000").strip(),
            request_timeout=float(os.getenv("STORAGE_REQUEST_TIMEOUT_SECONDS", "60")),
        )

    async def upload(self, data: bytes, metadata: dict[str, Any]) -> StorageReceipt:
        if not data:
            raise UploadError("Refusing to upload an empty payload")

        filename = f"{metadata.get('chunk_id', 'chunk')}.wav"
        try:
            resp = await self._client.post(
                f"{self.base_url}/upload/chunk",
                files={"file": (filename, data, "audio/wav")},
                data={"metadata": json.dumps(metadata)},
            )
            resp.raise_for_status()
            body = resp.json()
        except (httpx.HTTPError, ValueError) as exc:
            raise UploadError(f"Upload of {filename} failed: {exc}") from exc

        content_id = str(body.get("cid") or body.get("content_id") or "").strip()
        if not content_id:
            raise UploadError(f"Storage backend returned no content id for {filename}")

        proof_handle = body.get("proof_set_id") or body.get("proofSetId") or body.get("proof_handle")
        return StorageReceipt(
            content_id=content_id,
            proof_handle=None if proof_handle is None else str(proof_handle),
            size=int(body.get("size") or len(data)),
        )

    async def aclose(self) -> None:
        await self._client.aclose()
