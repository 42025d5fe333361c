import json
import os
import unittest
from unittest.mock import patch
from pathlib import Path
import sys

import httpx

ROOT_DIR = Path(__file__).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

from services.storage_backend import HttpStorageBackend, UploadError


class TestHttpStorageBackend(unittest.IsolatedAsyncioTestCase):
    async def test_upload_returns_receipt(self) -> None:
        seen = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, json={"cid": "bafy123", "proofSetId": 42, "size": 4})

        backend = HttpStorageBackend("http://storage.local/", transport=httpx.MockTransport(handler))
        receipt = await backend.upload(b"RIFF", {"chunk_id": "s1_0", "chunk_owner": "alice"})
        await backend.aclose()

        self.assertEqual(receipt.content_id, "bafy123")
        self.assertEqual(receipt.proof_handle, "42")
        self.assertEqual(receipt.size, 4)

        request = seen[0]
        self.assertEqual(str(request.url), "http://storage.local/upload/chunk")
        body = request.content
        self.assertIn(b's1_0.wav', body)
        self.assertIn(json.dumps({"chunk_id": "s1_0", "chunk_owner": "alice"}).encode("utf-8"), body)

    async def test_missing_content_id_is_an_error(self) -> None:
        backend = HttpStorageBackend(
            "http://storage.local",
            transport=httpx.MockTransport(lambda request: httpx.Response(200, json={"ok": True})),
        )
        with self.assertRaises(UploadError):
            await backend.upload(b"RIFF", {"chunk_id": "s1_0"})
        await backend.aclose()

    async def test_http_error_is_an_upload_error(self) -> None:
        backend = HttpStorageBackend(
            "http://storage.local",
            transport=httpx.MockTransport(lambda request: httpx.Response(500, text="boom")),
        )
        with self.assertRaises(UploadError):
            await backend.upload(b"RIFF", {"chunk_id": "s1_0"})
        await backend.aclose()

    def test_from_env(self) -> None:
        with patch.dict(os.environ, {"STORAGE_BACKEND_URL": "http://storage.local/", "STORAGE_REQUEST_TIMEOUT_SECONDS": "5"}):
            backend = HttpStorageBackend.from_env()

        self.assertEqual(backend.base_url, "http://storage.local")
        self.assertEqual(backend.request_timeout, 5.0)

    async def test_empty_payload_rejected(self) -> None:
        backend = HttpStorageBackend(
            "http://storage.local",
            transport=httpx.MockTransport(lambda request: httpx.Response(200, json={"cid": "x"})),
        )
        with self.assertRaises(UploadError):
            await backend.upload(b"", {"chunk_id": "s1_0"})
        await backend.aclose()


if __name__ == "__main__":
    unittest.main()
