import base64
import json
import os
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any

import httpx


class LedgerCallError(Exception):
    pass


@dataclass(frozen=True)
class LedgerQuery:
    method_name: str
    args: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class LedgerCall:
    method_name: str
    args: dict[str, Any] = field(default_factory=dict)
    gas: str = "30000000000000"
    deposit: str = "0"


class Ledger(ABC):
    @abstractmethod
    async def execute(self, call: LedgerCall) -> Any:
        """Submit a signed contract call. Raise LedgerCallError on failure."""
        pass

    @abstractmethod
    async def view(self, query: LedgerQuery) -> Any:
        """Read ledger state. Raise LedgerCallError on failure."""
        pass

    async def aclose(self) -> None:
        return None


class OfflineLedger(Ledger):
    """Stand-in used when no ledger endpoint is configured."""

    async def execute(self, call: LedgerCall) -> Any:
        raise LedgerCallError(f"Ledger not configured, cannot execute {call.method_name}")

    async def view(self, query: LedgerQuery) -> Any:
        raise LedgerCallError(f"Ledger not configured, cannot view {query.method_name}")


class HttpLedger(Ledger):
    """
    Ledger over a JSON-RPC node plus a signer relay.

    Views go straight to the RPC node. Calls that need a signature are posted
    to the signer relay, which holds the worker key and submits the
    transaction on our behalf.
    """

    def __init__(
        self,
        rpc_url: str,
        contract_id: str,
        signer_url: str | None = None,
        request_timeout: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        if not rpc_url:
            raise ValueError("LEDGER_RPC_URL is required")
        if not contract_id:
            raise ValueError("LEDGER_CONTRACT_ID is required")

        self.rpc_url = rpc_url
        self.contract_id = contract_id
        self.signer_url = signer_url.rstrip("/") if signer_url else None
        self.request_timeout = request_timeout
        self._client = httpx.AsyncClient(timeout=request_timeout, transport=transport)
        self._next_id = 0

    @classmethod
    def from_env(cls) -> "HttpLedger":
        return cls(
            rpc_url=os.getenv("LEDGER_RPC_URL", "").strip(),
            contract_id=os.getenv("LEDGER_CONTRACT_ID", "").strip(),
            signer_url=os.getenv("LEDGER_SIGNER_URL", "").strip() or None,
            request_timeout=float(os.getenv("REQUEST_TIMEOUT_SECONDS", "10")),
        )

    async def _rpc(self, method: str, params: dict[str, Any]) -> Any:
        self._next_id += 1
        payload = {
            "jsonrpc": "2.0",
            "id": str(self._next_id),
            "method": method,
            "params": params,
        }

        try:
            resp = await self._client.post(self.rpc_url, json=payload)
            resp.raise_for_status()
            data = resp.json()
        except (httpx.HTTPError, ValueError) as exc:
            raise LedgerCallError(f"RPC {method} failed: {exc}") from exc

        if data.get("error"):
            raise LedgerCallError(f"RPC {method} returned error: {data['error']}")
        if "result" not in data:
            raise LedgerCallError(f"RPC {method} returned no result")
        return data["result"]

    async def view(self, query: LedgerQuery) -> Any:
        if query.method_name == "block":
            return await self._rpc("block", dict(query.args))

        args_b64 = base64.b64encode(json.dumps(query.args).encode("utf-8")).decode("ascii")
        result = await self._rpc(
            "query",
            {
                "request_type": "call_function",
                "finality": "final",
                "account_id": self.contract_id,
                "method_name": query.method_name,
                "args_base64": args_b64,
            },
        )

        raw = bytes(result.get("result") or [])
        if not raw:
            return None
        try:
            return json.loads(raw.decode("utf-8"))
        except ValueError as exc:
            raise LedgerCallError(f"View {query.method_name} returned invalid JSON") from exc

    async def execute(self, call: LedgerCall) -> Any:
        if self.signer_url is None:
            raise LedgerCallError(f"LEDGER_SIGNER_URL is not set, cannot execute {call.method_name}")

        body = {
            "contract_id": self.contract_id,
            "method_name": call.method_name,
            "args": call.args,
            "gas": call.gas,
            "deposit": call.deposit,
        }

        try:
            resp = await self._client.post(f"{self.signer_url}/execute", json=body)
            resp.raise_for_status()
            data = resp.json() if resp.content else {}
        except (httpx.HTTPError, ValueError) as exc:
            raise LedgerCallError(f"Call {call.method_name} failed: {exc}") from exc

        if isinstance(data, dict) and data.get("error"):
            raise LedgerCallError(f"Call {call.method_name} rejected: {data['error']}")
        return data

    async def aclose(self) -> None:
        await self._client.aclose()
