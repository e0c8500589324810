from __future__ import annotations

import base64
from typing import Any, Dict, List, Optional, Sequence

import httpx


class RpcError(RuntimeError):
    """The endpoint answered with a JSON-RPC error object."""

    def __init__(self, message: str, code: Optional[int] = None, data: Any = None) -> None:
        super().__init__(message)
        self.code = code
        self.data = data


class TransientRpcError(RpcError):
    """Transport failure, rate limit or server error; worth retrying."""


class AsyncRpcClient:
    def __init__(
        self,
        rpc_url: str,
        timeout_s: float = 60.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.rpc_url = rpc_url
        self.client = httpx.AsyncClient(timeout=timeout_s, transport=transport)
        self._next_id = 0

    async def close(self) -> None:
        await self.client.aclose()

    async def __aenter__(self) -> "AsyncRpcClient":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    async def _call(self, method: str, params: List[Any]) -> Any:
        self._next_id += 1
        payload = {
            "jsonrpc": "2.0",
            "id": self._next_id,
            "method": method,
            "params": params,
        }
        try:
            resp = await self.client.post(self.rpc_url, json=payload)
        except httpx.HTTPError as e:
            raise TransientRpcError(f"{method}: transport error: {e}") from e

        if resp.status_code == 429 or resp.status_code >= 500:
            raise TransientRpcError(f"{method}: HTTP {resp.status_code}")
        try:
            resp.raise_for_status()
        except httpx.HTTPStatusError as e:
            raise RpcError(f"{method}: HTTP {resp.status_code}", code=resp.status_code) from e

        try:
            data = resp.json()
        except ValueError as e:
            raise RpcError(f"{method}: response is not JSON") from e
        if not isinstance(data, dict):
            raise RpcError(f"{method}: unexpected response {data!r}")
        if "error" in data:
            err = data["error"]
            if not isinstance(err, dict):
                err = {"message": err}
            raise RpcError(
                f"RPC error in {method}: {err.get('message', err)}",
                code=err.get("code"),
                data=err.get("data"),
            )
        return data.get("result")

    async def get_latest_blockhash(self, commitment: str = "confirmed") -> str:
        result = await self._call("getLatestBlockhash", [{"commitment": commitment}])
        if not result or not result.get("value"):
            raise RpcError(f"getLatestBlockhash returned no value: {result!r}")
        return result["value"]["blockhash"]

    async def get_account_info_base64(
        self, address: str, commitment: str = "confirmed"
    ) -> Optional[Dict[str, Any]]:
        """
        Returns {"owner": str, "executable": bool, "lamports": int, "data": bytes}
        or None if the account does not exist.
        """
        result = await self._call(
            "getAccountInfo",
            [address, {"encoding": "base64", "commitment": commitment}],
        )
        value = result.get("value") if result else None
        if value is None:
            return None
        return {
            "owner": value["owner"],
            "executable": bool(value.get("executable", False)),
            "lamports": int(value.get("lamports", 0)),
            "data": base64.b64decode(value["data"][0]),
        }

    async def get_token_account_balance(self, address: str) -> Dict[str, int]:
        """Returns {"amount": raw int, "decimals": int}."""
        result = await self._call(
            "getTokenAccountBalance", [address, {"commitment": "confirmed"}]
        )
        value = result["value"]
        return {"amount": int(value["amount"]), "decimals": int(value["decimals"])}

    async def get_program_accounts_base64(
        self,
        program_id: str,
        mint: str,
        data_size: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        """
        Returns [{"pubkey": str, "owner": str, "data": str(base64)}] for all
        token accounts of `mint` owned by `program_id`.
        Classic SPL Token accounts are exactly 165 bytes; Token-2022 accounts
        vary with extensions, so the size filter is optional.
        """
        filters: List[Dict[str, Any]] = [{"memcmp": {"offset": 0, "bytes": mint}}]
        if data_size is not None:
            filters.append({"dataSize": data_size})

        result = await self._call(
            "getProgramAccounts",
            [program_id, {"encoding": "base64", "filters": filters}],
        )
        out: List[Dict[str, Any]] = []
        for item in result or []:
            # item['account']['data'] is [base64_str, "base64"]
            out.append(
                {
                    "pubkey": item["pubkey"],
                    "owner": item["account"]["owner"],
                    "data": item["account"]["data"][0],
                }
            )
        return out

    async def send_transaction(self, raw_tx: bytes, skip_preflight: bool = False) -> str:
        result = await self._call(
            "sendTransaction",
            [
                base64.b64encode(raw_tx).decode("ascii"),
                {
                    "encoding": "base64",
                    "skipPreflight": skip_preflight,
                    "preflightCommitment": "confirmed",
                },
            ],
        )
        return str(result)

    async def get_signature_statuses(
        self, signatures: Sequence[str]
    ) -> List[Optional[Dict[str, Any]]]:
        result = await self._call(
            "getSignatureStatuses",
            [list(signatures), {"searchTransactionHistory": False}],
        )
        return list(result["value"])
