"""
JsonRpcClient - minimal async JSON-RPC 2.0 client over httpx.

Every call carries the configured timeout. Transport failures, non-2xx
responses and JSON-RPC error objects all surface as ProviderUnavailable so the
workers can classify them as transient.
"""
import itertools
import logging
import typing as t

import httpx

from app.core.config import settings
from app.core.errors import ProviderUnavailable

logger = logging.getLogger("settlement.chains.rpc")


class RpcError(ProviderUnavailable):
    code = "rpc_error"


class JsonRpcClient:
    def __init__(self, url: str, http_client: httpx.AsyncClient | None = None,
                 timeout: float | None = None):
        if not url:
            raise ValueError("RPC url must be provided")
        self.url = url
        self.http = http_client or httpx.AsyncClient(timeout=timeout or settings.RPC_TIMEOUT_SECONDS)
        self._ids = itertools.count(1)

    async def close(self):
        await self.http.aclose()

    async def call(self, method: str, params: t.Any = None) -> t.Any:
        payload = {"jsonrpc": "2.0", "id": next(self._ids), "method": method, "params": params if params is not None else []}
        try:
            r = await self.http.post(self.url, json=payload)
            r.raise_for_status()
            data = r.json()
        except httpx.HTTPStatusError as e:
            logger.warning("RPC %s returned HTTP %s", method, e.response.status_code)
            raise ProviderUnavailable(f"rpc {method} failed with status {e.response.status_code}") from e
        except httpx.HTTPError as e:
            logger.warning("RPC %s transport error: %s", method, e)
            raise ProviderUnavailable(f"rpc {method} transport error") from e
        except ValueError as e:
            raise ProviderUnavailable(f"rpc {method} returned invalid JSON") from e
        if data.get("error"):
            err = data["error"]
            logger.warning("RPC %s error: %s", method, err)
            raise RpcError(f"rpc {method} error: {err.get('message', err)}", rpc_code=err.get("code"))
        return data.get("result")


class RestClient:
    """GET-only JSON client for REST-style ledgers (Horizon)."""

    def __init__(self, base_url: str, http_client: httpx.AsyncClient | None = None,
                 timeout: float | None = None):
        self.base_url = base_url.rstrip("/")
        self.http = http_client or httpx.AsyncClient(timeout=timeout or settings.RPC_TIMEOUT_SECONDS)

    async def close(self):
        await self.http.aclose()

    async def get(self, path: str, params: dict | None = None) -> dict | None:
        """Return the decoded body, or None on 404."""
        url = f"{self.base_url}{path}"
        try:
            r = await self.http.get(url, params=params)
            if r.status_code == 404:
                return None
            r.raise_for_status()
            return r.json()
        except httpx.HTTPStatusError as e:
            logger.warning("GET %s returned HTTP %s", path, e.response.status_code)
            raise ProviderUnavailable(f"GET {path} failed with status {e.response.status_code}") from e
        except httpx.HTTPError as e:
            logger.warning("GET %s transport error: %s", path, e)
            raise ProviderUnavailable(f"GET {path} transport error") from e
        except ValueError as e:
            logger.warning("GET %s returned invalid JSON", path)
            raise ProviderUnavailable(f"GET {path} returned invalid JSON") from e
