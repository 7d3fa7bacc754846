# 📂 backend/hostbill/pool_client.py — mining pool REST API client
# -----------------------------------------------------------------------------
# Purpose:
#   • Thin httpx wrapper over the pool API (Authorization: <api key>).
#   • Query parameters with empty values are dropped before the call.
#   • GET responses are cached in the process TTL cache (cache.pool_cache),
#     keyed by sub-account + path + params.
#   • Dashboard proxy: maps public endpoint names onto pool paths so the
#     frontend never sees the upstream layout.
#   • Non-2xx answers raise PoolApiError(status_code, message, details).
# -----------------------------------------------------------------------------

from __future__ import annotations

import re
from typing import Any, Dict, Optional

import httpx

from .cache import TTLCache, pool_cache
from .config import get_settings
from .utils import get_logger

settings = get_settings()
log = get_logger("pool")

# public name → (pool path, currency path segment required)
ENDPOINTS: Dict[str, tuple[str, bool]] = {
    "active-workers": ("/pool/active-workers", True),
    "hashrate-history": ("/pool/hashrate-efficiency", True),
    "revenue": ("/pool/revenue", True),
    "workers": ("/pool/workers", True),
    "workspace": ("/workspace", False),
}


class PoolApiError(Exception):
    def __init__(self, status_code: int, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.status_code = status_code
        self.message = message
        self.details = details or {}


def _clean_params(params: Optional[Dict[str, Any]]) -> Dict[str, str]:
    out: Dict[str, str] = {}
    for k, v in (params or {}).items():
        if v is None:
            continue
        s = str(v).strip()
        if s:
            out[k] = s
    return out


class PoolClient:
    def __init__(
        self,
        subaccount_name: str,
        api_key: Optional[str] = None,
        base_url: Optional[str] = None,
        cache: Optional[TTLCache] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        api_key = api_key or settings.POOL_API_KEY
        if not api_key:
            raise PoolApiError(500, "Pool API key is required. Set POOL_API_KEY in environment.")
        if not subaccount_name:
            raise PoolApiError(400, "Subaccount name is required.")
        self.subaccount_name = subaccount_name
        self.api_key = api_key
        self.base_url = (base_url or settings.POOL_API_BASE).rstrip("/")
        self.cache = cache if cache is not None else pool_cache
        self._transport = transport

    def _cache_key(self, path: str, params: Dict[str, str]) -> str:
        qs = "&".join(f"{k}={params[k]}" for k in sorted(params))
        return f"pool:{self.subaccount_name}:{path}?{qs}"

    async def request(
        self,
        path: str,
        params: Optional[Dict[str, Any]] = None,
        method: str = "GET",
        body: Optional[Dict[str, Any]] = None,
    ) -> Any:
        clean = _clean_params(params)
        method = method.upper()

        if method == "GET":
            key = self._cache_key(path, clean)
            cached = self.cache.get(key)
            if cached is not None:
                return cached

        headers = {"Authorization": self.api_key}
        log.info("[Pool] %s %s params=%s", method, path, clean)
        try:
            async with httpx.AsyncClient(
                base_url=self.base_url,
                timeout=settings.POOL_HTTP_TIMEOUT,
                transport=self._transport,
            ) as client:
                r = await client.request(method, path, params=clean, json=body, headers=headers)
        except httpx.HTTPError as e:
            log.error("[Pool] request %s failed: %s", path, e)
            raise PoolApiError(502, f"Pool API request failed: {e}")

        try:
            data = r.json()
        except ValueError:
            data = {"raw": r.text}

        if r.status_code >= 400:
            message = data.get("message") if isinstance(data, dict) else None
            raise PoolApiError(r.status_code, message or f"API returned status {r.status_code}", data)

        if method == "GET":
            self.cache.set(self._cache_key(path, clean), data)
        else:
            # writes make cached reads of this sub-account stale
            self.cache.invalidate_pattern(f"^pool:{re.escape(self.subaccount_name)}:")
        return data

    async def proxy(self, endpoint: str, currency: Optional[str], params: Optional[Dict[str, Any]] = None) -> Any:
        """Dashboard proxy call by public endpoint name."""
        if endpoint not in ENDPOINTS:
            raise PoolApiError(
                400,
                f'Unsupported endpoint: "{endpoint}". Supported endpoints: {", ".join(ENDPOINTS)}',
            )
        path, needs_currency = ENDPOINTS[endpoint]
        if needs_currency:
            if not currency:
                raise PoolApiError(400, f'Endpoint "{endpoint}" requires a currency parameter')
            path = f"{path}/{currency.upper()}"
        params = dict(params or {})
        params["subaccount_names"] = self.subaccount_name
        return await self.request(path, params)

