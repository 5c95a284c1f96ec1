from __future__ import annotations

import json
import time
from typing import Any, Dict, Optional
from urllib.error import HTTPError, URLError
from urllib.parse import quote, urlencode
from urllib.request import Request, urlopen

from .config import config_float


class ApiError(RuntimeError):
    """
    Failure talking to the POS server.

    `status_code` is None when no HTTP response came back at all (timeout, refused
    connection, DNS failure).
    """

    def __init__(self, message: str, status_code: Optional[int] = None, payload: Any = None):
        super().__init__(message)
        self.status_code = status_code
        self.payload = payload

    @property
    def transient(self) -> bool:
        return self.status_code is None or self.status_code >= 500

    @property
    def conflict(self) -> bool:
        return self.status_code == 409


def device_headers(cfg: dict) -> Dict[str, str]:
    return {
        "X-Device-Id": cfg.get("device_id") or "",
        "X-Device-Token": cfg.get("device_token") or "",
    }


def _decode(raw: bytes):
    if not raw:
        return None
    try:
        return json.loads(raw.decode("utf-8"))
    except ValueError:
        return {"raw": raw.decode("utf-8", "replace")}


class ApiClient:
    def __init__(
        self,
        base_url: str,
        headers: Optional[Dict[str, str]] = None,
        timeout_s: float = 10,
        health_timeout_s: float = 0.8,
    ):
        self.base_url = (base_url or "").strip().rstrip("/")
        self.headers = dict(headers or {})
        self.timeout_s = timeout_s
        self.health_timeout_s = health_timeout_s

    @classmethod
    def from_config(cls, cfg: dict) -> "ApiClient":
        return cls(
            cfg.get("api_base_url") or "",
            headers=device_headers(cfg),
            timeout_s=config_float(cfg, "request_timeout_s"),
            health_timeout_s=config_float(cfg, "health_timeout_s"),
        )

    def _request(
        self,
        method: str,
        path: str,
        *,
        params: Optional[dict] = None,
        payload: Any = None,
        headers: Optional[Dict[str, str]] = None,
        timeout_s: Optional[float] = None,
    ):
        if not self.base_url:
            raise ApiError("missing api_base_url")
        url = f"{self.base_url}{path}"
        if params:
            url += "?" + urlencode({k: v for k, v in params.items() if v is not None})
        data = json.dumps(payload, default=str).encode("utf-8") if payload is not None else None
        req = Request(url, data=data, headers={**self.headers, **(headers or {})}, method=method)
        if data is not None:
            req.add_header("Content-Type", "application/json")
        timeout = max(0.2, float(timeout_s or self.timeout_s or 10))
        try:
            with urlopen(req, timeout=timeout) as resp:
                return _decode(resp.read())
        except HTTPError as ex:
            body = _decode(ex.read() or b"")
            detail = body.get("error") or body.get("detail") if isinstance(body, dict) else None
            raise ApiError(str(detail or f"HTTP {ex.code}"), status_code=ex.code, payload=body) from ex
        except (URLError, OSError) as ex:
            raise ApiError(str(getattr(ex, "reason", None) or ex)) from ex

    def get_sale(self, sale_id: str, store_id: str) -> dict:
        return self._request("GET", f"/sales/{quote(sale_id, safe='')}", params={"storeId": store_id})

    def get_sale_by_idempotency_key(self, key: str, store_id: str) -> dict:
        return self._request(
            "GET",
            f"/sales/by-idempotency-key/{quote(key, safe='')}",
            params={"storeId": store_id},
        )

    def recent_sales(self, store_id: str, since: Optional[str] = None, limit: int = 500) -> list:
        res = self._request("GET", "/sales", params={"storeId": store_id, "since": since, "limit": int(limit)})
        if isinstance(res, dict):
            return res.get("sales") or res.get("data") or []
        return res or []

    def post_return(self, payload: dict, idempotency_key: Optional[str] = None) -> dict:
        headers = {"Idempotency-Key": idempotency_key} if idempotency_key else None
        return self._request("POST", "/returns", payload=payload, headers=headers)

    def post_swap(self, payload: dict, idempotency_key: Optional[str] = None) -> dict:
        headers = {"Idempotency-Key": idempotency_key} if idempotency_key else None
        return self._request("POST", "/swaps", payload=payload, headers=headers)

    def search_products(self, query: str, limit: int = 20) -> list:
        res = self._request("GET", "/products/search", params={"query": query, "limit": int(limit)})
        if isinstance(res, dict):
            return res.get("products") or res.get("data") or []
        return res or []

    def product_by_barcode(self, code: str) -> Optional[dict]:
        res = self._request("GET", f"/products/barcode/{quote(code, safe='')}")
        if isinstance(res, dict) and "product" in res:
            return res.get("product")
        return res

    def store_products(self, store_id: str) -> list:
        res = self._request("GET", f"/stores/{quote(store_id, safe='')}/products")
        if isinstance(res, dict):
            return res.get("products") or res.get("data") or []
        return res or []

    def health(self) -> dict:
        started = time.time()
        url = f"{self.base_url}/sync/health"
        try:
            data = self._request("GET", "/sync/health", timeout_s=self.health_timeout_s)
            ok = bool((data or {}).get("ok", True)) if isinstance(data, dict) else True
            return {"ok": ok, "error": None, "latency_ms": int((time.time() - started) * 1000), "url": url}
        except ApiError as ex:
            return {"ok": False, "error": str(ex), "latency_ms": int((time.time() - started) * 1000), "url": url}

    def is_online(self) -> bool:
        return bool(self.health().get("ok"))
