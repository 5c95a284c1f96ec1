import io
import json
from urllib.error import HTTPError, URLError

import pytest

from returns_desk.app import api_client
from returns_desk.app.api_client import ApiClient, ApiError


class _Resp:
    def __init__(self, body):
        self._body = json.dumps(body).encode("utf-8")

    def read(self):
        return self._body

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False


def _client(cfg):
    return ApiClient.from_config(cfg)


def test_post_sends_device_and_idempotency_headers(cfg, monkeypatch):
    seen = {}

    def fake_urlopen(req, timeout=None):
        seen["url"] = req.full_url
        seen["headers"] = {k.lower(): v for k, v in req.header_items()}
        seen["body"] = json.loads(req.data.decode("utf-8"))
        seen["timeout"] = timeout
        return _Resp({"id": "ret-1"})

    monkeypatch.setattr(api_client, "urlopen", fake_urlopen)

    res = _client(cfg).post_return({"saleId": "s1"}, idempotency_key="op-1")

    assert res == {"id": "ret-1"}
    assert seen["url"] == "http://pos.test/api/pos/returns"
    assert seen["headers"]["idempotency-key"] == "op-1"
    assert seen["headers"]["x-device-id"] == "dev-1"
    assert seen["headers"]["content-type"] == "application/json"
    assert seen["body"] == {"saleId": "s1"}
    assert seen["timeout"] == 10


def test_http_errors_keep_status_and_detail(cfg, monkeypatch):
    def fake_urlopen(req, timeout=None):
        body = io.BytesIO(json.dumps({"error": "already returned"}).encode("utf-8"))
        raise HTTPError(req.full_url, 409, "Conflict", {}, body)

    monkeypatch.setattr(api_client, "urlopen", fake_urlopen)

    with pytest.raises(ApiError) as exc:
        _client(cfg).get_sale("s1", "store-1")
    assert exc.value.status_code == 409
    assert exc.value.conflict is True
    assert exc.value.transient is False
    assert str(exc.value) == "already returned"


def test_connection_failures_are_transient(cfg, monkeypatch):
    def fake_urlopen(req, timeout=None):
        raise URLError("connection refused")

    monkeypatch.setattr(api_client, "urlopen", fake_urlopen)
    client = _client(cfg)

    with pytest.raises(ApiError) as exc:
        client.get_sale("s1", "store-1")
    assert exc.value.status_code is None
    assert exc.value.transient is True
    assert client.is_online() is False


def test_list_endpoints_unwrap_envelopes(cfg, monkeypatch):
    monkeypatch.setattr(api_client, "urlopen", lambda req, timeout=None: _Resp({"products": [{"id": "p1"}]}))
    assert _client(cfg).search_products("shirt") == [{"id": "p1"}]
    assert _client(cfg).store_products("store-1") == [{"id": "p1"}]
