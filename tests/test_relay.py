"""Tests for the request relay with the upstream HTTP call mocked out."""
from __future__ import annotations

import json
from unittest.mock import patch

import pytest
import requests
from requests.structures import CaseInsensitiveDict

from relay import (
    DENIED_HEADERS,
    InvalidUrl,
    RelayRequest,
    UpstreamError,
    build_outbound_headers,
    encode_body,
    filter_response_headers,
    relay,
    validate_target_url,
)


def make_upstream(body=b"", status=200, headers=None, url="https://a.test/"):
    resp = requests.Response()
    resp.status_code = status
    resp._content = body
    resp.headers = CaseInsensitiveDict(headers or {})
    resp.url = url
    return resp


@pytest.mark.parametrize("target", [None, ""])
def test_validate_target_url_missing(target):
    with pytest.raises(InvalidUrl, match="required"):
        validate_target_url(target)


@pytest.mark.parametrize("target", ["not a url", "/relative/path", "ftp://a.test/f", "http://[::1", "http://a.test:port/"])
def test_validate_target_url_unparsable(target):
    with pytest.raises(InvalidUrl, match="Invalid URL format"):
        validate_target_url(target)


def test_build_outbound_headers_uses_inbound_values():
    headers = build_outbound_headers({
        "User-Agent": "agent/1.0",
        "accept": "text/html",
        "Accept-Language": "de",
        "Accept-Encoding": "identity",
        "Referer": "https://ref.test/",
        "Cookie": "secret=1",
    })
    assert headers == {
        "User-Agent": "agent/1.0",
        "Accept": "text/html",
        "Accept-Language": "de",
        "Accept-Encoding": "gzip, deflate, br",
        "Referer": "https://ref.test/",
    }


def test_build_outbound_headers_falls_back_and_omits_referer():
    headers = build_outbound_headers({})
    assert headers["User-Agent"].startswith("Mozilla/5.0")
    assert "text/html" in headers["Accept"]
    assert headers["Accept-Language"] == "en-US,en;q=0.9"
    assert "Referer" not in headers


def test_encode_body_strips_url_and_encodes_json():
    payload, content_type = encode_body("POST", {"url": "https://t", "q": "v"}, True)
    assert payload == b'{"q":"v"}'
    assert content_type == "application/json"


def test_encode_body_form_encodes_multi_values():
    payload, content_type = encode_body("PUT", {"url": ["https://t"], "tag": ["a", "b"]}, False)
    assert payload == b"tag=a&tag=b"
    assert content_type == "application/x-www-form-urlencoded"


@pytest.mark.parametrize(
    "method,body",
    [("GET", {"q": "v"}), ("HEAD", {"q": "v"}), ("POST", None), ("POST", {}), ("POST", {"url": "https://t"})],
)
def test_encode_body_omitted(method, body):
    assert encode_body(method, body, True) == (None, None)


def test_filter_response_headers_drops_denied_and_framing_headers():
    upstream = CaseInsensitiveDict({
        "Content-Type": "text/html",
        "Content-Security-Policy": "default-src 'self'",
        "X-Frame-Options": "DENY",
        "Strict-Transport-Security": "max-age=1",
        "Content-Encoding": "gzip",
        "Transfer-Encoding": "chunked",
        "Content-Length": "42",
        "Cache-Control": "no-cache",
    })
    kept = dict(filter_response_headers(upstream))
    assert kept == {"Content-Type": "text/html", "Cache-Control": "no-cache"}
    assert not DENIED_HEADERS & {key.lower() for key in kept}


@patch("relay.requests.request")
def test_relay_forwards_json_body_without_url_field(mock_request):
    mock_request.return_value = make_upstream(b"{}", headers={"Content-Type": "application/json"})

    relay(RelayRequest(
        method="post",
        target_url="https://t",
        headers={"Content-Type": "application/json"},
        body={"url": "https://t", "q": "v"},
        body_is_json=True,
    ))

    args, kwargs = mock_request.call_args
    assert args == ("POST", "https://t")
    assert json.loads(kwargs["data"]) == {"q": "v"}
    assert kwargs["headers"]["Content-Type"] == "application/json"
    assert kwargs["allow_redirects"] is True


@patch("relay.requests.request")
def test_relay_get_sends_no_body(mock_request):
    mock_request.return_value = make_upstream()

    relay(RelayRequest(method="GET", target_url="https://a.test/", body={"q": "v"}))

    _, kwargs = mock_request.call_args
    assert kwargs["data"] is None
    assert "Content-Type" not in kwargs["headers"]


@patch("relay.requests.request")
def test_relay_returns_filtered_upstream_response(mock_request):
    mock_request.return_value = make_upstream(
        b"<html></html>",
        status=404,
        headers={"Content-Type": "text/html; charset=utf-8", "X-Frame-Options": "DENY", "X-Custom": "1"},
        url="https://a.test/final",
    )

    result = relay(RelayRequest(method="GET", target_url="https://a.test/start"))

    assert result.status_code == 404
    assert result.body == b"<html></html>"
    assert result.content_type == "text/html; charset=utf-8"
    assert result.url == "https://a.test/final"
    assert dict(result.headers) == {"Content-Type": "text/html; charset=utf-8", "X-Custom": "1"}


@patch("relay.requests.request")
def test_relay_wraps_transport_failures(mock_request):
    mock_request.side_effect = requests.exceptions.ConnectionError("connection refused")

    with pytest.raises(UpstreamError, match="connection refused"):
        relay(RelayRequest(method="GET", target_url="https://down.test/"))


@patch("relay.requests.request")
def test_relay_rejects_invalid_url_before_any_request(mock_request):
    with pytest.raises(InvalidUrl):
        relay(RelayRequest(method="GET", target_url="nope"))
    mock_request.assert_not_called()


@pytest.mark.parametrize("target", [123, ["https://a.test/"], {"url": "https://a.test/"}])
def test_validate_target_url_rejects_non_strings(target):
    with pytest.raises(InvalidUrl, match="Invalid URL format"):
        validate_target_url(target)
