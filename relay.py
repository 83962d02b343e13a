"""
Request relay: forwards one inbound request to the target origin and hands
back the upstream response with the headers the relay must not re-serve removed.

The body is returned untouched; rewriting is done by the rewriter module.
"""

import json
import logging
from dataclasses import dataclass, field
from typing import Mapping, Optional
from urllib.parse import urlencode, urlparse

import requests

from settings import (
    ACCEPT_ENCODING,
    DEFAULT_ACCEPT,
    DEFAULT_ACCEPT_LANGUAGE,
    DEFAULT_USER_AGENT,
    UPSTREAM_TIMEOUT,
)

logger = logging.getLogger(__name__)

# Transport and framing/security headers that no longer apply once the relay re-serves the body
DENIED_HEADERS = frozenset({
    'content-encoding',
    'transfer-encoding',
    'content-security-policy',
    'x-frame-options',
    'strict-transport-security',
})

# The relay sets its own framing for the (possibly rewritten) body
HOP_BY_HOP_HEADERS = frozenset({'content-length', 'connection', 'keep-alive'})

BODYLESS_METHODS = ('GET', 'HEAD')


class RelayError(Exception):
    """Base class for relay failures."""


class InvalidUrl(RelayError):
    """The target URL is missing or cannot be parsed."""


class UpstreamError(RelayError):
    """The forwarded request could not be completed."""


@dataclass
class RelayRequest:
    method: str
    target_url: Optional[str]
    headers: Mapping[str, str] = field(default_factory=dict)
    # Parsed inbound body: JSON value or form fields (name -> value or list of values)
    body: Optional[object] = None
    body_is_json: bool = False


@dataclass
class RelayResponse:
    status_code: int
    headers: list
    body: bytes
    content_type: str
    # Final URL after redirects; the base for rewriting the body
    url: str


def validate_target_url(target_url):
    """Return target_url if it is an absolute http(s) URL, else raise InvalidUrl."""
    if not target_url:
        raise InvalidUrl('URL parameter is required')
    if not isinstance(target_url, str):
        raise InvalidUrl('Invalid URL format')
    try:
        parsed = urlparse(target_url)
        parsed.port  # raises on a malformed port
    except ValueError as e:
        raise InvalidUrl('Invalid URL format') from e
    if parsed.scheme not in ('http', 'https') or not parsed.hostname:
        raise InvalidUrl('Invalid URL format')
    return target_url


def build_outbound_headers(inbound_headers):
    inbound = {key.lower(): value for key, value in inbound_headers.items()}
    headers = {
        'User-Agent': inbound.get('user-agent') or DEFAULT_USER_AGENT,
        'Accept': inbound.get('accept') or DEFAULT_ACCEPT,
        'Accept-Language': inbound.get('accept-language') or DEFAULT_ACCEPT_LANGUAGE,
        'Accept-Encoding': ACCEPT_ENCODING,
    }
    if inbound.get('referer'):
        headers['Referer'] = inbound['referer']
    return headers


def encode_body(method, body, body_is_json):
    """
    Encode the inbound body for the upstream request.

    The ``url`` field addressed the relay itself and is never forwarded.
    Returns (payload bytes, content type), or (None, None) when nothing is left to send.
    """
    if method.upper() in BODYLESS_METHODS or not body:
        return None, None

    if isinstance(body, dict):
        body = {name: value for name, value in body.items() if name != 'url'}
        if not body:
            return None, None

    if body_is_json:
        payload = json.dumps(body, separators=(',', ':'), ensure_ascii=False)
        return payload.encode('utf-8'), 'application/json'

    return urlencode(body, doseq=True).encode('ascii'), 'application/x-www-form-urlencoded'


def filter_response_headers(upstream_headers):
    return [
        (key, value) for key, value in upstream_headers.items()
        if key.lower() not in DENIED_HEADERS and key.lower() not in HOP_BY_HOP_HEADERS
    ]


def relay(relay_request, timeout=UPSTREAM_TIMEOUT):
    """
    Forward relay_request to its target and return the upstream response.

    Raises:
        InvalidUrl: the target URL is missing or unparsable
        UpstreamError: the upstream request failed
    """
    target_url = validate_target_url(relay_request.target_url)
    method = relay_request.method.upper()

    headers = build_outbound_headers(relay_request.headers)
    payload, content_type = encode_body(method, relay_request.body, relay_request.body_is_json)
    if content_type:
        headers['Content-Type'] = content_type

    try:
        resp = requests.request(
            method,
            target_url,
            headers=headers,
            data=payload,
            allow_redirects=True,
            timeout=timeout,
        )
        body = resp.content
    except requests.exceptions.RequestException as e:
        raise UpstreamError(str(e)) from e

    logger.info(f"{method} {target_url} -> {resp.status_code}")

    return RelayResponse(
        status_code=resp.status_code,
        headers=filter_response_headers(resp.headers),
        body=body,
        content_type=resp.headers.get('Content-Type', ''),
        url=resp.url or target_url,
    )
