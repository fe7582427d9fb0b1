"""
hdpay.services.upstream — Shared HTTP Plumbing
===============================================

One place that turns every flavour of upstream trouble (timeouts, refused
connections, 5xx, rate-limit responses, non-JSON bodies) into
:class:`~hdpay.exceptions.UpstreamUnavailable`, so the explorers and the
price oracle only ever deal with parsed payloads.
"""

from __future__ import annotations

import logging
from typing import Any

import httpx

from hdpay.exceptions import UpstreamUnavailable

logger = logging.getLogger(__name__)

USER_AGENT = "hdpay/0.1"


def build_client(timeout: float) -> httpx.Client:
    """Sync client with an explicit timeout and one transport-level retry."""
    transport = httpx.HTTPTransport(retries=1)
    return httpx.Client(
        timeout=timeout,
        transport=transport,
        headers={"User-Agent": USER_AGENT, "Accept": "application/json"},
    )


def get_json(
    client: httpx.Client,
    url: str,
    *,
    params: dict[str, Any] | None = None,
    source: str,
) -> Any:
    """GET *url* and return the decoded JSON body.

    Raises
    ------
    UpstreamUnavailable
        On timeout, transport failure, any non-2xx status or a body that is
        not JSON.
    """
    try:
        response = client.get(url, params=params)
    except httpx.TimeoutException as exc:
        raise UpstreamUnavailable(f"{source} timed out") from exc
    except httpx.HTTPError as exc:
        raise UpstreamUnavailable(f"{source} request failed: {exc}") from exc

    if response.status_code >= 400:
        raise UpstreamUnavailable(f"{source} returned HTTP {response.status_code}")

    try:
        return response.json()
    except ValueError as exc:
        raise UpstreamUnavailable(f"{source} returned a non-JSON body") from exc


def get_text(
    client: httpx.Client,
    url: str,
    *,
    source: str,
) -> str:
    """GET *url* and return the body as text (same error mapping as :func:`get_json`)."""
    try:
        response = client.get(url)
    except httpx.TimeoutException as exc:
        raise UpstreamUnavailable(f"{source} timed out") from exc
    except httpx.HTTPError as exc:
        raise UpstreamUnavailable(f"{source} request failed: {exc}") from exc

    if response.status_code >= 400:
        raise UpstreamUnavailable(f"{source} returned HTTP {response.status_code}")
    return response.text
