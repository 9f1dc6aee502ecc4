import asyncio

import httpx
import pytest

from app.catalog.errors import (
    CatalogError,
    ErrorKind,
    ProductNotFound,
    RobotsDisallowed,
    classify_error,
    describe_error,
)


@pytest.mark.parametrize(
    "error, kind",
    [
        (CatalogError("LLM extract failed", ErrorKind.SYSTEMIC), ErrorKind.SYSTEMIC),
        (CatalogError("quota", ErrorKind.FATAL), ErrorKind.FATAL),
        (ProductNotFound("Could not fetch product"), ErrorKind.SOFT),
        (RobotsDisallowed("Blocked by robots.txt: https://acme.test/p/1"), ErrorKind.SOFT),
        (PermissionError("Access denied for acme.test (HTTP 403)"), ErrorKind.FATAL),
        (httpx.ConnectError("boom"), ErrorKind.TRANSIENT),
        (asyncio.TimeoutError(), ErrorKind.TRANSIENT),
        (RuntimeError("read ECONNRESET"), ErrorKind.TRANSIENT),
        (RuntimeError("getaddrinfo ENOTFOUND acme.test"), ErrorKind.TRANSIENT),
        (RuntimeError("llm_pdp_false:0.20:listing page"), ErrorKind.SOFT),
        (ValueError("No images available for https://acme.test/p/1"), ErrorKind.SOFT),
        (KeyError("variants"), ErrorKind.SYSTEMIC),
    ],
)
def test_classify_error(error, kind):
    assert classify_error(error) is kind


def test_describe_error_falls_back_to_type_name():
    assert describe_error(asyncio.TimeoutError()) == "TimeoutError"
    assert len(describe_error(RuntimeError("x" * 900))) == 500
