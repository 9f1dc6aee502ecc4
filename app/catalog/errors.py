"""Error taxonomy for catalog item processing.

Collaborators raise :class:`CatalogError` with an explicit kind whenever they
know what went wrong. Anything else (``httpx`` errors, LLM client errors,
database errors) is classified here: first by exception type, then by
matching the message against a list of known signatures. The signature list
is the fallback contract for collaborators that only surface free-form
messages.
"""

from __future__ import annotations

import asyncio
import enum

import httpx


class ErrorKind(str, enum.Enum):
    SOFT = "soft"
    TRANSIENT = "transient"
    SYSTEMIC = "systemic"
    FATAL = "fatal"


class CatalogError(Exception):
    def __init__(self, message: str, kind: ErrorKind = ErrorKind.SYSTEMIC) -> None:
        super().__init__(message)
        self.kind = kind


class ProductNotFound(CatalogError):
    """The candidate URL does not hold a parseable product."""

    def __init__(self, message: str) -> None:
        super().__init__(message, ErrorKind.SOFT)


class RobotsDisallowed(ProductNotFound):
    """robots.txt forbids this one URL; the rest of the site stays reachable."""


SOFT_SIGNATURES = (
    "could not fetch",
    "no product",
    "not a product",
    "llm_pdp_false",
    "no images available",
)

TRANSIENT_SIGNATURES = (
    "econnreset",
    "connection reset",
    "connection refused",
    "socket hang up",
    "etimedout",
    "timed out",
    "timeout",
    "enotfound",
    "eai_again",
    "getaddrinfo",
    "name or service not known",
    "temporary failure in name resolution",
    "aborted",
    "server disconnected",
)


def classify_error(error: BaseException) -> ErrorKind:
    if isinstance(error, CatalogError):
        return error.kind
    if isinstance(error, PermissionError):
        return ErrorKind.FATAL
    if isinstance(error, (httpx.TransportError, asyncio.TimeoutError, ConnectionError)):
        return ErrorKind.TRANSIENT
    return classify_message(str(error))


def classify_message(message: str) -> ErrorKind:
    lowered = message.lower()
    if any(signature in lowered for signature in SOFT_SIGNATURES):
        return ErrorKind.SOFT
    if any(signature in lowered for signature in TRANSIENT_SIGNATURES):
        return ErrorKind.TRANSIENT
    return ErrorKind.SYSTEMIC


def describe_error(error: BaseException) -> str:
    message = str(error).strip()
    if not message:
        return type(error).__name__
    return message[:500]
