"""Signed admin tokens."""

from __future__ import annotations

import os

from itsdangerous import BadSignature, URLSafeTimedSerializer

ADMIN_PURPOSE = "catalog-admin"
DEFAULT_EXPIRY = int(os.environ.get("ADMIN_TOKEN_EXPIRY", 60 * 60 * 12))


class InvalidToken(Exception):
    pass


def _serializer() -> URLSafeTimedSerializer:
    secret = os.environ.get("SIGNING_SECRET", "change-me")
    return URLSafeTimedSerializer(secret_key=secret)


def generate_token(payload: dict[str, object], purpose: str = ADMIN_PURPOSE) -> str:
    serializer = _serializer()
    return serializer.dumps(payload, salt=purpose)


def load_token(token: str, purpose: str = ADMIN_PURPOSE, max_age: int = DEFAULT_EXPIRY) -> dict[str, object]:
    serializer = _serializer()
    try:
        data = serializer.loads(token, max_age=max_age, salt=purpose)
    except BadSignature as exc:
        raise InvalidToken(str(exc)) from exc
    if not isinstance(data, dict):
        raise InvalidToken("Invalid token payload")
    return data


def generate_admin_token(email: str) -> str:
    return generate_token({"email": email, "role": "admin"})
