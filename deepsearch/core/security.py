from __future__ import annotations

import base64
import hashlib
import hmac
import json
import time
from collections.abc import Mapping
from dataclasses import dataclass
from typing import TypeAlias, cast


JSONScalar: TypeAlias = str | int | float | bool | None
JSONValue: TypeAlias = JSONScalar | list["JSONValue"] | dict[str, "JSONValue"]


def _b64url_encode(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode("ascii")


def _b64url_decode(data: str) -> bytes:
    if data == "":
        raise ValueError("invalid base64 input")
    padded = data + "=" * ((4 - (len(data) % 4)) % 4)
    try:
        return base64.urlsafe_b64decode(padded.encode("ascii"))
    except Exception as exc:
        raise ValueError("invalid base64 input") from exc


def _json_b64url(obj: Mapping[str, JSONValue]) -> str:
    raw = json.dumps(obj, separators=(",", ":"), sort_keys=True, ensure_ascii=True).encode("utf-8")
    return _b64url_encode(raw)


def _json_loads_dict(data: bytes) -> dict[str, JSONValue]:
    try:
        obj = cast(object, json.loads(data.decode("utf-8")))
    except Exception as exc:
        raise ValueError("invalid token") from exc
    if not isinstance(obj, dict):
        raise ValueError("invalid token")
    raw = cast(dict[object, object], obj)
    for k in raw:
        if not isinstance(k, str):
            raise ValueError("invalid token")
    return cast(dict[str, JSONValue], raw)


def _sign_hs256(message: bytes, secret: str) -> bytes:
    if secret == "":
        raise ValueError("secret must be a non-empty string")
    return hmac.new(secret.encode("utf-8"), message, hashlib.sha256).digest()


def encode_access_token(payload: dict[str, JSONValue], secret: str, expires_in_seconds: int) -> str:
    if expires_in_seconds <= 0:
        raise ValueError("expires_in_seconds must be a positive int")

    now = int(time.time())
    body: dict[str, JSONValue] = dict(payload)
    body["exp"] = now + expires_in_seconds

    header = {"alg": "HS256", "typ": "JWT"}
    header_b64 = _json_b64url(header)
    payload_b64 = _json_b64url(body)
    signing_input = f"{header_b64}.{payload_b64}".encode("ascii")
    sig = _sign_hs256(signing_input, secret)
    return f"{header_b64}.{payload_b64}.{_b64url_encode(sig)}"


def decode_access_token(token: str, secret: str) -> dict[str, JSONValue]:
    if token == "":
        raise ValueError("invalid token")

    parts = token.split(".")
    if len(parts) != 3:
        raise ValueError("invalid token")
    header_b64, payload_b64, sig_b64 = parts

    signing_input = f"{header_b64}.{payload_b64}".encode("ascii")
    expected_sig = _sign_hs256(signing_input, secret)
    try:
        provided_sig = _b64url_decode(sig_b64)
    except ValueError as exc:
        raise ValueError("invalid token") from exc
    if not hmac.compare_digest(provided_sig, expected_sig):
        raise ValueError("invalid token")

    header = _json_loads_dict(_b64url_decode(header_b64))
    payload = _json_loads_dict(_b64url_decode(payload_b64))

    alg = header.get("alg")
    if not isinstance(alg, str) or alg != "HS256":
        raise ValueError("invalid token")

    exp = payload.get("exp")
    if not isinstance(exp, int):
        raise ValueError("invalid token")
    if int(time.time()) >= exp:
        raise ValueError("token expired")

    return payload


@dataclass(frozen=True)
class AuthSession:
    """Identity carried by a verified access token. ``user_id`` may be empty."""

    user_id: str


def parse_bearer_token(authorization: str | None) -> str | None:
    if not authorization:
        return None
    parts = authorization.split(" ", 1)
    if len(parts) != 2:
        return None
    scheme, token = parts[0].strip(), parts[1].strip()
    if scheme.lower() != "bearer" or token == "":
        return None
    return token


def resolve_session(authorization: str | None, *, secret: str) -> AuthSession | None:
    token = parse_bearer_token(authorization)
    if token is None:
        return None
    try:
        payload = decode_access_token(token, secret)
    except Exception:
        return None
    sub = payload.get("sub")
    return AuthSession(user_id=sub if isinstance(sub, str) else "")
