"""Shared-secret and HMAC-SHA256 verification for agent quote callbacks."""

from __future__ import annotations

import hashlib
import hmac
import json
from typing import Any, Dict, Optional

from services.errors import CallbackAuthError


def canonical_payload(payload: Dict[str, Any]) -> bytes:
    return json.dumps(payload, sort_keys=True, separators=(",", ":"), ensure_ascii=False).encode("utf-8")


def sign_payload(payload: Dict[str, Any], secret: str) -> str:
    return hmac.new(secret.encode("utf-8"), canonical_payload(payload), hashlib.sha256).hexdigest()


def verify_callback(
    payload: Dict[str, Any],
    *,
    signature: Optional[str],
    presented_secret: Optional[str],
    expected_secret: Optional[str],
) -> None:
    """Raise :class:`CallbackAuthError` unless both secret and signature match."""

    if not expected_secret:
        raise CallbackAuthError("callback secret is not configured")
    if not presented_secret or not hmac.compare_digest(
        presented_secret.encode("utf-8"), expected_secret.encode("utf-8")
    ):
        raise CallbackAuthError("invalid callback secret")
    if not signature:
        raise CallbackAuthError("missing payload signature")
    expected_signature = sign_payload(payload, expected_secret)
    if not hmac.compare_digest(signature.strip().lower().encode("utf-8"), expected_signature.encode("utf-8")):
        raise CallbackAuthError("invalid payload signature")
