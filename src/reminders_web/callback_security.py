from __future__ import annotations

import hashlib
import hmac
from dataclasses import dataclass
from typing import Mapping

from .config import Settings

SIGNATURE_HEADER = "X-Reminder-Signature"


@dataclass(frozen=True)
class CallbackSignatureVerification:
    verified: bool
    reason: str | None = None


def sign_callback_body(secret: str, body: bytes) -> str:
    digest = hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()
    return f"sha256={digest}"


def _normalize_signature(value: str | None) -> str | None:
    if value is None:
        return None
    normalized = value.strip()
    if not normalized:
        return None
    if normalized.startswith("sha256="):
        return normalized.removeprefix("sha256=").strip().lower()
    return normalized.lower()


def verify_callback_signature(
    *,
    settings: Settings,
    body: bytes,
    headers: Mapping[str, str],
) -> CallbackSignatureVerification:
    if settings.callback_signature_mode == "off":
        return CallbackSignatureVerification(verified=True)

    secret = settings.callback_signing_secret.strip()
    if not secret:
        return CallbackSignatureVerification(verified=False, reason="signing_secret_missing")

    signature = _normalize_signature(headers.get(SIGNATURE_HEADER))
    if signature is None:
        return CallbackSignatureVerification(verified=False, reason="signature_missing")

    expected = sign_callback_body(secret, body).removeprefix("sha256=")
    if not hmac.compare_digest(signature, expected):
        return CallbackSignatureVerification(verified=False, reason="signature_mismatch")

    return CallbackSignatureVerification(verified=True)
