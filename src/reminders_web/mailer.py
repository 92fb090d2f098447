from __future__ import annotations

import json
import secrets
import socket
import urllib.error
import urllib.parse
import urllib.request
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Literal, Protocol

from .errors import DeliveryFailure

EmailResultStatus = Literal["sent", "failed"]


@dataclass(frozen=True)
class EmailMessage:
    to: tuple[str, ...]
    subject: str
    html: str
    scheduled_at: datetime | None = None
    idempotency_key: str | None = None


@dataclass(frozen=True)
class EmailSendResult:
    status: EmailResultStatus
    attempted_at: datetime
    delivery_ref: str | None = None
    error_code: str | None = None
    error_message: str | None = None


class EmailSender(Protocol):
    def send(self, message: EmailMessage) -> EmailSendResult: ...

    def cancel(self, delivery_ref: str) -> None: ...

    def update(self, delivery_ref: str, scheduled_at: datetime) -> None: ...


class StubEmailSender:
    def __init__(self, *, enabled: bool) -> None:
        self._enabled = enabled

    def send(self, message: EmailMessage) -> EmailSendResult:
        attempted_at = datetime.now(timezone.utc)

        if not self._enabled:
            return EmailSendResult(
                status="failed",
                attempted_at=attempted_at,
                error_code="email_disabled",
                error_message="E-mail delivery is disabled",
            )

        if not message.to:
            return EmailSendResult(
                status="failed",
                attempted_at=attempted_at,
                error_code="no_recipients",
                error_message="Message has no recipients",
            )

        if any("fail" in recipient.lower() for recipient in message.to):
            return EmailSendResult(
                status="failed",
                attempted_at=attempted_at,
                error_code="stub_delivery_failed",
                error_message="Stub sender forced failure for recipient",
            )

        return EmailSendResult(
            status="sent",
            attempted_at=attempted_at,
            delivery_ref=f"stub-email-{secrets.token_hex(6)}",
        )

    def cancel(self, delivery_ref: str) -> None:
        return None

    def update(self, delivery_ref: str, scheduled_at: datetime) -> None:
        return None


class HttpEmailSender:
    """E-mail sender for the Resend HTTP API."""

    def __init__(
        self,
        *,
        base_url: str,
        api_key: str,
        from_address: str,
        timeout_seconds: int = 30,
    ) -> None:
        stripped_url = base_url.strip().rstrip("/")
        stripped_key = api_key.strip()
        if not stripped_url:
            raise ValueError("base_url must not be empty")
        if not stripped_key:
            raise ValueError("api_key must not be empty")
        if not from_address.strip():
            raise ValueError("from_address must not be empty")
        self._base_url = stripped_url
        self._api_key = stripped_key
        self._from_address = from_address.strip()
        self._timeout_seconds = timeout_seconds

    def send(self, message: EmailMessage) -> EmailSendResult:
        attempted_at = datetime.now(timezone.utc)
        body: dict[str, object] = {
            "from": self._from_address,
            "to": list(message.to),
            "subject": message.subject,
            "html": message.html,
        }
        if message.scheduled_at is not None:
            body["scheduled_at"] = message.scheduled_at.astimezone(timezone.utc).isoformat()
        headers = {"Idempotency-Key": message.idempotency_key} if message.idempotency_key else {}

        try:
            response_data = self._request("POST", "/emails", body, headers=headers)
        except DeliveryFailure as exc:
            masked = ", ".join(mask_email(recipient) for recipient in message.to)
            return EmailSendResult(
                status="failed",
                attempted_at=attempted_at,
                error_code=exc.error_code,
                error_message=f"{exc.message} (recipient: {masked})",
            )
        return EmailSendResult(
            status="sent",
            attempted_at=attempted_at,
            delivery_ref=response_data.get("id"),
        )

    def cancel(self, delivery_ref: str) -> None:
        self._request("POST", f"/emails/{urllib.parse.quote(delivery_ref, safe='')}/cancel")

    def update(self, delivery_ref: str, scheduled_at: datetime) -> None:
        self._request(
            "PATCH",
            f"/emails/{urllib.parse.quote(delivery_ref, safe='')}",
            {"scheduled_at": scheduled_at.astimezone(timezone.utc).isoformat()},
        )

    def _request(
        self,
        method: str,
        path: str,
        body: dict[str, object] | None = None,
        *,
        headers: dict[str, str] | None = None,
    ) -> dict[str, str]:
        data = json.dumps(body).encode("utf-8") if body is not None else None
        request = urllib.request.Request(
            f"{self._base_url}{path}",
            data=data,
            headers={
                "Authorization": f"Bearer {self._api_key}",
                "Content-Type": "application/json",
                **(headers or {}),
            },
            method=method,
        )
        try:
            with urllib.request.urlopen(request, timeout=self._timeout_seconds) as response:
                raw = response.read().decode("utf-8")
                return json.loads(raw) if raw.strip() else {}  # type: ignore[no-any-return]
        except urllib.error.HTTPError as exc:
            raise DeliveryFailure(
                error_code=f"http_{exc.code}",
                message=f"HTTP {exc.code}: {exc.reason}",
            ) from exc
        except urllib.error.URLError as exc:
            raise DeliveryFailure(
                error_code="connection_error",
                message=f"Connection error: {exc.reason}",
            ) from exc
        except (socket.timeout, TimeoutError) as exc:
            raise DeliveryFailure(
                error_code="timeout",
                message=f"Request timed out: {exc}",
            ) from exc


def mask_email(address: str) -> str:
    normalized = address.strip()
    if not normalized:
        return "***"
    if "@" in normalized:
        local, domain = normalized.split("@", 1)
        if len(local) <= 1:
            return f"*@{domain}"
        return f"{local[0]}***@{domain}"
    if len(normalized) <= 4:
        return "*" * len(normalized)
    return f"{normalized[:2]}***{normalized[-2:]}"
