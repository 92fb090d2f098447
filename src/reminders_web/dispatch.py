from __future__ import annotations

import json
import logging
import math
import secrets
import socket
import urllib.error
import urllib.parse
import urllib.request
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from typing import Protocol

from .callback_security import SIGNATURE_HEADER, sign_callback_body
from .config import Settings
from .errors import DispatchFailure

logger = logging.getLogger(__name__)

# The facility refuses shorter delays.
MIN_DELAY_SECONDS = 60
MOCK_HANDLE_PREFIX = "mock-msg_"


@dataclass(frozen=True)
class DispatchPayload:
    """Body delivered back to the callback. Carries ids only, never recipient data."""

    notification_id: str
    kind: str
    entity_id: str

    def to_body(self) -> bytes:
        return json.dumps(asdict(self), separators=(",", ":"), sort_keys=True).encode("utf-8")


@dataclass(frozen=True)
class DispatchConfig:
    token: str
    base_url: str
    callback_url: str
    retries: int = 3
    timeout_seconds: int = 15
    signing_secret: str = ""

    @classmethod
    def from_settings(cls, settings: Settings) -> DispatchConfig | None:
        token = settings.dispatch_token.strip()
        if not token:
            return None
        return cls(
            token=token,
            base_url=settings.dispatch_base_url.strip().rstrip("/"),
            callback_url=settings.dispatch_callback_url.strip(),
            retries=max(0, settings.dispatch_retries),
            timeout_seconds=settings.dispatch_timeout_seconds,
            signing_secret=settings.callback_signing_secret
            if settings.callback_signature_mode != "off"
            else "",
        )


class DispatchClient(Protocol):
    def enqueue(self, payload: DispatchPayload, deliver_at: datetime, dedup_key: str) -> str: ...

    def cancel(self, external_handle: str) -> None: ...

    def reschedule(
        self,
        external_handle: str,
        new_deliver_at: datetime,
        *,
        payload: DispatchPayload,
        dedup_key: str,
    ) -> str: ...


def compute_delay_seconds(deliver_at: datetime, *, now: datetime | None = None) -> int:
    current = now or datetime.now(timezone.utc)
    if deliver_at.tzinfo is None:
        deliver_at = deliver_at.replace(tzinfo=timezone.utc)
    seconds = math.ceil((deliver_at - current).total_seconds())
    return max(MIN_DELAY_SECONDS, seconds)


def is_mock_handle(external_handle: str | None) -> bool:
    return bool(external_handle) and external_handle.startswith(MOCK_HANDLE_PREFIX)


class MockDispatchClient:
    """Used when no dispatch facility is configured. Hands out tagged handles and logs."""

    def enqueue(self, payload: DispatchPayload, deliver_at: datetime, dedup_key: str) -> str:
        handle = f"{MOCK_HANDLE_PREFIX}{secrets.token_hex(8)}"
        logger.info(
            "mock dispatch enqueue notification=%s delay=%ss dedup=%s handle=%s",
            payload.notification_id,
            compute_delay_seconds(deliver_at),
            dedup_key,
            handle,
        )
        return handle

    def cancel(self, external_handle: str) -> None:
        logger.warning("mock dispatch cancel is a no-op handle=%s", external_handle)

    def reschedule(
        self,
        external_handle: str,
        new_deliver_at: datetime,
        *,
        payload: DispatchPayload,
        dedup_key: str,
    ) -> str:
        logger.warning("mock dispatch reschedule is a no-op handle=%s", external_handle)
        return external_handle


class HttpDispatchClient:
    """Delayed-message client speaking the QStash v2 HTTP API."""

    def __init__(self, config: DispatchConfig) -> None:
        if not config.base_url:
            raise ValueError("base_url must not be empty")
        if not config.callback_url:
            raise ValueError("callback_url must not be empty")
        self._config = config

    def enqueue(self, payload: DispatchPayload, deliver_at: datetime, dedup_key: str) -> str:
        body = payload.to_body()
        headers = {
            "Content-Type": "application/json",
            "Upstash-Delay": f"{compute_delay_seconds(deliver_at)}s",
            "Upstash-Deduplication-Id": dedup_key,
            "Upstash-Retries": str(self._config.retries),
        }
        if self._config.signing_secret:
            headers[f"Upstash-Forward-{SIGNATURE_HEADER}"] = sign_callback_body(self._config.signing_secret, body)
        destination = urllib.parse.quote(self._config.callback_url, safe=":/?&=")
        response = self._request("POST", f"/v2/publish/{destination}", body=body, headers=headers)
        message_id = response.get("messageId") if isinstance(response, dict) else None
        if not message_id:
            raise DispatchFailure("missing_message_id", "dispatch facility response carried no messageId")
        return str(message_id)

    def cancel(self, external_handle: str) -> None:
        if is_mock_handle(external_handle):
            logger.warning("skipping cancel of mock handle=%s", external_handle)
            return
        try:
            self._request("DELETE", f"/v2/messages/{urllib.parse.quote(external_handle, safe='')}")
        except DispatchFailure as exc:
            if exc.error_code == "http_404":
                # Already delivered or expired.
                logger.warning("dispatch cancel found no message handle=%s", external_handle)
                return
            raise

    def reschedule(
        self,
        external_handle: str,
        new_deliver_at: datetime,
        *,
        payload: DispatchPayload,
        dedup_key: str,
    ) -> str:
        # No in-place reschedule in the facility. Publish the replacement first so
        # a failed publish leaves the original message in place.
        replacement = self.enqueue(payload, new_deliver_at, dedup_key)
        if replacement == external_handle:
            # The facility deduplicated onto the live message; cancelling it would drop the reminder.
            logger.info("dispatch reschedule reused handle=%s", external_handle)
            return replacement
        try:
            self.cancel(external_handle)
        except DispatchFailure:
            try:
                self.cancel(replacement)
            except DispatchFailure as exc:
                logger.warning("could not withdraw replacement handle=%s: %s", replacement, exc.message)
            raise
        return replacement

    def _request(
        self,
        method: str,
        path: str,
        *,
        body: bytes | None = None,
        headers: dict[str, str] | None = None,
    ) -> dict:
        request = urllib.request.Request(
            f"{self._config.base_url}{path}",
            data=body,
            headers={"Authorization": f"Bearer {self._config.token}", **(headers or {})},
            method=method,
        )
        try:
            with urllib.request.urlopen(request, timeout=self._config.timeout_seconds) as response:
                raw = response.read().decode("utf-8")
        except urllib.error.HTTPError as exc:
            raise DispatchFailure(
                error_code=f"http_{exc.code}",
                message=f"HTTP {exc.code}: {exc.reason}",
            ) from exc
        except urllib.error.URLError as exc:
            raise DispatchFailure(
                error_code="connection_error",
                message=f"Connection error: {exc.reason}",
            ) from exc
        except (socket.timeout, TimeoutError) as exc:
            raise DispatchFailure(
                error_code="timeout",
                message=f"Request timed out: {exc}",
            ) from exc
        if not raw.strip():
            return {}
        try:
            return json.loads(raw)  # type: ignore[no-any-return]
        except json.JSONDecodeError as exc:
            raise DispatchFailure("invalid_response", "dispatch facility returned invalid JSON") from exc


def create_dispatch_client(config: DispatchConfig | None) -> DispatchClient:
    if config is None:
        return MockDispatchClient()
    return HttpDispatchClient(config)
