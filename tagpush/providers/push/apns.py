from __future__ import annotations

import asyncio
import logging
import time
from pathlib import Path
from typing import Any, Callable, Sequence

import httpx
import jwt

from tagpush.core.config import Settings, get_settings
from tagpush.core.errors import GatewayConfigError, TransientGatewayError
from tagpush.core.logging import token_preview
from tagpush.domain.types import BatchResult, PushContent
from tagpush.providers.push.base import is_permanent_failure
from tagpush.services.telemetry import increment_counter, record_gateway_call


logger = logging.getLogger(__name__)

APNS_PRODUCTION_URL = "https://api.push.apple.com"
APNS_SANDBOX_URL = "https://api.sandbox.push.apple.com"
# Apple rejects provider tokens older than one hour; refresh well before that.
PROVIDER_TOKEN_TTL_S = 50 * 60
_INTEGRATION = "push.apns"


class APNsGateway:
    """Token-authenticated APNs client over HTTP/2.

    One batch is one logical gateway call: every token in it is sent as its own
    HTTP/2 stream on a shared connection and the per-token outcomes are folded
    into a single BatchResult.
    """

    def __init__(
        self,
        settings: Settings | None = None,
        *,
        client: httpx.AsyncClient | None = None,
        signing_key: str | None = None,
        time_source: Callable[[], float] | None = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._client = client
        self._signing_key = signing_key
        self._time = time_source or time.time
        self._provider_token: str | None = None
        self._provider_token_issued_at = 0.0

    @property
    def base_url(self) -> str:
        return APNS_PRODUCTION_URL if self._settings.apns_production else APNS_SANDBOX_URL

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is not None:
            return self._client
        # Reuse a single HTTP/2 connection for all streams; APNs expects long-lived connections.
        timeout_s = self._settings.push_gateway_timeout_ms / 1000.0
        self._client = httpx.AsyncClient(http2=True, timeout=timeout_s)
        return self._client

    def _require(self, value: str | None, env_name: str) -> str:
        if not value:
            raise GatewayConfigError(f"{env_name} is required for the APNs gateway")
        return value

    def _load_signing_key(self) -> str:
        if self._signing_key is not None:
            return self._signing_key
        key_path = self._require(self._settings.apns_key_path, "APNS_KEY_PATH")
        try:
            self._signing_key = Path(key_path).read_text(encoding="utf-8")
        except OSError as exc:
            raise GatewayConfigError(f"Unable to read APNs key at {key_path}") from exc
        return self._signing_key

    def provider_token(self) -> str:
        # ES256 provider token, cached until it nears Apple's expiry window.
        now = self._time()
        if self._provider_token and (now - self._provider_token_issued_at) < PROVIDER_TOKEN_TTL_S:
            return self._provider_token
        key_id = self._require(self._settings.apns_key_id, "APNS_KEY_ID")
        team_id = self._require(self._settings.apns_team_id, "APNS_TEAM_ID")
        self._provider_token = jwt.encode(
            {"iss": team_id, "iat": int(now)},
            self._load_signing_key(),
            algorithm="ES256",
            headers={"kid": key_id},
        )
        self._provider_token_issued_at = now
        return self._provider_token

    def build_notification(self, content: PushContent) -> dict[str, Any]:
        # Metadata rides along as custom top-level keys; "aps" is reserved by Apple.
        body: dict[str, Any] = {
            key: value for key, value in (content.metadata or {}).items() if key != "aps"
        }
        body["aps"] = {
            "alert": {"title": content.title, "body": content.text},
            "sound": self._settings.apns_sound,
            "badge": self._settings.apns_badge,
        }
        return body

    async def _send_one(
        self,
        client: httpx.AsyncClient,
        token: str,
        body: dict[str, Any],
        headers: dict[str, str],
    ) -> tuple[int, str | None]:
        response = await client.post(f"{self.base_url}/3/device/{token}", json=body, headers=headers)
        if response.status_code == 200:
            return 200, None
        try:
            payload = response.json()
        except ValueError:
            payload = None
        reason = payload.get("reason") if isinstance(payload, dict) else None
        return response.status_code, reason

    async def send_batch(self, tokens: Sequence[str], content: PushContent) -> BatchResult:
        if not tokens:
            raise ValueError("Tokens must be a non-empty array")
        bundle_id = self._require(self._settings.apns_bundle_id, "APNS_BUNDLE_ID")
        headers = {
            "authorization": f"bearer {self.provider_token()}",
            "apns-topic": bundle_id,
            "apns-push-type": "alert",
        }
        body = self.build_notification(content)
        client = self._get_client()
        result = BatchResult()

        valid: list[str] = []
        for token in tokens:
            # Non-string or empty entries can never be delivered.
            if not isinstance(token, str) or not token:
                logger.warning("invalid token value in batch: %r", token)
                result.invalid_tokens.add(str(token))
                continue
            valid.append(token)

        start = time.monotonic()
        outcomes = await asyncio.gather(
            *(self._send_one(client, token, body, headers) for token in valid),
            return_exceptions=True,
        )
        delivered = 0
        for token, outcome in zip(valid, outcomes):
            if isinstance(outcome, BaseException):
                if not isinstance(outcome, Exception):
                    raise outcome
                # Transport failure for one token; it stays registered.
                logger.warning("APNs transport error for %s: %s", token_preview(token), outcome)
                result.failed_tokens.append(token)
                continue
            status, reason = outcome
            if status == 200:
                delivered += 1
                continue
            if is_permanent_failure(status, reason):
                logger.info("invalid token detected (%s %s): %s", status, reason, token_preview(token))
                result.invalid_tokens.add(token)
                continue
            if status == 403 and reason == "ExpiredProviderToken":
                self._provider_token = None
            increment_counter("apns_delivery_failed_total")
            logger.warning(
                "APNs delivery failed for %s with status %s (%s)",
                token_preview(token),
                status,
                reason,
            )

        latency_ms = (time.monotonic() - start) * 1000.0
        if valid and len(result.failed_tokens) == len(valid):
            record_gateway_call(gateway=_INTEGRATION, latency_ms=latency_ms, ok=False)
            raise TransientGatewayError(f"APNs batch of {len(valid)} tokens failed in transport")
        record_gateway_call(gateway=_INTEGRATION, latency_ms=latency_ms, ok=True)
        logger.info(
            "APNs batch completed: %d delivered, %d invalid, %d transport failures",
            delivered,
            len(result.invalid_tokens),
            len(result.failed_tokens),
        )
        return result

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None
