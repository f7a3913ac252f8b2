"""
Push Providers — FCM HTTP v1 and APNs over HTTP/2, plus a log provider for development.

Every provider exposes the same contract:

    await provider.send(token, payload) -> ProviderResult

`payload` is the platform-normalized notification produced by
`normalize_payload()`. A provider RETURNS a result for anything the vendor
answered about the token or payload (including invalid tokens), and RAISES
ProviderUnavailableError when the vendor itself is unavailable (5xx, 429), so
that the circuit breaker around it counts the outage.

API Docs:
  FCM:  https://firebase.google.com/docs/reference/fcm/rest/v1/projects.messages/send
  APNs: https://developer.apple.com/documentation/usernotifications/sending-notification-requests-to-apns
"""
from __future__ import annotations

import abc
import json
import time
import uuid
import structlog
from typing import Any, Optional

import httpx
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from job_queue.errors import ProviderUnavailableError
from models.schemas import Platform, ProviderResult

logger = structlog.get_logger()

# Vendor codes meaning "this token will never work again"
INVALID_TOKEN_CODES = frozenset({
    "UNREGISTERED",
    "messaging/registration-token-not-registered",
    "messaging/invalid-registration-token",
    "NotRegistered",
    "InvalidRegistration",
    "Unregistered",
    "BadDeviceToken",
})


def is_invalid_token(error_code: str) -> bool:
    return error_code in INVALID_TOKEN_CODES


def normalize_payload(platform: Platform, title: str, body: str,
                      data: dict[str, Any] = None, priority: str = "high") -> dict[str, Any]:
    """Platform-specific notification body shared by all providers."""
    data = dict(data or {})
    if platform == Platform.IOS:
        return {
            "title": title,
            "body": body,
            "data": {
                **data,
                "aps": {
                    "alert": {"title": title, "body": body},
                    "badge": data.get("badge") or 1,
                    "sound": data.get("sound") or "default",
                },
            },
        }
    return {
        "title": title,
        "body": body,
        "data": {
            **data,
            "click_action": "FLUTTER_NOTIFICATION_CLICK",
            "priority": priority or "high",
            "ttl": "86400s",
        },
    }


class PushProvider(abc.ABC):
    """A vendor push gateway."""

    name: str = "push"

    @abc.abstractmethod
    async def send(self, token: str, payload: dict[str, Any]) -> ProviderResult:
        ...

    async def close(self) -> None:
        pass


# ──────────────────────────────────────────────────────────────
#  Firebase Cloud Messaging (Android)
# ──────────────────────────────────────────────────────────────

class FCMProvider(PushProvider):
    """FCM HTTP v1 client. `access_token` is an OAuth2 bearer for the project."""

    name = "fcm"
    BASE_URL = "https://fcm.googleapis.com/v1/projects"

    def __init__(self, project_id: str, access_token: str, timeout: float = 10.0):
        self.project_id = project_id
        self.access_token = access_token
        self.url = f"{self.BASE_URL}/{project_id}/messages:send"
        self._timeout = timeout
        self._client: Optional[httpx.AsyncClient] = None

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                headers={"Authorization": f"Bearer {self.access_token}"},
                timeout=httpx.Timeout(self._timeout, connect=5.0),
            )
        return self._client

    @retry(stop=stop_after_attempt(2), wait=wait_exponential(min=1, max=5),
           retry=retry_if_exception_type(httpx.TransportError), reraise=True)
    async def _post(self, body: dict[str, Any]) -> httpx.Response:
        client = await self._get_client()
        return await client.post(self.url, json=body)

    @staticmethod
    def build_message(token: str, payload: dict[str, Any]) -> dict[str, Any]:
        data = dict(payload.get("data", {}))
        priority = str(data.get("priority", "high"))
        ttl = str(data.get("ttl", "86400s"))
        android_notification = {}
        if "click_action" in data:
            android_notification["click_action"] = data["click_action"]
        return {
            "message": {
                "token": token,
                "notification": {"title": payload.get("title", ""), "body": payload.get("body", "")},
                # FCM data values must be strings
                "data": {k: v if isinstance(v, str) else json.dumps(v) for k, v in data.items()},
                "android": {
                    "priority": priority.upper(),
                    "ttl": ttl,
                    "notification": android_notification,
                },
            }
        }

    async def send(self, token: str, payload: dict[str, Any]) -> ProviderResult:
        resp = await self._post(self.build_message(token, payload))
        if resp.status_code < 400:
            return ProviderResult(success=True, message_id=resp.json().get("name", ""))

        if resp.status_code >= 500 or resp.status_code == 429:
            logger.error("fcm_unavailable", status=resp.status_code, body=resp.text[:500])
            raise ProviderUnavailableError(f"FCM unavailable: HTTP {resp.status_code}")

        try:
            error = resp.json().get("error", {})
        except ValueError:
            error = {}
        code = error.get("status", "") or str(resp.status_code)
        for detail in error.get("details", []):
            if detail.get("errorCode"):
                code = detail["errorCode"]
        return ProviderResult(success=False, error_code=code, error=error.get("message", resp.text[:200]))

    async def close(self) -> None:
        if self._client and not self._client.is_closed:
            await self._client.aclose()
            self._client = None


# ──────────────────────────────────────────────────────────────
#  Apple Push Notification service (iOS)
# ──────────────────────────────────────────────────────────────

class APNsProvider(PushProvider):
    """APNs HTTP/2 client. `auth_token` is a provider JWT signed for the team."""

    name = "apns"
    PRODUCTION_URL = "https://api.push.apple.com"
    SANDBOX_URL = "https://api.sandbox.push.apple.com"

    def __init__(self, bundle_id: str, auth_token: str, production: bool = False, timeout: float = 10.0):
        self.bundle_id = bundle_id
        self.auth_token = auth_token
        self.base_url = self.PRODUCTION_URL if production else self.SANDBOX_URL
        self._timeout = timeout
        self._client: Optional[httpx.AsyncClient] = None

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                http2=True,
                base_url=self.base_url,
                headers={
                    "authorization": f"bearer {self.auth_token}",
                    "apns-topic": self.bundle_id,
                    "apns-push-type": "alert",
                    "apns-priority": "10",
                },
                timeout=httpx.Timeout(self._timeout, connect=5.0),
            )
        return self._client

    @retry(stop=stop_after_attempt(2), wait=wait_exponential(min=1, max=5),
           retry=retry_if_exception_type(httpx.TransportError), reraise=True)
    async def _post(self, token: str, body: dict[str, Any]) -> httpx.Response:
        client = await self._get_client()
        return await client.post(
            f"/3/device/{token}",
            json=body,
            headers={"apns-expiration": str(int(time.time()) + 3600)},
        )

    @staticmethod
    def build_body(payload: dict[str, Any]) -> dict[str, Any]:
        data = dict(payload.get("data", {}))
        aps = data.pop("aps", {"alert": {"title": payload.get("title", ""), "body": payload.get("body", "")}})
        return {"aps": aps, **data, "messageFrom": "chat-server"}

    async def send(self, token: str, payload: dict[str, Any]) -> ProviderResult:
        resp = await self._post(token, self.build_body(payload))
        if resp.status_code == 200:
            return ProviderResult(success=True, message_id=resp.headers.get("apns-id", ""))

        if resp.status_code >= 500 or resp.status_code == 429:
            logger.error("apns_unavailable", status=resp.status_code, body=resp.text[:500])
            raise ProviderUnavailableError(f"APNs unavailable: HTTP {resp.status_code}")

        try:
            reason = resp.json().get("reason", "")
        except ValueError:
            reason = ""
        return ProviderResult(success=False, error_code=reason or str(resp.status_code),
                              error=f"APNs HTTP {resp.status_code}: {reason}")

    async def close(self) -> None:
        if self._client and not self._client.is_closed:
            await self._client.aclose()
            self._client = None


# ──────────────────────────────────────────────────────────────
#  Log provider (development)
# ──────────────────────────────────────────────────────────────

class LogPushProvider(PushProvider):
    """Logs every notification and reports success."""

    name = "log"

    def __init__(self):
        self.sent: list[tuple[str, dict[str, Any]]] = []

    async def send(self, token: str, payload: dict[str, Any]) -> ProviderResult:
        self.sent.append((token, payload))
        logger.info("push_logged", token=token[:10] + "...", title=payload.get("title", ""))
        return ProviderResult(success=True, message_id=f"log-{uuid.uuid4().hex[:12]}")


def create_providers(config) -> dict[Platform, PushProvider]:
    """Build the platform → provider map from NotificationConfig.providers."""
    providers: dict[Platform, PushProvider] = {}
    configured = getattr(config, "providers", {}) or {}

    fcm = configured.get("fcm")
    if fcm and fcm.enabled:
        providers[Platform.ANDROID] = FCMProvider(
            project_id=fcm.credentials.get("project_id", ""),
            access_token=fcm.credentials.get("access_token", ""),
        )

    apns = configured.get("apns")
    if apns and apns.enabled:
        providers[Platform.IOS] = APNsProvider(
            bundle_id=apns.credentials.get("bundle_id", ""),
            auth_token=apns.credentials.get("auth_token", ""),
            production=bool(apns.credentials.get("production", False)),
        )

    log = configured.get("log")
    if log and log.enabled:
        fallback = LogPushProvider()
        for platform in Platform:
            providers.setdefault(platform, fallback)

    logger.info("push_providers_configured",
                providers={p.value: prov.name for p, prov in providers.items()})
    return providers
