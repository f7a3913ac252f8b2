"""
Notification Dispatcher — per-recipient push fan-out with partial-failure isolation.

Flow per NotificationOperation (one job on the notifications queue):

  for each recipient (independently):
      preference check      → opted out: skipped
      template render       → {placeholder} fields from data / business_context
      each active device    → provider.send() through that provider's breaker
      audit                 → NotificationLog row
      result                → RecipientResult

  recipients that failed only for retryable reasons
      multi-recipient op    → re-enqueued as isolated single-recipient ops
      single-recipient op   → ProviderUnavailableError (runtime retry / DLQ)

Invalid tokens are revoked in place and reported, never raised.
"""
from __future__ import annotations

import structlog
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

from database.store_base import BaseChatStore
from job_queue.backends import Job
from job_queue.circuit_breaker import CircuitBreaker
from job_queue.errors import CircuitOpenError, ProviderUnavailableError
from job_queue.runtime import JobQueueRuntime
from models.schemas import (
    DeliveryFailure, DeliveryResult, DeviceToken, FanOutReport,
    NotificationOperation, NotificationTemplate, Platform, RecipientResult,
)
from notifications.providers import PushProvider, is_invalid_token, normalize_payload

logger = structlog.get_logger()

NOTIFICATIONS_QUEUE = "notifications"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class _SafeDict(dict):
    def __missing__(self, key):
        return "{" + key + "}"


def render(text: str, context: dict[str, Any]) -> str:
    """Fill {placeholder} fields, leaving unknown ones untouched."""
    try:
        return text.format_map(_SafeDict(context))
    except (ValueError, IndexError):
        return text


class NotificationDispatcher:
    """Producer and consumer for the notifications queue."""

    def __init__(
        self,
        runtime: JobQueueRuntime,
        store: BaseChatStore,
        providers: dict[Platform, PushProvider],
        breaker_config=None,
        token_max_idle_days: int = 30,
    ):
        self.runtime = runtime
        self.store = store
        self.providers = providers
        self.token_max_idle_days = token_max_idle_days
        self._breaker_config = breaker_config
        self.breakers: dict[str, CircuitBreaker] = {}

    def breaker_for(self, provider: PushProvider) -> CircuitBreaker:
        if provider.name not in self.breakers:
            if self._breaker_config is not None:
                self.breakers[provider.name] = CircuitBreaker.from_config(provider.name, self._breaker_config)
            else:
                self.breakers[provider.name] = CircuitBreaker(name=provider.name)
        return self.breakers[provider.name]

    # ── Producer ──────────────────────────────────────────

    async def trigger_notification(
        self,
        app_id: str,
        event_key: str,
        recipients: list[str],
        data: dict[str, Any] = None,
        business_context: dict[str, Any] = None,
    ) -> str:
        operation = NotificationOperation(
            app_id=app_id,
            event_key=event_key,
            recipients=recipients,
            data=data or {},
            business_context=business_context or {},
        )
        await self.runtime.enqueue(NOTIFICATIONS_QUEUE, operation.model_dump())
        logger.info("notification_triggered",
                    operation_id=operation.operation_id,
                    event_key=event_key,
                    recipients=len(recipients))
        return operation.operation_id

    # ── Single device ─────────────────────────────────────

    async def send_notification(self, device: DeviceToken, title: str, body: str,
                                data: dict[str, Any] = None, priority: str = "high") -> DeliveryResult:
        provider = self.providers.get(device.platform)
        if provider is None:
            return DeliveryResult(delivered=False, reason=DeliveryFailure.NO_PROVIDER,
                                  error=f"No provider for platform {device.platform.value}")

        payload = normalize_payload(device.platform, title, body, data, priority)
        try:
            result = await self.breaker_for(provider).call(provider.send, device.token, payload)
        except CircuitOpenError as e:
            return DeliveryResult(delivered=False, reason=DeliveryFailure.CIRCUIT_OPEN, error=str(e))
        except Exception as e:
            logger.warning("push_send_failed", provider=provider.name, token=device.masked, error=str(e))
            return DeliveryResult(delivered=False, reason=DeliveryFailure.PROVIDER_ERROR, error=str(e))

        if result.success:
            await self.store.touch_token(device.token, _utcnow())
            await self.store.record_token_history(device.user_id, device.token, device.token_type, "USED")
            return DeliveryResult(delivered=True, message_id=result.message_id)

        if is_invalid_token(result.error_code):
            await self._revoke(device, result.error_code)
            return DeliveryResult(delivered=False, reason=DeliveryFailure.TOKEN_INVALID,
                                  error=result.error or result.error_code)

        logger.warning("push_provider_error", provider=provider.name, token=device.masked,
                       error_code=result.error_code)
        return DeliveryResult(delivered=False, reason=DeliveryFailure.PROVIDER_ERROR,
                              error=result.error or result.error_code)

    async def _revoke(self, device: DeviceToken, reason: str):
        if await self.store.deactivate_token(device.token):
            await self.store.record_token_history(
                device.user_id, device.token, device.token_type, "REVOKED", {"reason": reason},
            )
        logger.warning("device_token_revoked", user_id=device.user_id, token=device.masked, reason=reason)

    # ── Fan-out ───────────────────────────────────────────

    async def fan_out(self, operation: NotificationOperation) -> FanOutReport:
        template = await self.store.get_template(operation.app_id, operation.event_key)
        report = FanOutReport(operation_id=operation.operation_id)

        for recipient_id in operation.recipients:
            try:
                result = await self._deliver_to_recipient(operation, template, recipient_id)
            except Exception as e:
                logger.error("recipient_dispatch_error",
                             operation_id=operation.operation_id, user_id=recipient_id, error=str(e))
                result = RecipientResult(recipient_id=recipient_id, success=False,
                                         retryable=True, reason=str(e))
            report.results.append(result)

        logger.info("notification_fan_out_complete",
                    operation_id=operation.operation_id,
                    succeeded=report.succeeded,
                    failed=report.failed,
                    skipped=sum(1 for r in report.results if r.skipped))
        return report

    async def _is_enabled(self, user_id: str, operation: NotificationOperation,
                          template: Optional[NotificationTemplate]) -> bool:
        preference = await self.store.get_preference(user_id, operation.app_id, operation.event_key)
        if preference is not None:
            return preference
        return template.default_enabled if template else True

    @staticmethod
    def _compose(operation: NotificationOperation,
                 template: Optional[NotificationTemplate]) -> tuple[str, str, str]:
        context = {**operation.business_context, **operation.data}
        if template:
            return render(template.title, context), render(template.body, context), template.priority
        title = str(operation.data.get("title") or operation.event_key.replace("_", " ").capitalize())
        return title, str(operation.data.get("body", "")), "high"

    async def _deliver_to_recipient(self, operation: NotificationOperation,
                                    template: Optional[NotificationTemplate],
                                    user_id: str) -> RecipientResult:
        audit = {
            "operation_id": operation.operation_id, "user_id": user_id,
            "app_id": operation.app_id, "event_key": operation.event_key,
        }

        if not await self._is_enabled(user_id, operation, template):
            await self.store.log_notification({**audit, "status": "skipped",
                                               "error_details": {"reason": "disabled"}})
            logger.info("notification_skipped", operation_id=operation.operation_id, user_id=user_id)
            return RecipientResult(recipient_id=user_id, success=False, skipped=True, reason="disabled")

        title, body, priority = self._compose(operation, template)
        audit.update(title=title, body=body)

        devices = await self.store.get_active_tokens(user_id)
        if not devices:
            await self.store.log_notification({**audit, "status": "failed",
                                               "error_details": {"reason": "no_tokens"}})
            logger.warning("no_active_device_tokens", user_id=user_id)
            return RecipientResult(recipient_id=user_id, success=False, reason="no_tokens")

        results = [await self.send_notification(d, title, body, operation.data, priority) for d in devices]
        sent = sum(1 for r in results if r.delivered)
        revoked = sum(1 for r in results if r.reason == DeliveryFailure.TOKEN_INVALID)
        failures = [r for r in results if not r.delivered]
        success = sent > 0

        await self.store.log_notification({
            **audit,
            "status": "sent" if success else "failed",
            "error_details": {"errors": [{"reason": r.reason.value, "error": r.error} for r in failures]}
            if failures else {},
        })

        return RecipientResult(
            recipient_id=user_id,
            success=success,
            reason="" if success else failures[0].reason.value,
            retryable=not success and any(r.retryable for r in failures),
            devices_sent=sent,
            devices_failed=len(failures),
            tokens_revoked=revoked,
        )

    # ── Consumer ──────────────────────────────────────────

    async def handle_job(self, job: Job) -> FanOutReport:
        operation = NotificationOperation.model_validate(job.payload)
        report = await self.fan_out(operation)
        retry = report.retryable_recipients
        if not retry:
            return report

        if operation.isolated or len(operation.recipients) == 1:
            failed = next(r for r in report.results if r.recipient_id == retry[0])
            raise ProviderUnavailableError(
                f"Delivery to {retry[0]} failed ({failed.reason}) for operation {operation.operation_id}"
            )

        for user_id in retry:
            isolated = operation.model_copy(update={
                "operation_id": f"{operation.operation_id}:{user_id}",
                "recipients": [user_id],
                "isolated": True,
            })
            await self.runtime.enqueue(NOTIFICATIONS_QUEUE, isolated.model_dump())
        logger.info("notification_recipients_requeued",
                    operation_id=operation.operation_id, recipients=retry)
        return report

    # ── Maintenance ───────────────────────────────────────

    async def cleanup_expired_tokens(self, max_idle_days: Optional[int] = None) -> int:
        days = self.token_max_idle_days if max_idle_days is None else max_idle_days
        cutoff = _utcnow() - timedelta(days=days)
        idle = await self.store.find_idle_tokens(cutoff)
        for device in idle:
            await self._revoke(device, "inactivity")
        logger.info("expired_tokens_cleaned", count=len(idle), max_idle_days=days)
        return len(idle)

    async def register_device_token(self, user_id: str, token: str, platform: str,
                                    device_id: str = "") -> DeviceToken:
        return await self.store.register_device_token(
            DeviceToken(user_id=user_id, token=token, platform=Platform(platform), device_id=device_id)
        )

    def register(self, workers) -> None:
        self.runtime.process(NOTIFICATIONS_QUEUE, self.handle_job,
                             batch_size=workers.notification_batch_size,
                             interval=workers.notification_interval)

    async def close(self):
        for provider in set(self.providers.values()):
            await provider.close()
