"""Stripe webhook processing service.

Handles incoming Stripe webhooks for pre-order PaymentIntents with:
- Stripe-Signature verification through the Stripe SDK
- Event deduplication by Stripe event id
- Settlement of succeeded PaymentIntents
- Failure bookkeeping for failed and canceled PaymentIntents
"""

import hashlib
import json
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any

import stripe
import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from settlement.application.error_handling import StripeErrorHandler, get_error_handler
from settlement.application.order_state_manager import OrderStateManager
from settlement.application.settlement_audit import (
    RequestContext,
    SettlementAuditLog,
    get_audit_log,
)
from settlement.application.settlement_service import (
    ORDER_CODE_METADATA_KEY,
    SettlementService,
)
from settlement.domain.state_machines import FailureType, PaymentStatus
from settlement.domain.value_objects import PaymentFailure
from settlement.infrastructure.config import settings
from settlement.infrastructure.database import get_session_factory
from settlement.infrastructure.models import StripeEventLogModel
from settlement.infrastructure.repositories import (
    PendingPaymentRepository,
    get_payment_repository,
)
from settlement.infrastructure.stripe_gateway import StripeErrorType, StripeGatewayError

logger = structlog.get_logger()


class StripeEventType(str, Enum):
    """Stripe events handled by the pre-order webhook."""

    PAYMENT_INTENT_CREATED = "payment_intent.created"
    PAYMENT_INTENT_SUCCEEDED = "payment_intent.succeeded"
    PAYMENT_INTENT_PAYMENT_FAILED = "payment_intent.payment_failed"
    PAYMENT_INTENT_CANCELED = "payment_intent.canceled"


class EventStatus(str, Enum):
    """Status of a webhook event in the event log."""

    RECEIVED = "received"
    PROCESSING = "processing"
    PROCESSED = "processed"
    FAILED = "failed"
    DUPLICATE = "duplicate"


class WebhookNotConfiguredError(Exception):
    """Raised when no webhook signing secret is configured."""

    def __init__(self) -> None:
        super().__init__("STRIPE_PREORDER_WEBHOOK_SECRET not configured")


class WebhookSignatureError(Exception):
    """Raised when a payload fails signature verification or parsing."""

    pass


@dataclass
class WebhookEvent:
    """A verified Stripe event.

    Attributes:
        event_id: Stripe event id (``evt_...``).
        event_type: Stripe event type string.
        created: Event creation time.
        data_object: The object the event is about.
        raw: Full event payload.
    """

    event_id: str
    event_type: str
    created: datetime
    data_object: dict[str, Any]
    raw: dict[str, Any]

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> "WebhookEvent":
        created = payload.get("created")
        return cls(
            event_id=payload["id"],
            event_type=payload["type"],
            created=(
                datetime.fromtimestamp(created, tz=timezone.utc)
                if created
                else datetime.now(timezone.utc)
            ),
            data_object=payload.get("data", {}).get("object", {}),
            raw=payload,
        )

    @property
    def payment_intent_id(self) -> str | None:
        if self.data_object.get("object") == "payment_intent":
            return self.data_object.get("id")
        return None

    def compute_payload_hash(self) -> str:
        """Compute SHA-256 hash of the payload for deduplication.

        Returns:
            Hex digest of the payload hash.
        """
        payload = json.dumps(self.raw, sort_keys=True)
        return hashlib.sha256(payload.encode()).hexdigest()


@dataclass
class WebhookResult:
    """Result of webhook processing.

    Attributes:
        success: Whether processing succeeded.
        event_id: The event ID.
        status: Final event status.
        message: Status message.
        duplicate: Whether this was a duplicate event.
    """

    success: bool
    event_id: str
    status: EventStatus
    message: str
    duplicate: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "received": True,
            "success": self.success,
            "event_id": self.event_id,
            "status": self.status.value,
            "message": self.message,
            "duplicate": self.duplicate,
        }


class StripeSignatureVerifier:
    """Verifies the Stripe-Signature header with the Stripe SDK."""

    def __init__(self, secret: str | None = None, tolerance: int | None = None) -> None:
        """Initialize verifier.

        Args:
            secret: Webhook signing secret (``whsec_...``).
            tolerance: Maximum accepted timestamp age in seconds.
        """
        self.secret = settings.webhook_signing_secret if secret is None else secret
        self.tolerance = tolerance or settings.stripe_webhook_tolerance_seconds

    def construct_event(self, payload: bytes | str, signature: str | None) -> WebhookEvent:
        """Verify a payload and parse it into a WebhookEvent.

        Raises:
            WebhookNotConfiguredError: If no signing secret is configured.
            WebhookSignatureError: If the signature or payload is invalid.
        """
        if not self.secret:
            raise WebhookNotConfiguredError()
        if not signature:
            logger.warning("Missing Stripe-Signature header")
            raise WebhookSignatureError("Missing Stripe-Signature header")

        try:
            body = payload.decode("utf-8") if isinstance(payload, bytes) else payload
        except UnicodeDecodeError as e:
            logger.warning("Webhook payload is not UTF-8", error=str(e))
            raise WebhookSignatureError("Invalid payload") from e

        try:
            stripe.WebhookSignature.verify_header(body, signature, self.secret, self.tolerance)
        except stripe.SignatureVerificationError as e:
            logger.warning("Webhook signature verification failed", error=str(e))
            raise WebhookSignatureError("Invalid signature") from e

        try:
            data = json.loads(body)
            return WebhookEvent.from_payload(data)
        except (ValueError, KeyError, TypeError) as e:
            logger.warning("Invalid webhook payload", error=str(e))
            raise WebhookSignatureError("Invalid payload") from e


class InMemoryEventLog:
    """In-memory Stripe event log for deduplication.

    Used when persistence is disabled; records have the same shape as the
    stripe_event_log rows written by SqlAlchemyEventLog.
    """

    def __init__(self) -> None:
        self._events: dict[str, dict[str, Any]] = {}

    async def exists(self, event_id: str) -> bool:
        """Whether the event was seen before; failed events may be redelivered."""
        event = self._events.get(event_id)
        return event is not None and event["status"] != EventStatus.FAILED.value

    async def store(
        self,
        event: WebhookEvent,
        status: EventStatus,
        error_message: str | None = None,
    ) -> None:
        now = datetime.now(timezone.utc)
        self._events[event.event_id] = {
            "event_id": event.event_id,
            "event_type": event.event_type,
            "payment_intent_id": event.payment_intent_id,
            "payload_hash": event.compute_payload_hash(),
            "payload": event.raw,
            "received_at": now,
            "processed_at": now if status == EventStatus.PROCESSED else None,
            "status": status.value,
            "error_message": error_message,
        }

    async def get(self, event_id: str) -> dict[str, Any] | None:
        return self._events.get(event_id)

    async def update_status(
        self,
        event_id: str,
        status: EventStatus,
        error_message: str | None = None,
    ) -> None:
        if event_id in self._events:
            self._events[event_id]["status"] = status.value
            if status == EventStatus.PROCESSED:
                self._events[event_id]["processed_at"] = datetime.now(timezone.utc)
            if error_message:
                self._events[event_id]["error_message"] = error_message


class SqlAlchemyEventLog:
    """Stripe event log stored in the stripe_event_log table."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession] | None = None) -> None:
        self.session_factory = session_factory or get_session_factory()

    async def exists(self, event_id: str) -> bool:
        async with self.session_factory() as session:
            status = await session.scalar(
                select(StripeEventLogModel.status).where(StripeEventLogModel.event_id == event_id)
            )
        return status is not None and status != EventStatus.FAILED.value

    async def store(
        self,
        event: WebhookEvent,
        status: EventStatus,
        error_message: str | None = None,
    ) -> None:
        """Insert the event, replacing an earlier failed delivery."""
        now = datetime.now(timezone.utc)
        async with self.session_factory() as session:
            async with session.begin():
                await session.merge(
                    StripeEventLogModel(
                        event_id=event.event_id,
                        event_type=event.event_type,
                        payment_intent_id=event.payment_intent_id,
                        payload_hash=event.compute_payload_hash(),
                        payload=event.raw,
                        status=status.value,
                        error_message=error_message,
                        received_at=now,
                        processed_at=now if status == EventStatus.PROCESSED else None,
                    )
                )

    async def get(self, event_id: str) -> dict[str, Any] | None:
        async with self.session_factory() as session:
            model = await session.get(StripeEventLogModel, event_id)
        return model.to_dict() if model is not None else None

    async def update_status(
        self,
        event_id: str,
        status: EventStatus,
        error_message: str | None = None,
    ) -> None:
        async with self.session_factory() as session:
            async with session.begin():
                model = await session.get(StripeEventLogModel, event_id)
                if model is None:
                    return
                model.status = status.value
                if status == EventStatus.PROCESSED:
                    model.processed_at = datetime.now(timezone.utc)
                if error_message:
                    model.error_message = error_message


def create_event_log() -> InMemoryEventLog | SqlAlchemyEventLog:
    """Event log for the configured persistence mode."""
    if settings.persistence_enabled:
        return SqlAlchemyEventLog()
    return InMemoryEventLog()


class WebhookService:
    """Service for processing Stripe webhooks.

    Handles:
    - Signature verification
    - Event deduplication
    - Settlement and failure handling per event type
    """

    def __init__(
        self,
        event_log: InMemoryEventLog | SqlAlchemyEventLog | None = None,
        signature_verifier: StripeSignatureVerifier | None = None,
        settlement_service: SettlementService | None = None,
        order_state_manager: OrderStateManager | None = None,
        payment_repo: PendingPaymentRepository | None = None,
        error_handler: StripeErrorHandler | None = None,
        audit_log: SettlementAuditLog | None = None,
    ) -> None:
        self.event_log = event_log or create_event_log()
        self.signature_verifier = signature_verifier or StripeSignatureVerifier()
        self.payment_repo = payment_repo or get_payment_repository()
        self.settlement_service = settlement_service or SettlementService(payment_repo=self.payment_repo)
        self.order_state_manager = order_state_manager or self.settlement_service.order_state_manager
        self.error_handler = error_handler or get_error_handler()
        self.audit_log = audit_log or get_audit_log()

    def construct_event(self, payload: bytes | str, signature: str | None) -> WebhookEvent:
        """Verify and parse a raw webhook body.

        Raises:
            WebhookNotConfiguredError: If no signing secret is configured.
            WebhookSignatureError: If verification fails.
        """
        return self.signature_verifier.construct_event(payload, signature)

    async def process_event(self, event: WebhookEvent) -> WebhookResult:
        """Process a verified Stripe event.

        Performs deduplication check, stores the event, and
        processes it based on event type.

        Args:
            event: The webhook event to process.

        Returns:
            Processing result.
        """
        logger.info(
            "Processing Stripe webhook event",
            event_id=event.event_id,
            event_type=event.event_type,
            payment_intent_id=event.payment_intent_id,
        )

        if await self.event_log.exists(event.event_id):
            logger.info("Duplicate webhook event ignored", event_id=event.event_id)
            return WebhookResult(
                success=True,
                event_id=event.event_id,
                status=EventStatus.DUPLICATE,
                message="Event already processed",
                duplicate=True,
            )

        await self.event_log.store(event=event, status=EventStatus.PROCESSING)

        try:
            await self._handle_event(event)

            await self.event_log.update_status(event.event_id, EventStatus.PROCESSED)
            logger.info(
                "Webhook event processed successfully",
                event_id=event.event_id,
                event_type=event.event_type,
            )
            return WebhookResult(
                success=True,
                event_id=event.event_id,
                status=EventStatus.PROCESSED,
                message="Event processed successfully",
            )

        except Exception as e:
            error_message = str(e)
            logger.error(
                "Failed to process webhook event",
                event_id=event.event_id,
                event_type=event.event_type,
                error=error_message,
            )
            await self.event_log.update_status(
                event.event_id, EventStatus.FAILED, error_message=error_message
            )
            return WebhookResult(
                success=False,
                event_id=event.event_id,
                status=EventStatus.FAILED,
                message=error_message,
            )

    async def _handle_event(self, event: WebhookEvent) -> None:
        handlers = {
            StripeEventType.PAYMENT_INTENT_CREATED.value: self._handle_created,
            StripeEventType.PAYMENT_INTENT_SUCCEEDED.value: self._handle_succeeded,
            StripeEventType.PAYMENT_INTENT_PAYMENT_FAILED.value: self._handle_payment_failed,
            StripeEventType.PAYMENT_INTENT_CANCELED.value: self._handle_canceled,
        }

        handler = handlers.get(event.event_type)
        if handler:
            await handler(event.data_object)
        else:
            logger.info("Unhandled webhook event type", event_type=event.event_type)

    async def _handle_created(self, intent: dict[str, Any]) -> None:
        logger.info("PaymentIntent created", payment_intent_id=intent.get("id"))
        self.audit_log.log_payment_intent_lifecycle(
            intent["id"],
            "created",
            metadata={"amount": intent.get("amount"), "currency": intent.get("currency")},
        )

    async def _handle_succeeded(self, intent: dict[str, Any]) -> None:
        """Settle a succeeded PaymentIntent that has been linked to an order."""
        payment_intent_id = intent["id"]
        order_code = (intent.get("metadata") or {}).get(ORDER_CODE_METADATA_KEY)
        payment = self.payment_repo.get(payment_intent_id)

        if not order_code or payment is None:
            logger.info(
                "PaymentIntent succeeded but is not linked to an order yet",
                payment_intent_id=payment_intent_id,
                order_code=order_code,
            )
            return

        self.audit_log.log_payment_intent_lifecycle(payment_intent_id, "confirmed", order_code)

        if payment.status == PaymentStatus.FAILED:
            if not payment.can_retry:
                logger.warning(
                    "Succeeded PaymentIntent has a non-retryable failed record",
                    payment_intent_id=payment_intent_id,
                    failure_reason=payment.failure_reason,
                    retry_count=payment.retry_count,
                )
                return
            reset = await self.order_state_manager.reset_order_for_retry(payment_intent_id)
            if not reset.success:
                logger.error(
                    "Could not reset payment for retry",
                    payment_intent_id=payment_intent_id,
                    error=reset.error,
                )
                return

        result = await self.settlement_service.settle_payment(
            payment_intent_id, RequestContext(source="webhook")
        )
        if not result.success:
            logger.warning(
                "Webhook settlement did not complete",
                payment_intent_id=payment_intent_id,
                error=result.error,
                error_code=result.error_code,
            )

    async def _handle_payment_failed(self, intent: dict[str, Any]) -> None:
        payment_intent_id = intent["id"]
        last_error = intent.get("last_payment_error") or {}
        message = last_error.get("message") or "Payment failed"

        if last_error.get("type") == StripeErrorType.CARD.value:
            info = self.error_handler.handle_card_error(message, last_error.get("decline_code"))
        else:
            try:
                error_type = StripeErrorType(last_error.get("type", ""))
            except ValueError:
                error_type = StripeErrorType.API
            info = self.error_handler.handle_stripe_api_error(
                StripeGatewayError(error_type, message, code=last_error.get("code")),
                "payment_intent.payment_failed",
            )

        logger.warning(
            "PaymentIntent failed",
            payment_intent_id=payment_intent_id,
            error_code=info.error_code,
            is_retryable=info.is_retryable,
        )
        payment = self.payment_repo.get(payment_intent_id)
        if payment is None or payment.status == PaymentStatus.SETTLED:
            return

        self.audit_log.log_payment_intent_lifecycle(payment_intent_id, "failed", payment.order_code)
        await self.order_state_manager.handle_payment_failure(
            payment_intent_id,
            PaymentFailure(
                reason=info.admin_message,
                failure_type=info.failure_type,
                is_retryable=info.is_retryable,
            ),
        )

    async def _handle_canceled(self, intent: dict[str, Any]) -> None:
        payment_intent_id = intent["id"]
        reason = intent.get("cancellation_reason") or "unknown"
        logger.info("PaymentIntent canceled", payment_intent_id=payment_intent_id, reason=reason)

        payment = self.payment_repo.get(payment_intent_id)
        if payment is None or payment.status == PaymentStatus.SETTLED:
            return

        self.audit_log.log_payment_intent_lifecycle(payment_intent_id, "failed", payment.order_code)
        await self.order_state_manager.handle_payment_failure(
            payment_intent_id,
            PaymentFailure(
                reason=f"PaymentIntent canceled: {reason}",
                failure_type=FailureType.USER_ERROR,
                is_retryable=False,
            ),
        )


# Global service instance
_webhook_service: WebhookService | None = None


def get_webhook_service() -> WebhookService:
    """Get or create the webhook service instance.

    Returns:
        WebhookService instance.
    """
    global _webhook_service
    if _webhook_service is None:
        _webhook_service = WebhookService()
    return _webhook_service


def reset_webhook_service() -> None:
    global _webhook_service
    _webhook_service = None
