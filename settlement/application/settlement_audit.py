"""Settlement audit trail.

Every settlement step is emitted as a structured log event and kept in a
bounded in-memory trail that backs the settlement summary report. Values
are scrubbed of card data before they are logged or stored.
"""

import hashlib
import re
from collections import Counter, deque
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Literal

import structlog

from settlement.domain.base import utc_now

logger = structlog.get_logger()

LifecycleEvent = Literal["created", "linked", "confirmed", "settled", "failed"]
ValidationType = Literal["status", "amount", "order", "ownership"]

_CARD_NUMBER = re.compile(r"\b\d{13,19}\b")
_CVV = re.compile(r"\bcvv?\s*:?\s*\d{3,4}\b", re.IGNORECASE)
_EXPIRY = re.compile(r"\b\d{1,2}/\d{2,4}\b")

SENSITIVE_KEYS = (
    "card", "pan", "cvv", "cvc", "expiry", "exp", "auth", "pin",
    "password", "secret", "token", "key", "credential",
)
SECURITY_KEYWORDS = (
    "unauthorized", "forbidden", "authentication", "authorization",
    "invalid", "fraud", "suspicious", "blocked", "declined",
    "security", "violation", "breach", "mismatch", "ownership",
)


# ============================================================================
# Sanitizing
# ============================================================================


def truncate(text: str, max_length: int) -> str:
    if len(text) <= max_length:
        return text
    return text[: max_length - 3] + "..."


def sanitize_message(message: str) -> str:
    """Redact card numbers, CVVs and expiry dates, then cap at 500 chars."""
    sanitized = _CARD_NUMBER.sub("[CARD_REDACTED]", message)
    sanitized = _CVV.sub("[CVV_REDACTED]", sanitized)
    sanitized = _EXPIRY.sub("[EXPIRY_REDACTED]", sanitized)
    return truncate(sanitized, 500)


def is_sensitive_key(key: str) -> bool:
    lower = key.lower()
    return any(sensitive in lower for sensitive in SENSITIVE_KEYS)


def sanitize_metadata(metadata: dict[str, Any]) -> dict[str, Any]:
    """Redact sensitive keys and cap string values at 100 chars."""
    sanitized: dict[str, Any] = {}
    for key, value in metadata.items():
        if is_sensitive_key(key):
            sanitized[key] = "[REDACTED]"
        elif isinstance(value, str):
            sanitized[key] = truncate(value, 100)
        else:
            sanitized[key] = value
    return sanitized


def is_security_relevant(message: str) -> bool:
    lower = message.lower()
    return any(keyword in lower for keyword in SECURITY_KEYWORDS)


def hash_ip(ip_address: str) -> str:
    return "hash_" + hashlib.sha256(ip_address.encode()).hexdigest()[:16]


@dataclass(frozen=True)
class RequestContext:
    """Who triggered a settlement step.

    Attributes:
        user_id: Authenticated user or administrator, if any.
        ip_address: Client address; only its hash is recorded.
        source: Entry point (e.g. 'api', 'webhook', 'admin').
    """

    user_id: str | None = None
    ip_address: str | None = None
    source: str | None = None

    def sanitized(self) -> dict[str, Any]:
        return {
            "user_id": self.user_id,
            "ip_hash": hash_ip(self.ip_address) if self.ip_address else None,
            "source": self.source,
        }


# ============================================================================
# Audit Trail
# ============================================================================


@dataclass
class AuditEntry:
    """One recorded settlement event."""

    event: str
    payment_intent_id: str
    order_code: str | None
    data: dict[str, Any] = field(default_factory=dict)
    audit: bool = False
    timestamp: datetime = field(default_factory=utc_now)

    def to_dict(self) -> dict[str, Any]:
        return {
            "event": self.event,
            "payment_intent_id": self.payment_intent_id,
            "order_code": self.order_code,
            "timestamp": self.timestamp.isoformat(),
            "audit": self.audit,
            **self.data,
        }


class SettlementAuditLog:
    """Structured settlement logging with a bounded in-memory trail."""

    def __init__(self, max_entries: int = 10000) -> None:
        self._entries: deque[AuditEntry] = deque(maxlen=max_entries)

    def _record(
        self,
        event: str,
        payment_intent_id: str,
        order_code: str | None,
        audit: bool = False,
        **data: Any,
    ) -> AuditEntry:
        entry = AuditEntry(
            event=event,
            payment_intent_id=payment_intent_id,
            order_code=order_code,
            data=data,
            audit=audit,
        )
        self._entries.append(entry)
        return entry

    @property
    def entries(self) -> list[AuditEntry]:
        return list(self._entries)

    def entries_for(self, payment_intent_id: str) -> list[AuditEntry]:
        return [e for e in self._entries if e.payment_intent_id == payment_intent_id]

    def clear(self) -> None:
        self._entries.clear()

    # -------------------------------------------------------------------------
    # Settlement Events
    # -------------------------------------------------------------------------

    def log_settlement_attempt_start(
        self,
        payment_intent_id: str,
        order_code: str,
        amount: int,
        currency: str,
        context: RequestContext | None = None,
    ) -> None:
        ctx = context.sanitized() if context else None
        logger.info(
            "Settlement attempt",
            payment_intent_id=payment_intent_id,
            order_code=order_code,
            amount=amount,
            currency=currency,
            context=ctx,
        )
        self._record(
            "settlement_attempt_start",
            payment_intent_id,
            order_code,
            amount=amount,
            currency=currency,
            context=ctx,
        )

    def log_settlement_success(
        self,
        payment_intent_id: str,
        order_code: str,
        payment_id: str | None,
        duration_ms: float,
        stripe_status: str,
        context: RequestContext | None = None,
    ) -> None:
        ctx = context.sanitized() if context else None
        logger.info(
            "Settlement success",
            payment_intent_id=payment_intent_id,
            order_code=order_code,
            payment_id=payment_id,
            duration_ms=round(duration_ms, 1),
            stripe_status=stripe_status,
        )
        self._record(
            "settlement_success",
            payment_intent_id,
            order_code,
            audit=True,
            payment_id=payment_id,
            duration_ms=duration_ms,
            stripe_status=stripe_status,
            context=ctx,
        )

    def log_settlement_failure(
        self,
        payment_intent_id: str,
        order_code: str | None,
        error: str,
        error_category: str,
        duration_ms: float,
        context: RequestContext | None = None,
    ) -> None:
        ctx = context.sanitized() if context else None
        sanitized = sanitize_message(error)
        logger.error(
            "Settlement failure",
            payment_intent_id=payment_intent_id,
            order_code=order_code,
            error=sanitized,
            error_category=error_category,
            duration_ms=round(duration_ms, 1),
        )
        self._record(
            "settlement_failure",
            payment_intent_id,
            order_code,
            audit=True,
            error=sanitized,
            error_category=error_category,
            duration_ms=duration_ms,
            context=ctx,
        )
        if is_security_relevant(error):
            self._log_security_event(
                "settlement_security_failure", payment_intent_id, order_code, error, context
            )

    # -------------------------------------------------------------------------
    # Verification Events
    # -------------------------------------------------------------------------

    def log_api_verification_attempt(
        self, payment_intent_id: str, order_code: str | None, retry_attempt: int = 1
    ) -> None:
        logger.debug(
            "Stripe verification attempt",
            payment_intent_id=payment_intent_id,
            order_code=order_code,
            retry_attempt=retry_attempt,
        )
        self._record(
            "api_verification_attempt",
            payment_intent_id,
            order_code,
            retry_attempt=retry_attempt,
        )

    def log_api_verification_success(
        self,
        payment_intent_id: str,
        order_code: str | None,
        stripe_status: str,
        amount: int,
        currency: str,
        duration_ms: float,
        retry_attempt: int = 1,
    ) -> None:
        logger.info(
            "Stripe verification success",
            payment_intent_id=payment_intent_id,
            order_code=order_code,
            stripe_status=stripe_status,
            amount=amount,
            currency=currency,
            duration_ms=round(duration_ms, 1),
            retry_attempt=retry_attempt,
        )
        self._record(
            "api_verification_success",
            payment_intent_id,
            order_code,
            stripe_status=stripe_status,
            amount=amount,
            currency=currency,
            duration_ms=duration_ms,
            retry_attempt=retry_attempt,
        )

    def log_api_verification_failure(
        self,
        payment_intent_id: str,
        order_code: str | None,
        error: str,
        error_type: str,
        duration_ms: float,
        retry_attempt: int = 1,
        will_retry: bool = False,
    ) -> None:
        sanitized = sanitize_message(error)
        log = logger.warning if will_retry else logger.error
        log(
            "Stripe verification failure",
            payment_intent_id=payment_intent_id,
            order_code=order_code,
            error=sanitized,
            error_type=error_type,
            duration_ms=round(duration_ms, 1),
            retry_attempt=retry_attempt,
            will_retry=will_retry,
        )
        self._record(
            "api_verification_failure",
            payment_intent_id,
            order_code,
            audit=not will_retry,
            error=sanitized,
            error_type=error_type,
            duration_ms=duration_ms,
            retry_attempt=retry_attempt,
            will_retry=will_retry,
        )

    # -------------------------------------------------------------------------
    # Lifecycle and Consistency Events
    # -------------------------------------------------------------------------

    def log_payment_intent_lifecycle(
        self,
        payment_intent_id: str,
        event: LifecycleEvent,
        order_code: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> None:
        clean = sanitize_metadata(metadata) if metadata else None
        logger.info(
            "PaymentIntent lifecycle",
            payment_intent_id=payment_intent_id,
            lifecycle_event=event,
            order_code=order_code,
            metadata=clean,
        )
        self._record(
            f"lifecycle_{event}",
            payment_intent_id,
            order_code,
            audit=event in ("settled", "failed"),
            metadata=clean,
        )

    def log_idempotency_check(
        self,
        payment_intent_id: str,
        order_code: str,
        already_settled: bool,
        existing_status: str | None = None,
    ) -> None:
        logger.info(
            "Idempotency check",
            payment_intent_id=payment_intent_id,
            order_code=order_code,
            already_settled=already_settled,
            existing_status=existing_status,
        )
        self._record(
            "idempotency_check",
            payment_intent_id,
            order_code,
            already_settled=already_settled,
            existing_status=existing_status,
        )

    def log_validation_failure(
        self,
        payment_intent_id: str,
        order_code: str,
        validation_type: ValidationType,
        expected: Any,
        actual: Any,
        context: RequestContext | None = None,
    ) -> None:
        expected_clean = sanitize_message(expected) if isinstance(expected, str) else expected
        actual_clean = sanitize_message(actual) if isinstance(actual, str) else actual
        logger.error(
            "Settlement validation failure",
            payment_intent_id=payment_intent_id,
            order_code=order_code,
            validation_type=validation_type,
            expected=expected_clean,
            actual=actual_clean,
        )
        self._record(
            "validation_failure",
            payment_intent_id,
            order_code,
            audit=True,
            validation_type=validation_type,
            expected=expected_clean,
            actual=actual_clean,
            context=context.sanitized() if context else None,
        )
        if validation_type in ("order", "ownership"):
            self._log_security_event(
                "validation_security_failure",
                payment_intent_id,
                order_code,
                f"{validation_type} validation failed: expected {expected}, got {actual}",
                context,
            )

    def log_database_transaction(
        self,
        payment_intent_id: str,
        order_code: str,
        operation: Literal["start", "commit", "rollback"],
        reason: str | None = None,
    ) -> None:
        logger.debug(
            "Settlement transaction",
            payment_intent_id=payment_intent_id,
            order_code=order_code,
            operation=operation,
            reason=reason,
        )
        self._record(
            "database_transaction",
            payment_intent_id,
            order_code,
            operation=operation,
            reason=reason,
        )

    def _log_security_event(
        self,
        event_type: str,
        payment_intent_id: str,
        order_code: str | None,
        description: str,
        context: RequestContext | None = None,
    ) -> None:
        sanitized = sanitize_message(description)
        logger.warning(
            "Security event",
            event_type=event_type,
            payment_intent_id=payment_intent_id,
            order_code=order_code,
            description=sanitized,
        )
        self._record(
            event_type,
            payment_intent_id,
            order_code,
            audit=True,
            security=True,
            description=sanitized,
            context=context.sanitized() if context else None,
        )

    # -------------------------------------------------------------------------
    # Reporting
    # -------------------------------------------------------------------------

    def generate_settlement_summary(self, start: datetime, end: datetime) -> dict[str, Any]:
        """Aggregate the trail between two instants.

        Returns:
            Dictionary with period, summary counts, error breakdown by
            category and recommendations.
        """
        window = [e for e in self._entries if start <= e.timestamp <= end]
        attempts = sum(1 for e in window if e.event == "settlement_attempt_start")
        successes = [e for e in window if e.event == "settlement_success"]
        failures = [e for e in window if e.event == "settlement_failure"]
        breakdown = Counter(e.data.get("error_category", "unknown") for e in failures)
        security_events = sum(1 for e in window if e.data.get("security"))

        completed = len(successes) + len(failures)
        durations = [e.data.get("duration_ms", 0) for e in successes + failures]
        success_rate = len(successes) / completed if completed else 0.0

        recommendations: list[str] = []
        if completed and success_rate < 0.95:
            recommendations.append(
                f"Settlement success rate is {success_rate * 100:.1f}%. Review failed settlements."
            )
        if breakdown:
            top, count = breakdown.most_common(1)[0]
            recommendations.append(f"Most frequent failure category: {top} ({count}).")
        if security_events:
            recommendations.append(
                f"{security_events} security-relevant events recorded. Review the audit trail."
            )
        if not recommendations:
            recommendations.append("No settlement issues recorded in this period.")

        return {
            "period": {"start": start.isoformat(), "end": end.isoformat()},
            "summary": {
                "total_attempts": attempts,
                "successful_settlements": len(successes),
                "failed_settlements": len(failures),
                "success_rate": success_rate,
                "average_duration_ms": sum(durations) / len(durations) if durations else 0.0,
            },
            "error_breakdown": dict(breakdown),
            "security_events": security_events,
            "recommendations": recommendations,
        }


# Global audit log instance
_audit_log: SettlementAuditLog | None = None


def get_audit_log() -> SettlementAuditLog:
    """Get the settlement audit log singleton."""
    global _audit_log
    if _audit_log is None:
        _audit_log = SettlementAuditLog()
    return _audit_log


def reset_audit_log() -> None:
    """Reset the audit log singleton (for testing)."""
    global _audit_log
    _audit_log = None
