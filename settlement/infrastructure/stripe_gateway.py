"""Stripe HTTP client for the PaymentIntent API.

Talks to Stripe's REST API with form-encoded bodies and maps Stripe
error payloads and transport failures onto ``StripeGatewayError``.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any

import httpx
import structlog

from settlement.infrastructure.config import settings

logger = structlog.get_logger()


# ============================================================================
# Errors
# ============================================================================


class StripeErrorType(str, Enum):
    """Stripe error families, as reported in ``error.type`` or inferred."""

    CONNECTION = "connection_error"
    API = "api_error"
    INVALID_REQUEST = "invalid_request_error"
    AUTHENTICATION = "authentication_error"
    PERMISSION = "permission_error"
    RATE_LIMIT = "rate_limit_error"
    CARD = "card_error"
    IDEMPOTENCY = "idempotency_error"


class StripeGatewayError(Exception):
    """Error from a Stripe API call."""

    def __init__(
        self,
        error_type: StripeErrorType,
        message: str,
        code: str | None = None,
        status_code: int | None = None,
        decline_code: str | None = None,
    ) -> None:
        self.error_type = error_type
        self.message = message
        self.code = code
        self.status_code = status_code
        self.decline_code = decline_code
        super().__init__(f"[{error_type.value}] {message}")

    @classmethod
    def from_response(cls, response: httpx.Response) -> "StripeGatewayError":
        """Build from a non-2xx Stripe response.

        The HTTP status wins over the body for auth, permission and rate
        limit errors, which Stripe reports with generic ``type`` values.
        """
        try:
            body = response.json().get("error", {})
        except ValueError:
            body = {}
        message = body.get("message") or response.text or f"HTTP {response.status_code}"

        if response.status_code == 401:
            error_type = StripeErrorType.AUTHENTICATION
        elif response.status_code == 403:
            error_type = StripeErrorType.PERMISSION
        elif response.status_code == 429:
            error_type = StripeErrorType.RATE_LIMIT
        else:
            try:
                error_type = StripeErrorType(body.get("type", ""))
            except ValueError:
                error_type = (
                    StripeErrorType.API
                    if response.status_code >= 500
                    else StripeErrorType.INVALID_REQUEST
                )

        return cls(
            error_type=error_type,
            message=message,
            code=body.get("code"),
            status_code=response.status_code,
            decline_code=body.get("decline_code"),
        )


class StripeNotConfiguredError(Exception):
    """Raised when Stripe is called without a secret key."""

    def __init__(self) -> None:
        super().__init__("Stripe service not available")


# ============================================================================
# Response Types
# ============================================================================


@dataclass
class PaymentIntent:
    """The parts of a Stripe PaymentIntent the settlement flow reads."""

    id: str
    status: str
    amount: int
    currency: str
    client_secret: str | None = None
    amount_received: int = 0
    created: int | None = None
    metadata: dict[str, str] = field(default_factory=dict)
    last_payment_error: dict[str, Any] | None = None
    payment_method_types: list[str] = field(default_factory=list)

    @classmethod
    def from_api_response(cls, data: dict[str, Any]) -> "PaymentIntent":
        return cls(
            id=data["id"],
            status=data.get("status", "unknown"),
            amount=data.get("amount", 0),
            currency=data.get("currency", "usd"),
            client_secret=data.get("client_secret"),
            amount_received=data.get("amount_received") or 0,
            created=data.get("created"),
            metadata=dict(data.get("metadata") or {}),
            last_payment_error=data.get("last_payment_error"),
            payment_method_types=list(data.get("payment_method_types") or []),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "status": self.status,
            "amount": self.amount,
            "currency": self.currency,
            "amount_received": self.amount_received,
            "created": self.created,
            "metadata": self.metadata,
            "payment_method_types": self.payment_method_types,
        }


def encode_form(params: dict[str, Any], prefix: str = "") -> dict[str, str]:
    """Flatten nested params into Stripe's bracketed form keys.

    ``{"metadata": {"a": 1}}`` becomes ``{"metadata[a]": "1"}``. None values
    are dropped and booleans are sent as ``true``/``false``.
    """
    encoded: dict[str, str] = {}
    for key, value in params.items():
        name = f"{prefix}[{key}]" if prefix else key
        if value is None:
            continue
        if isinstance(value, dict):
            encoded.update(encode_form(value, name))
        elif isinstance(value, (list, tuple)):
            for index, item in enumerate(value):
                if isinstance(item, dict):
                    encoded.update(encode_form(item, f"{name}[{index}]"))
                else:
                    encoded[f"{name}[{index}]"] = str(item)
        elif isinstance(value, bool):
            encoded[name] = "true" if value else "false"
        else:
            encoded[name] = str(value)
    return encoded


# ============================================================================
# Stripe Client
# ============================================================================


class StripeGateway:
    """HTTP client for Stripe's PaymentIntent endpoints."""

    def __init__(
        self,
        api_key: str | None = None,
        base_url: str | None = None,
        api_version: str | None = None,
        timeout: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        """Initialize Stripe client.

        Args:
            api_key: Stripe secret key; defaults to settings.
            base_url: API base URL; defaults to settings.
            api_version: Value for the Stripe-Version header.
            timeout: Request timeout in seconds.
            transport: Optional httpx transport (used by tests).
        """
        self.api_key = settings.stripe_secret_key if api_key is None else api_key
        self.base_url = base_url or settings.stripe_api_base
        self.api_version = api_version or settings.stripe_api_version
        self.timeout = timeout or settings.stripe_timeout_seconds
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    @property
    def is_configured(self) -> bool:
        return bool(self.api_key)

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if not self.is_configured:
            raise StripeNotConfiguredError()
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                timeout=self.timeout,
                transport=self._transport,
                headers={
                    "Authorization": f"Bearer {self.api_key}",
                    "Stripe-Version": self.api_version,
                },
            )
        return self._client

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._client:
            await self._client.aclose()
            self._client = None

    async def _request(
        self,
        method: str,
        path: str,
        data: dict[str, Any] | None = None,
        idempotency_key: str | None = None,
    ) -> dict[str, Any]:
        client = await self._get_client()
        headers = {"Idempotency-Key": idempotency_key} if idempotency_key else None
        try:
            response = await client.request(
                method,
                path,
                data=encode_form(data) if data else None,
                headers=headers,
            )
        except httpx.RequestError as e:
            logger.error("Stripe API request failed", method=method, path=path, error=str(e))
            raise StripeGatewayError(
                StripeErrorType.CONNECTION, f"Request failed: {str(e)}"
            ) from e

        if response.status_code >= 400:
            error = StripeGatewayError.from_response(response)
            logger.warning(
                "Stripe API error",
                method=method,
                path=path,
                status_code=response.status_code,
                error_type=error.error_type.value,
                error_code=error.code,
            )
            raise error

        return response.json()

    async def create_payment_intent(
        self,
        amount: int,
        currency: str = "usd",
        metadata: dict[str, str] | None = None,
        automatic_payment_methods: bool = True,
        idempotency_key: str | None = None,
    ) -> PaymentIntent:
        """Create a PaymentIntent.

        Raises:
            StripeGatewayError: On API error.
        """
        payload: dict[str, Any] = {
            "amount": amount,
            "currency": currency,
            "metadata": metadata or {},
        }
        if automatic_payment_methods:
            payload["automatic_payment_methods"] = {"enabled": True}
        data = await self._request(
            "POST", "/v1/payment_intents", data=payload, idempotency_key=idempotency_key
        )
        return PaymentIntent.from_api_response(data)

    async def update_payment_intent(
        self,
        payment_intent_id: str,
        amount: int | None = None,
        metadata: dict[str, str] | None = None,
        idempotency_key: str | None = None,
    ) -> PaymentIntent:
        """Update amount and/or metadata of a PaymentIntent.

        Raises:
            StripeGatewayError: On API error.
        """
        payload: dict[str, Any] = {"amount": amount, "metadata": metadata}
        data = await self._request(
            "POST",
            f"/v1/payment_intents/{payment_intent_id}",
            data=payload,
            idempotency_key=idempotency_key,
        )
        return PaymentIntent.from_api_response(data)

    async def retrieve_payment_intent(self, payment_intent_id: str) -> PaymentIntent:
        """Retrieve a PaymentIntent.

        Raises:
            StripeGatewayError: On API error.
        """
        data = await self._request("GET", f"/v1/payment_intents/{payment_intent_id}")
        return PaymentIntent.from_api_response(data)

    async def cancel_payment_intent(
        self,
        payment_intent_id: str,
        cancellation_reason: str | None = None,
    ) -> PaymentIntent:
        """Cancel a PaymentIntent.

        Args:
            payment_intent_id: PaymentIntent id.
            cancellation_reason: One of Stripe's cancellation reasons.

        Raises:
            StripeGatewayError: On API error.
        """
        payload = {"cancellation_reason": cancellation_reason} if cancellation_reason else None
        data = await self._request(
            "POST", f"/v1/payment_intents/{payment_intent_id}/cancel", data=payload
        )
        return PaymentIntent.from_api_response(data)


# Global gateway instance
_stripe_gateway: StripeGateway | None = None


def get_stripe_gateway() -> StripeGateway:
    """Get the Stripe gateway singleton."""
    global _stripe_gateway
    if _stripe_gateway is None:
        _stripe_gateway = StripeGateway()
    return _stripe_gateway


def set_stripe_gateway(gateway: StripeGateway | None) -> None:
    """Replace the gateway singleton (for testing)."""
    global _stripe_gateway
    _stripe_gateway = gateway
