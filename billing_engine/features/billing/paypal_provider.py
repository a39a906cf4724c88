"""
PayPal wallet processor adapter.

Implements the PaymentProcessor protocol over the PayPal REST API with
httpx. Authentication is OAuth client-credentials; the bearer token is
cached and refreshed one minute before it expires.

PayPal has no customer object, so customers are local, deterministic ids.
One-time payments are approval flows: ``process_payment`` returns the
approval link as ``redirect_url`` and the capture arrives later by webhook.
"""
import asyncio
import json
import logging
import time
import uuid
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Callable, Dict, List, Mapping, Optional

import httpx

from billing_engine.features.billing.provider import (
    ProcessorAuthError,
    ProcessorTransientError,
    ProcessorValidationError,
    ProcessorError,
    SignatureHeader,
    WebhookSignatureError,
    format_major_units,
    normalize_status,
    split_idempotency_key,
)
from billing_engine.models.billing import (
    CustomerProfile,
    PaymentIntentData,
    PaymentMethodData,
    PaymentResult,
    PayPalEvent,
    RefundResult,
    SubscriptionData,
    SubscriptionDelta,
    SubscriptionResult,
    SubscriptionStatus,
)

logger = logging.getLogger(__name__)

PAYPAL_BASE_URLS = {
    "sandbox": "https://api-m.sandbox.paypal.com",
    "live": "https://api-m.paypal.com",
}

TOKEN_REFRESH_MARGIN_SECONDS = 60

PAYPAL_STATUS_MAP = {
    "approval_pending": SubscriptionStatus.PENDING,
    "approved": SubscriptionStatus.PENDING,
    "active": SubscriptionStatus.ACTIVE,
    "suspended": SubscriptionStatus.PAST_DUE,
    "cancelled": SubscriptionStatus.CANCELED,
    "expired": SubscriptionStatus.CANCELED,
}

TRANSMISSION_HEADERS = {
    "auth_algo": "paypal-auth-algo",
    "cert_url": "paypal-cert-url",
    "transmission_id": "paypal-transmission-id",
    "transmission_sig": "paypal-transmission-sig",
    "transmission_time": "paypal-transmission-time",
}

_CUSTOMER_NAMESPACE = uuid.UUID("9b3c7a52-4f0e-4b8e-9a51-3f1d2c6e8a10")


def _parse_time(value: Optional[str]) -> Optional[int]:
    """PayPal RFC 3339 timestamp -> epoch seconds."""
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return int(parsed.timestamp())


def _approval_link(links: Optional[List[Dict[str, Any]]]) -> Optional[str]:
    for link in links or []:
        if link.get("rel") in ("approve", "payer-action"):
            return link.get("href")
    return None


def _error_detail(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text[:200]
    if isinstance(body, dict):
        return str(body.get("message") or body.get("error_description") or body.get("name") or body)
    return str(body)[:200]


class PayPalProvider:
    """Wallet processor: PayPal implementation of PaymentProcessor."""

    name = "paypal"

    def __init__(
        self,
        client_id: str,
        client_secret: str,
        environment: str = "sandbox",
        webhook_id: Optional[str] = None,
        *,
        return_url: Optional[str] = None,
        cancel_url: Optional[str] = None,
        brand_name: str = "HarborList",
        timeout: float = 20.0,
        client: Optional[httpx.AsyncClient] = None,
        monotonic: Callable[[], float] = time.monotonic,
    ):
        if not client_id or not client_secret:
            raise ProcessorAuthError("PayPal client id and secret are required")
        if environment not in PAYPAL_BASE_URLS:
            raise ProcessorValidationError(f"Unknown PayPal environment: {environment}")

        self.client_id = client_id
        self.client_secret = client_secret
        self.environment = environment
        self.webhook_id = webhook_id
        self.return_url = return_url
        self.cancel_url = cancel_url
        self.brand_name = brand_name
        self.base_url = PAYPAL_BASE_URLS[environment]

        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(
            base_url=self.base_url,
            timeout=timeout,
            headers={"Accept": "application/json"},
        )
        self._monotonic = monotonic
        self._access_token: Optional[str] = None
        self._token_expires_at = 0.0
        self._token_lock = asyncio.Lock()

    @classmethod
    def from_settings(cls, cfg, client: Optional[httpx.AsyncClient] = None) -> "PayPalProvider":
        return cls(
            client_id=cfg.PAYPAL_CLIENT_ID,
            client_secret=cfg.PAYPAL_CLIENT_SECRET,
            environment=cfg.PAYPAL_ENVIRONMENT,
            webhook_id=cfg.PAYPAL_WEBHOOK_ID,
            return_url=cfg.PAYPAL_RETURN_URL,
            cancel_url=cfg.PAYPAL_CANCEL_URL,
            brand_name=cfg.PAYPAL_BRAND_NAME,
            timeout=cfg.PROCESSOR_TIMEOUT_SECONDS,
            client=client,
        )

    # -- transport ---------------------------------------------------------

    async def _ensure_token(self) -> str:
        if self._access_token and self._monotonic() < self._token_expires_at:
            return self._access_token
        async with self._token_lock:
            if self._access_token and self._monotonic() < self._token_expires_at:
                return self._access_token
            return await self._refresh_token()

    async def _refresh_token(self) -> str:
        try:
            response = await self._client.post(
                f"{self.base_url}/v1/oauth2/token",
                data={"grant_type": "client_credentials"},
                auth=(self.client_id, self.client_secret),
                headers={"Content-Type": "application/x-www-form-urlencoded"},
            )
        except httpx.TransportError as e:
            raise ProcessorTransientError(f"PayPal token request failed: {e}") from e

        if response.status_code in (400, 401, 403):
            raise ProcessorAuthError("Failed to authenticate with PayPal")
        self._raise_for_status(response, "token request")

        payload = response.json()
        expires_in = int(payload.get("expires_in") or 0)
        self._access_token = payload["access_token"]
        self._token_expires_at = self._monotonic() + max(expires_in - TOKEN_REFRESH_MARGIN_SECONDS, 0)
        logger.debug("[billing] paypal access token refreshed", extra={"expires_in": expires_in})
        return self._access_token

    @staticmethod
    def _raise_for_status(response: httpx.Response, operation: str) -> None:
        status = response.status_code
        if status < 400:
            return
        message = f"PayPal {operation} failed ({status}): {_error_detail(response)}"
        if status in (401, 403):
            raise ProcessorAuthError(message)
        if status == 429 or status >= 500:
            raise ProcessorTransientError(message)
        raise ProcessorValidationError(message)

    async def _request(
        self,
        method: str,
        path: str,
        operation: str,
        *,
        json_body: Any = None,
        request_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        token = await self._ensure_token()
        headers = {"Authorization": f"Bearer {token}", "Content-Type": "application/json"}
        if request_id:
            headers["PayPal-Request-Id"] = request_id

        try:
            response = await self._client.request(
                method, f"{self.base_url}{path}", json=json_body, headers=headers
            )
        except httpx.TransportError as e:
            raise ProcessorTransientError(f"PayPal {operation} failed: {e}") from e

        if response.status_code == 401:
            # Token revoked early; next call fetches a fresh one
            self._access_token = None
        self._raise_for_status(response, operation)

        if not response.content:
            return {}
        try:
            body = response.json()
        except ValueError as e:
            raise ProcessorTransientError(f"PayPal {operation} returned invalid JSON") from e
        return body if isinstance(body, dict) else {}

    def _application_context(self, user_action: str) -> Dict[str, Any]:
        context: Dict[str, Any] = {
            "brand_name": self.brand_name,
            "locale": "en-US",
            "shipping_preference": "NO_SHIPPING",
            "user_action": user_action,
        }
        if self.return_url:
            context["return_url"] = self.return_url
        if self.cancel_url:
            context["cancel_url"] = self.cancel_url
        return context

    # -- protocol ----------------------------------------------------------

    async def create_customer(self, profile: CustomerProfile) -> str:
        if not profile.user_id:
            raise ProcessorValidationError("Customer profile requires a user_id")
        customer_id = f"paypal_{uuid.uuid5(_CUSTOMER_NAMESPACE, profile.user_id).hex}"
        logger.info("[billing] paypal customer id assigned", extra={"user_id": profile.user_id})
        return customer_id

    async def create_payment_method(self, customer_id: str, payment_data: PaymentMethodData) -> str:
        # The payer's wallet is selected during approval; nothing is stored remotely
        if payment_data.type != "paypal":
            raise ProcessorValidationError(
                f"Unsupported payment method type for PayPal: {payment_data.type}"
            )
        return f"pm_paypal_{uuid.uuid4().hex}"

    async def create_subscription(
        self,
        customer_id: str,
        plan_ref: str,
        payment_method_id: Optional[str],
        metadata: Optional[Dict[str, str]] = None,
    ) -> SubscriptionResult:
        idempotency_key, meta = split_idempotency_key(metadata)
        body: Dict[str, Any] = {
            "plan_id": plan_ref,
            "quantity": "1",
            "custom_id": meta.get("billing_id") or customer_id,
            "application_context": self._application_context("SUBSCRIBE_NOW"),
        }
        if meta.get("email"):
            body["subscriber"] = {"email_address": meta["email"]}

        subscription = await self._request(
            "POST", "/v1/billing/subscriptions", "subscription creation",
            json_body=body, request_id=idempotency_key,
        )
        return SubscriptionResult(
            subscription_id=subscription["id"],
            status=str(subscription.get("status", "")).lower(),
        )

    async def process_payment(
        self,
        amount: Decimal,
        currency: str,
        payment_method_id: Optional[str],
        metadata: Optional[Dict[str, str]] = None,
    ) -> PaymentResult:
        if amount <= 0:
            raise ProcessorValidationError("Payment amount must be positive")

        idempotency_key, meta = split_idempotency_key(metadata)
        unit: Dict[str, Any] = {
            "amount": {"currency_code": currency.upper(), "value": format_major_units(amount)},
            "description": meta.get("description") or f"{self.brand_name} Payment",
        }
        custom_id = meta.get("order_id") or meta.get("billing_id") or idempotency_key
        if custom_id:
            unit["custom_id"] = custom_id
        if meta.get("invoice_id"):
            unit["invoice_id"] = meta["invoice_id"]

        context = self._application_context("PAY_NOW")
        context["landing_page"] = "BILLING"
        order = await self._request(
            "POST", "/v2/checkout/orders", "payment",
            json_body={"intent": "CAPTURE", "purchase_units": [unit], "application_context": context},
            request_id=idempotency_key,
        )
        return PaymentResult(
            transaction_id=order["id"],
            status=str(order.get("status", "")).lower(),
            redirect_url=_approval_link(order.get("links")),
        )

    async def cancel_subscription(self, subscription_id: str) -> None:
        await self._request(
            "POST", f"/v1/billing/subscriptions/{subscription_id}/cancel", "subscription cancel",
            json_body={"reason": "User requested cancellation"},
        )

    async def update_subscription(self, subscription_id: str, delta: SubscriptionDelta) -> None:
        if delta.plan_ref is None and delta.quantity is None:
            # Period-end cancellation and metadata are tracked locally for PayPal
            if not delta.is_empty():
                logger.debug(
                    "[billing] paypal subscription update has no remote fields",
                    extra={"subscription_id": subscription_id},
                )
            return

        body: Dict[str, Any] = {}
        if delta.plan_ref:
            body["plan_id"] = delta.plan_ref
        if delta.quantity is not None:
            body["quantity"] = str(delta.quantity)
        await self._request(
            "POST", f"/v1/billing/subscriptions/{subscription_id}/revise", "subscription update",
            json_body=body,
        )

    async def process_refund(
        self,
        transaction_id: str,
        amount: Optional[Decimal] = None,
        reason: Optional[str] = None,
    ) -> RefundResult:
        # Refunds apply to the capture, not the order
        order = await self._request("GET", f"/v2/checkout/orders/{transaction_id}", "order retrieve")
        units = order.get("purchase_units") or [{}]
        captures = ((units[0].get("payments") or {}).get("captures")) or []
        if not captures or not captures[0].get("id"):
            raise ProcessorValidationError("No capture found for this payment")
        capture = captures[0]

        body: Dict[str, Any] = {"note_to_payer": reason or "Refund requested"}
        if amount is not None:
            currency = (capture.get("amount") or {}).get("currency_code") or (
                (units[0].get("amount") or {}).get("currency_code") or "USD"
            )
            body["amount"] = {"value": format_major_units(amount), "currency_code": currency}

        refund = await self._request(
            "POST", f"/v2/payments/captures/{capture['id']}/refund", "refund", json_body=body,
        )
        return RefundResult(refund_id=refund["id"], status=str(refund.get("status", "pending")).lower())

    async def retrieve_payment_intent(self, payment_intent_id: str) -> PaymentIntentData:
        order = await self._request("GET", f"/v2/checkout/orders/{payment_intent_id}", "order retrieve")
        unit = (order.get("purchase_units") or [{}])[0]
        amount = unit.get("amount") or {}
        try:
            value = Decimal(str(amount.get("value", "0")))
        except InvalidOperation:
            value = Decimal("0")
        return PaymentIntentData(
            id=order["id"],
            amount=value,
            currency=str(amount.get("currency_code", "")).upper(),
            status=str(order.get("status", "")).lower(),
            metadata={"custom_id": unit.get("custom_id"), "invoice_id": unit.get("invoice_id")},
        )

    async def retrieve_subscription(self, subscription_id: str) -> SubscriptionData:
        subscription = await self._request(
            "GET", f"/v1/billing/subscriptions/{subscription_id}", "subscription retrieve"
        )
        billing_info = subscription.get("billing_info") or {}
        last_payment = billing_info.get("last_payment") or {}
        fallback = subscription.get("start_time") or subscription.get("create_time")
        return SubscriptionData(
            id=subscription["id"],
            status=normalize_status(subscription.get("status"), PAYPAL_STATUS_MAP),
            current_period_start=_parse_time(last_payment.get("time") or fallback),
            current_period_end=_parse_time(billing_info.get("next_billing_time") or fallback),
            cancel_at_period_end=False,
            metadata={"plan_id": subscription.get("plan_id"), "custom_id": subscription.get("custom_id")},
        )

    async def verify_and_parse_webhook(self, raw_payload: bytes, signature_header: SignatureHeader) -> PayPalEvent:
        """Parse a PayPal webhook, verifying it remotely when a webhook id is configured."""
        try:
            text = raw_payload.decode("utf-8") if isinstance(raw_payload, (bytes, bytearray)) else raw_payload
            event = json.loads(text)
        except (ValueError, UnicodeDecodeError) as e:
            raise WebhookSignatureError(f"Invalid payload: {e}") from e

        if not isinstance(event, dict) or not event.get("id") or not event.get("event_type"):
            raise WebhookSignatureError("Invalid payload: missing event id or event_type")

        if self.webhook_id:
            await self._verify_remote(event, signature_header)
        else:
            logger.warning(
                "[billing] PAYPAL_WEBHOOK_ID not set, webhook accepted without verification",
                extra={"event_type": event.get("event_type")},
            )

        resource = event.get("resource") if isinstance(event.get("resource"), dict) else {}
        return PayPalEvent(
            id=str(event["id"]),
            type=str(event["event_type"]),
            resource=resource,
            resource_type=event.get("resource_type"),
        )

    async def _verify_remote(self, event: Dict[str, Any], signature_header: SignatureHeader) -> None:
        if not isinstance(signature_header, Mapping):
            raise WebhookSignatureError("Missing PayPal transmission headers")
        headers = {k.lower(): v for k, v in signature_header.items()}
        body: Dict[str, Any] = {}
        for field_name, header in TRANSMISSION_HEADERS.items():
            if not headers.get(header):
                raise WebhookSignatureError(f"Missing {header} header")
            body[field_name] = headers[header]
        body["webhook_id"] = self.webhook_id
        body["webhook_event"] = event

        try:
            result = await self._request(
                "POST", "/v1/notifications/verify-webhook-signature", "webhook verification",
                json_body=body,
            )
        except ProcessorValidationError as e:
            raise WebhookSignatureError(f"Invalid signature: {e}") from e
        if result.get("verification_status") != "SUCCESS":
            raise WebhookSignatureError("Invalid signature: PayPal verification failed")

    async def check_health(self) -> bool:
        try:
            await self._ensure_token()
        except ProcessorError as e:
            logger.warning("[billing] paypal health check failed", extra={"error": str(e)})
            return False
        return True

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()
