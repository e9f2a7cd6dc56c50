"""Stripe billing-event adapter.

Verifies webhook signatures and routes subscription lifecycle events to the
orchestrator:

- ``checkout.session.completed``      -> provision
- ``customer.subscription.updated``   -> change plan (when the price changed)
- ``customer.subscription.deleted``   -> deprovision
- ``invoice.payment_failed``          -> logged for follow-up
- anything else                       -> ignored

Handlers return a small status dictionary instead of raising, so the
transport layer can always acknowledge the webhook.  Failures carry only
the stable reason code; provider detail stays in the logs.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any

from provisioner.config import Settings
from provisioner.errors import ProviderUnavailable, ProvisioningError
from provisioner.models.events import BillingEvent
from provisioner.orchestrator import ProvisioningOrchestrator

logger = logging.getLogger(__name__)


class InvalidWebhook(ValueError):
    """The webhook payload or signature could not be verified."""


class BillingEventHandler:
    """Dispatches verified Stripe events to the provisioning orchestrator.

    Parameters
    ----------
    orchestrator:
        The orchestrator that performs provisioning work.
    settings:
        Settings holding the Stripe secret key and webhook secret.
    """

    def __init__(self, orchestrator: ProvisioningOrchestrator, settings: Settings) -> None:
        self._orchestrator = orchestrator
        self._settings = settings

    def _get_stripe(self) -> Any:
        """Lazily import and configure the Stripe library."""
        import stripe

        if self._settings.stripe_secret_key is not None:
            stripe.api_key = self._settings.stripe_secret_key.get_secret_value()
        return stripe

    def construct_event(self, payload: bytes, signature_header: str) -> dict[str, Any]:
        """Verify *payload* against its ``Stripe-Signature`` header.

        Raises
        ------
        InvalidWebhook
            If no webhook secret is configured, the payload is malformed, or
            the signature does not match.
        """
        if self._settings.stripe_webhook_secret is None:
            raise InvalidWebhook("Webhook secret is not configured")
        stripe = self._get_stripe()
        try:
            event = stripe.Webhook.construct_event(
                payload,
                signature_header,
                self._settings.stripe_webhook_secret.get_secret_value(),
            )
        except stripe.SignatureVerificationError as exc:
            raise InvalidWebhook("Signature verification failed") from exc
        except ValueError as exc:
            raise InvalidWebhook("Malformed webhook payload") from exc
        return event.to_dict() if hasattr(event, "to_dict") else dict(event)

    async def handle_webhook_event(self, event: dict[str, Any]) -> dict[str, Any]:
        """Process a verified Stripe event.

        Returns
        -------
        dict
            ``status`` is one of ``provisioned``, ``already_provisioned``,
            ``in_progress``, ``plan_changed``, ``deprovisioned``,
            ``processed``, ``ignored`` or ``failed``.  Failed results include
            a ``reason`` code.
        """
        event_type = event.get("type", "")
        data_object = event.get("data", {}).get("object", {})

        if event_type == "checkout.session.completed":
            return await self._handle_checkout_completed(data_object)

        if event_type == "customer.subscription.updated":
            return await self._handle_subscription_updated(data_object)

        if event_type == "customer.subscription.deleted":
            return await self._handle_subscription_deleted(data_object)

        if event_type == "invoice.payment_failed":
            logger.warning(
                "Payment failed for customer %s (invoice %s)",
                data_object.get("customer"),
                data_object.get("id"),
            )
            return {"status": "processed"}

        logger.debug("Unhandled Stripe event type: %s", event_type)
        return {"status": "ignored"}

    async def _handle_checkout_completed(self, session: dict[str, Any]) -> dict[str, Any]:
        customer_id = session.get("customer")
        email = session.get("customer_email") or (session.get("customer_details") or {}).get("email")
        if not customer_id or not email:
            logger.warning("Checkout session %s lacks a customer or e-mail; ignoring", session.get("id"))
            return {"status": "ignored"}

        try:
            price_id = (session.get("metadata") or {}).get("price_id") or await self._checkout_price_id(session)
        except ProvisioningError as exc:
            return {"status": "failed", "reason": exc.reason.value, "message": exc.public_message}
        if price_id is None:
            logger.warning("Checkout session %s has no price; ignoring", session.get("id"))
            return {"status": "ignored"}

        billing_event = BillingEvent(
            billing_customer_id=customer_id,
            billing_subscription_id=session.get("subscription"),
            plan_price_id=price_id,
            customer_email=email,
        )
        try:
            result = await self._orchestrator.provision(billing_event)
        except ProvisioningError as exc:
            return {"status": "failed", "reason": exc.reason.value, "message": exc.public_message}

        if result.already_provisioned:
            return {"status": "already_provisioned", "workspace_id": result.workspace_id}
        if result.in_progress:
            return {"status": "in_progress", "workspace_id": result.workspace_id}
        # The plaintext key goes to the delivery channel, not the webhook response.
        return {"status": "provisioned", "workspace_id": result.workspace_id, "result": result}

    async def _handle_subscription_updated(self, subscription: dict[str, Any]) -> dict[str, Any]:
        customer_id = subscription.get("customer")
        items = (subscription.get("items") or {}).get("data") or []
        price_id = ((items[0].get("price") or {}).get("id")) if items else None
        if not customer_id or not price_id:
            return {"status": "ignored"}

        try:
            change = await self._orchestrator.change_plan(customer_id, price_id)
        except LookupError:
            logger.info("Subscription update for %s without an active tenant; ignoring", customer_id)
            return {"status": "ignored"}
        except ProvisioningError as exc:
            return {"status": "failed", "reason": exc.reason.value, "message": exc.public_message}

        if change is None:
            return {"status": "processed"}
        return {"status": "plan_changed", "plan": change.new_plan}

    async def _handle_subscription_deleted(self, subscription: dict[str, Any]) -> dict[str, Any]:
        customer_id = subscription.get("customer")
        if not customer_id:
            return {"status": "ignored"}
        try:
            report = await self._orchestrator.deprovision(customer_id)
        except ProvisioningError as exc:
            return {"status": "failed", "reason": exc.reason.value, "message": exc.public_message}
        if not report.complete:
            failed = [step.name for step in report.steps if not step.ok]
            return {"status": "failed", "reason": "deprovision_incomplete", "steps": failed}
        return {"status": "deprovisioned", "workspace_id": report.workspace_id}

    async def _checkout_price_id(self, session: dict[str, Any]) -> str | None:
        """Look up the purchased price from the session's line items.

        Raises
        ------
        ProviderUnavailable
            If the Stripe API call fails.
        """
        from stripe import StripeError

        session_id = session.get("id")
        if not session_id:
            return None
        stripe = self._get_stripe()
        try:
            line_items = await asyncio.to_thread(stripe.checkout.Session.list_line_items, session_id, limit=1)
        except StripeError as exc:
            logger.warning("Line item lookup for checkout session %s failed: %s", session_id, type(exc).__name__)
            raise ProviderUnavailable(
                f"Stripe line item lookup failed: {type(exc).__name__}",
                provider="billing",
            ) from exc
        data = line_items.get("data") or []
        if not data:
            return None
        return (data[0].get("price") or {}).get("id")
