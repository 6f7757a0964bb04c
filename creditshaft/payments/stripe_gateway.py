"""Stripe PaymentIntent gateway for manual-capture card holds."""
from __future__ import annotations

import asyncio
import logging
from typing import Any

import stripe

from ..config import StripeConfig
from ..errors import UpstreamRejected, UpstreamUnavailable
from ..models import CaptureResult

logger = logging.getLogger(__name__)

# Failures worth retrying: the intent is untouched on Stripe's side.
_TRANSIENT_ERRORS = (stripe.APIConnectionError, stripe.RateLimitError, stripe.APIError)


class StripeHoldGateway:
    """Capture or cancel PaymentIntents created with ``capture_method=manual``.

    The SDK is synchronous, so each call runs in a worker thread. The API key
    is passed per request; nothing is set on the ``stripe`` module.
    """

    def __init__(self, config: StripeConfig) -> None:
        self._api_key = config.secret_key

    async def _call(self, action: str, fn: Any, pre_auth_id: str, **params: Any) -> Any:
        try:
            return await asyncio.to_thread(fn, pre_auth_id, api_key=self._api_key, **params)
        except _TRANSIENT_ERRORS as e:
            logger.warning("Stripe %s of %s unavailable: %s", action, pre_auth_id, e)
            raise UpstreamUnavailable(f"Stripe unavailable: {e.user_message or e}") from e
        except stripe.StripeError as e:
            if e.http_status is not None and e.http_status >= 500:
                logger.warning("Stripe %s of %s unavailable (HTTP %s): %s", action, pre_auth_id, e.http_status, e)
                raise UpstreamUnavailable(f"Stripe unavailable: {e.user_message or e}") from e
            logger.error("Stripe %s of %s rejected (HTTP %s): %s", action, pre_auth_id, e.http_status, e)
            raise UpstreamRejected(f"Stripe rejected request: {e.user_message or e}") from e

    async def capture(self, pre_auth_id: str, amount: int | None = None) -> CaptureResult:
        params: dict[str, Any] = {}
        if amount is not None:
            params["amount_to_capture"] = amount

        intent = await self._call("capture", stripe.PaymentIntent.capture, pre_auth_id, **params)
        if intent.status != "succeeded":
            raise UpstreamRejected(
                f"Capture of {pre_auth_id} left intent in status {intent.status}"
            )

        logger.info("Captured %s for %s", pre_auth_id, intent.amount_received)
        return CaptureResult(
            captured_amount=int(getattr(intent, "amount_received", None) or 0),
            external_reference=getattr(intent, "latest_charge", None) or intent.id or pre_auth_id,
        )

    async def _cancel(self, pre_auth_id: str, reason: str) -> None:
        intent = await self._call(
            "cancel", stripe.PaymentIntent.cancel, pre_auth_id, cancellation_reason=reason
        )
        if intent.status != "canceled":
            raise UpstreamRejected(
                f"Cancel of {pre_auth_id} left intent in status {intent.status}"
            )
        logger.info("Cancelled hold %s (%s)", pre_auth_id, reason)

    async def release(self, pre_auth_id: str) -> None:
        await self._cancel(pre_auth_id, "requested_by_customer")

    async def cancel(self, pre_auth_id: str) -> None:
        await self._cancel(pre_auth_id, "abandoned")
