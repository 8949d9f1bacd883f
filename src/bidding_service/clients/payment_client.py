"""Async HTTP client for the payment processor (Stripe-compatible REST API)."""

from __future__ import annotations

from typing import Any

import httpx

from bidding_service.core.exceptions import ServiceError
from bidding_service.logging import get_logger

_PAYMENT_INTENTS_PATH = "/v1/payment_intents"


def _unavailable(message: str) -> ServiceError:
    return ServiceError(
        error="PAYMENT_SERVICE_UNAVAILABLE",
        message=message,
        status_code=502,
        details={"retryable": True},
    )


def _json_object(response: httpx.Response) -> dict[str, Any] | None:
    """The response body as a JSON object, or None when it is anything else."""
    try:
        body = response.json()
    except ValueError:
        return None
    return body if isinstance(body, dict) else None


class PaymentClient:
    """
    Client for payment intents.

    Two operations:
    1. create_payment_intent: opens an intent for an amount in minor
       currency units and returns its id and client secret. The client
       secret is handed to the payer's browser to complete the charge.
    2. confirm_payment_complete: reports whether an intent has succeeded.
       Confirmation itself happens between the payer and the processor.
    """

    def __init__(
        self,
        base_url: str,
        api_key: str,
        currency: str,
        timeout_seconds: int,
    ) -> None:
        self._base_url = base_url
        self._currency = currency
        self._client = httpx.AsyncClient(
            base_url=base_url,
            timeout=httpx.Timeout(timeout_seconds),
            headers={"Authorization": f"Bearer {api_key}"},
        )

    async def create_payment_intent(
        self,
        amount: int,
        metadata: dict[str, str],
    ) -> dict[str, Any]:
        """
        Create a card payment intent.

        Args:
            amount: Amount in minor currency units (cents)
            metadata: String key/values attached to the intent

        Returns:
            dict with keys: id, client_secret, status

        Raises:
            ServiceError: PAYMENT_SERVICE_UNAVAILABLE (502) on connection/timeout/unexpected errors
            ServiceError: PAYMENT_REJECTED (402) when the processor refuses the request
        """
        logger = get_logger(__name__)

        form: dict[str, Any] = {
            "amount": str(amount),
            "currency": self._currency,
            "payment_method_types[]": ["card"],
            "description": f"Payment for Task: {metadata.get('task_title') or 'Task Completion'}",
        }
        for key, value in metadata.items():
            form[f"metadata[{key}]"] = value

        try:
            response = await self._client.post(_PAYMENT_INTENTS_PATH, data=form)
        except (httpx.ConnectError, httpx.TimeoutException) as exc:
            logger.warning(
                "Payment processor connection failed",
                extra={"error": str(exc), "base_url": self._base_url},
            )
            raise _unavailable("Cannot connect to payment processor") from exc
        except httpx.HTTPError as exc:
            logger.warning(
                "Payment processor HTTP error",
                extra={"error": str(exc), "base_url": self._base_url},
            )
            raise _unavailable("Payment processor request failed") from exc

        body = _json_object(response)

        if response.status_code == 200:
            if (
                body is None
                or not isinstance(body.get("id"), str)
                or not isinstance(body.get("client_secret"), str)
            ):
                logger.warning(
                    "Payment processor returned a malformed intent",
                    extra={"base_url": self._base_url},
                )
                raise _unavailable("Payment processor returned a malformed response")
            return {
                "id": body["id"],
                "client_secret": body["client_secret"],
                "status": body.get("status"),
            }

        if response.status_code in (400, 402) and body is not None:
            error_info = body.get("error", {})
            message = (
                error_info.get("message") if isinstance(error_info, dict) else None
            ) or "Payment processor rejected the payment intent"
            raise ServiceError(
                error="PAYMENT_REJECTED",
                message=message,
                status_code=402,
                details={},
            )

        logger.warning(
            "Payment processor unexpected status on intent create",
            extra={"status_code": response.status_code, "base_url": self._base_url},
        )
        raise _unavailable("Payment processor returned unexpected status")

    async def confirm_payment_complete(self, intent_id: str) -> bool:
        """
        Return True when the intent has succeeded.

        Raises:
            ServiceError: PAYMENT_SERVICE_UNAVAILABLE (502) when the processor
                          cannot be reached or answers unexpectedly
        """
        logger = get_logger(__name__)

        try:
            response = await self._client.get(f"{_PAYMENT_INTENTS_PATH}/{intent_id}")
        except (httpx.ConnectError, httpx.TimeoutException) as exc:
            logger.warning(
                "Payment processor connection failed on intent lookup",
                extra={"error": str(exc), "intent_id": intent_id},
            )
            raise _unavailable("Cannot connect to payment processor") from exc
        except httpx.HTTPError as exc:
            logger.warning(
                "Payment processor HTTP error on intent lookup",
                extra={"error": str(exc), "intent_id": intent_id},
            )
            raise _unavailable("Payment processor request failed") from exc

        if response.status_code == 200:
            body = _json_object(response)
            if body is None:
                logger.warning(
                    "Payment processor returned a malformed intent",
                    extra={"intent_id": intent_id},
                )
                raise _unavailable("Payment processor returned a malformed response")
            return body.get("status") == "succeeded"

        if response.status_code == 404:
            return False

        logger.warning(
            "Payment processor unexpected status on intent lookup",
            extra={"status_code": response.status_code, "intent_id": intent_id},
        )
        raise _unavailable("Payment processor returned unexpected status")

    async def close(self) -> None:
        """Close the underlying HTTP client."""
        await self._client.aclose()
