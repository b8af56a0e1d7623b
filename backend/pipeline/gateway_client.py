# pipeline/gateway_client.py
# ============================================================================
# TRUCKSY PAYMENTS — PAYMENT GATEWAY CLIENT
# ============================================================================
# Thin async wrapper over a Moyasar-compatible REST API:
#   POST {api_url}/payments        initiate a card charge (form encoded)
#   GET  {api_url}/payments/{id}   the gateway's own record of a payment
#
# FAILURE HANDLING:
# - Transport errors, non-2xx answers and unexpected JSON shapes all become
#   GatewayError. Nothing is retried here.
# ============================================================================

from abc import ABC, abstractmethod
from typing import Optional

import httpx
import structlog

from config import Settings
from errors import GatewayError
from log import mask_card_number
from schemas.domain import GatewayPayment, LedgerAccount


class IPaymentGateway(ABC):
    """What the payment core needs from a gateway."""

    @abstractmethod
    async def initiate_charge(
        self,
        amount_minor: int,
        instrument: LedgerAccount,
        callback_url: str,
    ) -> dict:
        """Start a charge; returns the gateway's response body."""
        pass

    @abstractmethod
    async def query_status(self, payment_id: str) -> GatewayPayment:
        pass


def charge_id(response: dict) -> str:
    """The payment id from a charge response; callbacks are matched against it."""
    payment_id = response.get("id")
    if not payment_id:
        raise GatewayError("Charge response carried no payment id", code="GATEWAY_BAD_RESPONSE")
    return str(payment_id)


class MoyasarGatewayClient(IPaymentGateway):
    """
    HTTP client for the card processor.

    Args:
        api_url: Base URL, e.g. https://api.moyasar.com/v1
        api_key: Secret key, sent as the basic-auth user with an empty password
        timeout_seconds: Per-request timeout
        currency: ISO currency code sent with every charge
        transport: Optional httpx transport (tests pass a MockTransport)
    """

    def __init__(
        self,
        api_url: str,
        api_key: str,
        timeout_seconds: float = 15.0,
        currency: str = "SAR",
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.api_url = api_url.rstrip("/")
        self.currency = currency
        self._client = httpx.AsyncClient(
            base_url=self.api_url,
            timeout=timeout_seconds,
            auth=(api_key, ""),
            transport=transport,
        )
        self._logger = structlog.get_logger(component="gateway_client")

    @classmethod
    def from_settings(cls, settings: Settings) -> "MoyasarGatewayClient":
        return cls(
            api_url=settings.gateway_api_url,
            api_key=settings.gateway_api_key,
            timeout_seconds=settings.gateway_timeout_seconds,
            currency=settings.currency,
        )

    async def close(self):
        await self._client.aclose()

    async def initiate_charge(
        self,
        amount_minor: int,
        instrument: LedgerAccount,
        callback_url: str,
    ) -> dict:
        form = {
            "source[type]": "card",
            "source[name]": instrument.holder_name,
            "source[number]": instrument.number,
            "source[cvc]": instrument.cvc,
            "source[month]": str(instrument.month),
            "source[year]": str(instrument.year),
            "amount": str(amount_minor),
            "currency": self.currency,
            "callback_url": callback_url,
        }

        self._logger.info("charge_initiating",
                          amount_minor=amount_minor,
                          card=mask_card_number(instrument.number),
                          callback_url=callback_url)

        body = await self._request("POST", "/payments", data=form)
        if not isinstance(body, dict):
            raise GatewayError("Unexpected charge response from payment gateway")

        self._logger.info("charge_initiated",
                          payment_id=body.get("id"),
                          gateway_status=body.get("status"))
        return body

    async def query_status(self, payment_id: str) -> GatewayPayment:
        if not payment_id:
            raise GatewayError("Missing payment id", code="MISSING_PAYMENT_ID")

        body = await self._request("GET", f"/payments/{payment_id}")
        payment = self._decode_payment(payment_id, body)

        self._logger.info("payment_status_fetched",
                          payment_id=payment.payment_id,
                          gateway_status=payment.status,
                          amount_minor=payment.amount_minor)
        return payment

    async def _request(self, method: str, path: str, **kwargs):
        try:
            response = await self._client.request(method, path, **kwargs)
        except httpx.TimeoutException as e:
            self._logger.error("gateway_timeout", method=method, path=path)
            raise GatewayError("Payment gateway timed out", code="GATEWAY_TIMEOUT") from e
        except httpx.HTTPError as e:
            self._logger.error("gateway_unreachable", method=method, path=path, error=str(e))
            raise GatewayError(f"Payment gateway unreachable: {e}") from e

        if response.status_code >= 400:
            self._logger.error("gateway_error_response",
                               method=method,
                               path=path,
                               status_code=response.status_code)
            raise GatewayError(
                f"Payment gateway answered {response.status_code}",
                code="GATEWAY_HTTP_ERROR",
            )

        try:
            return response.json()
        except ValueError as e:
            raise GatewayError("Payment gateway returned invalid JSON", code="GATEWAY_BAD_RESPONSE") from e

    @staticmethod
    def _decode_payment(payment_id: str, body) -> GatewayPayment:
        """Decode {status, amount} defensively; anything else is a gateway failure."""
        if not isinstance(body, dict):
            raise GatewayError("Unexpected payment record shape", code="GATEWAY_BAD_RESPONSE")

        status = body.get("status")
        amount = body.get("amount")
        if not isinstance(status, str) or isinstance(amount, bool) or not isinstance(amount, int):
            raise GatewayError("Payment record is missing status or amount", code="GATEWAY_BAD_RESPONSE")

        message = body.get("message")
        source = body.get("source")
        if not message and isinstance(source, dict):
            message = source.get("message")

        return GatewayPayment(
            payment_id=str(body.get("id") or payment_id),
            status=status,
            amount_minor=amount,
            currency=body.get("currency"),
            message=message,
        )
