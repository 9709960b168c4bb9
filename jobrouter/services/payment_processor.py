"""
Payment processor client.

Jobs are paid with delayed-capture card payments: the customer's card is
authorized when the job is posted and captured when a contractor accepts.
This module talks to the Square Payments API for the two calls the dispatch
flow needs, retrieving an authorization and capturing it.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Optional

import httpx
from dateutil.parser import isoparse

from ..config import SQUARE_ACCESS_TOKEN, SQUARE_API_VERSION, SQUARE_ENVIRONMENT, SQUARE_TIMEOUT_SECONDS

logger = logging.getLogger(__name__)

if SQUARE_ENVIRONMENT == "production":
    SQUARE_API_URL = "https://connect.squareup.com/v2"
else:
    SQUARE_API_URL = "https://connect.squareupsandbox.com/v2"


class AuthorizationState(str, Enum):
    REQUIRES_CAPTURE = "requires_capture"
    CAPTURED = "captured"
    CANCELED = "canceled"
    FAILED = "failed"
    UNKNOWN = "unknown"


# Square payment status -> authorization state
SQUARE_STATUS_MAP = {
    "APPROVED": AuthorizationState.REQUIRES_CAPTURE,
    "COMPLETED": AuthorizationState.CAPTURED,
    "CANCELED": AuthorizationState.CANCELED,
    "FAILED": AuthorizationState.FAILED,
}


class PaymentProcessorUnavailable(Exception):
    """The processor could not be reached or answered with a server error"""

    pass


@dataclass(frozen=True)
class AuthorizationStatus:
    reference: str
    state: AuthorizationState
    expires_at: Optional[datetime] = None
    amount_cents: Optional[int] = None
    message: Optional[str] = None

    @property
    def captured(self) -> bool:
        return self.state == AuthorizationState.CAPTURED


class SquarePaymentProcessor:
    """Synchronous Square Payments client for delayed-capture payments"""

    def __init__(
        self,
        access_token: Optional[str] = None,
        base_url: str = SQUARE_API_URL,
        timeout: float = SQUARE_TIMEOUT_SECONDS,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        self.access_token = access_token or SQUARE_ACCESS_TOKEN
        self.base_url = base_url
        self.timeout = timeout
        self.transport = transport

    def _client(self) -> httpx.Client:
        return httpx.Client(
            base_url=self.base_url,
            timeout=self.timeout,
            transport=self.transport,
            headers={
                "Square-Version": SQUARE_API_VERSION,
                "Authorization": f"Bearer {self.access_token}",
                "Content-Type": "application/json",
            },
        )

    def retrieve_authorization(self, reference: str) -> AuthorizationStatus:
        """Look up the current state of a payment authorization"""
        response = self._request("GET", f"/payments/{reference}")
        return self._parse(reference, response)

    def capture(self, reference: str) -> AuthorizationStatus:
        """
        Capture an authorized payment. Callers retrieve the payment first and
        only capture while it is still APPROVED.
        """
        logger.info(f"💳 Capturing payment {reference}")
        response = self._request("POST", f"/payments/{reference}/complete", json={})
        return self._parse(reference, response)

    def _request(self, method: str, path: str, **kwargs) -> httpx.Response:
        try:
            with self._client() as client:
                response = client.request(method, path, **kwargs)
        except httpx.TransportError as e:
            logger.error(f"❌ Payment processor unreachable: {e}")
            raise PaymentProcessorUnavailable(str(e)) from e

        if response.status_code >= 500:
            logger.error(f"❌ Payment processor error {response.status_code}: {response.text[:200]}")
            raise PaymentProcessorUnavailable(f"HTTP {response.status_code}")
        return response

    @staticmethod
    def _parse(reference: str, response: httpx.Response) -> AuthorizationStatus:
        if response.status_code != 200:
            errors = []
            try:
                errors = response.json().get("errors", [])
            except ValueError:
                pass
            message = errors[0].get("detail") if errors else response.text[:200]
            logger.warning(f"⚠️ Payment {reference} refused by processor: {message}")
            return AuthorizationStatus(reference=reference, state=AuthorizationState.FAILED, message=message)

        payment = response.json().get("payment", {})
        state = SQUARE_STATUS_MAP.get(payment.get("status"), AuthorizationState.UNKNOWN)
        expires_at = None
        if payment.get("delay_expires_at"):
            expires_at = _parse_timestamp(payment["delay_expires_at"])
        amount = (payment.get("amount_money") or {}).get("amount")
        return AuthorizationStatus(reference=reference, state=state, expires_at=expires_at, amount_cents=amount)


def _parse_timestamp(value: str) -> Optional[datetime]:
    """RFC 3339 timestamp -> naive UTC datetime"""
    try:
        parsed = isoparse(value)
    except ValueError:
        return None
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


_processor: Optional[SquarePaymentProcessor] = None


def get_payment_processor() -> SquarePaymentProcessor:
    """Dependency for the request layer; tests override it"""
    global _processor
    if _processor is None:
        _processor = SquarePaymentProcessor()
    return _processor
