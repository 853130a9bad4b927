"""Payment gateway client (Paystack transaction verification)"""

from abc import ABC, abstractmethod

import httpx

from smartz_gateway.config import settings
from smartz_gateway.domain.exceptions import PaymentVerificationError
from smartz_gateway.domain.models import PaymentVerification
from smartz_gateway.infrastructure.clients.http import get_with_retry


class PaymentVerifier(ABC):
    """Verification API consumed by the coordinator"""

    @abstractmethod
    async def verify(self, reference: str) -> PaymentVerification:
        """Ask the gateway whether the reference is a settled payment"""


class PaystackClient(PaymentVerifier):
    """Client for Paystack GET /transaction/verify/{reference}"""

    def __init__(
        self,
        base_url: str | None = None,
        secret_key: str | None = None,
        timeout: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.base_url = (base_url or settings.paystack_api_base).rstrip("/")
        self.secret_key = secret_key if secret_key is not None else settings.paystack_secret_key
        self.timeout = timeout or settings.http_timeout_seconds
        self.max_retries = settings.provider_max_retries
        self.backoff_base = settings.provider_backoff_base
        self.transport = transport

    async def verify(self, reference: str) -> PaymentVerification:
        """
        Verify a transaction reference.

        Amounts come back in minor units (kobo for NGN).

        Raises:
            PaymentVerificationError: On timeout, HTTP errors, or invalid response
        """
        async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
            try:
                response = await get_with_retry(
                    client,
                    f"{self.base_url}/transaction/verify/{reference}",
                    operation="paystack_verify",
                    headers={"Authorization": f"Bearer {self.secret_key}"},
                    max_retries=self.max_retries,
                    backoff_base=self.backoff_base,
                )
                body = response.json()
                data = body.get("data") or {}

                return PaymentVerification(
                    verified=body.get("status") is True and data.get("status") == "success",
                    amount_minor=int(data.get("amount") or 0),
                    currency=str(data.get("currency") or ""),
                )

            except httpx.TimeoutException as e:
                raise PaymentVerificationError(f"Payment gateway timeout after {self.timeout}s") from e
            except httpx.HTTPStatusError as e:
                raise PaymentVerificationError(f"Payment gateway error: {e.response.status_code}") from e
            except httpx.RequestError as e:
                raise PaymentVerificationError(f"Payment gateway unreachable: {e.__class__.__name__}") from e
            except (AttributeError, KeyError, ValueError, TypeError) as e:
                raise PaymentVerificationError(f"Invalid verification data from gateway: {e}") from e
