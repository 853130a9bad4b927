"""SMS activation provider client (SMS-Activate handler_api protocol)"""

import json
import logging
from abc import ABC, abstractmethod
from decimal import Decimal, InvalidOperation
from typing import Any, Dict

import httpx

from smartz_gateway.config import settings
from smartz_gateway.domain.exceptions import (
    AcquisitionFailedError,
    NotAvailableError,
    ProviderUnavailableError,
)
from smartz_gateway.domain.models import AcquiredNumber, ActivationStatus, CodeStatus
from smartz_gateway.infrastructure.clients.http import get_with_retry
from smartz_gateway.infrastructure.observability.metrics import (
    provider_failure_counter,
    provider_latency_histogram,
)

WAITING_STATUSES = ("STATUS_WAIT_CODE", "STATUS_WAIT_RETRY", "STATUS_WAIT_RESEND")


class ProviderGateway(ABC):
    """Number acquisition and status API consumed by the coordinator"""

    @abstractmethod
    async def get_service_price(self, service: str, country: str) -> Decimal:
        """Base price in provider units; NotAvailableError when not sold"""

    @abstractmethod
    async def acquire_number(self, service: str, country: str) -> AcquiredNumber:
        """Rent a number; AcquisitionFailedError on explicit refusal"""

    @abstractmethod
    async def poll_status(self, provider_order_id: str) -> ActivationStatus:
        """Current SMS status of a rented number"""

    @abstractmethod
    async def get_countries(self) -> Dict[str, Any]:
        """Raw country listing"""

    @abstractmethod
    async def get_services(self) -> Dict[str, Any]:
        """Raw service listing"""


class SmsActivateClient(ProviderGateway):
    """
    Client for the SMS-Activate handler API.

    Every action is a GET on the same endpoint with api_key and action query
    parameters. Some actions answer JSON, others a colon-separated text line.
    """

    def __init__(
        self,
        base_url: str | None = None,
        api_key: str | None = None,
        timeout: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.base_url = base_url or settings.sms_api_base
        self.api_key = api_key if api_key is not None else settings.sms_api_key
        self.timeout = timeout or settings.http_timeout_seconds
        self.max_retries = settings.provider_max_retries
        self.backoff_base = settings.provider_backoff_base
        self.transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self.timeout, transport=self.transport)

    async def _read(self, action: str, **params: Any) -> httpx.Response:
        """Idempotent action with retries; failures become ProviderUnavailableError"""
        query = {"api_key": self.api_key, "action": action, **params}
        async with self._client() as client:
            try:
                return await get_with_retry(
                    client,
                    self.base_url,
                    operation=f"sms_{action}",
                    params=query,
                    max_retries=self.max_retries,
                    backoff_base=self.backoff_base,
                )
            except httpx.TimeoutException as e:
                raise ProviderUnavailableError(f"Provider {action} timeout after {self.timeout}s") from e
            except httpx.HTTPStatusError as e:
                raise ProviderUnavailableError(f"Provider {action} error: {e.response.status_code}") from e
            except httpx.RequestError as e:
                raise ProviderUnavailableError(f"Provider {action} unreachable: {e.__class__.__name__}") from e

    async def _read_json(self, action: str, **params: Any) -> Dict[str, Any]:
        response = await self._read(action, **params)
        try:
            data = response.json()
        except (json.JSONDecodeError, ValueError) as e:
            # Errors such as BAD_KEY come back as plain text
            raise ProviderUnavailableError(f"Provider {action} answered {response.text[:40]!r}") from e
        if not isinstance(data, dict):
            raise ProviderUnavailableError(f"Unexpected {action} payload type: {type(data).__name__}")
        return data

    async def get_service_price(self, service: str, country: str) -> Decimal:
        """
        Fetch the provider cost for one service in one country.

        The price table is keyed country -> service -> {cost, count}; some
        deployments wrap it in a "prices" object.

        Raises:
            NotAvailableError: no entry, or no numbers in stock
            ProviderUnavailableError: on timeout, HTTP errors, or invalid response
        """
        data = await self._read_json("getPrices", service=service, country=country)
        prices = data.get("prices", data)

        entry = (prices.get(str(country)) or {}).get(service)
        if not entry:
            raise NotAvailableError(f"No price for service={service} country={country}")

        try:
            cost = Decimal(str(entry["cost"]))
            count = int(entry.get("count", 1))
        except (KeyError, TypeError, ValueError, InvalidOperation) as e:
            raise ProviderUnavailableError(f"Invalid price entry from provider: {e}") from e

        if count <= 0:
            raise NotAvailableError(f"No numbers in stock for service={service} country={country}")
        return cost

    async def acquire_number(self, service: str, country: str) -> AcquiredNumber:
        """
        Rent a number. Not retried: a lost response may still have rented one.

        Success is "ACCESS_NUMBER:<activation id>:<phone>"; any other body is
        a provider refusal such as NO_NUMBERS or NO_BALANCE.

        Raises:
            AcquisitionFailedError: provider refused
            ProviderUnavailableError: on timeout, HTTP errors
        """
        query = {"api_key": self.api_key, "action": "getNumber", "service": service, "country": country}
        async with self._client() as client:
            try:
                with provider_latency_histogram.labels(operation="sms_getNumber").time():
                    response = await client.get(self.base_url, params=query)
                    response.raise_for_status()
            except httpx.TimeoutException as e:
                provider_failure_counter.labels(operation="sms_getNumber").inc()
                raise ProviderUnavailableError(f"Provider getNumber timeout after {self.timeout}s") from e
            except httpx.HTTPStatusError as e:
                provider_failure_counter.labels(operation="sms_getNumber").inc()
                raise ProviderUnavailableError(f"Provider getNumber error: {e.response.status_code}") from e
            except httpx.RequestError as e:
                provider_failure_counter.labels(operation="sms_getNumber").inc()
                raise ProviderUnavailableError(f"Provider getNumber unreachable: {e.__class__.__name__}") from e

        body = response.text.strip()
        if body.startswith("ACCESS_NUMBER"):
            parts = body.split(":")
            if len(parts) >= 3 and parts[1] and parts[2]:
                return AcquiredNumber(provider_order_id=parts[1], phone_number=parts[2])

        reason = body.split(":")[0][:64] or "EMPTY_RESPONSE"
        logging.warning(f"Provider refused number: {reason}", extra={"service": service, "country": country})
        raise AcquisitionFailedError(reason)

    async def poll_status(self, provider_order_id: str) -> ActivationStatus:
        """Map getStatus answers onto waiting / code received / failed"""
        response = await self._read("getStatus", id=provider_order_id)
        body = response.text.strip()

        if body.startswith("STATUS_OK"):
            code = body.split(":", 1)[1] if ":" in body else ""
            return ActivationStatus(status=CodeStatus.CODE_RECEIVED, code=code)
        if body.startswith(WAITING_STATUSES):
            return ActivationStatus(status=CodeStatus.WAITING)
        return ActivationStatus(status=CodeStatus.FAILED, reason=body.split(":")[0][:64] or "EMPTY_RESPONSE")

    async def get_countries(self) -> Dict[str, Any]:
        return await self._read_json("getCountries")

    async def get_services(self) -> Dict[str, Any]:
        return await self._read_json("getServicesList")
