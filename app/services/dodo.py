"""Dodo Payments REST client.

Thin async wrapper over the endpoints the billing flows need. Webhook bodies
only point at objects; the reconciler always re-reads subscriptions and
payments through here.

REFERENCES:
    - https://docs.dodopayments.com/api-reference/subscriptions/get-subscriptions
    - https://docs.dodopayments.com/api-reference/payments/get-payments-1
    - https://docs.dodopayments.com/api-reference/customers/create-customer
"""

import logging
from typing import Any, Optional

import httpx
from fastapi import Depends

from app.core.config import Settings, get_settings

log = logging.getLogger(__name__)


class BillingNotConfigured(RuntimeError):
    """A setting needed by a billing endpoint is missing."""


class ProviderError(Exception):
    """Dodo Payments call failed (transport error or non-2xx)."""

    def __init__(self, message: str, status_code: Optional[int] = None, body: Any = None):
        super().__init__(message)
        self.status_code = status_code
        self.body = body


class DodoClient:
    def __init__(
        self,
        api_key: str,
        base_url: str,
        timeout: float = 15.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._transport = transport

    async def _request(
        self,
        method: str,
        path: str,
        json: Optional[dict] = None,
        params: Optional[dict] = None,
    ) -> dict:
        headers = {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }
        try:
            async with httpx.AsyncClient(
                base_url=self.base_url, timeout=self.timeout, transport=self._transport
            ) as client:
                response = await client.request(
                    method, path, json=json, params=params, headers=headers
                )
        except httpx.HTTPError as e:
            log.error("dodo.request_failed method=%s path=%s err=%s", method, path, e)
            raise ProviderError(f"{method} {path} failed: {e}") from e

        if response.status_code not in (200, 201):
            try:
                body = response.json()
            except ValueError:
                body = response.text
            log.error(
                "dodo.non_success method=%s path=%s status=%s body=%s",
                method,
                path,
                response.status_code,
                body,
            )
            raise ProviderError(
                f"{method} {path} returned {response.status_code}",
                status_code=response.status_code,
                body=body,
            )
        try:
            return response.json()
        except ValueError as e:
            raise ProviderError(f"{method} {path} returned invalid JSON") from e

    async def retrieve_subscription(self, subscription_id: str) -> dict:
        return await self._request("GET", f"/subscriptions/{subscription_id}")

    async def retrieve_payment(self, payment_id: str) -> dict:
        return await self._request("GET", f"/payments/{payment_id}")

    async def create_customer(self, email: str, name: str) -> dict:
        return await self._request("POST", "/customers", json={"email": email, "name": name})

    async def create_subscription(
        self,
        *,
        product_id: str,
        customer_id: str,
        billing: dict,
        metadata: dict,
        return_url: Optional[str] = None,
        quantity: int = 1,
    ) -> dict:
        payload: dict[str, Any] = {
            "billing": billing,
            "customer": {"customer_id": customer_id},
            "payment_link": True,
            "product_id": product_id,
            "quantity": quantity,
            "metadata": metadata,
        }
        if return_url:
            payload["return_url"] = return_url
        return await self._request("POST", "/subscriptions", json=payload)

    async def create_portal_session(self, customer_id: str) -> dict:
        return await self._request(
            "POST", f"/customers/{customer_id}/customer-portal/session"
        )


def get_dodo_client(cfg: Settings = Depends(get_settings)) -> Optional[DodoClient]:
    """Dependency: a configured client, or None when the API key is missing.

    Routes decide how an unconfigured provider is reported.
    """
    api_key = cfg.dodo_api_key
    if not api_key:
        log.warning(
            "dodo.not_configured missing=DODO_API_KEY_%s", "LIVE" if cfg.is_live else "TEST"
        )
        return None
    return DodoClient(api_key, cfg.dodo_api_base, timeout=cfg.PROVIDER_HTTP_TIMEOUT_S)


def require_client(client: Optional[DodoClient]) -> DodoClient:
    if client is None:
        raise BillingNotConfigured("Dodo Payments API key is not set")
    return client
