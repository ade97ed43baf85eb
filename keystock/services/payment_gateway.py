"""
Payment Gateway Client

Cancels hosted payment links at PayOS when an attempt times out.

The reconciler treats this as best-effort: a failed cancel is logged and
the attempt is still marked Timeout. The gateway rejects payment on an
expired link anyway; cancelling just closes it sooner.
"""
import logging
from typing import Optional, Protocol

import httpx

from keystock.core.config import settings
from keystock.core.exceptions import PaymentGatewayError

logger = logging.getLogger(__name__)

DEFAULT_CANCEL_REASON = "Cancelled by system"
SUCCESS_CODE = "00"


class PaymentGateway(Protocol):
    provider: str

    async def cancel_link(self, link_id: str, reason: Optional[str] = None) -> bool:
        ...


class PayOSClient:
    """
    PayOS payment-request client.

    Required environment variables:
    - PAYOS_CLIENT_ID
    - PAYOS_API_KEY

    Without credentials every call is a no-op returning False.
    """

    provider = "PayOS"

    def __init__(
        self,
        api_base: Optional[str] = None,
        client_id: Optional[str] = None,
        api_key: Optional[str] = None,
        timeout: Optional[float] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self.api_base = (api_base or settings.PAYOS_API_BASE).rstrip("/")
        self.client_id = client_id if client_id is not None else settings.PAYOS_CLIENT_ID
        self.api_key = api_key if api_key is not None else settings.PAYOS_API_KEY
        self.timeout = timeout or settings.PAYMENT_GATEWAY_TIMEOUT_SECONDS
        self._http_client = http_client

    @property
    def is_configured(self) -> bool:
        return bool(self.client_id and self.api_key)

    async def _get_http_client(self) -> httpx.AsyncClient:
        """Get or create reusable HTTP client."""
        if self._http_client is None or self._http_client.is_closed:
            self._http_client = httpx.AsyncClient(timeout=self.timeout)
        return self._http_client

    async def close(self):
        """Close HTTP client on shutdown."""
        if self._http_client and not self._http_client.is_closed:
            await self._http_client.aclose()

    async def cancel_link(self, link_id: str, reason: Optional[str] = None) -> bool:
        """
        Cancel a payment link.

        Returns True when PayOS answers with code "00", False on any other
        answer. Raises PaymentGatewayError when PayOS cannot be reached or
        does not return JSON.
        """
        if not link_id:
            return False

        if not self.is_configured:
            logger.debug(f"PayOS not configured, skipping cancel of link {link_id}")
            return False

        client = await self._get_http_client()
        url = f"{self.api_base}/{link_id}/cancel"

        try:
            resp = await client.post(
                url,
                headers={
                    "x-client-id": self.client_id,
                    "x-api-key": self.api_key,
                },
                json={"cancellationReason": reason or DEFAULT_CANCEL_REASON},
            )
        except httpx.HTTPError as e:
            raise PaymentGatewayError(f"PayOS cancel request failed for link {link_id}: {e}", link_id=link_id) from e

        try:
            data = resp.json()
        except ValueError as e:
            raise PaymentGatewayError(
                f"PayOS returned non-JSON response for link {link_id}",
                link_id=link_id,
                status_code=resp.status_code,
            ) from e

        code = str(data.get("code", "")) if isinstance(data, dict) else ""
        if code == SUCCESS_CODE:
            logger.info(f"Cancelled PayOS link {link_id}")
            return True

        desc = data.get("desc") if isinstance(data, dict) else None
        logger.warning(f"PayOS refused to cancel link {link_id}: status={resp.status_code} code={code} desc={desc}")
        return False


payos_client = PayOSClient()
