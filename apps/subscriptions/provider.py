"""
Billing provider API client

Fetches subscription snapshots (plan tier, status, period and trial ends)
from the external billing provider. Checkout and webhooks live with the
provider; this client only reads.
"""

import requests
import logging
from typing import Any, Dict
from django.conf import settings
from django.utils.dateparse import parse_datetime

from .entitlements import PlanType, SubscriptionSnapshot, SubscriptionStatus

logger = logging.getLogger(__name__)


class BillingProviderError(Exception):
    """Error talking to the billing provider"""
    def __init__(self, message: str, status_code: int = None, response_data: dict = None):
        self.message = message
        self.status_code = status_code
        self.response_data = response_data or {}
        super().__init__(self.message)


class BillingProviderClient:
    """
    Client for the billing provider's subscription API

    Configured from BILLING_PROVIDER_URL, BILLING_PROVIDER_API_KEY and
    BILLING_PROVIDER_TIMEOUT.
    """

    def __init__(self, base_url: str = None, api_key: str = None, timeout: int = None):
        self.base_url = (base_url or settings.BILLING_PROVIDER_URL).rstrip('/')
        self.api_key = api_key if api_key is not None else settings.BILLING_PROVIDER_API_KEY
        self.timeout = timeout or settings.BILLING_PROVIDER_TIMEOUT

    def _get_headers(self) -> Dict[str, str]:
        headers = {
            'Accept': 'application/json',
        }
        if self.api_key:
            headers['Authorization'] = f'Bearer {self.api_key}'
        return headers

    def _handle_response(self, response: requests.Response) -> Dict[str, Any]:
        """
        Parse a provider response

        Raises:
            BillingProviderError: If the provider returns an error
        """
        try:
            data = response.json()
        except ValueError:
            data = {'error': 'Invalid JSON response'}

        if response.status_code >= 400:
            error_message = data.get('error') or data.get('detail') or f'Provider error: {response.status_code}'
            raise BillingProviderError(
                message=error_message,
                status_code=response.status_code,
                response_data=data
            )

        return data

    def fetch_subscription(self, customer_id: str) -> SubscriptionSnapshot:
        """
        Fetch the current subscription of a provider customer

        Args:
            customer_id: Provider customer identifier stored on the organization

        Returns:
            SubscriptionSnapshot built from the provider payload
        """
        url = f"{self.base_url}/customers/{customer_id}/subscription"

        try:
            response = requests.get(url, headers=self._get_headers(), timeout=self.timeout)
        except requests.RequestException as e:
            logger.error(f"Subscription fetch for customer {customer_id} failed: {e}")
            raise BillingProviderError(f"Connection error: {str(e)}")

        return self.parse_snapshot(self._handle_response(response))

    @staticmethod
    def parse_snapshot(data: Dict[str, Any]) -> SubscriptionSnapshot:
        """Map a provider payload onto a snapshot; unknown plans stay None."""
        try:
            plan_type = PlanType(data.get('plan_type'))
        except ValueError:
            logger.warning(f"Billing provider returned unknown plan type: {data.get('plan_type')}")
            plan_type = None

        try:
            status = SubscriptionStatus(data.get('status') or 'active')
        except ValueError:
            raise BillingProviderError(
                f"Unknown subscription status: {data.get('status')}",
                response_data=data
            )

        return SubscriptionSnapshot(
            plan_type=plan_type,
            status=status,
            period_end=_parse_timestamp(data.get('period_end')),
            trial_end=_parse_timestamp(data.get('trial_end')),
        )


def _parse_timestamp(value):
    if not value:
        return None
    parsed = parse_datetime(value)
    if parsed is None:
        raise BillingProviderError(f"Invalid timestamp from billing provider: {value}")
    return parsed
