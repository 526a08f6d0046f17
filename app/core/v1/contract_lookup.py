"""Client for the contract value service.

The service answers ``GET {base_url}/contracts?nit=<nit>&eps=<eps>`` with
``{"contracted_value": "<amount>"}`` or 404 when no contract exists.
"""

from decimal import Decimal
from typing import Optional

import httpx

from app.core.v1.amounts import quantize_amount, to_decimal
from app.core.v1.exceptions import ContractLookupException, ContractLookupTimeout
from app.core.v1.log_manager import LogManager
from app.settings.v1.general import SETTINGS


class ContractLookup:
    """Looks up the contracted value agreed between a biller and a payer."""

    def __init__(
        self,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
        client: Optional[httpx.Client] = None
    ):
        """
        Initialize the client.

        Args:
            base_url (Optional[str]): Service URL; lookups are disabled when empty.
            timeout (Optional[float]): Timeout in seconds for each lookup.
            client (Optional[httpx.Client]): Pre-built client (tests inject a
                MockTransport).
        """
        self.logger = LogManager(__name__)
        self.base_url = (base_url if base_url is not None else SETTINGS.CONTRACT_LOOKUP_URL).rstrip("/")
        self.timeout = timeout if timeout is not None else SETTINGS.CONTRACT_LOOKUP_TIMEOUT
        self.client = client or httpx.Client(timeout=self.timeout)

    @property
    def enabled(self) -> bool:
        return bool(self.base_url)

    def lookup(self, nit: str, eps: str) -> Optional[Decimal]:
        """Get the contracted value for a biller and payer.

        Args:
            nit (str): Biller tax id.
            eps (str): Payer.

        Returns:
            Optional[Decimal]: Contracted value, None when no contract exists.

        Raises:
            ContractLookupTimeout: If the service does not answer in time.
            ContractLookupException: If the service fails or answers garbage.
        """
        try:
            response = self.client.get(
                f"{self.base_url}/contracts",
                params={"nit": nit, "eps": eps},
                timeout=self.timeout
            )
        except httpx.TimeoutException as err:
            self.logger.warning("Contract lookup timed out", nit=nit, eps=eps, timeout=self.timeout)
            raise ContractLookupTimeout(f"Contract lookup timed out after {self.timeout}s") from err
        except httpx.HTTPError as err:
            self.logger.error(f"Contract lookup failed: {err}", nit=nit, eps=eps)
            raise ContractLookupException(f"Contract lookup failed: {err}") from err

        if response.status_code == 404:
            self.logger.info("No contract registered", nit=nit, eps=eps)
            return None

        try:
            response.raise_for_status()
            value = response.json().get("contracted_value")
            return None if value is None else quantize_amount(to_decimal(value))
        except (httpx.HTTPStatusError, ValueError, AttributeError) as err:
            self.logger.error(f"Invalid contract lookup response: {err}", nit=nit, eps=eps)
            raise ContractLookupException(f"Invalid contract lookup response: {err}") from err

    def close(self):
        self.client.close()
