"""
Shared HTTP plumbing for the narrative engine clients.

Maps transport failures, non-2xx answers and malformed bodies onto the
Storyloom error taxonomy. No retries happen here; retry policy belongs to
the pipeline and the offline queue.
"""

from typing import Any, Dict, Optional, Type, TypeVar

import httpx
from pydantic import BaseModel, ValidationError

from storyloom.config import config
from storyloom.errors import DecodeError, NetworkError
from storyloom.utils.logging import get_logger

logger = get_logger("narrative_client")

ResponseModel = TypeVar("ResponseModel", bound=BaseModel)


class NarrativeEngineClient:
    """
    Base class for clients of the narrative engine API.

    An ``httpx.AsyncClient`` can be injected (tests pass one built on
    ``httpx.MockTransport``); otherwise one is created lazily and owned.
    """

    def __init__(
        self,
        base_url: Optional[str] = None,
        api_key: Optional[str] = None,
        timeout: Optional[float] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self.base_url = (base_url or config.NARRATIVE_API_BASE_URL).rstrip("/")
        self.api_key = api_key if api_key is not None else config.NARRATIVE_API_KEY
        self.timeout = timeout or config.REQUEST_TIMEOUT_SECONDS
        self._client = http_client
        self._owns_client = http_client is None

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(base_url=self.base_url)
        return self._client

    def _headers(self) -> Dict[str, str]:
        headers = {
            "Content-Type": "application/json",
            "Accept": "application/json",
        }
        if self.api_key:
            headers["x-api-key"] = self.api_key
        return headers

    async def _post(
        self,
        path: str,
        payload: Dict[str, Any],
        response_model: Type[ResponseModel],
        timeout: Optional[float] = None,
    ) -> ResponseModel:
        """POST a JSON payload and decode the answer into ``response_model``."""
        url = f"{self.base_url}{path}"
        try:
            response = await self.client.post(
                url,
                json=payload,
                headers=self._headers(),
                timeout=timeout or self.timeout,
            )
        except httpx.ConnectTimeout as e:
            raise NetworkError(
                f"Timed out connecting to {url}", not_connected=True, timed_out=True
            ) from e
        except httpx.ConnectError as e:
            raise NetworkError(f"Could not connect to {url}: {e}", not_connected=True) from e
        except httpx.TimeoutException as e:
            raise NetworkError(f"Request to {url} timed out", timed_out=True) from e
        except httpx.HTTPError as e:
            raise NetworkError(f"Request to {url} failed: {e}") from e

        if not response.is_success:
            logger.warning(
                "Narrative engine returned an error status",
                url=url,
                status_code=response.status_code,
            )
            raise NetworkError(
                f"{url} answered with status {response.status_code}",
                status_code=response.status_code,
            )

        try:
            body = response.json()
        except ValueError as e:
            raise DecodeError(f"{url} returned a non-JSON body") from e

        try:
            return response_model.model_validate(body)
        except ValidationError as e:
            raise DecodeError(
                f"{url} returned an unexpected {response_model.__name__}: {e.error_count()} error(s)"
            ) from e

    async def aclose(self):
        """Close the underlying HTTP client if this instance created it."""
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None
