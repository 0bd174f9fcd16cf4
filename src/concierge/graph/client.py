"""Thin Microsoft Graph HTTP client.

Wraps a requests session with bearer-token headers from GraphAuth,
bounded retries for 5xx, 429 and network errors (Retry-After is
honoured, every delay gets ±20% jitter), and error mapping to
GraphAPIError.

Usage:
    from concierge.graph.client import GraphClient

    client = GraphClient(auth)
    profile = client.get("/me")
"""

from __future__ import annotations

import random
import time
from typing import TYPE_CHECKING, Any

import requests

from concierge.core.errors import AuthenticationError, GraphAPIError, RateLimitExceeded
from concierge.core.logging import get_logger

if TYPE_CHECKING:
    from concierge.auth.msal_auth import GraphAuth

logger = get_logger(__name__)

GRAPH_BASE_URL = "https://graph.microsoft.com/v1.0"

DEFAULT_MAX_RETRIES = 3
DEFAULT_RETRY_DELAYS = [1.0, 2.0, 4.0]
DEFAULT_REQUEST_TIMEOUT = 30.0

_STATUS_HINTS = {
    401: "The access token was rejected. Clear the token cache and sign in again.",
    403: "Check that the Mail and Calendar permissions are granted to the app.",
    404: "The resource does not exist or was deleted.",
}


def _jitter(delay: float) -> float:
    return delay + delay * 0.2 * (2 * random.random() - 1)


class GraphClient:
    """Microsoft Graph requests with retry and error mapping.

    Attributes:
        auth: Token provider
        base_url: Graph endpoint root
        max_retries: Retries after the first attempt
        retry_delays: Base backoff per retry, the last one repeats
    """

    def __init__(
        self,
        auth: GraphAuth,
        base_url: str = GRAPH_BASE_URL,
        max_retries: int = DEFAULT_MAX_RETRIES,
        retry_delays: list[float] | None = None,
        session: requests.Session | None = None,
    ):
        self.auth = auth
        self.base_url = base_url.rstrip("/")
        self.max_retries = max_retries
        self.retry_delays = retry_delays or DEFAULT_RETRY_DELAYS
        self.session = session or requests.Session()

    def _headers(self) -> dict[str, str]:
        try:
            token = self.auth.get_access_token()
        except AuthenticationError:
            raise
        except Exception as e:
            raise AuthenticationError(f"Cannot get a Microsoft Graph token: {e}") from e
        return {
            "Authorization": f"Bearer {token}",
            "Content-Type": "application/json",
            "Accept": "application/json",
            "Prefer": 'IdType="ImmutableId"',
        }

    def _url(self, endpoint: str) -> str:
        if endpoint.startswith("http"):
            return endpoint
        return f"{self.base_url}/{endpoint.lstrip('/')}"

    def _backoff(self, attempt: int, response: requests.Response | None = None) -> float:
        if response is not None and response.status_code == 429:
            retry_after = response.headers.get("Retry-After")
            if retry_after:
                try:
                    return _jitter(float(retry_after))
                except ValueError:
                    pass
        return _jitter(self.retry_delays[min(attempt, len(self.retry_delays) - 1)])

    def _raise_for_response(self, response: requests.Response, method: str, endpoint: str) -> None:
        try:
            error = response.json().get("error", {})
            code = error.get("code", "unknown")
            message = error.get("message") or response.text
        except ValueError:
            code = "unknown"
            message = response.text or f"HTTP {response.status_code}"

        logger.error(
            "graph_api_error",
            method=method,
            endpoint=endpoint,
            status_code=response.status_code,
            error_code=code,
            error_message=message[:200],
        )

        if response.status_code == 429:
            raise RateLimitExceeded(
                f"Microsoft Graph is throttling requests (Retry-After: "
                f"{response.headers.get('Retry-After', 'unknown')}s)"
            )
        hint = _STATUS_HINTS.get(response.status_code)
        text = f"Graph API error ({response.status_code}) on {method} {endpoint}: {message}"
        raise GraphAPIError(
            f"{text}. {hint}" if hint else text,
            status_code=response.status_code,
            error_code=code,
        )

    def request(
        self,
        method: str,
        endpoint: str,
        params: dict[str, Any] | None = None,
        json: dict[str, Any] | None = None,
        timeout: float = DEFAULT_REQUEST_TIMEOUT,
        extra_headers: dict[str, str] | None = None,
    ) -> dict[str, Any]:
        """Send one request, retrying transient failures.

        Returns:
            The decoded JSON body, or an empty dict for 202/204 responses

        Raises:
            GraphAPIError: For non-retryable errors or when retries run out
            RateLimitExceeded: When throttling outlasts the retries
            AuthenticationError: When no token can be acquired
        """
        url = self._url(endpoint)
        for attempt in range(self.max_retries + 1):
            headers = self._headers()
            if extra_headers:
                headers.update(extra_headers)
            try:
                response = self.session.request(
                    method=method, url=url, headers=headers, params=params, json=json, timeout=timeout
                )
            except (requests.exceptions.Timeout, requests.exceptions.ConnectionError) as e:
                if attempt >= self.max_retries:
                    raise GraphAPIError(
                        f"{method} {endpoint} failed after {self.max_retries} retries: {e}",
                        status_code=None,
                    ) from e
                delay = self._backoff(attempt)
                logger.warning(
                    "graph_request_retry",
                    method=method,
                    endpoint=endpoint,
                    attempt=attempt + 1,
                    delay=round(delay, 2),
                    error=str(e),
                )
                time.sleep(delay)
                continue

            if response.status_code < 400:
                if response.status_code in (202, 204) or not response.content:
                    return {}
                return response.json()

            retryable = response.status_code == 429 or response.status_code >= 500
            if retryable and attempt < self.max_retries:
                delay = self._backoff(attempt, response)
                logger.warning(
                    "graph_request_retry",
                    method=method,
                    endpoint=endpoint,
                    status_code=response.status_code,
                    attempt=attempt + 1,
                    delay=round(delay, 2),
                )
                time.sleep(delay)
                continue

            self._raise_for_response(response, method, endpoint)

        raise GraphAPIError(f"{method} {endpoint} failed after {self.max_retries} retries")

    def get(self, endpoint: str, params: dict[str, Any] | None = None, **kwargs: Any) -> dict[str, Any]:
        return self.request("GET", endpoint, params=params, **kwargs)

    def post(self, endpoint: str, json: dict[str, Any] | None = None, **kwargs: Any) -> dict[str, Any]:
        return self.request("POST", endpoint, json=json, **kwargs)

    def patch(self, endpoint: str, json: dict[str, Any] | None = None, **kwargs: Any) -> dict[str, Any]:
        return self.request("PATCH", endpoint, json=json, **kwargs)

    def paginate(
        self,
        endpoint: str,
        params: dict[str, Any] | None = None,
        limit: int | None = None,
    ) -> list[dict[str, Any]]:
        """Collect ``value`` items across @odata.nextLink pages.

        Args:
            endpoint: First page endpoint
            params: Query parameters for the first page only
            limit: Stop once this many items were collected

        Returns:
            At most ``limit`` items
        """
        items: list[dict[str, Any]] = []
        page = self.get(endpoint, params=params)
        pages = 1
        while True:
            items.extend(page.get("value", []))
            next_link = page.get("@odata.nextLink")
            if not next_link or (limit is not None and len(items) >= limit):
                break
            page = self.get(next_link)
            pages += 1

        logger.debug("graph_pagination_complete", endpoint=endpoint, pages=pages, items=len(items))
        return items[:limit] if limit is not None else items

    def get_user_email(self) -> str:
        """Mailbox address of the signed-in user."""
        profile = self.get("/me", params={"$select": "mail,userPrincipalName"})
        email = profile.get("mail") or profile.get("userPrincipalName")
        if not email:
            raise GraphAPIError("Graph did not return an address for the signed-in user")
        return email
