"""
Screening API Client

Async client for the knowledge-graph screening API used by batch jobs:
- OAuth client-credentials authentication with a cached bearer token
- One forced token refresh when a request is rejected with 401
- Typed errors (ScreeningAPIError) carrying the HTTP status so callers such as
  the rate limiter can tell rate-limit rejections from other failures

Usage:
    client = ScreeningAPIClient(config.screening_api)
    check = await client.exists_check(project_id, {"name": ["Acme Corp"]})
    entity = await client.screen(project_id, {"name": ["Acme Corp"]}, "corporate")
    await client.aclose()
"""

import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

import httpx

from config_manager import ScreeningApiConfig
from log_utils import sanitize_for_logging

logger = logging.getLogger(__name__)


class ScreeningAPIError(Exception):
    """Error returned by (or while talking to) the screening API.

    Attributes:
        status: HTTP status code, 0 when no response was received
        code: Error code from the API body, or HTTP_<status>
        details: Raw error details from the API body
        retry_after: Seconds the API asked us to wait, if provided
    """

    def __init__(
        self,
        status: int,
        code: str,
        message: str,
        details: Any = None,
        retry_after: Optional[float] = None
    ):
        self.status = status
        self.code = code
        self.details = details
        self.retry_after = retry_after
        super().__init__(message)

    @property
    def is_rate_limited(self) -> bool:
        return self.status == 429

    @property
    def is_unauthorized(self) -> bool:
        return self.status == 401

    @property
    def is_not_found(self) -> bool:
        return self.status == 404

    @property
    def is_bad_request(self) -> bool:
        return self.status == 400

    @property
    def is_server_error(self) -> bool:
        return self.status >= 500

    def __repr__(self) -> str:
        return f"<ScreeningAPIError(status={self.status}, code='{self.code}')>"


@dataclass(frozen=True)
class ExistenceCheck:
    """Answer to "does an entity with these attributes already exist"."""
    exists: bool
    existing_id: Optional[str] = None


def _parse_retry_after(response: httpx.Response, details: Any) -> Optional[float]:
    raw = response.headers.get("Retry-After")
    if raw is None and isinstance(details, dict):
        raw = details.get("retryAfter", details.get("retry_after"))
    if raw is None:
        return None
    try:
        return float(raw)
    except (TypeError, ValueError):
        return None


def error_from_response(response: httpx.Response) -> ScreeningAPIError:
    """Translate a non-2xx response into a ScreeningAPIError."""
    status = response.status_code
    try:
        body = response.json()
    except ValueError:
        body = None

    error_info = body.get("error") if isinstance(body, dict) else None
    if not isinstance(error_info, dict):
        error_info = {}

    details = error_info.get("details")
    return ScreeningAPIError(
        status=status,
        code=error_info.get("code") or f"HTTP_{status}",
        message=error_info.get("message") or response.reason_phrase or "API request failed",
        details=details,
        retry_after=_parse_retry_after(response, details) if status == 429 else None,
    )


class TokenProvider:
    """Fetches and caches OAuth client-credentials tokens."""

    def __init__(
        self,
        config: ScreeningApiConfig,
        http_client: httpx.AsyncClient,
        clock: Callable[[], float] = time.time
    ):
        self._config = config
        self._http = http_client
        self._clock = clock
        self._token: Optional[str] = None
        self._expires_at: float = 0.0

    @property
    def has_valid_token(self) -> bool:
        return self._token is not None and self._clock() < self._expires_at

    async def get_token(self) -> str:
        """Return a cached token, fetching a new one near expiry."""
        buffer = self._config.token_refresh_buffer_seconds
        if self._token and self._clock() < self._expires_at - buffer:
            return self._token

        try:
            response = await self._http.post(
                "/oauth/token",
                json={
                    "client_id": self._config.client_id,
                    "client_secret": self._config.client_secret,
                    "audience": self._config.audience,
                    "grant_type": "client_credentials",
                },
            )
        except httpx.HTTPError as e:
            raise ScreeningAPIError(0, "NETWORK_ERROR", f"Authentication request failed: {e}")

        if response.status_code >= 400:
            error = error_from_response(response)
            logger.error(
                "Screening API authentication failed: status=%d code=%s",
                error.status, error.code,
            )
            raise ScreeningAPIError(error.status, "AUTHENTICATION_FAILED", "Authentication failed",
                                    retry_after=error.retry_after)

        data = response.json()
        self._token = data["access_token"]
        self._expires_at = self._clock() + float(data.get("expires_in", 3600))
        logger.debug("Obtained screening API token (expires_in=%s)", data.get("expires_in"))
        return self._token

    async def refresh(self) -> str:
        self.clear()
        return await self.get_token()

    def clear(self) -> None:
        self._token = None
        self._expires_at = 0.0


class ScreeningAPIClient:
    """Client for the project-entity endpoints of the screening API."""

    def __init__(
        self,
        config: ScreeningApiConfig,
        http_client: Optional[httpx.AsyncClient] = None
    ):
        """
        Args:
            config: screening_api section of the configuration
            http_client: Pre-built client (for testing); must use config.base_url
        """
        self._config = config
        self._owns_client = http_client is None
        self._http = http_client or httpx.AsyncClient(
            base_url=config.base_url,
            timeout=config.timeout_seconds,
            headers={"Content-Type": "application/json"},
        )
        self._tokens = TokenProvider(config, self._http)

    async def exists_check(self, project_id: str, attributes: Dict[str, Any]) -> ExistenceCheck:
        """Ask whether an equivalent entity already exists in the project.

        A 404 from the API means "no such entity" rather than an error.
        """
        try:
            data = await self._request("POST", f"/v1/projects/{project_id}/entities/exists", attributes)
        except ScreeningAPIError as e:
            if e.is_not_found:
                return ExistenceCheck(exists=False)
            raise

        existing_id = data.get("project_entity_id") if isinstance(data, dict) else None
        return ExistenceCheck(exists=bool(existing_id), existing_id=existing_id)

    async def screen(self, project_id: str, attributes: Dict[str, Any], profile: str) -> Dict[str, Any]:
        """Create a project entity, which screens it against the graph.

        Returns:
            The project entity payload, including matches and risk factors
        """
        payload = dict(attributes)
        payload["profile"] = profile
        data = await self._request("POST", f"/v1/projects/{project_id}/entities/create", payload)

        entity = data.get("data") if isinstance(data, dict) else None
        if not isinstance(entity, dict) or not entity.get("project_entity_id"):
            logger.error("Invalid entity response structure from screening API")
            raise ScreeningAPIError(
                502, "INVALID_RESPONSE", "No valid entity returned from screening request"
            )
        return entity

    async def _request(self, method: str, path: str, payload: Optional[Dict[str, Any]] = None) -> Any:
        response = await self._send(method, path, payload)
        if response.status_code == 401:
            logger.info("Screening API returned 401, refreshing token and retrying once")
            await self._tokens.refresh()
            response = await self._send(method, path, payload)

        if response.status_code >= 400:
            error = error_from_response(response)
            logger.debug(
                "Screening API error: %s %s status=%d code=%s message=%s",
                method, path, error.status, error.code, sanitize_for_logging(str(error)),
            )
            raise error

        if not response.content:
            return {}
        try:
            return response.json()
        except ValueError:
            raise ScreeningAPIError(502, "INVALID_RESPONSE", "Screening API returned invalid JSON")

    async def _send(self, method: str, path: str, payload: Optional[Dict[str, Any]]) -> httpx.Response:
        token = await self._tokens.get_token()
        try:
            return await self._http.request(
                method,
                path,
                json=payload,
                headers={"Authorization": f"Bearer {token}"},
            )
        except httpx.TimeoutException as e:
            raise ScreeningAPIError(0, "TIMEOUT", f"Screening API request timed out: {e}")
        except httpx.HTTPError as e:
            raise ScreeningAPIError(0, "NETWORK_ERROR", f"Network error - no response received: {e}")

    async def aclose(self) -> None:
        if self._owns_client:
            await self._http.aclose()
