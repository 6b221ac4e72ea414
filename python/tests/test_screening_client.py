"""
Tests for the screening API client, using httpx.MockTransport in place of the
remote service.
"""

import json

import httpx
import pytest

from config_manager import ScreeningApiConfig
from screening_client import ScreeningAPIClient, ScreeningAPIError

BASE_URL = "https://screening.test"
EXISTS_PATH = "/v1/projects/proj-1/entities/exists"
CREATE_PATH = "/v1/projects/proj-1/entities/create"


class FakeScreeningAPI:
    """Routes requests to per-path handlers and records what was sent."""

    def __init__(self):
        self.requests = []
        self.token_requests = 0
        self.routes = {}
        self.tokens = ["token-1", "token-2", "token-3"]

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if request.url.path == "/oauth/token":
            token = self.tokens[self.token_requests]
            self.token_requests += 1
            return httpx.Response(200, json={"access_token": token, "expires_in": 3600})
        handler = self.routes.get(request.url.path)
        if handler is None:
            return httpx.Response(404, json={"error": {"code": "NOT_FOUND", "message": "Not found"}})
        return handler(request)

    def api_requests(self):
        return [r for r in self.requests if r.url.path != "/oauth/token"]


@pytest.fixture
def api():
    return FakeScreeningAPI()


@pytest.fixture
def config():
    return ScreeningApiConfig(base_url=BASE_URL, client_id="id", client_secret="secret")


@pytest.fixture
async def client(api, config):
    http = httpx.AsyncClient(base_url=BASE_URL, transport=httpx.MockTransport(api))
    client = ScreeningAPIClient(config, http_client=http)
    yield client
    await http.aclose()


def entity_response(request):
    return httpx.Response(200, json={"data": {"project_entity_id": "pe-1", "matches": []}})


class TestAuthentication:
    """Tests for token fetching and refresh."""

    @pytest.mark.asyncio
    async def test_token_is_cached(self, client, api):
        api.routes[CREATE_PATH] = entity_response

        await client.screen("proj-1", {"name": ["Acme"]}, "corporate")
        await client.screen("proj-1", {"name": ["Globex"]}, "corporate")

        assert api.token_requests == 1
        token_body = json.loads(api.requests[0].content)
        assert token_body["grant_type"] == "client_credentials"
        assert token_body["client_id"] == "id"
        for request in api.api_requests():
            assert request.headers["Authorization"] == "Bearer token-1"

    @pytest.mark.asyncio
    async def test_401_refreshes_token_once(self, client, api):
        def create(request):
            if request.headers["Authorization"] == "Bearer token-1":
                return httpx.Response(401, json={"error": {"code": "UNAUTHORIZED", "message": "expired"}})
            return entity_response(request)

        api.routes[CREATE_PATH] = create

        entity = await client.screen("proj-1", {"name": ["Acme"]}, "corporate")

        assert entity["project_entity_id"] == "pe-1"
        assert api.token_requests == 2

    @pytest.mark.asyncio
    async def test_auth_failure(self, config):
        def handler(request):
            return httpx.Response(403, json={"error": {"code": "FORBIDDEN", "message": "bad creds"}})

        http = httpx.AsyncClient(base_url=BASE_URL, transport=httpx.MockTransport(handler))
        client = ScreeningAPIClient(config, http_client=http)

        with pytest.raises(ScreeningAPIError) as exc_info:
            await client.exists_check("proj-1", {"name": ["Acme"]})

        assert exc_info.value.code == "AUTHENTICATION_FAILED"
        assert exc_info.value.status == 403
        await http.aclose()


class TestExistsCheck:

    @pytest.mark.asyncio
    async def test_existing_entity(self, client, api):
        api.routes[EXISTS_PATH] = lambda r: httpx.Response(200, json={"project_entity_id": "X"})

        check = await client.exists_check("proj-1", {"name": ["Acme"]})

        assert check.exists
        assert check.existing_id == "X"
        assert json.loads(api.api_requests()[0].content) == {"name": ["Acme"]}

    @pytest.mark.asyncio
    async def test_404_means_not_found(self, client, api):
        check = await client.exists_check("proj-1", {"name": ["Acme"]})

        assert not check.exists
        assert check.existing_id is None

    @pytest.mark.asyncio
    async def test_empty_body(self, client, api):
        api.routes[EXISTS_PATH] = lambda r: httpx.Response(200)

        check = await client.exists_check("proj-1", {"name": ["Acme"]})

        assert not check.exists


class TestScreen:
    """Tests for entity creation and error translation."""

    @pytest.mark.asyncio
    async def test_sends_profile(self, client, api):
        api.routes[CREATE_PATH] = entity_response

        await client.screen("proj-1", {"name": ["Acme"], "type": "company"}, "suppliers")

        body = json.loads(api.api_requests()[0].content)
        assert body == {"name": ["Acme"], "type": "company", "profile": "suppliers"}

    @pytest.mark.asyncio
    async def test_missing_entity_id(self, client, api):
        api.routes[CREATE_PATH] = lambda r: httpx.Response(200, json={"data": {"matches": []}})

        with pytest.raises(ScreeningAPIError) as exc_info:
            await client.screen("proj-1", {"name": ["Acme"]}, "corporate")

        assert exc_info.value.status == 502
        assert exc_info.value.code == "INVALID_RESPONSE"

    @pytest.mark.asyncio
    async def test_api_error_body(self, client, api):
        api.routes[CREATE_PATH] = lambda r: httpx.Response(
            400, json={"error": {"code": "VALIDATION_ERROR", "message": "Invalid attributes",
                                 "details": {"field": "name"}}}
        )

        with pytest.raises(ScreeningAPIError) as exc_info:
            await client.screen("proj-1", {"name": ["Acme"]}, "corporate")

        error = exc_info.value
        assert error.is_bad_request
        assert error.code == "VALIDATION_ERROR"
        assert str(error) == "Invalid attributes"
        assert error.details == {"field": "name"}
        assert error.retry_after is None

    @pytest.mark.asyncio
    async def test_error_without_body(self, client, api):
        api.routes[CREATE_PATH] = lambda r: httpx.Response(503, text="unavailable")

        with pytest.raises(ScreeningAPIError) as exc_info:
            await client.screen("proj-1", {"name": ["Acme"]}, "corporate")

        assert exc_info.value.code == "HTTP_503"
        assert exc_info.value.is_server_error

    @pytest.mark.asyncio
    async def test_429_retry_after_header(self, client, api):
        api.routes[CREATE_PATH] = lambda r: httpx.Response(
            429, headers={"Retry-After": "4"},
            json={"error": {"code": "RATE_LIMITED", "message": "Too many requests"}},
        )

        with pytest.raises(ScreeningAPIError) as exc_info:
            await client.screen("proj-1", {"name": ["Acme"]}, "corporate")

        assert exc_info.value.is_rate_limited
        assert exc_info.value.retry_after == 4.0

    @pytest.mark.asyncio
    async def test_429_retry_after_in_body(self, client, api):
        api.routes[CREATE_PATH] = lambda r: httpx.Response(
            429, json={"error": {"code": "RATE_LIMITED", "message": "slow down",
                                 "details": {"retryAfter": 2}}},
        )

        with pytest.raises(ScreeningAPIError) as exc_info:
            await client.screen("proj-1", {"name": ["Acme"]}, "corporate")

        assert exc_info.value.retry_after == 2.0

    @pytest.mark.asyncio
    async def test_network_error(self, client, api):
        def unreachable(request):
            raise httpx.ConnectError("connection refused", request=request)

        api.routes[CREATE_PATH] = unreachable

        with pytest.raises(ScreeningAPIError) as exc_info:
            await client.screen("proj-1", {"name": ["Acme"]}, "corporate")

        assert exc_info.value.status == 0
        assert exc_info.value.code == "NETWORK_ERROR"
