"""Tests for the transport-independent endpoint and the API Gateway adapter."""

import asyncio
import base64
import json
from unittest.mock import Mock

import pytest

import verify_request
from bot_settings import Settings
from conftest import command_payload, message_id, option, sign
from discord_api import DownstreamApiError
from interaction_router import LambdaDeferrer
from signature import load_public_key
from verify_request import InteractionEndpoint, event_request

TIMESTAMP = "1700000000"


@pytest.fixture
def endpoint(router, public_key_hex):
    return InteractionEndpoint(router, load_public_key(public_key_hex), port=3000)


def signed_headers(signing_key, body, timestamp=TIMESTAMP):
    return {
        "X-Signature-Ed25519": sign(signing_key, timestamp, body),
        "X-Signature-Timestamp": timestamp,
        "Content-Type": "application/json",
    }


class TestStatusPage:
    @pytest.mark.asyncio
    async def test_ok(self, endpoint):
        response = await endpoint.handle("GET", "/", {}, b"")
        assert response.status == 200
        assert response.content_type.startswith("text/plain")
        assert response.body.decode() == "✅ Bot is running.\nStatus: OK\nPort: 3000\n"

    @pytest.mark.asyncio
    async def test_reports_broken_key(self, router):
        endpoint = InteractionEndpoint(router, None, port=3000)
        response = await endpoint.handle("GET", "/", {}, b"")
        assert response.status == 200
        assert "Status: PUBLIC_KEY_ERROR" in response.body.decode()


class TestInteractions:
    @pytest.mark.asyncio
    async def test_signed_ping(self, endpoint, signing_key):
        body = b'{"type":1}'
        response = await endpoint.handle("POST", "/interactions", signed_headers(signing_key, body), body)
        assert response.status == 200
        assert json.loads(response.body) == {"type": 1}

    @pytest.mark.asyncio
    async def test_signed_command(self, endpoint, signing_key):
        body = json.dumps(command_payload("ping")).encode()
        response = await endpoint.handle("POST", "/interactions", signed_headers(signing_key, body), body)
        assert response.status == 200
        payload = json.loads(response.body)
        assert payload["type"] == 4
        assert "Pong" in payload["data"]["content"]

    @pytest.mark.asyncio
    async def test_bad_signature(self, endpoint, signing_key):
        body = b'{"type":1}'
        headers = signed_headers(signing_key, b'{"type":2}')
        response = await endpoint.handle("POST", "/interactions", headers, body)
        assert response.status == 401
        assert json.loads(response.body) == {"error": "invalid request signature"}

    @pytest.mark.asyncio
    async def test_missing_headers(self, endpoint):
        response = await endpoint.handle("POST", "/interactions", {}, b'{"type":1}')
        assert response.status == 401

    @pytest.mark.asyncio
    async def test_no_public_key_rejects_signed_requests(self, router, signing_key):
        endpoint = InteractionEndpoint(router, None)
        body = b'{"type":1}'
        response = await endpoint.handle("POST", "/interactions", signed_headers(signing_key, body), body)
        assert response.status == 401

    @pytest.mark.asyncio
    @pytest.mark.parametrize("method, path", [("POST", "/other"), ("GET", "/interactions"), ("PUT", "/")])
    async def test_not_found(self, endpoint, method, path):
        response = await endpoint.handle(method, path, {}, b"")
        assert response.status == 404
        assert response.body == b"Not found"

    @pytest.mark.asyncio
    async def test_undecodable_body_after_valid_signature(self, endpoint, signing_key, api):
        body = b"this is not json"
        response = await endpoint.handle("POST", "/interactions", signed_headers(signing_key, body), body)
        assert response.status == 500
        assert json.loads(response.body) == {"error": "server error"}
        assert api.calls == []

    @pytest.mark.asyncio
    async def test_downstream_failure_is_still_200(self, endpoint, signing_key, api):
        api.errors["kick_member"] = DownstreamApiError(403, "Missing Permissions")
        body = json.dumps(command_payload("kick", options=[option("user", "42", 6)])).encode()
        response = await endpoint.handle("POST", "/interactions", signed_headers(signing_key, body), body)
        assert response.status == 200
        payload = json.loads(response.body)
        assert payload["data"]["flags"] == 64
        assert "Missing Permissions" in payload["data"]["content"]


class TestLambdaAdapter:
    def test_rest_api_event(self):
        event = {"httpMethod": "POST", "path": "/interactions", "headers": {"a": "b"}, "body": '{"type":1}'}
        assert event_request(event) == ("POST", "/interactions", {"a": "b"}, b'{"type":1}')

    def test_http_api_event_with_base64_body(self):
        event = {
            "rawPath": "/interactions",
            "requestContext": {"http": {"method": "POST"}},
            "headers": {},
            "body": base64.b64encode(b'{"type":1}').decode(),
            "isBase64Encoded": True,
        }
        assert event_request(event) == ("POST", "/interactions", {}, b'{"type":1}')

    def test_lambda_handler(self, endpoint, signing_key, monkeypatch):
        monkeypatch.setattr(verify_request, "_endpoint", endpoint)
        body = b'{"type":1}'
        event = {
            "rawPath": "/interactions",
            "requestContext": {"http": {"method": "POST"}},
            "headers": {k.lower(): v for k, v in signed_headers(signing_key, body).items()},
            "body": base64.b64encode(body).decode(),
            "isBase64Encoded": True,
        }

        result = verify_request.lambda_handler(event, None)

        assert result["statusCode"] == 200
        assert result["headers"] == {"Content-Type": "application/json"}
        assert json.loads(result["body"]) == {"type": 1}

    def test_lambda_handler_rejects_unsigned(self, endpoint, monkeypatch):
        monkeypatch.setattr(verify_request, "_endpoint", endpoint)
        event = {"httpMethod": "POST", "path": "/interactions", "headers": {}, "body": '{"type":1}'}
        assert verify_request.lambda_handler(event, None)["statusCode"] == 401


@pytest.mark.asyncio
async def test_concurrent_signed_requests_get_their_own_answers(endpoint, signing_key, api):
    api.responses["get_user"] = lambda user_id: {"id": user_id, "username": f"user{user_id}"}
    api.errors["get_member"] = DownstreamApiError(404, "Unknown Member")
    user_ids = [str(200000000000000000 + n) for n in range(20)]
    bodies = [
        json.dumps(command_payload("userinfo", options=[option("user", user_id, 6)])).encode()
        for user_id in user_ids
    ]
    responses = await asyncio.gather(*(
        endpoint.handle("POST", "/interactions", signed_headers(signing_key, body, timestamp=str(1700000000 + n)), body)
        for n, body in enumerate(bodies)
    ))

    for user_id, response in zip(user_ids, responses):
        assert response.status == 200
        assert f"`user{user_id}`" in json.loads(response.body)["data"]["content"]


class TestLambdaDeferral:
    @pytest.fixture(autouse=True)
    def fresh_endpoint(self, monkeypatch):
        monkeypatch.setattr(verify_request, "_endpoint", None)

    def purge_event(self, signing_key):
        body = json.dumps(command_payload("purge", options=[option("count", 2, 4)])).encode()
        return {
            "httpMethod": "POST",
            "path": "/interactions",
            "headers": signed_headers(signing_key, body),
            "body": body.decode(),
        }

    def test_without_worker_runs_deferred_command_inline(self, monkeypatch, public_key_hex, signing_key, api):
        monkeypatch.setattr(verify_request, "load_settings", lambda: Settings(public_key_hex=public_key_hex))
        endpoint = verify_request.get_endpoint()
        endpoint.router.api = api
        fresh = [message_id(sequence=n) for n in range(2)]
        api.responses["list_messages"] = [{"id": fresh[0]}, {"id": fresh[1]}]

        result = verify_request.lambda_handler(self.purge_event(signing_key), None)

        assert result["statusCode"] == 200
        assert json.loads(result["body"]) == {
            "type": 4,
            "data": {"content": "🧹 Deleted 2 message(s).", "flags": 64},
        }
        assert [name for name, _, _ in api.calls] == ["list_messages", "bulk_delete_messages"]
        assert api.called("edit_original_response") == []

    def test_with_worker_acknowledges_before_any_work(self, monkeypatch, public_key_hex, signing_key, api):
        settings = Settings(public_key_hex=public_key_hex, command_handler_function="utility-bot-worker")
        monkeypatch.setattr(verify_request, "load_settings", lambda: settings)
        endpoint = verify_request.get_endpoint()
        endpoint.router.api = api
        lambda_client = Mock()
        lambda_client.invoke.return_value = {"ResponseMetadata": {"HTTPStatusCode": 202}}
        endpoint.router.deferrer = LambdaDeferrer("utility-bot-worker", lambda_client=lambda_client)

        result = verify_request.lambda_handler(self.purge_event(signing_key), None)

        assert json.loads(result["body"]) == {"type": 5, "data": {"flags": 64}}
        assert api.calls == []
        assert lambda_client.invoke.call_args.kwargs["FunctionName"] == "utility-bot-worker"
