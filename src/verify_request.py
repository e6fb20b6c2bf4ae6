"""
Interactions endpoint for the Utility Bot

Every request Discord sends passes through here before anything trusts it.

Architecture Flow:
---------------
1. Discord -> POST /interactions (aiohttp server or API Gateway -> Lambda)
2. Verify the Ed25519 signature over timestamp + raw body
3. Decode the interaction
4. Hand it to the router, which always produces one response envelope
5. Encode the envelope as the HTTP response body

Status Codes:
-----------
200  an envelope was produced (including error messages for the user)
401  signature missing or invalid, or the public key failed to load
404  any other method or path
500  the body could not be decoded, so no envelope could be formed

GET / is a plain-text status page that works even when the public key is
broken, so deployments can be checked without a valid key.
"""

import asyncio
import base64
import json
import logging
from dataclasses import dataclass

from bot_settings import load_settings
from handle_command import create_router
from interaction_router import LambdaDeferrer
from interaction_codec import DecodeError, decode_interaction, encode_response
from signature import try_load_public_key, verify_signature

# Set up logging
logger = logging.getLogger()
logger.setLevel(logging.INFO)

INTERACTIONS_PATH = "/interactions"
SIGNATURE_HEADER = "x-signature-ed25519"
TIMESTAMP_HEADER = "x-signature-timestamp"


@dataclass(frozen=True)
class HttpResponse:
    status: int
    body: bytes
    content_type: str = "application/json"


def json_response(status, payload):
    return HttpResponse(status, json.dumps(payload).encode("utf-8"))


def text_response(status, text):
    return HttpResponse(status, text.encode("utf-8"), "text/plain; charset=utf-8")


class InteractionEndpoint:
    """Transport-independent request handling shared by the server and Lambda."""

    def __init__(self, router, public_key, port=None):
        self.router = router
        self.public_key = public_key
        self.port = port

    def status_page(self):
        status = "OK" if self.public_key is not None else "PUBLIC_KEY_ERROR"
        lines = ["✅ Bot is running.", f"Status: {status}"]
        if self.port is not None:
            lines.append(f"Port: {self.port}")
        return text_response(200, "\n".join(lines) + "\n")

    async def handle(self, method, path, headers, body):
        method = (method or "").upper()

        if method == "GET" and path == "/":
            return self.status_page()

        if method != "POST" or path != INTERACTIONS_PATH:
            return text_response(404, "Not found")

        headers = {str(k).lower(): v for k, v in (headers or {}).items()}
        signature = headers.get(SIGNATURE_HEADER)
        timestamp = headers.get(TIMESTAMP_HEADER)

        if not verify_signature(signature, timestamp, body, self.public_key):
            logger.warning("Invalid signature (or PUBLIC_KEY not loaded)")
            return json_response(401, {"error": "invalid request signature"})

        try:
            interaction = decode_interaction(body)
        except DecodeError as e:
            logger.error(f"Error decoding interaction: {e}")
            return json_response(500, {"error": "server error"})

        logger.info(f"Processing interaction type: {interaction.type}")
        envelope = await self.router.dispatch(interaction)
        return HttpResponse(200, encode_response(envelope))


def create_endpoint(settings, deferrer=None, tasks=None, inline_deferred=False):
    router = create_router(settings, deferrer=deferrer, tasks=tasks, inline_deferred=inline_deferred)
    return InteractionEndpoint(router, try_load_public_key(settings.public_key_hex), port=settings.port)


# AWS Lambda entry point (API Gateway proxy integration)

_endpoint = None


def get_endpoint():
    global _endpoint
    if _endpoint is None:
        settings = load_settings()
        if settings.command_handler_function:
            _endpoint = create_endpoint(settings, deferrer=LambdaDeferrer(settings.command_handler_function))
        else:
            # Lambda stops once the response is returned
            logger.warning("COMMAND_HANDLER_FUNCTION not set, running deferred commands inline")
            _endpoint = create_endpoint(settings, inline_deferred=True)
    return _endpoint


def event_request(event):
    """Pull method, path, headers and raw body out of a REST or HTTP API event."""
    request_context = event.get("requestContext") or {}
    http_context = request_context.get("http") or {}
    method = event.get("httpMethod") or http_context.get("method") or ""
    path = event.get("rawPath") or event.get("path") or http_context.get("path") or "/"
    headers = event.get("headers") or {}

    body = event.get("body") or ""
    if event.get("isBase64Encoded"):
        body = base64.b64decode(body)
    elif isinstance(body, str):
        body = body.encode("utf-8")
    return method, path, headers, body


async def _handle_event(endpoint, event):
    response = await endpoint.handle(*event_request(event))
    await endpoint.router.tasks.drain()
    return response


def lambda_handler(event, context):
    """Main handler that verifies requests and processes interactions"""
    endpoint = get_endpoint()
    response = asyncio.run(_handle_event(endpoint, event))
    return {
        "statusCode": response.status,
        "headers": {"Content-Type": response.content_type},
        "body": response.body.decode("utf-8"),
    }
