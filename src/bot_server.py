"""
HTTP server for the Utility Bot (aiohttp).

Every request goes through one catch-all route into InteractionEndpoint, so
the status codes are the same here and behind API Gateway.

Usage:
    python src/bot_server.py
    utility-bot            (console script)
"""

import logging

from aiohttp import web

from bot_settings import configure_logging, load_settings
from verify_request import create_endpoint

logger = logging.getLogger(__name__)

ENDPOINT_KEY = web.AppKey("endpoint", object)


async def dispatch(request):
    endpoint = request.app[ENDPOINT_KEY]
    body = await request.read()
    response = await endpoint.handle(request.method, request.path, request.headers, body)
    content_type, _, charset = response.content_type.partition("; charset=")
    return web.Response(
        status=response.status,
        body=response.body,
        content_type=content_type,
        charset=charset or None,
    )


async def _drain_tasks(app):
    await app[ENDPOINT_KEY].router.tasks.drain(timeout_seconds=30.0)


def create_app(settings=None, endpoint=None):
    if endpoint is None:
        endpoint = create_endpoint(settings or load_settings())
    app = web.Application()
    app[ENDPOINT_KEY] = endpoint
    app.router.add_route("*", "/{tail:.*}", dispatch)
    app.on_cleanup.append(_drain_tasks)
    return app


def main():
    settings = load_settings()
    configure_logging(settings.log_level)
    app = create_app(settings)
    logger.info(f"Listening on {settings.port}")
    web.run_app(app, host="0.0.0.0", port=settings.port, print=None)


if __name__ == "__main__":
    main()
