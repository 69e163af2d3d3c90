"""
service.py — wire options to the ASGI transport.

    service = create_service(base="https://app.example", get_user=..., clients=[...])
    app = Starlette(routes=[Mount(service.options.mount_path, app=service.handler)])
"""

import logging
from collections.abc import Callable
from dataclasses import dataclass

from starlette.requests import Request
from starlette.types import ASGIApp, Receive, Scope, Send

from authnz.config import LOG_LEVELS, OIDCOptions
from authnz.routes import handle_route

logger = logging.getLogger("authnz")


def handler(options: OIDCOptions) -> ASGIApp:
    """An ASGI endpoint serving every route under ``options.mount_path``."""

    async def app(scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            raise RuntimeError(f"authnz handler cannot serve {scope['type']} connections")
        request = Request(scope, receive)
        response = await handle_route(request, options)
        await response(scope, receive, send)

    return app


@dataclass
class AuthNZService:
    handler: Callable
    options: OIDCOptions


def create_service(options: OIDCOptions | None = None, **kwargs) -> AuthNZService:
    """Build a service from an ``OIDCOptions`` or from its keyword arguments."""
    if options is None:
        options = OIDCOptions(**kwargs)
    elif kwargs:
        raise TypeError("pass either options or keyword arguments, not both")

    logger.setLevel(LOG_LEVELS.get(options.log_level, logging.INFO))
    logger.info("authnz: issuer %s mounted at %s", options.issuer, options.mount_path)
    return AuthNZService(handler=handler(options), options=options)
