"""
routes.py — map a request under the mount path to its endpoint.

  GET      /.well-known/openid-configuration   metadata
  GET|POST /authorize                           start a flow
  GET|POST /step/{uid}/login  (or /login)       resume after sign-in
  GET|POST /step/{uid}/decision  (or /decision) resume after consent
  POST     /token                               redeem a code
"""

import logging

from starlette.requests import Request
from starlette.responses import JSONResponse, Response

from authnz.authorize import handle_authorize_request
from authnz.metadata import get_metadata
from authnz.steps import resolve_consent_step, resolve_login_step
from authnz.token import handle_token_request

logger = logging.getLogger("authnz")

WELL_KNOWN = "/.well-known/openid-configuration"

ROUTES = {
    "authorize": handle_authorize_request,
    "login": resolve_login_step,
    "decision": resolve_consent_step,
    "token": handle_token_request,
}


async def handle_route(request: Request, options) -> Response:
    path = request.url.path
    if WELL_KNOWN in path:
        return JSONResponse(get_metadata(options))

    endpoint = ROUTES.get(path.rstrip("/").rsplit("/", 1)[-1])
    if endpoint is None:
        logger.debug("no route for %s %s", request.method, path)
        return Response("Not Found", status_code=404)
    return await endpoint(request, options)
