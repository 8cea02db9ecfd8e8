"""Starlette ASGI application factory."""

import logging

from starlette.applications import Starlette
from starlette.routing import Mount, Route

from mcp_vector_proxy.constants import (
    HEALTH_PATH,
    POST_MESSAGES_PATH,
    SERVER_NAME,
    SSE_PATH,
    STREAMABLE_HTTP_PATH,
)
from mcp_vector_proxy.runtime.service import ProxyService
from mcp_vector_proxy.server.health import handle_health
from mcp_vector_proxy.server.lifespan import app_lifespan
from mcp_vector_proxy.server.transport import ASGIEndpoint

logger = logging.getLogger(__name__)


def create_app(service: ProxyService) -> Starlette:
    """Create the Starlette ASGI application serving *service*."""
    router = service.router
    application = Starlette(
        lifespan=app_lifespan,
        routes=[
            Route(SSE_PATH, endpoint=ASGIEndpoint(router.handle_sse), methods=["GET"]),
            Mount(POST_MESSAGES_PATH, app=ASGIEndpoint(router.handle_post_message)),
            Route(
                STREAMABLE_HTTP_PATH,
                endpoint=ASGIEndpoint(router.handle_streamable_http),
                methods=["GET", "POST", "DELETE"],
            ),
            Route(HEALTH_PATH, endpoint=handle_health, methods=["GET"]),
        ],
    )
    application.state.proxy_service = service
    application.state.health_reporter = service.health
    logger.info(
        "Starlette ASGI app '%s' created. "
        "SSE GET on %s, POST on %s, Streamable HTTP on %s, Health on %s",
        SERVER_NAME,
        SSE_PATH,
        POST_MESSAGES_PATH,
        STREAMABLE_HTTP_PATH,
        HEALTH_PATH,
    )
    return application
