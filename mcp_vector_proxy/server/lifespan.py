"""Application lifespan management - startup and shutdown sequences.

This module provides the Starlette ``lifespan`` async context manager that
delegates lifecycle management to :class:`~mcp_vector_proxy.runtime.ProxyService`.

The console status callbacks are kept here so that the runtime service layer
stays presentation-agnostic and can also back the stdio transport.
"""

import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

from starlette.applications import Starlette

from mcp_vector_proxy.display.console import (
    disp_console_status,
    gen_status_info,
    log_file_status,
)
from mcp_vector_proxy.runtime.service import ProxyService

logger = logging.getLogger(__name__)


@asynccontextmanager
async def app_lifespan(app: Starlette) -> AsyncIterator[None]:
    """Start the proxy service before serving and stop it afterwards."""
    app_s = app.state
    service: Optional[ProxyService] = getattr(app_s, "proxy_service", None)
    if service is None:
        raise RuntimeError("app.state.proxy_service is not set; use create_app(service).")

    logger.info("Server startup sequence initiated.")
    try:
        await service.start()
    except Exception as exc:
        err_msg = f"{type(exc).__name__}: {exc}"
        status_info = gen_status_info(app_s, "Startup failed", err_msg=err_msg)
        disp_console_status("Initialization", status_info)
        log_file_status(status_info, logging.ERROR)
        raise

    status_info = gen_status_info(app_s, "Server running, upstream connecting in background")
    disp_console_status("Initialization", status_info)
    log_file_status(status_info)

    try:
        yield
    finally:
        logger.info("Server shutdown sequence initiated.")
        await service.stop()
        final_status = service.get_status()
        status_info = gen_status_info(
            app_s,
            f"Server stopped (state: {final_status.state.value})",
            err_msg=final_status.error_message,
            operation_count=final_status.operation_count,
        )
        disp_console_status("Shutdown", status_info, is_final=True)
        log_file_status(status_info)
