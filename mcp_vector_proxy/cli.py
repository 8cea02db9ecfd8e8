"""CLI argument parsing and main entry point.

Provides two subcommands:

* ``mcp-vector-proxy server``: run the proxy over stdio or HTTP.
* ``mcp-vector-proxy status``: poll a running HTTP proxy's health endpoint.
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import os
import signal
import socket
import sys
from typing import Optional

import httpx
import uvicorn
from mcp.server.stdio import stdio_server
from rich.console import Console
from rich.table import Table

from mcp_vector_proxy.config.loader import (
    find_config_file,
    load_proxy_config,
    require_upstream_token,
)
from mcp_vector_proxy.config.schema import ProxyConfig
from mcp_vector_proxy.constants import (
    DEFAULT_HOST,
    DEFAULT_PORT,
    HEALTH_PATH,
    SERVER_NAME,
    SERVER_VERSION,
)
from mcp_vector_proxy.display.logging_config import secret_redaction_filter, setup_logging
from mcp_vector_proxy.errors import ConfigurationError
from mcp_vector_proxy.runtime.service import ProxyService

module_logger = logging.getLogger(__name__)

CONFIG_ENV_VAR = "VECTOR_PROXY_CONFIG"

uvicorn_svr_inst: Optional[uvicorn.Server] = None


def _resolve_config_path(cli_path: Optional[str]) -> Optional[str]:
    """CLI flag → ``$VECTOR_PROXY_CONFIG`` → ``config.yaml`` in the CWD → none."""
    path = cli_path or os.environ.get(CONFIG_ENV_VAR) or find_config_file()
    return os.path.abspath(path) if path else None


def _apply_cli_overrides(config: ProxyConfig, args: argparse.Namespace) -> ProxyConfig:
    """Explicit command-line flags win over file and environment values."""
    update = {}
    if args.transport is not None:
        update["transport"] = args.transport
    if args.host is not None:
        update["host"] = args.host
    if args.port is not None:
        update["port"] = args.port
    if update:
        config.server = config.server.model_copy(update=update)
    return config


# ── ``mcp-vector-proxy server`` ─────────────────────────────────────────


async def _run_http(
    config: ProxyConfig,
    token: str,
    log_fpath: str,
    cfg_log_lvl: str,
    cfg_abs_path: Optional[str],
) -> None:
    """Serve the Starlette app with uvicorn until told to exit."""
    global uvicorn_svr_inst

    # Import here so stdio mode never pulls in the HTTP stack.
    from mcp_vector_proxy.server.app import create_app

    host = config.server.host
    port = config.server.port

    service = ProxyService(config, token)
    app = create_app(service)
    app_s = app.state
    app_s.host = host
    app_s.port = port
    app_s.actual_log_file = log_fpath
    app_s.file_log_level_configured = cfg_log_lvl
    app_s.config_file_path = cfg_abs_path
    module_logger.debug("Configuration parameters stored in app.state.")

    uvicorn_cfg = uvicorn.Config(
        app=app,
        host=host,
        port=port,
        log_config=None,
        log_level=cfg_log_lvl.lower() if cfg_log_lvl == "DEBUG" else "warning",
    )
    uvicorn_svr_inst = uvicorn.Server(uvicorn_cfg)

    # Fail fast on a busy port instead of loading the embedding model first.
    probe = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    try:
        probe.bind((host, port))
    except OSError as e_bind:
        module_logger.error("Port %s on %s is already in use: %s", port, host, e_bind)
        print(
            f"\nError: Port {port} on {host} is already in use.\n"
            f"   Release the port or choose a different one with --port.\n",
            file=sys.stderr,
        )
        return
    finally:
        probe.close()

    module_logger.info("Preparing to start Uvicorn server: http://%s:%s", host, port)
    try:
        await uvicorn_svr_inst.serve()
    except (KeyboardInterrupt, SystemExit) as e_exit:
        module_logger.info("Server stopped due to '%s'.", type(e_exit).__name__)
    except Exception as e_serve:
        module_logger.exception("Unexpected error while running Uvicorn server: %s", e_serve)
        raise
    finally:
        module_logger.info("%s has shut down or is shutting down.", SERVER_NAME)


async def _run_stdio(config: ProxyConfig, token: str) -> None:
    """Serve one downstream session over this process's stdin/stdout."""
    loop = asyncio.get_running_loop()
    main_task = asyncio.current_task()
    if main_task is not None:
        try:
            loop.add_signal_handler(signal.SIGTERM, main_task.cancel)
        except (NotImplementedError, RuntimeError):
            module_logger.debug("SIGTERM handler not supported on this platform.")

    service = ProxyService(config, token)
    await service.start()
    try:
        async with stdio_server() as (read_stream, write_stream):
            module_logger.info("Serving MCP over stdio.")
            await service.mcp_server.run(
                read_stream,
                write_stream,
                service.mcp_server.create_initialization_options(),
            )
    finally:
        await service.stop()


def _cmd_server(args: argparse.Namespace) -> None:
    """Entry-point for ``mcp-vector-proxy server``."""
    cfg_abs_path = _resolve_config_path(args.config)
    try:
        config = _apply_cli_overrides(load_proxy_config(cfg_abs_path), args)
        token = require_upstream_token(config)
    except ConfigurationError as e_cfg:
        print(f"Error: {e_cfg}", file=sys.stderr)
        sys.exit(1)

    stdio_mode = config.server.transport == "stdio"
    log_fpath, cfg_log_lvl = setup_logging(args.log_level, quiet=stdio_mode)
    secret_redaction_filter.register(token)

    module_logger.info(
        "---- %s v%s starting (transport: %s, file log level: %s) ----",
        SERVER_NAME,
        SERVER_VERSION,
        config.server.transport,
        cfg_log_lvl,
    )
    module_logger.info("Configuration file: %s", cfg_abs_path or "<none, defaults>")

    if not stdio_mode:
        _force_exit_count = 0

        def _sigint_handler(sig: int, frame: object) -> None:
            nonlocal _force_exit_count
            _force_exit_count += 1
            if _force_exit_count >= 2:
                module_logger.info("Force exit requested (double Ctrl+C).")
                signal.signal(signal.SIGINT, signal.SIG_DFL)
                os._exit(1)
            module_logger.info("Ctrl+C received — shutting down…")
            print("\n[Ctrl+C] Shutting down gracefully… (press again to force)")
            if uvicorn_svr_inst is not None:
                uvicorn_svr_inst.should_exit = True

        def _sigterm_handler(sig: int, frame: object) -> None:
            module_logger.info("SIGTERM received — shutting down gracefully…")
            if uvicorn_svr_inst is not None:
                uvicorn_svr_inst.should_exit = True

        signal.signal(signal.SIGINT, _sigint_handler)
        signal.signal(signal.SIGTERM, _sigterm_handler)

    try:
        if stdio_mode:
            asyncio.run(_run_stdio(config, token))
        else:
            asyncio.run(_run_http(config, token, log_fpath, cfg_log_lvl, cfg_abs_path))
    except (KeyboardInterrupt, asyncio.CancelledError) as e_stop:
        module_logger.info("%s main program interrupted (%s).", SERVER_NAME, type(e_stop).__name__)
    except Exception as e_fatal:
        module_logger.exception(
            "%s main program encountered an uncaught fatal error: %s",
            SERVER_NAME,
            e_fatal,
        )
        sys.exit(1)
    finally:
        module_logger.info("%s application finished.", SERVER_NAME)


# ── ``mcp-vector-proxy status`` ─────────────────────────────────────────


def _render_health(data: dict) -> Table:
    table = Table(title=f"{SERVER_NAME} health", show_header=True, header_style="bold")
    table.add_column("Field")
    table.add_column("Value")

    status = str(data.get("status", "unknown"))
    colour = "green" if status == "ok" else "red"
    table.add_row("status", f"[{colour}]{status}[/{colour}]")
    table.add_row("upstream", str(data.get("upstreamState", "-")))
    table.add_row("degraded", "yes" if data.get("degraded") else "no")
    table.add_row("operations", str(data.get("operationCount", 0)))
    table.add_row("last indexed", str(data.get("lastIndexedAt") or "never"))
    counts = data.get("sessionCounts") or {}
    table.add_row(
        "sessions",
        ", ".join(f"{kind}={count}" for kind, count in sorted(counts.items())) or "-",
    )
    table.add_row("version", str(data.get("version", "-")))
    return table


def _cmd_status(args: argparse.Namespace) -> None:
    """Entry-point for ``mcp-vector-proxy status``."""
    url = args.url.rstrip("/") + HEALTH_PATH
    console = Console()
    try:
        response = httpx.get(url, timeout=args.timeout)
        response.raise_for_status()
        data = response.json()
    except (httpx.HTTPError, ValueError) as exc:
        console.print(f"[red]Could not read {url}: {exc}[/red]")
        sys.exit(1)

    console.print(_render_health(data))
    sys.exit(0 if data.get("status") == "ok" else 1)


# ── CLI parser construction ──────────────────────────────────────────────


def _build_parser() -> argparse.ArgumentParser:
    """Build the argparse parser with server/status subcommands."""
    parser = argparse.ArgumentParser(
        description=f"{SERVER_NAME} v{SERVER_VERSION}",
    )

    subparsers = parser.add_subparsers(dest="command")

    # ── server ──────────────────────────────────────────────────
    sp_server = subparsers.add_parser(
        "server",
        help="Run the proxy (stdio or HTTP downstream transport)",
    )
    sp_server.add_argument(
        "--transport",
        type=str,
        default=None,
        choices=["stdio", "http"],
        help="Downstream transport (default: from config, else stdio)",
    )
    sp_server.add_argument(
        "--host",
        type=str,
        default=None,
        help=f"Host address for http transport (default: {DEFAULT_HOST})",
    )
    sp_server.add_argument(
        "--port",
        type=int,
        default=None,
        help=f"Port for http transport (default: {DEFAULT_PORT})",
    )
    sp_server.add_argument(
        "--log-level",
        type=str,
        default="info",
        choices=["debug", "info", "warning", "error", "critical"],
        help="Set file logging level (default: info)",
    )
    sp_server.add_argument(
        "--config",
        type=str,
        default=None,
        metavar="PATH",
        help=(
            "Path to configuration file (YAML). "
            f"Default: ${CONFIG_ENV_VAR}, then auto-detect config.yaml/config.yml"
        ),
    )
    sp_server.set_defaults(func=_cmd_server)

    # ── status ───────────────────────────────────────────────────
    sp_status = subparsers.add_parser(
        "status",
        help="Show the health of a running HTTP proxy",
    )
    default_url = f"http://{DEFAULT_HOST}:{DEFAULT_PORT}"
    sp_status.add_argument(
        "--url",
        type=str,
        default=default_url,
        help=f"Proxy base URL (default: {default_url})",
    )
    sp_status.add_argument(
        "--timeout",
        type=float,
        default=5.0,
        help="Request timeout in seconds (default: 5)",
    )
    sp_status.set_defaults(func=_cmd_status)

    return parser


def main(argv: Optional[list] = None) -> None:
    """Program entry point: parse arguments and dispatch to subcommand."""
    parser = _build_parser()
    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        sys.exit(1)
    else:
        args.func(args)
