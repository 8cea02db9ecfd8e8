"""Console status display and log-file status writing (HTTP mode only)."""

import logging
import os
from datetime import datetime
from typing import Any, Dict, Optional

from mcp_vector_proxy.constants import (
    DEFAULT_LOG_LEVEL,
    HEALTH_PATH,
    SERVER_NAME,
    SERVER_VERSION,
    SSE_PATH,
    STREAMABLE_HTTP_PATH,
)

logger = logging.getLogger(__name__)


def gen_status_info(
    app_state: Optional[object],
    status_msg: str,
    err_msg: Optional[str] = None,
    operation_count: Optional[int] = None,
) -> Dict[str, Any]:
    """Generate a structured dictionary of status information."""
    host = getattr(app_state, "host", "N/A") if app_state else "N/A"
    port = getattr(app_state, "port", 0) if app_state else 0
    base = f"http://{host}:{port}" if port > 0 else ""

    info: Dict[str, Any] = {
        "ts": datetime.now().strftime("%Y-%m-%d %H:%M:%S"),
        "status_msg": status_msg,
        "host": host,
        "port": port,
        "log_fpath": getattr(app_state, "actual_log_file", "N/A") if app_state else "N/A",
        "log_lvl_cfg": (
            getattr(app_state, "file_log_level_configured", DEFAULT_LOG_LEVEL)
            if app_state
            else DEFAULT_LOG_LEVEL
        ),
        "streamable_http_url": f"{base}{STREAMABLE_HTTP_PATH}" if base else "N/A",
        "sse_url": f"{base}{SSE_PATH}" if base else "N/A",
        "health_url": f"{base}{HEALTH_PATH}" if base else "N/A",
        "cfg_fpath": (getattr(app_state, "config_file_path", None) if app_state else None)
        or "defaults",
        "err_msg": err_msg,
    }
    if operation_count is not None:
        info["operation_count"] = operation_count
    return info


def disp_console_status(stage: str, status_info: Dict[str, Any], is_final: bool = False) -> None:
    """Print formatted status information to the console."""
    header = f" {SERVER_NAME} v{SERVER_VERSION} "
    sep_char = "="
    line_len = 70

    if not hasattr(disp_console_status, "header_printed") or is_final:
        print(f"\n{sep_char * line_len}")
        print(f"{header:-^{line_len}}")
        print(f"{sep_char * line_len}")
        if not is_final:
            disp_console_status.header_printed = True  # type: ignore[attr-defined]
        else:
            if hasattr(disp_console_status, "header_printed"):
                delattr(disp_console_status, "header_printed")

    print(f"[{status_info['ts']}] {stage} Status: {status_info['status_msg']}")

    if not is_final and stage == "Initialization":
        print(f"    Streamable HTTP : POST/GET/DELETE {status_info['streamable_http_url']}")
        print(f"    SSE (legacy)    : GET {status_info['sse_url']}")
        print(f"    Health          : GET {status_info['health_url']}")
        print(f"    Config File: {os.path.basename(status_info['cfg_fpath'])}")
        print(f"    Log File: {status_info['log_fpath']} " f"(level: {status_info['log_lvl_cfg']})")

    if "operation_count" in status_info:
        print(f"    Indexed operations: {status_info['operation_count']}")

    if status_info.get("err_msg"):
        print(f"    !! Error: {status_info['err_msg']}")

    if not is_final:
        print("-" * line_len)

    if is_final:
        print(f"    Log File: {status_info['log_fpath']}")
        print(f"{sep_char * line_len}\n")


def log_file_status(status_info: Dict[str, Any], log_lvl: int = logging.INFO) -> None:
    """Write status information to the log file."""
    log_lines = [
        f"Server Status Update: {status_info['status_msg']}",
        f"  Streamable HTTP URL: {status_info['streamable_http_url']}",
        f"  SSE URL: {status_info['sse_url']}",
        f"  Health URL: {status_info['health_url']}",
        f"  Config File Used: {status_info['cfg_fpath']}",
        f"  Configured File Log Level: {status_info['log_lvl_cfg']}",
        f"  Actual Log File: {status_info['log_fpath']}",
    ]
    if "operation_count" in status_info:
        log_lines.append(f"  Indexed operations: {status_info['operation_count']}")
    if status_info.get("err_msg"):
        log_lines.append(f"  Error Details: {status_info['err_msg']}")
    logger.log(log_lvl, "\n".join(log_lines))
