#!/usr/bin/env python3
"""
JSON-RPC API Server for desktop control panels.

Reads JSON commands from stdin, drives the invoice processor, and writes
JSON responses to stdout. Designed for use with a child_process spawn from
a desktop shell.

Protocol:
  - Each request is a single line of JSON
  - Each response is a single line of JSON
  - Format: {"id": "uuid", "method": "...", "params": {...}}
  - Response: {"id": "uuid", "result": {...}, "error": null}

Methods:
  - settings:get - Get saved settings (API key masked)
  - settings:set - Update a saved setting
  - processor:configure - Set folders, API key and blocked terms
  - processor:start - Start watching the scan folder
  - processor:stop - Stop watching
  - processor:status - Running flag, status, queue, history and cost
"""

import json
import sys
import logging
import traceback
from pathlib import Path
from typing import Any, Optional

# Add the project root to path for imports
sys.path.insert(0, str(Path(__file__).parent))

from invoice_processor import ProcessorController, add_file_handler, CONFIG
from settings import get_settings

logger = logging.getLogger("invoice_processor.api")

# Created on first use so importing this module has no side effects
_controller: Optional[ProcessorController] = None


def log_debug(msg: str):
    """Log debug messages to stderr (so they don't interfere with stdout JSON)."""
    logger.debug(msg)


def get_controller() -> ProcessorController:
    """Get the shared controller, configured from saved settings."""
    global _controller
    if _controller is None:
        _controller = ProcessorController()
        _controller.configure(**get_settings().controller_values())
    return _controller


def send_response(request_id: str, result: Any = None, error: Optional[str] = None):
    """Send a JSON response to stdout."""
    response = {
        "id": request_id,
        "result": result,
        "error": error,
    }
    # Write as single line, then flush
    print(json.dumps(response), flush=True)


def handle_settings_get(params: dict) -> dict:
    """Get all settings."""
    settings = get_settings()

    return {
        "watch_folder": settings.watch_folder,
        "output_folder": settings.output_folder,
        "blocked_terms": settings.blocked_terms,
        "openai_model": settings.get("openai_model"),
        "has_openai_key": bool(settings.openai_api_key),
    }


def handle_settings_set(params: dict) -> dict:
    """Update a setting."""
    key = params.get("key")
    value = params.get("value")

    if not key:
        raise ValueError("key parameter is required")

    settings = get_settings()
    settings.set(key, value)

    return {"success": True, "key": key}


def handle_processor_configure(params: dict) -> dict:
    """Update processor settings and persist them for the next session."""
    values = {
        "watch_folder": params.get("watchFolder"),
        "output_folder": params.get("outputFolder"),
        "api_key": params.get("apiKey"),
        "blocked_terms": params.get("blockedTerms"),
        "model": params.get("model"),
    }
    result = get_controller().configure(**values)

    persisted = {
        {"api_key": "openai_api_key", "model": "openai_model"}.get(key, key): value
        for key, value in values.items()
        if value is not None
    }
    if persisted:
        get_settings().update(persisted)
    return result


def handle_processor_start(params: dict) -> dict:
    return get_controller().start()


def handle_processor_stop(params: dict) -> dict:
    return get_controller().stop()


def handle_processor_status(params: dict) -> dict:
    return get_controller().status()


# Method dispatcher
METHODS = {
    "settings:get": handle_settings_get,
    "settings:set": handle_settings_set,
    "processor:configure": handle_processor_configure,
    "processor:start": handle_processor_start,
    "processor:stop": handle_processor_stop,
    "processor:status": handle_processor_status,
}


def handle_request(request: dict) -> None:
    """Handle a single JSON-RPC request."""
    request_id = request.get("id", "unknown")
    method = request.get("method")
    params = request.get("params") or {}

    if not method:
        send_response(request_id, error="method is required")
        return

    if method not in METHODS:
        send_response(request_id, error=f"Unknown method: {method}")
        return

    try:
        result = METHODS[method](params)
        send_response(request_id, result=result)
    except Exception as e:
        log_debug(f"Error handling {method}: {traceback.format_exc()}")
        send_response(request_id, error=str(e))


def main():
    """Main loop: read JSON from stdin, process, write JSON to stdout."""
    if CONFIG["logging"]["dir"]:
        add_file_handler(CONFIG["logging"]["dir"])
    log_debug("API server starting...")

    # Send ready signal
    send_response("__ready__", result={"status": "ready", "version": "1.0.0"})

    try:
        for line in sys.stdin:
            line = line.strip()
            if not line:
                continue

            try:
                request = json.loads(line)
                handle_request(request)
            except json.JSONDecodeError as e:
                log_debug(f"Invalid JSON: {e}")
                send_response("__error__", error=f"Invalid JSON: {e}")
            except Exception as e:
                log_debug(f"Unexpected error: {traceback.format_exc()}")
                send_response("__error__", error=f"Server error: {e}")
    finally:
        # Parent closed stdin; finish the in-flight file before exiting
        if _controller is not None and _controller.running:
            _controller.stop()


if __name__ == "__main__":
    main()
