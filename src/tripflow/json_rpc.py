"""
Line-delimited JSON-RPC 2.0 server over stdio.
Handlers may be plain functions or coroutines.
"""

import asyncio
import inspect
import json
import logging
import sys
from typing import Any, Callable, Dict, Optional, TextIO

logger = logging.getLogger(__name__)

# JSON-RPC 2.0 constants
JSONRPC_VERSION = "2.0"
ERROR_PARSE = -32700
ERROR_INVALID_REQUEST = -32600
ERROR_METHOD_NOT_FOUND = -32601
ERROR_INVALID_PARAMS = -32602
ERROR_INTERNAL = -32603


class InvalidParamsError(ValueError):
    """Raised by a handler when the request params are unusable."""


class JsonRpcRequest:
    """JSON-RPC 2.0 Request"""

    def __init__(self, data: Any):
        if not isinstance(data, dict):
            raise ValueError("Request must be a JSON object")
        self.jsonrpc = data.get("jsonrpc", JSONRPC_VERSION)
        self.method = data.get("method")
        self.params = data.get("params") or {}
        self.id = data.get("id")
        self.is_notification = "id" not in data

        # Validate
        if self.jsonrpc != JSONRPC_VERSION:
            raise ValueError(f"Invalid JSON-RPC version: {self.jsonrpc}")
        if not self.method or not isinstance(self.method, str):
            raise ValueError("Missing method")
        if not isinstance(self.params, dict):
            raise ValueError("Params must be an object")


def create_error_response(request_id: Any, code: int, message: str) -> dict:
    """Create an error response."""
    return {
        "jsonrpc": JSONRPC_VERSION,
        "id": request_id,
        "error": {"code": code, "message": message},
    }


def create_result_response(request_id: Any, result: Any) -> dict:
    """Create a result response."""
    return {"jsonrpc": JSONRPC_VERSION, "id": request_id, "result": result}


Handler = Callable[[Dict[str, Any]], Any]


class JsonRpcServer:
    """
    An asyncio JSON-RPC 2.0 server over stdio.
    Stdin is read on a worker thread so other tasks keep running between requests.
    """

    def __init__(
        self,
        server_name: str,
        stdin: Optional[TextIO] = None,
        stdout: Optional[TextIO] = None,
    ):
        self.server_name = server_name
        self.stdin = stdin or sys.stdin
        self.stdout = stdout or sys.stdout
        self._handlers: Dict[str, Handler] = {}
        self._running = False

    def register_handler(self, method: str, handler: Handler):
        """Register a handler for a JSON-RPC method."""
        logger.debug(f"Registering handler for method: {method}")
        self._handlers[method] = handler

    @property
    def methods(self) -> list[str]:
        return sorted(self._handlers)

    async def _read_message(self) -> Optional[str]:
        """Read a single line from stdin."""
        try:
            line = await asyncio.to_thread(self.stdin.readline)
        except (OSError, ValueError) as e:
            logger.error(f"Error reading from stdin: {e}")
            return None
        if not line:
            return None
        return line.strip()

    def _write_message(self, message: dict):
        """Write a JSON message to stdout."""
        try:
            self.stdout.write(json.dumps(message, default=str) + "\n")
            self.stdout.flush()
        except (OSError, TypeError, ValueError) as e:
            logger.error(f"Error writing to stdout: {e}")

    async def process_request(self, request_str: str) -> Optional[dict]:
        """Process a single JSON-RPC request, returning the response if one is due."""
        try:
            request_data = json.loads(request_str)
        except json.JSONDecodeError as e:
            return create_error_response(None, ERROR_PARSE, f"Parse error: {e}")

        try:
            request = JsonRpcRequest(request_data)
        except ValueError as e:
            request_id = request_data.get("id") if isinstance(request_data, dict) else None
            return create_error_response(request_id, ERROR_INVALID_REQUEST, str(e))

        handler = self._handlers.get(request.method)
        if handler is None:
            response = create_error_response(
                request.id, ERROR_METHOD_NOT_FOUND, f"Method not found: {request.method}"
            )
        else:
            try:
                result = handler(request.params)
                if inspect.isawaitable(result):
                    result = await result
                response = create_result_response(request.id, result)
            except InvalidParamsError as e:
                response = create_error_response(request.id, ERROR_INVALID_PARAMS, f"Invalid params: {e}")
            except Exception as e:
                logger.error(f"Handler error for {request.method}: {e}", exc_info=True)
                response = create_error_response(request.id, ERROR_INTERNAL, f"Internal error: {e}")

        return None if request.is_notification else response

    async def serve(self):
        """Serve requests until EOF or :meth:`stop`."""
        logger.info(f"Starting JSON-RPC server '{self.server_name}'...")
        self._running = True

        while self._running:
            line = await self._read_message()
            if line is None:
                logger.info("EOF reached, shutting down")
                break
            if not line:
                continue

            response = await self.process_request(line)
            if response:
                self._write_message(response)

        self._running = False
        logger.info("Server stopped")

    def stop(self):
        """Stop the server."""
        self._running = False
