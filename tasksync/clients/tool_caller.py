"""Tool-calling client for sources reached through an MCP server.

Remote servers are called with JSON-RPC 2.0 over HTTP; local servers are
spawned as subprocesses speaking line-delimited JSON-RPC over stdio. Both
run the same handshake: ``initialize``, ``notifications/initialized``,
then ``tools/call``.
"""

import asyncio
import json
import logging
import os
from typing import Any, Protocol

import httpx
from pydantic import BaseModel

from tasksync.errors import ToolCallError
from tasksync.models.task import McpServerRecord

logger = logging.getLogger(__name__)

PROTOCOL_VERSION = "2024-11-05"
CLIENT_INFO = {"name": "tasksync", "version": "0.1.0"}
INIT_TIMEOUT_SECONDS = 30.0
CALL_TIMEOUT_SECONDS = 60.0


class ToolCallResult(BaseModel):
    success: bool
    result: Any = None
    error: str | None = None


class ToolCaller(Protocol):
    """Anything that can invoke a named tool on a server."""

    async def call_tool(
        self, server: McpServerRecord, tool_name: str, args: dict[str, Any] | None = None
    ) -> ToolCallResult: ...


def _rpc(method: str, params: dict[str, Any] | None = None, id: int | None = None) -> dict[str, Any]:
    message: dict[str, Any] = {"jsonrpc": "2.0", "method": method}
    if id is not None:
        message["id"] = id
    if params is not None:
        message["params"] = params
    return message


def _initialize_message() -> dict[str, Any]:
    return _rpc(
        "initialize",
        {"protocolVersion": PROTOCOL_VERSION, "capabilities": {}, "clientInfo": CLIENT_INFO},
        id=1,
    )


def _rpc_error_message(error: Any, fallback: str) -> str:
    if isinstance(error, dict):
        return error.get("message") or json.dumps(error)
    return str(error) if error else fallback


class McpToolCaller:
    """Calls tools on local (stdio) or remote (HTTP) MCP servers."""

    def __init__(self, http_client: httpx.AsyncClient | None = None) -> None:
        self._http_client = http_client

    async def call_tool(
        self, server: McpServerRecord, tool_name: str, args: dict[str, Any] | None = None
    ) -> ToolCallResult:
        args = args or {}
        logger.debug(f"Calling tool {tool_name} on {server.name} ({server.type})")
        if server.type == "remote":
            return await self._call_remote(server, tool_name, args)
        return await self._call_local(server, tool_name, args)

    # ==================== Remote ====================

    async def _call_remote(
        self, server: McpServerRecord, tool_name: str, args: dict[str, Any]
    ) -> ToolCallResult:
        if not server.url:
            return ToolCallResult(success=False, error="No URL specified")

        headers = {
            "Content-Type": "application/json",
            "Accept": "application/json, text/event-stream",
            **server.headers,
        }
        client = self._http_client or httpx.AsyncClient()
        try:
            init_response = await client.post(
                server.url, json=_initialize_message(), headers=headers, timeout=INIT_TIMEOUT_SECONDS
            )
            if init_response.status_code >= 400:
                return ToolCallResult(
                    success=False,
                    error=f"HTTP {init_response.status_code}: {init_response.reason_phrase}",
                )
            init_data = _decode_rpc_response(init_response)
            if init_data.get("error"):
                return ToolCallResult(
                    success=False, error=_rpc_error_message(init_data["error"], "Initialize failed")
                )

            session_id = init_response.headers.get("mcp-session-id")
            if session_id:
                headers["Mcp-Session-Id"] = session_id

            try:
                await client.post(
                    server.url, json=_rpc("notifications/initialized"), headers=headers
                )
            except httpx.HTTPError as e:
                logger.debug(f"initialized notification to {server.name} failed: {e}")

            call_response = await client.post(
                server.url,
                json=_rpc("tools/call", {"name": tool_name, "arguments": args}, id=2),
                headers=headers,
                timeout=CALL_TIMEOUT_SECONDS,
            )
            if call_response.status_code >= 400:
                return ToolCallResult(
                    success=False,
                    error=f"HTTP {call_response.status_code}: {call_response.reason_phrase}",
                )
            call_data = _decode_rpc_response(call_response)
            if call_data.get("error"):
                return ToolCallResult(
                    success=False, error=_rpc_error_message(call_data["error"], "Tool call failed")
                )
            return ToolCallResult(success=True, result=call_data.get("result"))
        except (httpx.HTTPError, ValueError) as e:
            logger.warning(f"Tool call {tool_name} on {server.name} failed: {e}")
            return ToolCallResult(success=False, error=str(e) or "Tool call failed")
        finally:
            if self._http_client is None:
                await client.aclose()

    # ==================== Local ====================

    async def _call_local(
        self, server: McpServerRecord, tool_name: str, args: dict[str, Any]
    ) -> ToolCallResult:
        if not server.command:
            return ToolCallResult(success=False, error="No command specified")

        try:
            proc = await asyncio.create_subprocess_exec(
                server.command,
                *server.args,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env={**os.environ, **server.environment},
            )
        except OSError as e:
            return ToolCallResult(success=False, error=str(e))

        try:
            return await asyncio.wait_for(
                self._stdio_session(proc, tool_name, args), timeout=CALL_TIMEOUT_SECONDS
            )
        except asyncio.TimeoutError:
            return ToolCallResult(
                success=False, error=f"Tool call timeout ({int(CALL_TIMEOUT_SECONDS)}s)"
            )
        finally:
            if proc.returncode is None:
                proc.terminate()
                await proc.wait()

    async def _stdio_session(
        self, proc: asyncio.subprocess.Process, tool_name: str, args: dict[str, Any]
    ) -> ToolCallResult:
        stdin, stdout = proc.stdin, proc.stdout
        if stdin is None or stdout is None:
            return ToolCallResult(success=False, error="MCP server process has no stdio pipes")

        async def send(message: dict[str, Any]) -> None:
            stdin.write((json.dumps(message) + "\n").encode("utf-8"))
            await stdin.drain()

        async def receive(message_id: int) -> dict[str, Any] | None:
            while True:
                line = await stdout.readline()
                if not line:
                    return None
                try:
                    message = json.loads(line)
                except json.JSONDecodeError:
                    continue
                # Skip server notifications and log lines until our response arrives
                if isinstance(message, dict) and message.get("id") == message_id:
                    return message

        await send(_initialize_message())
        init = await receive(1)
        if init is None:
            return ToolCallResult(success=False, error=await _exit_error(proc))
        if init.get("error"):
            return ToolCallResult(success=False, error=_rpc_error_message(init["error"], "Initialize failed"))

        await send(_rpc("notifications/initialized"))
        await send(_rpc("tools/call", {"name": tool_name, "arguments": args}, id=2))
        response = await receive(2)
        if response is None:
            return ToolCallResult(success=False, error=await _exit_error(proc))
        if response.get("error"):
            return ToolCallResult(
                success=False, error=_rpc_error_message(response["error"], "Tool call failed")
            )
        if not response.get("result"):
            return ToolCallResult(success=False, error="No result from tool call")
        return ToolCallResult(success=True, result=response["result"])


async def _exit_error(proc: asyncio.subprocess.Process) -> str:
    stderr = b""
    if proc.stderr is not None:
        stderr = await proc.stderr.read()
    code = await proc.wait()
    lines = stderr.decode("utf-8", errors="replace").strip().splitlines()
    return lines[-1] if lines else f"Process exited with code {code}"


def _decode_rpc_response(response: httpx.Response) -> dict[str, Any]:
    """Decode a JSON-RPC response sent either as JSON or as a server-sent event stream."""
    content_type = response.headers.get("content-type", "")
    if "text/event-stream" in content_type:
        last: dict[str, Any] = {}
        for line in response.text.splitlines():
            if line.startswith("data:"):
                payload = line[len("data:"):].strip()
                if payload:
                    last = json.loads(payload)
        return last
    return response.json()


# ==================== Result unwrapping ====================


def unwrap_tool_result(result: Any) -> Any:
    """Extract the payload from a tool result envelope.

    Tool results usually arrive as ``{"content": [{"type": "text", "text": "<json>"}]}``.
    The first text part is JSON-decoded when possible. Application errors
    carried inside a successful envelope are raised.

    Raises:
        ToolCallError: If the envelope has ``isError`` set, or the payload is
            ``{"error": ...}`` or ``{"success": false, ...}``
    """
    if not isinstance(result, dict):
        return result

    text = None
    for part in result.get("content") or []:
        if isinstance(part, dict) and part.get("type") == "text":
            text = part.get("text")
            break

    if result.get("isError"):
        raise ToolCallError(text or "Tool reported an error")

    if "structuredContent" in result:
        payload: Any = result["structuredContent"]
    elif "content" in result:
        if text is None:
            return None
        try:
            payload = json.loads(text)
        except json.JSONDecodeError:
            return text
    else:
        payload = result

    if isinstance(payload, dict):
        if payload.get("error"):
            error = payload["error"]
            raise ToolCallError(error if isinstance(error, str) else _rpc_error_message(error, "Tool error"))
        if payload.get("success") is False:
            raise ToolCallError(payload.get("message") or "Tool call was not successful")
    return payload
