"""
Host web app.

Serves the host page, the sandbox document and the two JSON-RPC relays:
``/api/rpc`` for the host (through the active backend) and
``/sandbox/rpc/{token}`` for the sandboxed surface (through its provider).
"""

from __future__ import annotations

import json
import logging
from typing import Any, Awaitable, Callable

from fastapi import FastAPI, Request
from fastapi.responses import HTMLResponse, JSONResponse, PlainTextResponse

from ethconsole.rpc.bridge import (
    INTERNAL_ERROR,
    INVALID_REQUEST,
    PARSE_ERROR,
    RPCError,
    TransportError,
)
from ethconsole.session.controller import SessionController

logger = logging.getLogger(__name__)


SANDBOX_HEADERS = {
    "Content-Security-Policy": "sandbox allow-scripts",
    "Cache-Control": "no-store",
}
RELAY_HEADERS = {"Access-Control-Allow-Origin": "*"}


def _success_response(id: Any, result: Any) -> dict:
    return {"jsonrpc": "2.0", "id": id, "result": result}


def _error_response(id: Any, code: int, message: str, data: Any = None) -> dict:
    error = {"code": code, "message": message}
    if data is not None:
        error["data"] = data
    return {"jsonrpc": "2.0", "id": id, "error": error}


async def _dispatch(body: Any, handler: Callable[[dict], Awaitable[Any]]) -> dict:
    if not isinstance(body, dict) or not isinstance(body.get("method"), str):
        return _error_response(None, INVALID_REQUEST, "Invalid request")
    req_id = body.get("id")
    try:
        result = await handler(body)
    except PermissionError:
        raise
    except RPCError as e:
        return _error_response(req_id, e.code, e.message, e.data)
    except TransportError as e:
        return _error_response(req_id, INTERNAL_ERROR, str(e))
    except Exception as e:
        logger.exception("Relay error in %s", body.get("method"))
        return _error_response(req_id, INTERNAL_ERROR, str(e))
    return _success_response(req_id, result)


async def _read_json(request: Request) -> Any:
    raw = await request.body()
    return json.loads(raw or b"null")


class ConsoleServer:
    """FastAPI app over a SessionController."""

    def __init__(self, controller: SessionController) -> None:
        self.controller = controller
        self.app = FastAPI(title="ethconsole", docs_url=None, redoc_url=None)
        self._setup_routes()

    @property
    def context(self):
        return self.controller.context

    def _setup_routes(self) -> None:
        @self.app.get("/")
        async def handle_index() -> HTMLResponse:
            return HTMLResponse(HOST_PAGE)

        @self.app.post("/api/start")
        async def handle_start() -> PlainTextResponse:
            try:
                message = await self.controller.on_start_requested()
            except TransportError as e:
                logger.warning("Start failed: %s", e)
                return PlainTextResponse(str(e), status_code=502)
            return PlainTextResponse(message)

        @self.app.post("/api/fork")
        async def handle_fork() -> JSONResponse:
            return JSONResponse({"mode": self.controller.on_fork_toggled(True)})

        @self.app.post("/api/unfork")
        async def handle_unfork() -> JSONResponse:
            return JSONResponse({"mode": self.controller.on_fork_toggled(False)})

        @self.app.post("/api/address")
        async def handle_address(request: Request) -> JSONResponse:
            try:
                body = await _read_json(request)
                address = self.controller.on_address_changed(body.get("address", ""))
            except (ValueError, AttributeError) as e:
                return JSONResponse({"error": str(e)}, status_code=400)
            return JSONResponse({"address": address})

        @self.app.post("/api/keys")
        async def handle_keys(request: Request) -> JSONResponse:
            try:
                body = await _read_json(request)
            except ValueError as e:
                return JSONResponse({"error": str(e)}, status_code=400)
            if not isinstance(body, dict):
                return JSONResponse({"error": "Expected a JSON object"}, status_code=400)
            self.controller.on_keys_changed(
                openai_api_key=body.get("openaiApiKey"),
                etherscan_api_key=body.get("etherscanApiKey"),
            )
            return JSONResponse(self.controller.status())

        @self.app.post("/api/refresh")
        async def handle_refresh() -> JSONResponse:
            await self.controller.refresh()
            return JSONResponse(self.controller.status())

        @self.app.get("/api/status")
        async def handle_status() -> JSONResponse:
            return JSONResponse(self.controller.status())

        @self.app.post("/api/rpc")
        async def handle_host_rpc(request: Request) -> JSONResponse:
            try:
                body = await _read_json(request)
            except ValueError:
                return JSONResponse(_error_response(None, PARSE_ERROR, "Parse error"))

            async def forward(req: dict) -> Any:
                client = self.context.fork_manager.current_client()
                return await client.request(req["method"], req.get("params") or [])

            return JSONResponse(await _dispatch(body, forward))

        @self.app.get("/sandbox")
        async def handle_sandbox() -> HTMLResponse:
            return HTMLResponse(self.context.sandbox.render(), headers=SANDBOX_HEADERS)

        @self.app.post("/sandbox/rpc/{token}")
        async def handle_sandbox_rpc(token: str, request: Request) -> JSONResponse:
            try:
                body = await _read_json(request)
            except ValueError:
                return JSONResponse(
                    _error_response(None, PARSE_ERROR, "Parse error"), headers=RELAY_HEADERS
                )
            try:
                response = await _dispatch(
                    body, lambda req: self.context.sandbox.relay(token, req)
                )
            except PermissionError as e:
                req_id = body.get("id") if isinstance(body, dict) else None
                return JSONResponse(
                    _error_response(req_id, -32001, str(e)),
                    status_code=403,
                    headers=RELAY_HEADERS,
                )
            return JSONResponse(response, headers=RELAY_HEADERS)


HOST_PAGE = """<!DOCTYPE html>
<html>
<head>
<meta charset="utf-8">
<title>ethconsole</title>
<style>
  body { font-family: sans-serif; margin: 0; display: flex; flex-direction: column; height: 100vh; }
  header { padding: 8px 12px; border-bottom: 1px solid #ddd; display: flex; gap: 8px; flex-wrap: wrap; align-items: center; }
  header input { width: 22em; }
  #status { font-size: 12px; color: #555; padding: 4px 12px; }
  iframe { flex: 1; border: 0; width: 100%; }
</style>
</head>
<body>
<header>
  <button id="start">Start</button>
  <input id="address" placeholder="Contract address 0x...">
  <button id="set-address">Load</button>
  <input id="openai" type="password" placeholder="OpenAI API key">
  <input id="etherscan" type="password" placeholder="Etherscan API key">
  <button id="save-keys">Save keys</button>
  <label><input id="fork" type="checkbox"> Forked</label>
  <button id="refresh">Refresh</button>
</header>
<div id="status"></div>
<iframe id="surface" sandbox="allow-scripts" src="/sandbox"></iframe>
<script>
(function () {
  var $ = function (id) { return document.getElementById(id); };
  var generation = null;

  function post(path, body) {
    return fetch(path, {
      method: "POST",
      headers: {"Content-Type": "application/json"},
      body: body === undefined ? "" : JSON.stringify(body)
    });
  }

  function showStatus(s) {
    $("status").textContent =
      (s.started ? "running" : "stopped") + " | " + s.mode +
      " | block " + (s.lastBlock === null ? "-" : s.lastBlock) +
      " | " + (s.contractAddress || "no contract") +
      (s.surfaceName ? " | " + s.surfaceName : "");
    $("fork").checked = s.mode === "forked";
    if (s.contractAddress && !$("address").value) { $("address").value = s.contractAddress; }
    if (generation !== s.sandboxGeneration) {
      generation = s.sandboxGeneration;
      $("surface").src = "/sandbox?t=" + Date.now();
    }
  }

  function poll() {
    fetch("/api/status").then(function (r) { return r.json(); }).then(showStatus);
  }

  $("start").onclick = function () {
    post("/api/start").then(function (r) { return r.text(); }).then(function (t) {
      $("status").textContent = t;
    });
  };
  $("set-address").onclick = function () {
    post("/api/address", {address: $("address").value.trim()}).then(poll);
  };
  $("save-keys").onclick = function () {
    var body = {};
    if ($("openai").value) { body.openaiApiKey = $("openai").value; }
    if ($("etherscan").value) { body.etherscanApiKey = $("etherscan").value; }
    post("/api/keys", body).then(poll);
  };
  $("fork").onchange = function () {
    post($("fork").checked ? "/api/fork" : "/api/unfork").then(poll);
  };
  $("refresh").onclick = function () {
    post("/api/refresh").then(poll);
  };

  poll();
  setInterval(poll, 3000);
})();
</script>
</body>
</html>
"""
