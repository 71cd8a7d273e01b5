"""
Sandbox provider injection.

The generated markup runs inside ``<iframe sandbox="allow-scripts">`` with an
opaque origin. Its only channel back to the chain is the bootstrap
``window.ethereum`` object, which posts to ``/sandbox/rpc/<token>``. The token
names exactly one BridgedProvider; provisioning new content revokes it.
"""

from __future__ import annotations

import html
import json
import logging
import re
import secrets
from typing import Any, Optional

from ethconsole.rpc.bridge import INVALID_REQUEST, RPCError, TransportBridge

logger = logging.getLogger(__name__)

_HEAD_RE = re.compile(r"<head(\s[^>]*)?>", re.IGNORECASE)


class BridgedProvider:
    """EIP-1193 style provider whose only capability is the transport bridge."""

    def __init__(self, bridge: TransportBridge) -> None:
        self._bridge = bridge

    async def request(self, envelope: dict) -> Any:
        if not isinstance(envelope, dict) or not isinstance(envelope.get("method"), str):
            raise RPCError(INVALID_REQUEST, "Request must carry a method")
        return await self._bridge.send(envelope["method"], envelope.get("params") or [])


BOOTSTRAP_TEMPLATE = """<script>
(function () {
  var endpoint = %(endpoint)s;
  var nextId = 1;
  function request(args) {
    if (!args || typeof args.method !== "string") {
      return Promise.reject(new Error("request() needs a method"));
    }
    var body = JSON.stringify({
      jsonrpc: "2.0", id: nextId++, method: args.method, params: args.params || []
    });
    return fetch(endpoint, {
      method: "POST", headers: {"Content-Type": "text/plain"}, body: body
    }).then(function (resp) { return resp.json(); }).then(function (msg) {
      if (msg.error) {
        var err = new Error(msg.error.message);
        err.code = msg.error.code;
        err.data = msg.error.data;
        throw err;
      }
      return msg.result;
    });
  }
  window.ethereum = Object.freeze({ isEthConsole: true, request: request });
})();
</script>
"""

EMPTY_DOCUMENT = """<!DOCTYPE html>
<html><head><meta charset="utf-8"><title>ethconsole sandbox</title></head>
<body><p style="font-family: sans-serif; color: #777">%s</p></body></html>
"""


class SandboxContext:
    """Holds the markup and provider of the isolated rendering context."""

    def __init__(self, relay_path: str = "/sandbox/rpc") -> None:
        self.relay_path = relay_path.rstrip("/")
        self._token: Optional[str] = None
        self._provider: Optional[BridgedProvider] = None
        self._markup: Optional[str] = None
        self.generation = 0

    @property
    def token(self) -> Optional[str]:
        return self._token

    @property
    def markup(self) -> Optional[str]:
        return self._markup

    def clear(self) -> None:
        if self._markup is not None:
            self.generation += 1
        self._token = None
        self._provider = None
        self._markup = None

    def provision(self, markup: str, provider: BridgedProvider) -> str:
        """Replace content and provider together; returns the new token."""
        self.clear()
        self._token = secrets.token_urlsafe(24)
        self._provider = provider
        self._markup = markup
        self.generation += 1
        logger.debug("Sandbox provisioned (generation %d)", self.generation)
        return self._token

    def bootstrap_script(self) -> str:
        endpoint = f"{self.relay_path}/{self._token}"
        return BOOTSTRAP_TEMPLATE % {"endpoint": json.dumps(endpoint)}

    def render(self) -> str:
        if self._markup is None or self._token is None:
            return EMPTY_DOCUMENT % html.escape("No interface loaded yet.")
        script = self.bootstrap_script()
        markup = self._markup
        head = _HEAD_RE.search(markup)
        if head is not None:
            return markup[:head.end()] + script + markup[head.end():]
        return script + markup

    async def relay(self, token: str, payload: dict) -> Any:
        if self._provider is None or not secrets.compare_digest(token.encode(), (self._token or "").encode()):
            raise PermissionError("Unknown or revoked sandbox token")
        return await self._provider.request(payload)


class SandboxInjector:
    def __init__(self, bridge: TransportBridge, sandbox: SandboxContext) -> None:
        self.bridge = bridge
        self.sandbox = sandbox

    def inject(self, markup: str) -> None:
        self.sandbox.provision(markup, BridgedProvider(self.bridge))
