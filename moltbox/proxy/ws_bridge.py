"""
Duplex WebSocket bridge between a proxy client and the gateway.

Two pumps run concurrently, one per direction. The first side to close
stops both pumps and the other side is closed with the same code. Codes that
may not be sent on the wire (1005 no status, 1006 abnormal closure) become
a normal 1000 close.
"""

import asyncio
import time
from dataclasses import dataclass

import websockets
from fastapi import WebSocket, WebSocketDisconnect
from websockets import ClientConnection

from ..log_config import get_logger

NORMAL_CLOSURE = 1000
INTERNAL_ERROR = 1011
UNSENDABLE_CLOSE_CODES = frozenset({1005, 1006})

CLIENT = "client"
UPSTREAM = "upstream"


def sendable_close_code(code: int | None) -> int:
    if code is None or code in UNSENDABLE_CLOSE_CODES:
        return NORMAL_CLOSURE
    return code


@dataclass
class BridgeClosure:
    """Which side ended the session, and how."""

    side: str
    code: int
    reason: str = ""


class WebSocketBridge:
    """Pump messages both ways until one side closes."""

    def __init__(self, client: WebSocket, upstream: ClientConnection, path: str = "/"):
        self.client = client
        self.upstream = upstream
        self.path = path
        self.forwarded = {CLIENT: 0, UPSTREAM: 0}
        self.log = get_logger("ws_bridge", service="proxy", path=path)

    async def run(self) -> BridgeClosure:
        start_time = time.time()
        pumps = [
            asyncio.create_task(self._client_to_upstream()),
            asyncio.create_task(self._upstream_to_client()),
        ]
        try:
            done, pending = await asyncio.wait(pumps, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for task in pumps:
                if not task.done():
                    task.cancel()
            await asyncio.gather(*pumps, return_exceptions=True)

        finished = next(iter(done))
        error = finished.exception()
        if error is not None:
            self.log.error("ws.bridge_error", exc=error)
            closure = BridgeClosure(side="bridge", code=INTERNAL_ERROR, reason="proxy error")
            await self._close_client(closure)
            await self._close_upstream(closure)
        else:
            closure = finished.result()
            if closure.side == CLIENT:
                await self._close_upstream(closure)
            else:
                await self._close_client(closure)

        self.log.info(
            "ws.session",
            closed_by=closure.side,
            close_code=closure.code,
            client_messages=self.forwarded[CLIENT],
            upstream_messages=self.forwarded[UPSTREAM],
            duration_ms=int((time.time() - start_time) * 1000),
            outcome="error" if error is not None else "success",
        )
        return closure

    async def _client_to_upstream(self) -> BridgeClosure:
        try:
            while True:
                message = await self.client.receive()
                if message["type"] == "websocket.disconnect":
                    return BridgeClosure(
                        CLIENT,
                        message.get("code", NORMAL_CLOSURE),
                        message.get("reason") or "",
                    )

                if message.get("text") is not None:
                    await self.upstream.send(message["text"])
                elif message.get("bytes") is not None:
                    await self.upstream.send(message["bytes"])
                self.forwarded[CLIENT] += 1
        except WebSocketDisconnect as e:
            return BridgeClosure(CLIENT, e.code, e.reason or "")
        except websockets.ConnectionClosed:
            return self._upstream_closure()

    async def _upstream_to_client(self) -> BridgeClosure:
        try:
            async for message in self.upstream:
                if isinstance(message, str):
                    await self.client.send_text(message)
                else:
                    await self.client.send_bytes(message)
                self.forwarded[UPSTREAM] += 1
        except websockets.ConnectionClosed:
            pass
        except WebSocketDisconnect as e:
            return BridgeClosure(CLIENT, e.code, e.reason or "")
        return self._upstream_closure()

    def _upstream_closure(self) -> BridgeClosure:
        return BridgeClosure(
            UPSTREAM,
            self.upstream.close_code or NORMAL_CLOSURE,
            self.upstream.close_reason or "",
        )

    async def _close_client(self, closure: BridgeClosure) -> None:
        try:
            await self.client.close(code=sendable_close_code(closure.code), reason=closure.reason)
        except (RuntimeError, WebSocketDisconnect) as e:
            # Client already gone
            self.log.debug("ws.client_close_skipped", exc=e)

    async def _close_upstream(self, closure: BridgeClosure) -> None:
        await self.upstream.close(code=sendable_close_code(closure.code), reason=closure.reason)
