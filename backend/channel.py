from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, Dict, List, Optional

from pydantic import TypeAdapter, ValidationError
from websockets.exceptions import ConnectionClosed

from errors import NoDataError, ProtocolError
from models import InterfaceSegment

log = logging.getLogger("netview.channel")

_segments = TypeAdapter(Dict[str, InterfaceSegment])
_names = TypeAdapter(List[str])


class Channel:
    """Tagged request/response correlation over one websocket.

    The socket only needs ``send(text)`` and async iteration over inbound
    frames, which is what a ``websockets`` client connection provides.
    """

    def __init__(self, ws):
        self._ws = ws
        self._tag = 0
        self._pending: Dict[int, asyncio.Future] = {}
        self._disposed = False
        self._reader = asyncio.get_running_loop().create_task(self._listen())

    @property
    def closed(self) -> bool:
        return self._reader.done()

    @property
    def pending(self) -> int:
        return len(self._pending)

    async def wait_closed(self) -> None:
        try:
            await asyncio.shield(self._reader)
        except asyncio.CancelledError:
            if not self._reader.cancelled():
                raise

    async def _listen(self) -> None:
        try:
            async for message in self._ws:
                self._on_message(message)
        except ConnectionClosed as e:
            log.info("Connection closed: %s", e)

    def _on_message(self, message) -> None:
        if not isinstance(message, str):
            log.debug("Dropping binary frame (%d bytes)", len(message))
            return
        try:
            obj = json.loads(message)
        except (ValueError, RecursionError):
            log.debug("Dropping unparsable frame: %.80s", message)
            return
        if not isinstance(obj, dict) or "tag" not in obj or "response" not in obj:
            log.debug("Dropping frame without tag/response: %.80s", message)
            return
        tag = obj["tag"]
        # bool is an int subclass; true must not match tag 1.
        if type(tag) is not int:
            log.debug("Dropping frame with non-integer tag: %r", tag)
            return
        future = self._pending.pop(tag, None)
        if future is not None and not future.done():
            future.set_result(obj["response"])

    async def request(self, payload: Any) -> Any:
        tag = self._tag
        self._tag += 1
        future = asyncio.get_running_loop().create_future()
        self._pending[tag] = future
        try:
            await self._ws.send(json.dumps({"tag": tag, "request": payload}))
            return await future
        finally:
            self._pending.pop(tag, None)

    def dispose(self) -> None:
        if self._disposed:
            return
        self._disposed = True
        self._reader.cancel()
        pending = list(self._pending.values())
        self._pending.clear()
        for future in pending:
            if not future.done():
                future.set_result(None)

    # ── RPC ─────────────────────────────────────────────────────

    async def get_all(self) -> Dict[str, InterfaceSegment]:
        return _validate(_segments, await self.request("get_all"))

    async def get(self, timestamps: Dict[str, int]) -> Dict[str, InterfaceSegment]:
        return _validate(_segments, await self.request({"get": timestamps}))

    async def get_interfaces(self) -> List[str]:
        return _validate(_names, await self.request("get_interfaces"))

    def listen_interface(self, name: str):
        return self.request({"listen_interfaces": name})

    def not_listen_interface(self, name: str):
        return self.request({"not_listen_interfaces": name})

    def clear_interface(self, name: str):
        return self.request({"clear_interfaces": name})


def _validate(adapter: TypeAdapter, data: Optional[Any]):
    if data is None:
        raise NoDataError()
    try:
        return adapter.validate_python(data)
    except ValidationError as e:
        raise ProtocolError(str(e)) from e
