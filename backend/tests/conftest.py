import asyncio
import json

import pytest

from models import PacketHeader

_END = object()


class FakeSocket:
    """In-memory stand-in for a websockets client connection."""

    def __init__(self, handler=None):
        self.handler = handler
        self.sent = []
        self.closed = False
        self._inbox = asyncio.Queue()

    async def send(self, text):
        self.sent.append(text)
        if self.handler is not None:
            envelope = json.loads(text)
            self.respond(envelope["tag"], self.handler(envelope["request"]))

    def push(self, message):
        self._inbox.put_nowait(message)

    def respond(self, tag, response):
        self.push(json.dumps({"tag": tag, "response": response}))

    def fail(self, error):
        """Make the reader raise ``error`` while the socket stays open."""
        self._inbox.put_nowait(error)

    @property
    def requests(self):
        return [json.loads(text) for text in self.sent]

    async def close(self):
        if not self.closed:
            self.closed = True
            self._inbox.put_nowait(_END)

    def __aiter__(self):
        return self

    async def __anext__(self):
        item = await self._inbox.get()
        if item is _END:
            raise StopAsyncIteration
        if isinstance(item, BaseException):
            raise item
        return item


class FakeCaptureServer:
    """Answers RPCs the way the capture server does."""

    def __init__(self, interfaces=("eth0", "lo")):
        self.interfaces = list(interfaces)
        self.state = {}
        self.requests = []

    def add(self, name, history, mac="AA", closed=False):
        self.state[name] = {"history": [list(e) for e in history], "closed": closed, "mac": mac}

    def handle(self, request):
        self.requests.append(request)
        if request == "get_all":
            return {name: self._full(name) for name in self.state}
        if request == "get_interfaces":
            return list(self.interfaces)
        if isinstance(request, dict):
            if "get" in request:
                limits = request["get"]
                return {
                    name: self._part(name, limits[name]) if name in limits else self._full(name)
                    for name in self.state
                }
            if "listen_interfaces" in request:
                name = request["listen_interfaces"]
                if name in self.state:
                    self.state[name]["closed"] = False
                else:
                    self.add(name, [])
            elif "not_listen_interfaces" in request:
                name = request["not_listen_interfaces"]
                if name in self.state:
                    self.state[name]["closed"] = True
            elif "clear_interfaces" in request:
                self.state.pop(request["clear_interfaces"], None)
        return None

    def _full(self, name):
        return dict(self.state[name])

    def _part(self, name, limit):
        out = dict(self.state[name])
        history = []
        fresh = False
        for timestamp, counters in self.state[name]["history"]:
            if not fresh and timestamp <= limit:
                history.append([timestamp, None])
            else:
                fresh = True
                history.append([timestamp, counters])
        out["history"] = history
        return out


def header_key(source="AA", destination="BB", protocol=0x0800, ip_protocol=6,
               ip_source="10.0.0.1", ip_destination="10.0.0.2"):
    ip_header = None
    if ip_protocol is not None:
        ip_header = {"protocol": ip_protocol, "source": ip_source, "destination": ip_destination}
    return PacketHeader.model_validate({
        "protocol": protocol,
        "source": source,
        "destination": destination,
        "ip_header": ip_header,
    }).to_key()


async def settle(rounds=10):
    for _ in range(rounds):
        await asyncio.sleep(0)


@pytest.fixture
def capture_server():
    return FakeCaptureServer()
