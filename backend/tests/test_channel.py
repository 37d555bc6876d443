import asyncio
import json

import pytest

from channel import Channel
from conftest import FakeSocket, settle
from errors import NoDataError, ProtocolError


def test_request_envelopes_carry_increasing_tags():
    async def scenario():
        ws = FakeSocket()
        channel = Channel(ws)
        tasks = [asyncio.ensure_future(channel.request(p)) for p in ("get_all", {"get": {"eth0": 1}})]
        await settle()
        assert ws.requests == [
            {"tag": 0, "request": "get_all"},
            {"tag": 1, "request": {"get": {"eth0": 1}}},
        ]
        ws.respond(0, "first")
        ws.respond(1, "second")
        return await asyncio.gather(*tasks)

    assert asyncio.run(scenario()) == ["first", "second"]


def test_responses_in_reverse_order_resolve_their_own_requests():
    async def scenario():
        ws = FakeSocket()
        channel = Channel(ws)
        first = asyncio.ensure_future(channel.request("a"))
        second = asyncio.ensure_future(channel.request("b"))
        await settle()
        ws.respond(1, "for b")
        ws.respond(0, "for a")
        return await first, await second, channel.pending

    assert asyncio.run(scenario()) == ("for a", "for b", 0)


def test_malformed_frames_are_ignored():
    async def scenario():
        ws = FakeSocket()
        channel = Channel(ws)
        task = asyncio.ensure_future(channel.request("get_interfaces"))
        await settle()
        ws.push(b"\x00\x01")
        ws.push("not json")
        ws.push(json.dumps([0, "response"]))
        ws.push(json.dumps({"tag": 0}))
        ws.push(json.dumps({"response": "orphan"}))
        ws.push(json.dumps({"tag": 7, "response": "unknown tag"}))
        await settle()
        assert not task.done()
        ws.respond(0, ["eth0"])
        return await task

    assert asyncio.run(scenario()) == ["eth0"]


def test_deeply_nested_frame_does_not_stop_reader():
    async def scenario():
        ws = FakeSocket()
        channel = Channel(ws)
        task = asyncio.ensure_future(channel.request("get_all"))
        await settle()
        ws.push("[" * 100000)
        await settle()
        assert not channel.closed
        ws.respond(0, {"eth0": None})
        return await asyncio.wait_for(task, timeout=1)

    assert asyncio.run(scenario()) == {"eth0": None}


def test_boolean_tags_do_not_match_integer_tags():
    async def scenario():
        ws = FakeSocket()
        channel = Channel(ws)
        first = asyncio.ensure_future(channel.request("a"))
        second = asyncio.ensure_future(channel.request("b"))
        await settle()
        ws.push(json.dumps({"tag": True, "response": "bogus"}))
        ws.push(json.dumps({"tag": False, "response": "bogus"}))
        await settle()
        assert not first.done() and not second.done()
        ws.respond(0, "for a")
        ws.respond(1, "for b")
        return await first, await second

    assert asyncio.run(scenario()) == ("for a", "for b")


def test_dispose_resolves_pending_requests_with_none():
    async def scenario():
        ws = FakeSocket()
        channel = Channel(ws)
        tasks = [asyncio.ensure_future(channel.request(i)) for i in range(3)]
        await settle()
        channel.dispose()
        channel.dispose()
        results = await asyncio.gather(*tasks)
        return results, channel.pending

    assert asyncio.run(scenario()) == ([None, None, None], 0)


def test_responses_after_dispose_are_not_delivered():
    async def scenario():
        ws = FakeSocket()
        channel = Channel(ws)
        task = asyncio.ensure_future(channel.request("get_all"))
        await settle()
        channel.dispose()
        ws.respond(0, {"late": True})
        await settle()
        return await task, channel.closed

    assert asyncio.run(scenario()) == (None, True)


def test_data_requests_raise_on_null():
    async def scenario():
        channel = Channel(FakeSocket(handler=lambda request: None))
        for call in (channel.get_all(), channel.get({"eth0": 1}), channel.get_interfaces()):
            with pytest.raises(NoDataError, match="No data"):
                await call

    asyncio.run(scenario())


def test_data_requests_raise_on_malformed_payload():
    async def scenario():
        channel = Channel(FakeSocket(handler=lambda request: {"eth0": {"history": "nope"}}))
        with pytest.raises(ProtocolError):
            await channel.get_all()

    asyncio.run(scenario())


def test_get_all_parses_segments(capture_server):
    capture_server.add("eth0", [[1000, {"k": 10}]], mac="AA")

    async def scenario():
        channel = Channel(FakeSocket(handler=capture_server.handle))
        return await channel.get_all()

    data = asyncio.run(scenario())
    assert list(data) == ["eth0"]
    assert data["eth0"].mac == "AA"
    assert data["eth0"].history == [(1000, {"k": 10})]


def test_subscription_requests_return_ack(capture_server):
    async def scenario():
        ws = FakeSocket(handler=capture_server.handle)
        channel = Channel(ws)
        acks = [
            await channel.listen_interface("eth0"),
            await channel.not_listen_interface("eth0"),
            await channel.clear_interface("eth0"),
        ]
        return acks, [r["request"] for r in ws.requests]

    acks, requests = asyncio.run(scenario())
    assert acks == [None, None, None]
    assert requests == [
        {"listen_interfaces": "eth0"},
        {"not_listen_interfaces": "eth0"},
        {"clear_interfaces": "eth0"},
    ]


def test_cancelled_request_leaves_no_pending_entry():
    async def scenario():
        channel = Channel(FakeSocket())
        task = asyncio.ensure_future(channel.request("get_all"))
        await settle()
        assert channel.pending == 1
        task.cancel()
        await settle()
        return channel.pending

    assert asyncio.run(scenario()) == 0


def test_wait_closed_returns_when_socket_closes():
    async def scenario():
        ws = FakeSocket()
        channel = Channel(ws)
        assert not channel.closed
        await ws.close()
        await asyncio.wait_for(channel.wait_closed(), timeout=1)
        return channel.closed

    assert asyncio.run(scenario()) is True
