import asyncio
import json
import unittest
from unittest.mock import AsyncMock, Mock, patch

from client.channel import DISCONNECT, SignalingChannel
from errors import NoResponse
from fakes import settle


class FakeSocket:
    """Server end of the socket: tests push frames in and read what was sent."""

    def __init__(self):
        self.inbox = asyncio.Queue()
        self.sent = []
        self.closed = False

    def push(self, event, data=None, **extra):
        self.inbox.put_nowait(json.dumps({"event": event, "data": data, **extra}))

    def hang_up(self):
        self.inbox.put_nowait(None)

    def __aiter__(self):
        return self

    async def __anext__(self):
        raw = await self.inbox.get()
        if raw is None:
            raise StopAsyncIteration
        return raw

    async def send(self, raw):
        self.sent.append(json.loads(raw))

    async def close(self):
        self.closed = True
        self.hang_up()


class TestSignalingChannel(unittest.IsolatedAsyncioTestCase):

    async def asyncSetUp(self):
        self.socket = FakeSocket()
        self.socket.push("connected", {"id": "abc123"})
        self.channel = SignalingChannel("ws://test/ws", request_timeout=0.2)
        with patch("client.channel.websockets.connect", AsyncMock(return_value=self.socket)):
            self.member_id = await self.channel.connect()

    async def asyncTearDown(self):
        await self.channel.close()

    async def test_connect_assigns_member_id(self):
        self.assertEqual(self.member_id, "abc123")
        self.assertEqual(self.channel.member_id, "abc123")

    async def test_emit_keeps_call_order(self):
        self.channel.emit("join-room", "demo-1")
        self.channel.emit("stop-sharing", "demo-1")
        await settle()
        self.assertEqual(self.socket.sent, [
            {"event": "join-room", "data": "demo-1"},
            {"event": "stop-sharing", "data": "demo-1"},
        ])

    async def test_request_resolves_with_ack_body(self):
        task = asyncio.ensure_future(self.channel.request("request-share", {"roomId": "demo-1"}))
        await settle()

        frame = self.socket.sent[-1]
        self.assertEqual(frame["event"], "request-share")
        self.socket.push("ack", {"ok": True}, ack=frame["ack"])

        self.assertEqual(await task, {"ok": True})
        self.assertEqual(self.channel.pending, {})

    async def test_request_without_ack_times_out(self):
        with self.assertRaises(NoResponse):
            await self.channel.request("request-share", {"roomId": "demo-1"}, timeout=0.05)

    async def test_events_reach_plain_and_coroutine_handlers(self):
        plain = Mock()
        received = []

        async def handler(data):
            received.append(data)

        self.channel.on("user-joined", plain)
        self.channel.on("user-joined", handler)
        self.socket.push("user-joined", "bob")
        await settle()

        plain.assert_called_once_with("bob")
        self.assertEqual(received, ["bob"])

    async def test_failing_handler_does_not_stop_reader(self):
        self.channel.on("user-left", Mock(side_effect=RuntimeError("boom")))
        after = Mock()
        self.channel.on("user-joined", after)

        self.socket.push("user-left", "bob")
        self.socket.push("not json at all")
        self.socket.inbox.put_nowait("{broken")
        self.socket.push("user-joined", "carol")
        await settle()

        after.assert_called_once_with("carol")

    async def test_hang_up_fails_pending_requests(self):
        disconnected = Mock()
        self.channel.on(DISCONNECT, disconnected)
        task = asyncio.ensure_future(self.channel.request("request-share", {"roomId": "demo-1"}, timeout=5))
        await settle()

        self.socket.hang_up()

        with self.assertRaises(NoResponse):
            await task
        disconnected.assert_called_once_with(None)


if __name__ == "__main__":
    unittest.main()
