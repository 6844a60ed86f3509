import asyncio
import unittest

from client.session import ScreenShareSession
from errors import AlreadyInRoom, AlreadySharing, InvalidRoomId, NoResponse, NotAMember
from fakes import FakeChannel, FakeTrack, PeerConnectionFactory, settle


class TestScreenShareSession(unittest.IsolatedAsyncioTestCase):

    def setUp(self):
        self.channel = FakeChannel("me")
        self.factory = PeerConnectionFactory()
        self.session = ScreenShareSession(self.channel, pc_factory=self.factory, request_timeout=0.2)
        self.tracks = []

    async def asyncTearDown(self):
        await self.session.close()

    async def capture(self, frame_rate):
        self.tracks = [FakeTrack("video")]
        return self.tracks

    async def join(self, room_id="demo-1", existing=()):
        task = asyncio.ensure_future(self.session.join_room(room_id))
        await settle()
        self.channel.deliver("existing-users", list(existing))
        self.channel.deliver("room-joined", room_id.strip())
        return await task

    async def test_join_room(self):
        self.assertEqual(await self.join(" demo-1 "), "demo-1")
        self.assertEqual(self.channel.sent("join-room"), ["demo-1"])
        self.assertEqual(self.session.current_room, "demo-1")

    async def test_join_room_error(self):
        task = asyncio.ensure_future(self.session.join_room("demo-1"))
        await settle()
        self.channel.deliver("room-error", "Invalid room ID.")

        with self.assertRaises(InvalidRoomId) as ctx:
            await task
        self.assertEqual(ctx.exception.reason, "Invalid room ID.")
        self.assertIsNone(self.session.current_room)

    async def test_invalid_room_is_rejected_locally(self):
        with self.assertRaises(InvalidRoomId):
            await self.session.join_room("no")
        self.assertEqual(self.channel.emitted, [])

    async def test_join_without_reply_times_out(self):
        with self.assertRaises(NoResponse):
            await self.session.join_room("demo-1")
        self.assertIsNone(self.session.current_room)

    async def test_start_sharing_offers_to_members(self):
        await self.join(existing=["alice"])
        self.channel.replies["request-share"] = {"ok": True}

        await self.session.start_sharing(self.capture, 90)
        await settle()

        self.assertTrue(self.session.is_sharing)
        self.assertEqual(self.channel.sent("request-share"), [{"roomId": "demo-1"}])
        self.assertEqual([data["targetId"] for data in self.channel.sent("offer")], ["alice"])
        encoding = self.factory.created[0].senders[0].applied.encodings[0]
        self.assertEqual(encoding.maxFramerate, 90)
        self.assertEqual(encoding.maxBitrate, 16_000_000)

    async def test_start_sharing_requires_room(self):
        with self.assertRaises(NotAMember):
            await self.session.start_sharing(self.capture)
        self.assertEqual(self.channel.emitted, [])

    async def test_start_sharing_blocked_by_known_sharer(self):
        await self.join(existing=["alice"])
        self.channel.deliver("current-sharer", "alice")

        with self.assertRaises(AlreadySharing):
            await self.session.start_sharing(self.capture)
        self.assertEqual(self.channel.sent("request-share"), [])

    async def test_server_rejection_maps_to_error(self):
        await self.join()
        for code, error in (("AlreadySharing", AlreadySharing), ("NotAMember", NotAMember)):
            self.channel.replies["request-share"] = {"ok": False, "code": code, "reason": "nope"}
            with self.assertRaises(error) as ctx:
                await self.session.start_sharing(self.capture)
            self.assertEqual(ctx.exception.reason, "nope")
        self.assertEqual(self.tracks, [])
        self.assertFalse(self.session.share_reservation)

    async def test_missing_ack_is_no_response(self):
        await self.join()
        self.channel.replies["request-share"] = NoResponse()
        with self.assertRaises(NoResponse):
            await self.session.start_sharing(self.capture)

        self.channel.replies["request-share"] = None
        with self.assertRaises(NoResponse):
            await self.session.start_sharing(self.capture)

    async def test_capture_failure_releases_reservation(self):
        await self.join()
        self.channel.replies["request-share"] = {"ok": True}

        async def denied(frame_rate):
            raise PermissionError("capture denied")

        with self.assertRaises(PermissionError):
            await self.session.start_sharing(denied)

        self.assertEqual(self.channel.sent("cancel-share"), ["demo-1"])
        self.assertFalse(self.session.share_reservation)
        self.assertFalse(self.session.is_sharing)

    async def test_stop_sharing(self):
        await self.join(existing=["alice"])
        self.channel.replies["request-share"] = {"ok": True}
        await self.session.start_sharing(self.capture)
        await settle()

        self.session.stop_sharing()
        self.session.stop_sharing()
        await settle()

        self.assertTrue(self.tracks[0].stopped)
        self.assertEqual(self.channel.sent("stop-sharing"), ["demo-1"])
        self.assertFalse(self.session.is_sharing)
        self.assertEqual(self.session.peers.peers, {})
        self.assertTrue(self.factory.created[0].closed)

    async def test_track_ending_stops_sharing(self):
        await self.join()
        self.channel.replies["request-share"] = {"ok": True}
        await self.session.start_sharing(self.capture)

        self.tracks[0].stop()

        self.assertFalse(self.session.is_sharing)
        self.assertEqual(self.channel.sent("stop-sharing"), ["demo-1"])

    async def test_second_join_is_refused(self):
        await self.join()
        with self.assertRaises(AlreadyInRoom):
            await self.session.join_room("other-room")
        self.assertEqual(self.channel.sent("join-room"), ["demo-1"])
        self.assertEqual(self.session.current_room, "demo-1")

    async def test_join_allowed_again_after_room_error(self):
        task = asyncio.ensure_future(self.session.join_room("demo-1"))
        await settle()
        self.channel.deliver("room-error", "Invalid room ID.")
        with self.assertRaises(InvalidRoomId):
            await task

        self.assertEqual(await self.join("demo-2"), "demo-2")

    async def test_stop_during_capture_discards_tracks(self):
        await self.join(existing=["alice"])
        self.channel.replies["request-share"] = {"ok": True}
        release = asyncio.Event()
        captured = FakeTrack("video")

        async def slow_capture(frame_rate):
            await release.wait()
            return [captured]

        task = asyncio.ensure_future(self.session.start_sharing(slow_capture))
        await settle()
        self.assertTrue(self.session.share_reservation)

        self.session.stop_sharing()
        release.set()
        await task
        await settle()

        self.assertFalse(self.session.is_sharing)
        self.assertFalse(self.session.share_reservation)
        self.assertTrue(captured.stopped)
        self.assertEqual(self.session.peers.peers, {})
        self.assertEqual(self.session.peers.local_tracks, [])
        self.assertEqual(self.channel.sent("stop-sharing"), ["demo-1"])
        self.assertEqual(self.channel.sent("offer"), [])

    async def test_stop_while_request_in_flight_releases_slot(self):
        await self.join()
        reply = asyncio.get_running_loop().create_future()
        self.channel.replies["request-share"] = reply

        task = asyncio.ensure_future(self.session.start_sharing(self.capture))
        await settle()
        self.session.stop_sharing()
        reply.set_result({"ok": True})
        await task

        self.assertEqual(self.tracks, [])
        self.assertFalse(self.session.is_sharing)
        self.assertFalse(self.session.share_reservation)
        self.assertEqual(self.channel.sent("cancel-share"), ["demo-1"])

    async def test_overlapping_start_calls_capture_once(self):
        await self.join(existing=["alice"])
        reply = asyncio.get_running_loop().create_future()
        self.channel.replies["request-share"] = reply
        captures = []

        async def counting_capture(frame_rate):
            captures.append(FakeTrack("video"))
            return [captures[-1]]

        first = asyncio.ensure_future(self.session.start_sharing(counting_capture))
        second = asyncio.ensure_future(self.session.start_sharing(counting_capture))
        await settle()
        reply.set_result({"ok": True})
        await first
        await second

        self.assertEqual(len(self.channel.sent("request-share")), 1)
        self.assertEqual(len(captures), 1)
        self.assertEqual(self.session.peers.local_tracks, captures)
        self.assertTrue(self.session.is_sharing)

    async def test_start_allowed_again_after_rejection(self):
        await self.join()
        self.channel.replies["request-share"] = {"ok": False, "code": "AlreadySharing", "reason": "busy"}
        with self.assertRaises(AlreadySharing):
            await self.session.start_sharing(self.capture)

        self.channel.replies["request-share"] = {"ok": True}
        await self.session.start_sharing(self.capture)
        self.assertTrue(self.session.is_sharing)


if __name__ == "__main__":
    unittest.main()
