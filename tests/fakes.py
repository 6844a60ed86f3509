"""
Test doubles for the signaling channel and the peer-connection capability.
"""

import asyncio
import inspect
from collections import defaultdict
from types import SimpleNamespace

from aiortc import RTCSessionDescription

from backend import RoomRegistry
from routers.signaling import SignalingRouter


async def settle(rounds: int = 30):
    """Let scheduled handler and negotiation tasks run to completion."""
    for _ in range(rounds):
        await asyncio.sleep(0)


class RecordingNotifier:
    """Stands in for the connection manager and records every delivery."""

    def __init__(self, offline=()):
        self.sent = []
        self.offline = set(offline)

    def send(self, member_id, event, data=None):
        if member_id in self.offline:
            return False
        self.sent.append((member_id, event, data))
        return True

    def to(self, member_id):
        return [(event, data) for uid, event, data in self.sent if uid == member_id]

    def count(self, event):
        return sum(1 for _, name, _ in self.sent if name == event)


class FakeEmitter:
    def __init__(self):
        self._handlers = defaultdict(list)

    def on(self, event, handler=None):
        self._handlers[event].append(handler)
        return handler

    def emit(self, event, *args):
        for handler in list(self._handlers[event]):
            handler(*args)


class FakeTrack(FakeEmitter):
    def __init__(self, kind="video"):
        super().__init__()
        self.kind = kind
        self.stopped = False

    def stop(self):
        if not self.stopped:
            self.stopped = True
            self.emit("ended")


class FakeSender:
    def __init__(self, track, supports_parameters=True, fail_set_parameters=False):
        self.track = track
        self.applied = None
        self.fail_set_parameters = fail_set_parameters
        if not supports_parameters:
            self.getParameters = None
            self.setParameters = None

    def getParameters(self):
        return SimpleNamespace(encodings=[SimpleNamespace(maxFramerate=None, maxBitrate=None)])

    async def setParameters(self, params):
        if self.fail_set_parameters:
            raise RuntimeError("setParameters rejected")
        self.applied = params


class FakePeerConnection(FakeEmitter):
    """Records every primitive call; steps can be made to fail or to block."""

    def __init__(self, fail_on=(), block_on=(), supports_parameters=True, fail_set_parameters=False):
        super().__init__()
        self.fail_on = set(fail_on)
        self.gates = {step: asyncio.Event() for step in block_on}
        self.supports_parameters = supports_parameters
        self.fail_set_parameters = fail_set_parameters
        self.transceivers = []
        self.senders = []
        self.localDescription = None
        self.remoteDescription = None
        self.candidates = []
        self.iceConnectionState = "new"
        self.closed = False

    def release(self, step):
        self.gates.pop(step).set()

    async def _step(self, name):
        gate = self.gates.get(name)
        if gate is not None:
            await gate.wait()
        if self.closed:
            raise RuntimeError("RTCPeerConnection is closed")
        if name in self.fail_on:
            raise RuntimeError(f"{name} failed")

    def addTransceiver(self, track, direction="sendrecv"):
        if "addTransceiver" in self.fail_on:
            raise RuntimeError("addTransceiver failed")
        self.transceivers.append((track, direction))
        self.senders.append(FakeSender(track, self.supports_parameters, self.fail_set_parameters))

    def getSenders(self):
        return list(self.senders)

    async def createOffer(self):
        await self._step("createOffer")
        return RTCSessionDescription(sdp="v=0\r\no=- offer\r\n", type="offer")

    async def createAnswer(self):
        await self._step("createAnswer")
        return RTCSessionDescription(sdp="v=0\r\no=- answer\r\n", type="answer")

    async def setLocalDescription(self, description):
        await self._step("setLocalDescription")
        self.localDescription = description

    async def setRemoteDescription(self, description):
        await self._step("setRemoteDescription")
        self.remoteDescription = description

    async def addIceCandidate(self, candidate):
        await self._step("addIceCandidate")
        self.candidates.append(candidate)

    async def close(self):
        self.closed = True
        self.set_ice_state("closed")

    def set_ice_state(self, state):
        self.iceConnectionState = state
        self.emit("iceconnectionstatechange")


class PeerConnectionFactory:
    """Hands out FakePeerConnections and remembers them in creation order."""

    def __init__(self, **options):
        self.options = options
        self.created = []
        self.next_options = []

    def __call__(self):
        options = self.next_options.pop(0) if self.next_options else self.options
        pc = FakePeerConnection(**options)
        self.created.append(pc)
        return pc


class FakeChannel:
    """Client channel double: records emits and lets tests deliver server events."""

    def __init__(self, member_id="me"):
        self.member_id = member_id
        self.handlers = defaultdict(list)
        self.emitted = []
        self.replies = {}
        self.tasks = []
        self.closed = False

    def on(self, event, handler):
        self.handlers[event].append(handler)

    def emit(self, event, data=None, ack=None):
        self.emitted.append((event, data))

    async def request(self, event, data=None, timeout=None):
        self.emitted.append((event, data))
        reply = self.replies.get(event)
        if isinstance(reply, asyncio.Future):
            reply = await reply
        if isinstance(reply, Exception):
            raise reply
        return reply

    def deliver(self, event, data=None):
        for handler in list(self.handlers[event]):
            result = handler(data)
            if inspect.isawaitable(result):
                self.tasks.append(asyncio.ensure_future(result))

    def sent(self, event):
        return [data for name, data in self.emitted if name == event]

    async def close(self):
        self.closed = True


class LoopbackHub:
    """The real registry and router, delivering straight into client channels."""

    def __init__(self):
        self.channels = {}
        self.registry = RoomRegistry(self)
        self.router = SignalingRouter(self.registry, self)

    def send(self, member_id, event, data=None):
        channel = self.channels.get(member_id)
        if channel is None:
            return False
        channel.deliver(event, data)
        return True

    def connect(self, member_id):
        channel = HubChannel(self, member_id)
        self.channels[member_id] = channel
        return channel

    def disconnect(self, member_id):
        self.channels.pop(member_id, None)
        self.router.disconnect(member_id)


class HubChannel(FakeChannel):
    def __init__(self, hub, member_id):
        super().__init__(member_id)
        self.hub = hub

    def emit(self, event, data=None, ack=None):
        super().emit(event, data, ack)
        self.hub.router.dispatch(self.member_id, event, data)

    async def request(self, event, data=None, timeout=None):
        self.emitted.append((event, data))
        return self.hub.router.dispatch(self.member_id, event, data)
