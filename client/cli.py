import argparse
import asyncio
import os
import signal
from typing import Dict

from aiortc.contrib.media import MediaBlackhole, MediaPlayer, MediaRecorder

from constants import DEFAULT_FRAME_RATE, LOG_FILE, LOG_LEVEL, SIGNALING_URL
from logging_config import get_logger, setup_logging
from client.channel import DISCONNECT, SignalingChannel
from client.session import ScreenShareSession

logger = get_logger(__name__)


class RemoteSinks:
    """One media sink per remote sharer: a recording file or a blackhole."""

    def __init__(self, record_dir=None):
        self.record_dir = record_dir
        self.sinks: Dict[str, object] = {}
        self._tasks = set()

    def _spawn(self, coro):
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    def on_remote_track(self, remote_id, track):
        if track.kind != "video":
            return
        self.on_remote_removed(remote_id)
        if self.record_dir:
            path = os.path.join(self.record_dir, f"{remote_id}.mp4")
            sink = MediaRecorder(path)
            logger.info(f"Recording {remote_id} to {path}")
        else:
            sink = MediaBlackhole()
        sink.addTrack(track)
        self.sinks[remote_id] = sink
        self._spawn(sink.start())

    def on_remote_removed(self, remote_id):
        sink = self.sinks.pop(remote_id, None)
        if sink is not None:
            self._spawn(sink.stop())

    async def close(self):
        for remote_id in list(self.sinks):
            self.on_remote_removed(remote_id)
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Join a screen-share room as a sharer or viewer")
    parser.add_argument("--url", default=SIGNALING_URL, help="Signaling WebSocket URL")
    parser.add_argument("--room", required=True, help="Room ID (3-32 letters, numbers, - or _)")
    parser.add_argument("--share", metavar="SOURCE", help="ffmpeg input to share, e.g. :0.0 with --format x11grab")
    parser.add_argument("--format", dest="input_format", help="ffmpeg input format of SOURCE")
    parser.add_argument("--fps", type=int, default=DEFAULT_FRAME_RATE, help=(
        "Target frame rate. Also selects a max bitrate, applied only where the "
        "peer connection supports RTP sender parameters (aiortc does not)"
    ))
    parser.add_argument("--record", metavar="DIR", help="Record incoming shares into DIR")
    return parser


def make_capture(source, input_format):
    async def capture(frame_rate):
        player = MediaPlayer(source, format=input_format, options={"framerate": str(frame_rate)})
        if player.video is None:
            raise RuntimeError(f"No video stream in {source}")
        return [player.video]

    return capture


async def run(args):
    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop.set)
        except NotImplementedError:
            pass

    sinks = RemoteSinks(args.record)
    channel = SignalingChannel(args.url)
    channel.on(DISCONNECT, lambda _: stop.set())
    await channel.connect()

    session = ScreenShareSession(
        channel,
        on_remote_track=sinks.on_remote_track,
        on_remote_removed=sinks.on_remote_removed,
    )
    try:
        await session.join_room(args.room)
        if args.share:
            await session.start_sharing(make_capture(args.share, args.input_format), args.fps)
        await stop.wait()
    finally:
        logger.info("Shutting down")
        await session.close()
        await sinks.close()


def main():
    args = build_parser().parse_args()
    setup_logging(log_level=LOG_LEVEL, log_file=LOG_FILE)
    try:
        asyncio.run(run(args))
    except KeyboardInterrupt:
        logger.info("Interrupted")


if __name__ == "__main__":
    main()
