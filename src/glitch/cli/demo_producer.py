"""Synthetic producer for trying the viewer without an instrumented pipeline.

Streams a small playback pipeline (source, a decode bin, video and audio
branches) and then keeps mutating it: state changes, a branch that is
plugged and unplugged, and property updates.

    glitch-demo --url ws://127.0.0.1:9870/ws/producer --interval 1.0
"""

import argparse
import asyncio
import itertools
import logging
import random

from glitch.client import RecordingStream
from glitch.client.recording_stream import DEFAULT_URL
from glitch.core.components import (
    Bin,
    Link,
    Node,
    NodeState,
    Parent,
    Port,
    PortDirection,
    Properties,
    State,
)

logger = logging.getLogger(__name__)


class DemoPipeline:
    def __init__(self, stream: RecordingStream):
        self.stream = stream
        self._ids = itertools.count(1)
        self.elements: dict[str, int] = {}
        self.pads: dict[tuple[str, str], int] = {}

    def element(self, name: str, kind: str, parent: str | None = None, is_bin: bool = False) -> int:
        entity = next(self._ids)
        self.stream.insert(entity, Node(name=name, kind=kind))
        if is_bin:
            self.stream.insert(entity, Bin())
        if parent is not None:
            self.stream.insert(entity, Parent(parent=self.elements[parent]))
        self.stream.insert(entity, State(state=NodeState.READY))
        self.elements[name] = entity
        return entity

    def pad(self, element: str, name: str, direction: PortDirection) -> int:
        entity = next(self._ids)
        self.stream.insert(
            entity, Port(direction=direction, owner=self.elements[element], name=name)
        )
        self.pads[(element, name)] = entity
        return entity

    def link(self, src: str, sink: str, src_pad: str = "src", sink_pad: str = "sink") -> None:
        out = self.pads.get((src, src_pad)) or self.pad(src, src_pad, PortDirection.OUTPUT)
        inp = self.pads.get((sink, sink_pad)) or self.pad(sink, sink_pad, PortDirection.INPUT)
        self.stream.insert(out, Link(peer=inp))

    def unlink(self, src: str, src_pad: str = "src") -> None:
        self.stream.remove(self.pads[(src, src_pad)], Link)

    def remove(self, name: str) -> None:
        entity = self.elements.pop(name)
        for key in [k for k in self.pads if k[0] == name]:
            self.stream.destroy_entity(self.pads.pop(key))
        self.stream.destroy_entity(entity)

    def set_state(self, state: NodeState) -> None:
        for entity in self.elements.values():
            self.stream.insert(entity, State(state=state))

    def build(self) -> None:
        self.element("filesrc0", "filesrc")
        self.stream.insert(
            self.elements["filesrc0"], Properties(values={"location": "/tmp/demo.mp4"})
        )
        self.element("decodebin0", "decodebin", is_bin=True)
        self.element("typefind", "typefind", parent="decodebin0")
        self.element("qtdemux0", "qtdemux", parent="decodebin0")
        self.element("h264parse0", "h264parse", parent="decodebin0")
        self.element("queue0", "queue")
        self.element("videoconvert0", "videoconvert")
        self.element("autovideosink0", "autovideosink")
        self.element("queue1", "queue")
        self.element("audioconvert0", "audioconvert")
        self.element("autoaudiosink0", "autoaudiosink")

        self.link("filesrc0", "typefind")
        self.link("typefind", "qtdemux0")
        self.link("qtdemux0", "h264parse0", src_pad="video_0")
        self.link("h264parse0", "queue0")
        self.link("queue0", "videoconvert0")
        self.link("videoconvert0", "autovideosink0")
        self.link("qtdemux0", "queue1", src_pad="audio_0")
        self.link("queue1", "audioconvert0")
        self.link("audioconvert0", "autoaudiosink0")

    def step(self, tick: int) -> None:
        """One round of live changes."""
        if tick % 4 == 0:
            self.set_state(random.choice([NodeState.PAUSED, NodeState.PLAYING]))
        elif tick % 4 == 1 and "tee0" not in self.elements:
            self.unlink("videoconvert0")
            self.element("tee0", "tee")
            self.element("fakesink0", "fakesink")
            self.link("videoconvert0", "tee0")
            self.link("tee0", "autovideosink0", src_pad="src_0")
            self.link("tee0", "fakesink0", src_pad="src_1")
        elif tick % 4 == 3 and "tee0" in self.elements:
            self.remove("tee0")
            self.remove("fakesink0")
            self.link("videoconvert0", "autovideosink0")
        else:
            self.stream.insert(
                self.elements["queue0"],
                Properties(values={"current-level-buffers": str(random.randint(0, 200))}),
            )


async def run_demo(url: str, interval: float, iterations: int | None) -> None:
    async with RecordingStream(url, producer_name="glitch-demo") as stream:
        pipeline = DemoPipeline(stream)
        pipeline.build()
        pipeline.set_state(NodeState.PLAYING)
        logger.info(f"Demo pipeline built with {len(pipeline.elements)} elements")

        ticks = itertools.count() if iterations is None else range(iterations)
        for tick in ticks:
            await asyncio.sleep(interval)
            pipeline.step(tick)
            logger.info(f"Demo tick {tick}: {stream.get_status()}")


def main():
    """Main entry point for the glitch-demo command."""
    parser = argparse.ArgumentParser(description="Glitch demo producer")
    parser.add_argument(
        "--url", default=DEFAULT_URL, help=f"Consumer WebSocket URL (default: {DEFAULT_URL})"
    )
    parser.add_argument(
        "--interval", type=float, default=1.0, help="Seconds between live changes"
    )
    parser.add_argument(
        "--iterations", type=int, default=None, help="Stop after this many changes"
    )
    args = parser.parse_args()

    logging.basicConfig(
        level=logging.INFO, format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    )
    try:
        asyncio.run(run_demo(args.url, args.interval, args.iterations))
    except KeyboardInterrupt:
        logger.info("Demo stopped")


if __name__ == "__main__":
    main()
