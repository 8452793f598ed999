"""Tests for the synthetic demo producer."""

from glitch.cli.demo_producer import DemoPipeline
from glitch.client import RecordingStream
from glitch.core.graph_model import GraphModel
from glitch.core.layout import LayoutEngine


def replay(stream: RecordingStream) -> GraphModel:
    """Apply the stream's full state to a fresh graph model."""
    model = GraphModel()
    for mutation in stream._take_full_state():
        model.apply(mutation)
    return model


class TestDemoPipeline:
    def test_build(self):
        stream = RecordingStream()
        pipeline = DemoPipeline(stream)

        pipeline.build()
        snapshot = replay(stream).snapshot()

        assert len(snapshot.nodes) == 11
        assert len(snapshot.edges) == 9
        assert snapshot.pending_edges == ()
        decodebin = pipeline.elements["decodebin0"]
        assert [b.id for b in snapshot.bins] == [decodebin]
        assert len(snapshot.bins[0].children) == 3

    def test_tee_branch_is_added_and_removed(self):
        stream = RecordingStream()
        pipeline = DemoPipeline(stream)
        pipeline.build()

        pipeline.step(1)
        assert len(replay(stream).snapshot().edges) == 11

        pipeline.step(3)
        snapshot = replay(stream).snapshot()
        assert len(snapshot.nodes) == 11
        assert len(snapshot.edges) == 9

    def test_demo_graph_lays_out(self):
        stream = RecordingStream()
        pipeline = DemoPipeline(stream)
        pipeline.build()
        model = replay(stream)
        engine = LayoutEngine(store=model.store)

        result = engine.relayout(model.snapshot())

        assert engine.anomaly_count == 0
        assert result.feedback_edges == []
        decodebin = pipeline.elements["decodebin0"]
        assert decodebin in result.bins
