"""Pydantic schemas for FastAPI application."""

from pydantic import BaseModel, Field

from glitch.core.graph_model import GraphSnapshot
from glitch.core.layout import LayoutResult, Rect


class HealthResponse(BaseModel):
    """Health check response schema."""

    status: str = Field(default="healthy")
    timestamp: str


class PointModel(BaseModel):
    x: float
    y: float


class SizeModel(BaseModel):
    width: float
    height: float


class BoxModel(BaseModel):
    x: float
    y: float
    width: float
    height: float

    @classmethod
    def from_rect(cls, rect: Rect) -> "BoxModel":
        return cls(x=rect.origin.x, y=rect.origin.y, width=rect.size.x, height=rect.size.y)


class NodeLayoutModel(BaseModel):
    id: int
    layer: int = Field(..., description="Layer index within the node's component")
    order: int = Field(..., description="Position within the layer")
    component: int = Field(..., description="Connected component index within the scope")
    scope: int | None = Field(default=None, description="Enclosing bin, None at top level")
    position: PointModel
    size: SizeModel


class FeedbackEdgeModel(BaseModel):
    source: int
    target: int


class EdgeWaypointsModel(BaseModel):
    source: int
    target: int
    points: list[PointModel]


class LayoutModel(BaseModel):
    """Layout of a render view, keyed by node id."""

    topology_version: int
    nodes: list[NodeLayoutModel] = Field(default_factory=list)
    bins: dict[int, BoxModel] = Field(default_factory=dict)
    feedback_edges: list[FeedbackEdgeModel] = Field(default_factory=list)
    self_loops: list[int] = Field(default_factory=list)
    edge_waypoints: list[EdgeWaypointsModel] = Field(default_factory=list)
    bounds: BoxModel | None = None

    @classmethod
    def from_result(cls, result: LayoutResult) -> "LayoutModel":
        return cls(
            topology_version=result.topology_version,
            nodes=[
                NodeLayoutModel(
                    id=entity,
                    layer=node.layer,
                    order=node.order,
                    component=node.component,
                    scope=node.scope,
                    position=PointModel(x=node.position.x, y=node.position.y),
                    size=SizeModel(width=node.size.x, height=node.size.y),
                )
                for entity, node in result.nodes.items()
            ],
            bins={entity: BoxModel.from_rect(rect) for entity, rect in result.bins.items()},
            feedback_edges=[
                FeedbackEdgeModel(source=u, target=v) for u, v in result.feedback_edges
            ],
            self_loops=list(result.self_loops),
            edge_waypoints=[
                EdgeWaypointsModel(
                    source=u,
                    target=v,
                    points=[PointModel(x=p.x, y=p.y) for p in points],
                )
                for (u, v), points in result.edge_waypoints.items()
            ],
            bounds=BoxModel.from_rect(result.bounds) if result.bounds else None,
        )


class RenderViewResponse(BaseModel):
    """Graph snapshot and its layout, published atomically."""

    snapshot: GraphSnapshot
    layout: LayoutModel
    published_at: float


class StatusResponse(BaseModel):
    connection: str = Field(..., description="disconnected, connected or syncing")
    producers: int = Field(..., description="Currently connected producers")
    reconnects: int
    disconnects: int
    protocol_violations: int
    stale_messages: int
    layout_anomalies: int
    layout_state: str
    topology_version: int
    entities: int
    queued: int


class SizeHint(BaseModel):
    entity: int = Field(..., ge=0)
    width: float = Field(..., gt=0)
    height: float = Field(..., gt=0)


class SizeHintsRequest(BaseModel):
    """Node sizes measured by the renderer."""

    hints: list[SizeHint] = Field(..., description="Sizes to apply")


class AcceptedResponse(BaseModel):
    status: str = Field(default="accepted")
    message: str = ""
