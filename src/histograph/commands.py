"""Graph commands fed to the mutation engine.

Each command is a pydantic model discriminated on ``op``, so a command
sequence round-trips through JSON (one object per line) for the CLI.
"""

import json
from typing import Annotated, Iterable, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter

from .graph import WorkingGraph
from .models import Attributes, VertexId


class _Command(BaseModel):
    model_config = ConfigDict(frozen=True)


class AddVertex(_Command):
    op: Literal["add_vertex"] = "add_vertex"
    vertex_id: VertexId

    def revert(self) -> "RemoveVertex":
        return RemoveVertex(vertex_id=self.vertex_id)


class RemoveVertex(_Command):
    op: Literal["remove_vertex"] = "remove_vertex"
    vertex_id: VertexId

    def revert(self) -> AddVertex:
        # Incident edges removed along with the vertex are not restored
        return AddVertex(vertex_id=self.vertex_id)


class AddEdge(_Command):
    op: Literal["add_edge"] = "add_edge"
    from_vertex: VertexId
    to_vertex: VertexId

    def revert(self) -> "RemoveEdge":
        return RemoveEdge(from_vertex=self.from_vertex, to_vertex=self.to_vertex)


class RemoveEdge(_Command):
    op: Literal["remove_edge"] = "remove_edge"
    from_vertex: VertexId
    to_vertex: VertexId

    def revert(self) -> AddEdge:
        return AddEdge(from_vertex=self.from_vertex, to_vertex=self.to_vertex)


class SetVertexAttributes(_Command):
    """Replace a vertex's attribute mapping. Produces a new vertex version."""

    op: Literal["set_vertex_attributes"] = "set_vertex_attributes"
    vertex_id: VertexId
    attributes: Attributes = Field(default_factory=dict)


class SetEdgeAttributes(_Command):
    """Replace an edge's attribute mapping."""

    op: Literal["set_edge_attributes"] = "set_edge_attributes"
    from_vertex: VertexId
    to_vertex: VertexId
    attributes: Attributes = Field(default_factory=dict)


GraphCommand = Annotated[
    Union[
        AddVertex,
        RemoveVertex,
        AddEdge,
        RemoveEdge,
        SetVertexAttributes,
        SetEdgeAttributes,
    ],
    Field(discriminator="op"),
]

STRUCTURAL_COMMANDS = (AddVertex, RemoveVertex, AddEdge, RemoveEdge)

_adapter: TypeAdapter = TypeAdapter(GraphCommand)


def parse_command(data: dict | str) -> GraphCommand:
    """Parse one command from a dict or a JSON string.

    Raises:
        pydantic.ValidationError: Unknown op or invalid fields
    """
    if isinstance(data, str):
        return _adapter.validate_json(data)
    return _adapter.validate_python(data)


def parse_commands(lines: Iterable[str]) -> list[GraphCommand]:
    """Parse JSON lines, skipping blank lines and '#' comments."""
    commands = []
    for line in lines:
        line = line.strip()
        if not line or line.startswith("#"):
            continue
        commands.append(parse_command(line))
    return commands


def dump_commands(commands: Iterable[GraphCommand]) -> str:
    """Serialize commands as JSON lines."""
    return "".join(json.dumps(c.model_dump(mode="json")) + "\n" for c in commands)


def as_commands(graph: WorkingGraph) -> list[GraphCommand]:
    """Extract a graph as the command sequence that rebuilds it from empty.

    All vertices first, then all edges, then attribute assignments.
    """
    commands: list[GraphCommand] = []
    for vertex_id in graph.vertices():
        commands.append(AddVertex(vertex_id=vertex_id))
    for from_vertex, to_vertex in graph.edges():
        commands.append(AddEdge(from_vertex=from_vertex, to_vertex=to_vertex))
    for vertex_id in graph.vertices():
        attributes = graph.vertex_attributes(vertex_id)
        if attributes:
            commands.append(SetVertexAttributes(vertex_id=vertex_id, attributes=attributes))
    for from_vertex, to_vertex in graph.edges():
        attributes = graph.edge_attributes(from_vertex, to_vertex)
        if attributes:
            commands.append(
                SetEdgeAttributes(from_vertex=from_vertex, to_vertex=to_vertex, attributes=attributes)
            )
    return commands
