"""Normalization of untrusted workflow definitions.

Workflows arrive from storage, HTTP bodies or an external router as plain
JSON. Everything here is lenient about shape: legacy aliases are accepted,
non-list ``nodes``/``edges`` become empty lists and malformed execution
order steps are dropped rather than rejected.
"""

from __future__ import annotations

from typing import Any, Dict, List, Mapping, Optional, Tuple, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


class ParallelStep(BaseModel):
    """A group of node ids meant to run concurrently."""

    parallel: List[str]

    model_config = ConfigDict(extra="ignore")


ExecutionStep = Union[str, ParallelStep]


def parse_execution_order(raw: Any) -> Optional[List[ExecutionStep]]:
    """Keep bare string ids and ``{"parallel": [...]}`` groups; drop the rest.

    Non-string members of a group are discarded, and a group left empty is
    discarded with them. Returns ``None`` when ``raw`` is not a list.
    """
    if raw is None or not isinstance(raw, (list, tuple)):
        return None
    steps: List[ExecutionStep] = []
    for item in raw:
        if isinstance(item, str):
            if item:
                steps.append(item)
        elif isinstance(item, ParallelStep):
            if item.parallel:
                steps.append(item)
        elif isinstance(item, Mapping) and isinstance(item.get("parallel"), (list, tuple)):
            members = [x for x in item["parallel"] if isinstance(x, str) and x]
            if members:
                steps.append(ParallelStep(parallel=members))
    return steps


def step_node_ids(step: ExecutionStep) -> List[str]:
    if isinstance(step, ParallelStep):
        return list(step.parallel)
    return [step]


def _as_text(value: Any) -> str:
    """Scalar ids and types as strings; anything else becomes empty."""
    if isinstance(value, str):
        return value
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return str(value)
    return ""


def _as_coordinate(value: Any) -> float:
    if isinstance(value, bool):
        return 0.0
    try:
        return float(value)
    except (TypeError, ValueError):
        return 0.0


class NodeDefinition(BaseModel):
    id: str
    type: str = ""
    position: Tuple[float, float] = (0.0, 0.0)
    parameters: Dict[str, Any] = Field(default_factory=dict)

    model_config = ConfigDict(extra="ignore")

    @model_validator(mode="before")
    @classmethod
    def _legacy_config_alias(cls, data: Any) -> Any:
        if isinstance(data, Mapping):
            data = dict(data)
            data["id"] = _as_text(data.get("id"))
            # An untyped node still reaches the engine and fails on handler lookup
            data["type"] = _as_text(data.get("type"))
            if data.get("parameters") is None:
                data["parameters"] = data.get("config")
        return data

    @field_validator("parameters", mode="before")
    @classmethod
    def _coerce_parameters(cls, value: Any) -> Dict[str, Any]:
        if not isinstance(value, Mapping):
            return {}
        return dict(value)

    @field_validator("position", mode="before")
    @classmethod
    def _coerce_position(cls, value: Any) -> Tuple[float, float]:
        if isinstance(value, Mapping):
            return (_as_coordinate(value.get("x")), _as_coordinate(value.get("y")))
        if isinstance(value, (list, tuple)) and len(value) >= 2:
            return (_as_coordinate(value[0]), _as_coordinate(value[1]))
        return (0.0, 0.0)


class EdgeDefinition(BaseModel):
    id: str = ""
    source: str = ""
    target: str = ""

    model_config = ConfigDict(extra="ignore")

    @model_validator(mode="before")
    @classmethod
    def _legacy_from_to_alias(cls, data: Any) -> Any:
        if isinstance(data, Mapping):
            data = dict(data)
            source = data.get("source")
            target = data.get("target")
            data["source"] = _as_text(data.get("from") if source is None else source)
            data["target"] = _as_text(data.get("to") if target is None else target)
            data["id"] = _as_text(data.get("id"))
        return data


def _only_objects(value: Any, model: type) -> List[Any]:
    if not isinstance(value, (list, tuple)):
        return []
    return [item for item in value if isinstance(item, (Mapping, model))]


class WorkflowDefinition(BaseModel):
    """Read-only input to one run."""

    id: str = ""
    name: Optional[str] = None
    nodes: List[NodeDefinition] = Field(default_factory=list)
    edges: List[EdgeDefinition] = Field(default_factory=list)
    execution_order: Optional[List[ExecutionStep]] = Field(
        default=None, alias="executionOrder"
    )
    max_rounds: Optional[int] = Field(default=None, alias="maxRounds")

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    @field_validator("id", mode="before")
    @classmethod
    def _coerce_id(cls, value: Any) -> str:
        return _as_text(value)

    @field_validator("name", mode="before")
    @classmethod
    def _coerce_name(cls, value: Any) -> Optional[str]:
        return value if isinstance(value, str) else None

    @field_validator("nodes", mode="before")
    @classmethod
    def _coerce_nodes(cls, value: Any) -> List[Any]:
        return _only_objects(value, NodeDefinition)

    @field_validator("edges", mode="before")
    @classmethod
    def _coerce_edges(cls, value: Any) -> List[Any]:
        return _only_objects(value, EdgeDefinition)

    @field_validator("execution_order", mode="before")
    @classmethod
    def _coerce_execution_order(cls, value: Any) -> Any:
        return parse_execution_order(value)

    @field_validator("max_rounds", mode="before")
    @classmethod
    def _coerce_max_rounds(cls, value: Any) -> Optional[int]:
        if value is None or isinstance(value, bool):
            return None
        try:
            return int(value)
        except (TypeError, ValueError):
            return None

    @property
    def node_map(self) -> Dict[str, NodeDefinition]:
        return {node.id: node for node in self.nodes}

    @property
    def node_ids(self) -> List[str]:
        return [node.id for node in self.nodes]

    @property
    def round_limit(self) -> Optional[int]:
        """Positive round cap, or ``None`` when the workflow has none."""
        if self.max_rounds is not None and self.max_rounds > 0:
            return self.max_rounds
        return None

    @property
    def is_cyclic(self) -> bool:
        return bool(self.edges) and self.round_limit is not None

    def successor_map(self) -> Dict[str, str]:
        """First outgoing edge per source wins; later edges from it are ignored."""
        successors: Dict[str, str] = {}
        for edge in self.edges:
            if edge.source and edge.target and edge.source not in successors:
                successors[edge.source] = edge.target
        return successors


def coerce_workflow(workflow: Union[WorkflowDefinition, Mapping[str, Any]]) -> WorkflowDefinition:
    if isinstance(workflow, WorkflowDefinition):
        return workflow
    if not isinstance(workflow, Mapping):
        raise TypeError("workflow must be a mapping or WorkflowDefinition")
    return WorkflowDefinition.model_validate(dict(workflow))
