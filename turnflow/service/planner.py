from __future__ import annotations

from typing import Any, List, Mapping, Union

from turnflow.logging import get_logger
from turnflow.service.workflow_schema import (
    WorkflowDefinition,
    coerce_workflow,
    step_node_ids,
)

Level = List[str]

logger = get_logger(__name__)


def build_levels(workflow: Union[WorkflowDefinition, Mapping[str, Any]]) -> List[Level]:
    """Turn a workflow into levels of node ids to run concurrently.

    With an explicit execution order, each step becomes one level after
    dropping ids that are not live nodes; a step left empty is skipped.
    Without one, every node is its own level in ``nodes`` order, which is
    plain sequential execution.
    """
    wf = coerce_workflow(workflow)
    live_ids = set(wf.node_ids)

    if not wf.execution_order:
        return [[node_id] for node_id in wf.node_ids]

    levels: List[Level] = []
    dropped: List[str] = []
    for step in wf.execution_order:
        level: Level = []
        for node_id in step_node_ids(step):
            if node_id not in live_ids:
                dropped.append(node_id)
                continue
            if node_id not in level:
                level.append(node_id)
        if level:
            levels.append(level)

    if dropped:
        logger.info(
            "execution_order_unknown_nodes_dropped",
            workflow_id=wf.id,
            dropped=dropped,
        )
    return levels
