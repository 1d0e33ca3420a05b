from __future__ import annotations

import asyncio
import inspect
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Sequence, Union

from turnflow.logging import get_logger, log_workflow_trace
from turnflow.service.context import ROUND_KEY, SharedContext, output_key
from turnflow.service.errors import MissingHandlerError, WorkflowCancelledError
from turnflow.service.handlers import HandlerTable, NodeHandler
from turnflow.service.planner import Level, build_levels
from turnflow.service.workflow_schema import (
    NodeDefinition,
    WorkflowDefinition,
    coerce_workflow,
)

MAX_TRACE_ENTRIES = 500


@dataclass
class WorkflowResult:
    """Outcome of one run: last non-empty node output plus a context snapshot."""

    output: Any
    context: Dict[str, Any]
    trace: List[Dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {"output": self.output, "context": self.context}


class WorkflowEngine:
    """Runs workflows as leveled DAGs or as bounded multi-round cycles.

    The engine owns scheduling only. What a node does is up to the handler
    registered for its ``type``; handlers receive
    ``(node_id, parameters, shared_context)`` and return any value.
    """

    def __init__(self, *, max_trace_entries: int = MAX_TRACE_ENTRIES) -> None:
        self.logger = get_logger(__name__)
        self.max_trace_entries = max_trace_entries

    async def run_workflow(
        self,
        workflow: Union[WorkflowDefinition, Mapping[str, Any]],
        handlers: HandlerTable,
        initial_context: Optional[Mapping[str, Any]] = None,
        *,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> WorkflowResult:
        """Pick cyclic or DAG mode and run the workflow to completion.

        Cyclic mode needs both at least one edge and a positive
        ``max_rounds``; edges alone still run as a DAG.
        """
        wf = coerce_workflow(workflow)
        if wf.is_cyclic:
            self.logger.info(
                "workflow_run_started",
                workflow_id=wf.id,
                mode="cyclic",
                nodes=len(wf.nodes),
                max_rounds=wf.round_limit,
            )
            return await self.run_rounds(
                wf, handlers, initial_context, cancel_event=cancel_event
            )

        levels = build_levels(wf)
        self.logger.info(
            "workflow_run_started",
            workflow_id=wf.id,
            mode="dag",
            nodes=len(wf.nodes),
            levels=len(levels),
        )
        return await self.run_levels(
            levels, wf, handlers, initial_context, cancel_event=cancel_event
        )

    async def run_levels(
        self,
        levels: Sequence[Level],
        workflow: Union[WorkflowDefinition, Mapping[str, Any]],
        handlers: HandlerTable,
        initial_context: Optional[Mapping[str, Any]] = None,
        *,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> WorkflowResult:
        """Run each level concurrently, levels strictly in order.

        A level is a barrier: the next one starts only after every node of
        the current one settled. Any failure (including a missing handler)
        cancels the rest of the level and aborts the run.
        """
        wf = coerce_workflow(workflow)
        context = SharedContext(initial_context)
        trace: List[Dict[str, Any]] = []
        if not levels:
            return WorkflowResult(output=None, context=context.snapshot(), trace=trace)

        node_map = wf.node_map
        last_output: Any = None
        for level_index, level in enumerate(levels):
            self._check_cancelled(cancel_event, wf.id)
            nodes = [node_map.get(node_id) for node_id in level]
            # Resolve every handler before dispatching anything in the level
            level_handlers = [
                self._resolve_handler(handlers, node) if node is not None else None
                for node in nodes
            ]
            self.logger.debug(
                "workflow_level_started",
                workflow_id=wf.id,
                level=level_index,
                node_ids=list(level),
            )
            tasks = [
                asyncio.create_task(
                    self._execute_node(node, handler, context, trace, level=level_index)
                )
                for node, handler in zip(nodes, level_handlers)
                if node is not None and handler is not None
            ]
            try:
                results = await asyncio.gather(*tasks)
            except BaseException:
                for task in tasks:
                    if not task.done():
                        task.cancel()
                await asyncio.gather(*tasks, return_exceptions=True)
                self._finish_trace(wf.id, trace)
                raise

            for result in results:
                if result is not None:
                    last_output = result

        self._finish_trace(wf.id, trace)
        return WorkflowResult(output=last_output, context=context.snapshot(), trace=trace)

    async def run_rounds(
        self,
        workflow: Union[WorkflowDefinition, Mapping[str, Any]],
        handlers: HandlerTable,
        initial_context: Optional[Mapping[str, Any]] = None,
        *,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> WorkflowResult:
        """Follow the edge chain from the first node for up to ``max_rounds`` rounds.

        A round ends when the walk returns to the start node. A walk that
        reaches an id with no node, a node with no successor, or a node it
        already visited this round without passing the start node breaks
        the chain and ends the whole run.
        """
        wf = coerce_workflow(workflow)
        context = SharedContext(initial_context)
        trace: List[Dict[str, Any]] = []
        if not wf.nodes:
            return WorkflowResult(output=None, context=context.snapshot(), trace=trace)

        max_rounds = wf.round_limit or 0
        node_map = wf.node_map
        successors = wf.successor_map()
        start_node_id = wf.nodes[0].id
        last_output: Any = None

        for round_index in range(max_rounds):
            context.set(ROUND_KEY, round_index)
            current_id: Optional[str] = start_node_id
            visited: set[str] = set()
            broken_at: Optional[str] = None

            while True:
                self._check_cancelled(cancel_event, wf.id)
                node = node_map.get(current_id) if current_id else None
                if node is None or node.id in visited:
                    broken_at = current_id
                    break
                visited.add(node.id)
                handler = self._resolve_handler(handlers, node)
                try:
                    last_output = await self._execute_node(
                        node, handler, context, trace, round=round_index
                    )
                except BaseException:
                    self._finish_trace(wf.id, trace)
                    raise
                current_id = successors.get(node.id)
                if current_id == start_node_id:
                    break

            if broken_at is not None or current_id is None:
                self.logger.info(
                    "workflow_chain_ended",
                    workflow_id=wf.id,
                    round=round_index,
                    stopped_at=broken_at,
                )
                break

        self._finish_trace(wf.id, trace)
        return WorkflowResult(output=last_output, context=context.snapshot(), trace=trace)

    def _resolve_handler(self, handlers: HandlerTable, node: NodeDefinition) -> NodeHandler:
        handler = handlers.get(node.type)
        if handler is None:
            self.logger.error(
                "workflow_missing_handler", node_id=node.id, node_type=node.type
            )
            raise MissingHandlerError(node.type, node.id)
        return handler

    async def _execute_node(
        self,
        node: NodeDefinition,
        handler: NodeHandler,
        context: SharedContext,
        trace: List[Dict[str, Any]],
        **trace_fields: Any,
    ) -> Any:
        started = time.monotonic()
        try:
            result = handler(node.id, dict(node.parameters), context)
            if inspect.isawaitable(result):
                result = await result
        except asyncio.CancelledError:
            self._append_trace(
                trace,
                {
                    "node_id": node.id,
                    "status": "cancelled",
                    "duration_ms": self._elapsed_ms(started),
                    **trace_fields,
                },
            )
            raise
        except Exception as exc:
            self.logger.error(
                "workflow_node_failed",
                node_id=node.id,
                node_type=node.type,
                error=str(exc),
            )
            self._append_trace(
                trace,
                {
                    "node_id": node.id,
                    "status": "error",
                    "error": str(exc),
                    "duration_ms": self._elapsed_ms(started),
                    **trace_fields,
                },
            )
            raise

        context.set(output_key(node.id), result)
        self._append_trace(
            trace,
            {
                "node_id": node.id,
                "status": "ok",
                "duration_ms": self._elapsed_ms(started),
                **trace_fields,
            },
        )
        return result

    def _check_cancelled(self, cancel_event: Optional[asyncio.Event], workflow_id: str) -> None:
        if cancel_event is not None and cancel_event.is_set():
            self.logger.info("workflow_cancelled", workflow_id=workflow_id)
            raise WorkflowCancelledError(
                "workflow run cancelled", detail={"workflow_id": workflow_id}
            )

    def _append_trace(self, trace: List[Dict[str, Any]], entry: Dict[str, Any]) -> None:
        trace.append(entry)
        if len(trace) > self.max_trace_entries:
            # Drop oldest entries so long cyclic runs stay bounded
            del trace[0 : len(trace) - self.max_trace_entries]

    def _finish_trace(self, workflow_id: str, trace: List[Dict[str, Any]]) -> None:
        if trace:
            log_workflow_trace(trace, self.logger.bind(workflow_id=workflow_id))

    @staticmethod
    def _elapsed_ms(started: float) -> int:
        return int((time.monotonic() - started) * 1000)
