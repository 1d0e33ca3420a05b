from __future__ import annotations

from typing import Any, Awaitable, Callable, Dict, Iterator, Mapping, Optional, Union

from turnflow.logging import get_logger
from turnflow.service.context import SharedContext

NodeHandler = Callable[[str, Dict[str, Any], SharedContext], Awaitable[Any]]


class HandlerRegistry(Mapping[str, NodeHandler]):
    """Dispatch table from workflow node type to handler.

    The engine only needs ``Mapping`` lookups, so plain dicts work too;
    this class adds registration helpers and duplicate protection.

    Usage::

        registry = HandlerRegistry()

        @registry.handler("agent")
        async def run_agent(node_id, parameters, context):
            ...
    """

    def __init__(self, handlers: Optional[Mapping[str, NodeHandler]] = None) -> None:
        self.logger = get_logger(__name__)
        self._handlers: Dict[str, NodeHandler] = {}
        for node_type, fn in (handlers or {}).items():
            self.register(node_type, fn)

    def register(
        self, node_type: str, fn: NodeHandler, *, replace: bool = False
    ) -> NodeHandler:
        if not node_type:
            raise ValueError("node_type is required")
        if not callable(fn):
            raise TypeError(f"handler for {node_type} is not callable")
        if node_type in self._handlers and not replace:
            raise ValueError(f"handler already registered for node type {node_type}")
        self._handlers[node_type] = fn
        self.logger.debug("workflow_handler_registered", node_type=node_type)
        return fn

    def handler(self, node_type: str, *, replace: bool = False) -> Callable[[NodeHandler], NodeHandler]:
        def decorator(fn: NodeHandler) -> NodeHandler:
            return self.register(node_type, fn, replace=replace)

        return decorator

    def unregister(self, node_type: str) -> bool:
        return self._handlers.pop(node_type, None) is not None

    def __getitem__(self, node_type: str) -> NodeHandler:
        return self._handlers[node_type]

    def __iter__(self) -> Iterator[str]:
        return iter(self._handlers)

    def __len__(self) -> int:
        return len(self._handlers)


HandlerTable = Union[HandlerRegistry, Mapping[str, NodeHandler]]
