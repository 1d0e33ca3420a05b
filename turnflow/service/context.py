from __future__ import annotations

from typing import Any, Dict, Iterator, Mapping, Optional

OUTPUT_KEY_PREFIX = "__output_"
ROUND_KEY = "__round"


def output_key(node_id: str) -> str:
    return f"{OUTPUT_KEY_PREFIX}{node_id}"


class SharedContext:
    """Run-scoped key/value scratchpad threaded through every node handler.

    One instance belongs to exactly one in-flight run, so there is no
    internal locking. Callers get ``snapshot()`` copies, never this object.
    """

    def __init__(self, initial: Optional[Mapping[str, Any]] = None) -> None:
        self._values: Dict[str, Any] = dict(initial) if initial else {}

    def get(self, key: str, default: Any = None) -> Any:
        return self._values.get(key, default)

    def set(self, key: str, value: Any) -> None:
        self._values[key] = value

    def delete(self, key: str) -> None:
        self._values.pop(key, None)

    def update(self, values: Mapping[str, Any]) -> None:
        self._values.update(values)

    def output_of(self, node_id: str, default: Any = None) -> Any:
        """Output recorded for ``node_id`` earlier in this run."""
        return self._values.get(output_key(node_id), default)

    @property
    def round(self) -> Optional[int]:
        return self._values.get(ROUND_KEY)

    def snapshot(self) -> Dict[str, Any]:
        return dict(self._values)

    def __contains__(self, key: object) -> bool:
        return key in self._values

    def __iter__(self) -> Iterator[str]:
        return iter(list(self._values))

    def __len__(self) -> int:
        return len(self._values)
