"""
Graph Store — Holds named, validated workflow graphs.

Responsibility:
- Validate graphs before registration (never partially register)
- Replace graphs wholesale on redefinition
"""

from __future__ import annotations

import logging
from typing import Any

from pydantic import ValidationError as PydanticValidationError

from shared.errors import WorkflowError
from shared.workflow_contracts import WorkflowGraph

logger = logging.getLogger(__name__)


def _format_validation_error(exc: PydanticValidationError) -> str:
    messages: list[str] = []
    for error in exc.errors():
        msg = str(error.get("msg", "")).removeprefix("Value error, ")
        loc = ".".join(str(part) for part in error.get("loc", ()))
        messages.append(f"{loc}: {msg}" if loc else msg)
    return "; ".join(messages)


class GraphStore:
    """In-memory catalog of workflow graphs keyed by name."""

    def __init__(self) -> None:
        self._graphs: dict[str, WorkflowGraph] = {}

    def define(self, name: str, graph: WorkflowGraph | dict[str, Any]) -> WorkflowGraph:
        """Validate and store ``graph`` under ``name`` (overwrite allowed)."""
        key = str(name or "").strip()
        if not key:
            raise WorkflowError("Workflow name is required")

        try:
            if isinstance(graph, WorkflowGraph):
                payload = graph.model_dump(by_alias=True)
            elif isinstance(graph, dict):
                payload = dict(graph)
            else:
                raise WorkflowError(f"Workflow '{key}' must be a WorkflowGraph or a mapping")
            payload["name"] = key
            validated = WorkflowGraph.model_validate(payload)
        except PydanticValidationError as exc:
            raise WorkflowError(f"Invalid workflow '{key}': {_format_validation_error(exc)}") from exc

        replaced = key in self._graphs
        self._graphs[key] = validated
        logger.info(
            "Workflow %s: %s (%d nodes)",
            "replaced" if replaced else "defined",
            key,
            len(validated.nodes),
        )
        return validated.model_copy(deep=True)

    def get(self, name: str) -> WorkflowGraph | None:
        """Return a deep copy; stored graphs change only through ``define``."""
        graph = self._graphs.get(name)
        return graph.model_copy(deep=True) if graph is not None else None

    def list(self) -> list[str]:
        return list(self._graphs.keys())

    def describe(self) -> list[dict[str, Any]]:
        """Catalog entries: name, node count, start node and graph metadata."""
        return [
            {
                "name": graph.name,
                "start": graph.start,
                "node_count": len(graph.nodes),
                **graph.metadata,
            }
            for graph in self._graphs.values()
        ]
