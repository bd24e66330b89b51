"""Structural validation of workflow graphs.

Builds the dependency index the scheduler walks and rejects definitions
that could never finish: duplicate or empty node ids, dangling connection
endpoints and cycles. Feedback connections into a loop node's ``loop``
handle are kept out of the dependency index; iteration is the loop node's
own business.
"""

from collections import deque
from dataclasses import dataclass, field
from typing import Dict, List, Set

from constants import LOOP_HANDLE, LOOP_NODE_TYPES
from models.workflow import ConnectionSpec, WorkflowDefinition
from services.execution.exceptions import WorkflowValidationError


@dataclass
class WorkflowGraph:
    """Dependency index over the non-feedback connections of a definition."""
    node_ids: List[str]
    predecessors: Dict[str, Set[str]] = field(default_factory=dict)
    successors: Dict[str, Set[str]] = field(default_factory=dict)

    def entry_nodes(self) -> List[str]:
        """Nodes with no incoming (non-feedback) connections, in definition order."""
        return [node_id for node_id in self.node_ids if not self.predecessors[node_id]]


def is_feedback_connection(connection: ConnectionSpec, node_types: Dict[str, str]) -> bool:
    return (
        connection.target_handle == LOOP_HANDLE
        and node_types.get(connection.target) in LOOP_NODE_TYPES
    )


def build_graph(definition: WorkflowDefinition) -> WorkflowGraph:
    """Index connections without validating them; unknown endpoints are dropped."""
    node_ids = [node.id for node in definition.nodes]
    node_types = {node.id: node.type for node in definition.nodes}
    graph = WorkflowGraph(
        node_ids=node_ids,
        predecessors={node_id: set() for node_id in node_ids},
        successors={node_id: set() for node_id in node_ids},
    )

    for connection in definition.connections:
        if connection.source not in node_types or connection.target not in node_types:
            continue
        if is_feedback_connection(connection, node_types):
            continue
        graph.predecessors[connection.target].add(connection.source)
        graph.successors[connection.source].add(connection.target)

    return graph


def _find_cycle_members(graph: WorkflowGraph) -> List[str]:
    """Kahn's algorithm; whatever cannot be ordered sits on or behind a cycle."""
    in_degree = {node_id: len(preds) for node_id, preds in graph.predecessors.items()}
    queue = deque(node_id for node_id, degree in in_degree.items() if degree == 0)
    ordered = 0

    while queue:
        node_id = queue.popleft()
        ordered += 1
        for successor in graph.successors[node_id]:
            in_degree[successor] -= 1
            if in_degree[successor] == 0:
                queue.append(successor)

    if ordered == len(graph.node_ids):
        return []
    return [node_id for node_id in graph.node_ids if in_degree[node_id] > 0]


def validate_workflow(definition: WorkflowDefinition) -> WorkflowGraph:
    """Validate a definition and return its dependency graph.

    Raises:
        WorkflowValidationError: listing every problem found
    """
    errors: List[str] = []
    seen: Set[str] = set()

    for index, node in enumerate(definition.nodes):
        if not node.id or not node.id.strip():
            errors.append(f"Node at position {index} has an empty id")
            continue
        if node.id in seen:
            errors.append(f"Duplicate node id '{node.id}'")
        seen.add(node.id)
        if not node.type:
            errors.append(f"Node '{node.id}' has no type")

    for connection in definition.connections:
        if connection.source not in seen:
            errors.append(f"Connection source '{connection.source}' is not a node of this workflow")
        if connection.target not in seen:
            errors.append(f"Connection target '{connection.target}' is not a node of this workflow")

    if errors:
        raise WorkflowValidationError(errors)

    graph = build_graph(definition)
    cycle = _find_cycle_members(graph)
    if cycle:
        raise WorkflowValidationError([f"Workflow graph contains a cycle through: {', '.join(cycle)}"])

    return graph
