"""
Workflow graph validation.

Checks structural invariants, detects cycles using Kahn's algorithm and
verifies personalization tokens in email nodes.
"""

from collections import defaultdict, deque
from dataclasses import dataclass, field
from typing import Any, Iterable, Optional

from automation_engine.core.models import (
    BranchLabel,
    Edge,
    NodeCategory,
    SendEmailNode,
    WorkflowGraph,
)
from automation_engine.template.variables import VariableRenderer


@dataclass
class ValidationError:
    """Represents a single validation error."""

    code: str
    message: str
    node_id: Optional[str] = None
    edge_id: Optional[str] = None
    details: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "code": self.code,
            "message": self.message,
            "node_id": self.node_id,
            "edge_id": self.edge_id,
        }


@dataclass
class ValidationResult:
    """Result of graph validation."""

    is_valid: bool
    errors: list[ValidationError] = field(default_factory=list)
    warnings: list[ValidationError] = field(default_factory=list)

    # Populated when the graph is acyclic
    topological_order: list[str] = field(default_factory=list)

    def add_error(
        self,
        code: str,
        message: str,
        node_id: Optional[str] = None,
        edge_id: Optional[str] = None,
        **details: Any,
    ) -> None:
        """Add a validation error."""
        self.errors.append(ValidationError(code, message, node_id, edge_id, details))
        self.is_valid = False

    def add_warning(
        self,
        code: str,
        message: str,
        node_id: Optional[str] = None,
        edge_id: Optional[str] = None,
        **details: Any,
    ) -> None:
        """Add a validation warning."""
        self.warnings.append(ValidationError(code, message, node_id, edge_id, details))

    @property
    def error_codes(self) -> list[str]:
        return [error.code for error in self.errors]


class WorkflowValidationError(Exception):
    """Raised when a workflow graph fails validation."""

    def __init__(self, errors: list[ValidationError]):
        self.errors = errors
        summary = "; ".join(f"{e.code}: {e.message}" for e in errors[:5])
        super().__init__(f"Workflow graph is invalid ({len(errors)} errors): {summary}")


class GraphValidator:
    """
    Validates workflow graph structure.

    Uses Kahn's algorithm for topological sorting and cycle detection, and a
    BFS from the trigger for reachability.
    """

    def __init__(self, graph: WorkflowGraph, renderer: Optional[VariableRenderer] = None):
        self.graph = graph
        self.renderer = renderer or VariableRenderer()
        self._node_map: dict[str, Any] = {}
        self._adjacency_list: dict[str, list[str]] = defaultdict(list)
        self._outgoing: dict[str, list[Edge]] = defaultdict(list)
        self._incoming: dict[str, list[Edge]] = defaultdict(list)

    def validate(self) -> ValidationResult:
        """
        Perform full validation of the graph.

        Returns:
            ValidationResult with errors, warnings and topological order
        """
        result = ValidationResult(is_valid=True)

        self._validate_unique_ids(result)
        self._build_graph(result)
        self._validate_trigger(result)
        self._validate_outgoing_edges(result)
        self._validate_no_self_loops(result)
        self._detect_cycles_and_compute_order(result)
        self._check_unreachable_nodes(result)
        self._validate_variables(result)

        return result

    def _validate_unique_ids(self, result: ValidationResult) -> None:
        seen_nodes: set[str] = set()
        for node in self.graph.nodes:
            if node.id in seen_nodes:
                result.add_error(
                    code="DUPLICATE_NODE_ID",
                    message=f"Node id '{node.id}' is used more than once",
                    node_id=node.id,
                )
            seen_nodes.add(node.id)

        seen_edges: set[str] = set()
        for edge in self.graph.edges:
            if edge.id in seen_edges:
                result.add_error(
                    code="DUPLICATE_EDGE_ID",
                    message=f"Edge id '{edge.id}' is used more than once",
                    edge_id=edge.id,
                )
            seen_edges.add(edge.id)

    def _build_graph(self, result: ValidationResult) -> None:
        """Index nodes and keep only edges whose endpoints exist."""
        for node in self.graph.nodes:
            self._node_map.setdefault(node.id, node)

        for edge in self.graph.edges:
            missing = [
                endpoint for endpoint in (edge.source, edge.target)
                if endpoint not in self._node_map
            ]
            if missing:
                result.add_error(
                    code="UNKNOWN_EDGE_ENDPOINT",
                    message=f"Edge '{edge.id}' references non-existent node(s) {missing}",
                    edge_id=edge.id,
                    missing=missing,
                )
                continue

            self._outgoing[edge.source].append(edge)
            self._incoming[edge.target].append(edge)
            self._adjacency_list[edge.source].append(edge.target)

    def _validate_trigger(self, result: ValidationResult) -> None:
        triggers = [
            node for node in self._node_map.values()
            if node.category == NodeCategory.TRIGGER
        ]

        if not triggers:
            result.add_error(
                code="MISSING_TRIGGER",
                message="Workflow must contain exactly one trigger node",
            )
            return

        if len(triggers) > 1:
            result.add_error(
                code="MULTIPLE_TRIGGERS",
                message=f"Workflow has {len(triggers)} trigger nodes: {[t.id for t in triggers]}",
                trigger_nodes=[t.id for t in triggers],
            )

        for trigger in triggers:
            if self._incoming.get(trigger.id):
                result.add_error(
                    code="TRIGGER_HAS_INCOMING",
                    message=f"Trigger node '{trigger.id}' cannot have incoming edges",
                    node_id=trigger.id,
                )
            if len(self._outgoing.get(trigger.id, [])) > 1:
                result.add_error(
                    code="TRIGGER_MULTIPLE_OUTGOING",
                    message=f"Trigger node '{trigger.id}' can have at most one outgoing edge",
                    node_id=trigger.id,
                )

    def _validate_outgoing_edges(self, result: ValidationResult) -> None:
        """Branch labels on condition edges, single successor elsewhere."""
        for node_id, node in self._node_map.items():
            edges = self._outgoing.get(node_id, [])

            if node.category == NodeCategory.CONDITION:
                labels = sorted(e.branch.value for e in edges if e.branch is not None)
                if len(edges) != 2 or labels != [BranchLabel.FALSE.value, BranchLabel.TRUE.value]:
                    result.add_error(
                        code="CONDITION_BRANCHES",
                        message=(
                            f"Condition node '{node_id}' needs exactly one 'true' and one "
                            f"'false' outgoing edge (found {len(edges)})"
                        ),
                        node_id=node_id,
                    )
                continue

            for edge in edges:
                if edge.branch is not None:
                    result.add_error(
                        code="UNEXPECTED_BRANCH_LABEL",
                        message=f"Edge '{edge.id}' leaves non-condition node '{node_id}' but has a branch label",
                        node_id=node_id,
                        edge_id=edge.id,
                    )

            if node.category == NodeCategory.ACTION and len(edges) > 1:
                result.add_error(
                    code="ACTION_MULTIPLE_OUTGOING",
                    message=f"Action node '{node_id}' can have at most one outgoing edge",
                    node_id=node_id,
                )

    def _validate_no_self_loops(self, result: ValidationResult) -> None:
        for edge in self.graph.edges:
            if edge.source == edge.target:
                result.add_error(
                    code="SELF_LOOP",
                    message=f"Edge '{edge.id}' connects node '{edge.source}' to itself",
                    node_id=edge.source,
                    edge_id=edge.id,
                )

    def _detect_cycles_and_compute_order(self, result: ValidationResult) -> None:
        """
        Detect cycles using Kahn's algorithm and compute topological order.

        Self loops are reported separately and excluded here.
        """
        in_degree = {node_id: 0 for node_id in self._node_map}
        for source, targets in self._adjacency_list.items():
            for target in targets:
                if target != source:
                    in_degree[target] += 1

        queue = deque(node_id for node_id, degree in in_degree.items() if degree == 0)
        topological_order: list[str] = []

        while queue:
            node_id = queue.popleft()
            topological_order.append(node_id)

            for neighbor in self._adjacency_list[node_id]:
                if neighbor == node_id:
                    continue
                in_degree[neighbor] -= 1
                if in_degree[neighbor] == 0:
                    queue.append(neighbor)

        if len(topological_order) != len(self._node_map):
            remaining = [n for n in self._node_map if n not in set(topological_order)]
            cycle_nodes = self._find_cycle_nodes(remaining)
            result.add_error(
                code="CYCLE_DETECTED",
                message=f"Workflow contains a cycle involving nodes: {cycle_nodes}",
                node_id=cycle_nodes[0] if cycle_nodes else None,
                cycle_nodes=cycle_nodes,
            )
        else:
            result.topological_order = topological_order

    def _find_cycle_nodes(self, candidates: list[str]) -> list[str]:
        """Find nodes that form a cycle using an iterative DFS."""
        candidate_set = set(candidates)
        visited: set[str] = set()

        for start in candidates:
            if start in visited:
                continue
            path: list[str] = []
            on_path: set[str] = set()
            stack: list[tuple[str, Iterable[str]]] = [(start, iter(self._adjacency_list[start]))]
            path.append(start)
            on_path.add(start)
            visited.add(start)

            while stack:
                node_id, neighbors = stack[-1]
                advanced = False
                for neighbor in neighbors:
                    if neighbor == node_id or neighbor not in candidate_set:
                        continue
                    if neighbor in on_path:
                        return path[path.index(neighbor):]
                    if neighbor not in visited:
                        visited.add(neighbor)
                        path.append(neighbor)
                        on_path.add(neighbor)
                        stack.append((neighbor, iter(self._adjacency_list[neighbor])))
                        advanced = True
                        break
                if not advanced:
                    stack.pop()
                    on_path.discard(path.pop())

        return candidates

    def _check_unreachable_nodes(self, result: ValidationResult) -> None:
        """Every non-trigger node must be reachable from the trigger."""
        trigger = self.graph.trigger_node
        if trigger is None:
            return

        reachable = {trigger.id}
        queue = deque([trigger.id])
        while queue:
            node_id = queue.popleft()
            for neighbor in self._adjacency_list[node_id]:
                if neighbor not in reachable:
                    reachable.add(neighbor)
                    queue.append(neighbor)

        for node_id, node in self._node_map.items():
            if node_id in reachable or node.category == NodeCategory.TRIGGER:
                continue
            result.add_error(
                code="UNREACHABLE_NODE",
                message=f"Node '{node_id}' is not reachable from the trigger",
                node_id=node_id,
            )

    def _validate_variables(self, result: ValidationResult) -> None:
        for node in self._node_map.values():
            if not isinstance(node, SendEmailNode):
                continue
            for field_name in ("subject", "content"):
                validation = self.renderer.validate(getattr(node, field_name))
                for token in validation.invalid_variables:
                    result.add_error(
                        code="INVALID_VARIABLE",
                        message=f"Unknown variable '{{{{{token}}}}}' in {field_name} of node '{node.id}'",
                        node_id=node.id,
                        variable=token,
                        field=field_name,
                    )
                for token in validation.missing_variables:
                    result.add_warning(
                        code="VARIABLE_WITHOUT_SAMPLE",
                        message=f"Variable '{token}' in {field_name} of node '{node.id}' has no preview value",
                        node_id=node.id,
                        variable=token,
                    )


def validate_graph(
    nodes: list[Any],
    edges: list[Any],
    renderer: Optional[VariableRenderer] = None,
) -> ValidationResult:
    """
    Validate a graph given as node and edge lists.

    Accepts model instances or raw dicts.
    """
    graph = WorkflowGraph(nodes=nodes, edges=edges)
    return GraphValidator(graph, renderer).validate()


def ensure_valid(graph: WorkflowGraph, renderer: Optional[VariableRenderer] = None) -> ValidationResult:
    """
    Validate a graph and raise if it has errors.

    Raises:
        WorkflowValidationError: If any error was found
    """
    result = GraphValidator(graph, renderer).validate()
    if not result.is_valid:
        raise WorkflowValidationError(result.errors)
    return result
