# =============================================================================
# Answer Keys & Tree ↔ Visual Graph Transform
# =============================================================================
#
# The tree editor works on a node/edge graph; the engine evaluates the
# compact DecisionTree form. This module converts between the two.
#
# ANSWER KEYS:
#   label  "  Severe "  → normalized label "Severe" → key "severe"
#   handle "answer-" + percent-encoded key (one per question option)
#
# LAYOUT (tree → graph):
#   BFS from the root assigns depths; nodes at a depth are centred on x=0
#   with 250px spacing, depths are 150px apart. Nodes unreachable from
#   the root are parked in one row two levels below the deepest level.
#
# Round trip graph_to_tree(tree_to_graph(t)) keeps the root, the node set
# and every edge, provided each question's options are unique after
# normalization.
# =============================================================================

from __future__ import annotations

from collections import deque
from typing import Literal
from urllib.parse import quote, unquote

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from expert_engine.engine.types import (
    Action,
    ActionNode,
    ActionSeverity,
    Condition,
    ConditionNode,
    ConditionOperator,
    DecisionNode,
    DecisionTree,
    NodeType,
    Question,
    QuestionNode,
)

NODE_SPACING_X = 250
NODE_SPACING_Y = 150

ANSWER_HANDLE_PREFIX = "answer-"

# Characters encodeURIComponent leaves untouched
_URI_COMPONENT_SAFE = "-_.!~*'()"


# ---------------------------------------------------------------------------
# Answer Keys
# ---------------------------------------------------------------------------


def normalize_answer_label(answer: str) -> str:
    return answer.strip()


def answer_to_key(answer: str) -> str:
    return normalize_answer_label(answer).lower()


def answer_key_to_handle(answer: str) -> str:
    return ANSWER_HANDLE_PREFIX + quote(answer_to_key(answer), safe=_URI_COMPONENT_SAFE)


def answer_handle_to_key(handle: str | None) -> str | None:
    """Decode an edge handle back to an answer key; None if not an answer handle."""
    if not handle or not handle.startswith(ANSWER_HANDLE_PREFIX):
        return None
    encoded = handle[len(ANSWER_HANDLE_PREFIX):]
    if not encoded:
        return ""
    return unquote(encoded).strip().lower()


def normalize_question_options(options: list[str]) -> list[str]:
    """Trim options, drop blanks and keep the first of any case-insensitive duplicates."""
    unique: list[str] = []
    seen: set[str] = set()
    for option in options:
        label = normalize_answer_label(option)
        if not label:
            continue
        key = answer_to_key(label)
        if key in seen:
            continue
        seen.add(key)
        unique.append(label)
    return unique


# ---------------------------------------------------------------------------
# Graph Models
# ---------------------------------------------------------------------------


class _GraphModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class FlowNodeData(_GraphModel):
    label: str = ""
    node_type: NodeType
    is_root: bool = False
    # question
    question_text: str | None = None
    extract_from: str | None = None
    options: list[str] | None = None
    # condition
    condition_field: str | None = None
    condition_operator: ConditionOperator | None = None
    condition_value: str | None = None
    # action
    recommendation: str | None = None
    source_hint: str | None = None
    severity: ActionSeverity | None = None


class Position(_GraphModel):
    x: float
    y: float


class FlowNode(_GraphModel):
    id: str
    type: NodeType
    position: Position
    data: FlowNodeData


class FlowEdge(_GraphModel):
    id: str
    source: str
    target: str
    source_handle: str | None = None
    type: Literal["labeled"] = "labeled"
    label: str = ""


class FlowGraph(_GraphModel):
    nodes: list[FlowNode] = Field(default_factory=list)
    edges: list[FlowEdge] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Tree → Graph
# ---------------------------------------------------------------------------


def tree_to_graph(tree: DecisionTree) -> FlowGraph:
    """Lay out a decision tree as editor nodes and edges."""
    if not tree.root_node_id or not tree.nodes:
        return FlowGraph()

    depth_nodes: dict[int, list[str]] = {}
    visited: set[str] = set()
    queue: deque[tuple[str, int]] = deque([(tree.root_node_id, 0)])

    while queue:
        node_id, depth = queue.popleft()
        if node_id in visited or node_id not in tree.nodes:
            continue
        visited.add(node_id)
        depth_nodes.setdefault(depth, []).append(node_id)

        for child_id in _children(tree.nodes[node_id]):
            if child_id not in visited:
                queue.append((child_id, depth + 1))

    nodes: list[FlowNode] = []
    for depth, node_ids in depth_nodes.items():
        count = len(node_ids)
        for idx, node_id in enumerate(node_ids):
            nodes.append(_flow_node(
                tree.nodes[node_id],
                x=(idx - (count - 1) / 2) * NODE_SPACING_X,
                y=depth * NODE_SPACING_Y,
                is_root=node_id == tree.root_node_id,
            ))

    max_depth = max(depth_nodes, default=0)
    orphans = [n for node_id, n in tree.nodes.items() if node_id not in visited]
    for orphan_index, node in enumerate(orphans):
        nodes.append(_flow_node(
            node,
            x=(orphan_index - 1) * NODE_SPACING_X,
            y=(max_depth + 2) * NODE_SPACING_Y,
            is_root=False,
        ))

    edges: list[FlowEdge] = []
    for node_id, node in tree.nodes.items():
        edges.extend(_edges_for(node_id, node))

    return FlowGraph(nodes=nodes, edges=edges)


def _children(node: DecisionNode) -> list[str]:
    if isinstance(node, ConditionNode):
        return [c for c in (node.true_child_id, node.false_child_id) if c]
    if isinstance(node, QuestionNode):
        option_keys = {
            answer_to_key(o) for o in normalize_question_options(node.question.options)
        }
        return [
            child_id
            for answer, child_id in node.children_by_answer.items()
            if answer_to_key(answer) in option_keys
        ]
    return []


def _flow_node(node: DecisionNode, x: float, y: float, is_root: bool) -> FlowNode:
    data = FlowNodeData(label=node.label, node_type=node.type, is_root=is_root)

    if isinstance(node, QuestionNode):
        data = data.model_copy(update={
            "question_text": node.question.text,
            "extract_from": node.question.extract_from,
            "options": normalize_question_options(node.question.options),
        })
    elif isinstance(node, ConditionNode):
        value = node.condition.value
        data = data.model_copy(update={
            "condition_field": node.condition.field,
            "condition_operator": node.condition.operator,
            "condition_value": ", ".join(value) if isinstance(value, list) else str(value),
        })
    elif isinstance(node, ActionNode):
        data = data.model_copy(update={
            "recommendation": node.action.recommendation,
            "source_hint": node.action.source_hint,
            "severity": node.action.severity,
        })

    return FlowNode(id=node.id, type=node.type, position=Position(x=x, y=y), data=data)


def _edges_for(node_id: str, node: DecisionNode) -> list[FlowEdge]:
    if isinstance(node, ConditionNode):
        edges = []
        if node.true_child_id:
            edges.append(FlowEdge(
                id=f"{node_id}-true-{node.true_child_id}",
                source=node_id,
                source_handle="true",
                target=node.true_child_id,
                label="True",
            ))
        if node.false_child_id:
            edges.append(FlowEdge(
                id=f"{node_id}-false-{node.false_child_id}",
                source=node_id,
                source_handle="false",
                target=node.false_child_id,
                label="False",
            ))
        return edges

    if isinstance(node, QuestionNode) and node.children_by_answer:
        label_by_key = {
            answer_to_key(o): o for o in normalize_question_options(node.question.options)
        }
        edges = []
        used: set[str] = set()
        for answer, child_id in node.children_by_answer.items():
            key = answer_to_key(answer)
            if not key or key in used or key not in label_by_key:
                continue
            edges.append(FlowEdge(
                id=f"{node_id}-{key}-{child_id}",
                source=node_id,
                source_handle=answer_key_to_handle(key),
                target=child_id,
                label=label_by_key[key],
            ))
            used.add(key)
        return edges

    return []


# ---------------------------------------------------------------------------
# Graph → Tree
# ---------------------------------------------------------------------------


def graph_to_tree(graph: FlowGraph) -> DecisionTree:
    """
    Rebuild a DecisionTree from editor nodes and edges.

    Raises:
        ValueError: No node is flagged as root.
    """
    root = next((n for n in graph.nodes if n.data.is_root), None)
    if root is None:
        raise ValueError("No root node found. Please mark one node as root.")

    out_edges: dict[str, list[FlowEdge]] = {}
    for edge in graph.edges:
        out_edges.setdefault(edge.source, []).append(edge)

    nodes: dict[str, DecisionNode] = {}
    for flow_node in graph.nodes:
        data = flow_node.data
        edges = out_edges.get(flow_node.id, [])

        if data.node_type == "question":
            options = normalize_question_options(data.options or [])
            option_keys = {answer_to_key(o) for o in options}
            children: dict[str, str] = {}
            for edge in edges:
                label = normalize_answer_label(edge.label)
                handle_key = answer_handle_to_key(edge.source_handle)
                key = handle_key if handle_key is not None else answer_to_key(label)
                if not key or key not in option_keys or key in children:
                    continue
                children[key] = edge.target

            nodes[flow_node.id] = QuestionNode(
                id=flow_node.id,
                label=data.label,
                question=Question(
                    text=data.question_text or "",
                    options=options,
                    extract_from=data.extract_from or "",
                ),
                children_by_answer=children,
            )

        elif data.node_type == "condition":
            operator = data.condition_operator or "eq"
            raw_value = data.condition_value or ""
            value: str | list[str] = (
                [v.strip() for v in raw_value.split(",") if v.strip()]
                if operator == "in"
                else raw_value
            )
            true_child = false_child = None
            for edge in edges:
                if edge.source_handle == "true" or edge.label == "True":
                    true_child = edge.target
                elif edge.source_handle == "false" or edge.label == "False":
                    false_child = edge.target

            nodes[flow_node.id] = ConditionNode(
                id=flow_node.id,
                label=data.label,
                condition=Condition(
                    field=data.condition_field or "", operator=operator, value=value,
                ),
                true_child_id=true_child,
                false_child_id=false_child,
            )

        else:
            nodes[flow_node.id] = ActionNode(
                id=flow_node.id,
                label=data.label,
                action=Action(
                    recommendation=data.recommendation or "",
                    source_hint=data.source_hint or "",
                    severity=data.severity or "info",
                ),
            )

    return DecisionTree(root_node_id=root.id, nodes=nodes)
