# =============================================================================
# Decision Tree Evaluator
# =============================================================================
#
# Walks a static question/condition/action graph using parameters pulled
# out of the user's query, producing an ordered reasoning trace.
#
#   condition → compare params[field] with the condition value, follow
#               trueChildId / falseChildId
#   question  → read params[extractFrom], map the answer onto
#               childrenByAnswer, stop if it cannot be mapped
#   action    → record and stop (terminal)
#
# The walk is a pure function of (tree, params). A hard step ceiling
# guarantees termination on cyclic or otherwise malformed trees; a child
# id missing from `nodes` simply ends the walk.
# =============================================================================

from __future__ import annotations

import logging
import math
import re

from expert_engine.engine.tree_graph import answer_to_key
from expert_engine.engine.types import (
    Condition,
    ConditionNode,
    DecisionPathEntry,
    DecisionResult,
    DecisionStep,
    DecisionTree,
    QuestionNode,
)

logger = logging.getLogger(__name__)

MAX_STEPS = 50

_UNRESOLVED = "unresolved"


# ---------------------------------------------------------------------------
# Query Parameter Extraction
# ---------------------------------------------------------------------------
# Fixed patterns for structural engineering parameters. The value is the
# first capture group when the pattern has one, else the whole match.
# `grade` carries no IGNORECASE flag; its pattern spells out [mM].
# ---------------------------------------------------------------------------

_PARAM_PATTERNS: dict[str, re.Pattern[str]] = {
    "load_type": re.compile(r"(?:dead|live|wind|seismic|impact)\s*load", re.IGNORECASE),
    "member_type": re.compile(
        r"\b(beam|column|slab|footing|wall|foundation)\b", re.IGNORECASE,
    ),
    "exposure": re.compile(
        r"\b(mild|moderate|severe|very severe|extreme)\b", re.IGNORECASE,
    ),
    "grade": re.compile(r"\b[mM]\s*(\d+)\b"),
    "diameter": re.compile(r"(\d+)\s*(?:mm|cm|m)\s*(?:diameter|dia)", re.IGNORECASE),
}


def extract_query_params(query: str) -> dict[str, str]:
    """
    Pull decision-tree parameters out of free text.

    >>> extract_query_params("Cover for a beam in severe exposure, M30")
    {'member_type': 'beam', 'exposure': 'severe', 'grade': '30'}
    """
    params: dict[str, str] = {}
    for key, pattern in _PARAM_PATTERNS.items():
        match = pattern.search(query)
        if match:
            params[key] = (match.group(1) if match.groups() else None) or match.group(0)
    return params


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def execute_decision_tree(
    tree: DecisionTree,
    params: dict[str, str],
) -> DecisionResult:
    """
    Evaluate `tree` against `params`.

    Args:
        tree: The expert's active decision tree.
        params: Flat parameter map, typically from extract_query_params().

    Returns:
        DecisionResult with every visited step in order and the action
        reached (None when the walk ended before an action).
    """
    path: list[DecisionStep] = []
    node = tree.nodes.get(tree.root_node_id)
    steps_left = MAX_STEPS

    while node is not None and steps_left > 0:
        steps_left -= 1

        if isinstance(node, ConditionNode):
            result = evaluate_condition(node.condition, params.get(node.condition.field))
            path.append(DecisionStep(
                node_id=node.id, label=node.label, type="condition", result=result,
            ))
            next_id = node.true_child_id if result else node.false_child_id
            node = tree.nodes.get(next_id) if next_id else None

        elif isinstance(node, QuestionNode):
            field = node.question.extract_from
            answer = params.get(field) if field else None
            next_id = _resolve_question_child(node, answer) if answer else None

            if answer and next_id:
                path.append(DecisionStep(
                    node_id=node.id, label=node.label, type="question", answer=answer,
                ))
                node = tree.nodes.get(next_id)
            else:
                path.append(DecisionStep(
                    node_id=node.id,
                    label=node.label,
                    type="question",
                    answer=answer or _UNRESOLVED,
                ))
                break

        else:
            path.append(DecisionStep(
                node_id=node.id, label=node.label, type="action", action=node.action,
            ))
            break

    if steps_left == 0 and node is not None:
        logger.warning(
            "Decision tree walk hit the %d-step ceiling (root=%s)",
            MAX_STEPS, tree.root_node_id,
        )

    recommendation = next((s.action for s in path if s.type == "action"), None)
    logger.info(
        "Decision tree evaluated: %d steps, recommendation=%s",
        len(path), recommendation is not None,
    )
    return DecisionResult(path=path, recommendation=recommendation)


def evaluate_condition(condition: Condition, value: str | None) -> bool:
    """
    Compare one parameter value with a condition.

    A missing value is always False. `eq`, `contains` and `in` compare
    trimmed, lower-cased strings; `gt`/`lt` compare numerically and are
    False when either side is not a number.
    """
    if value is None:
        return False

    normalized = value.strip().lower()
    expected = condition.value

    if condition.operator == "eq":
        return normalized == _as_text(expected)
    if condition.operator == "contains":
        return _as_text(expected) in normalized
    if condition.operator == "gt":
        return _as_number(value) > _as_number(expected)
    if condition.operator == "lt":
        return _as_number(value) < _as_number(expected)
    if condition.operator == "in":
        if isinstance(expected, list):
            members = [v.strip().lower() for v in expected]
        elif isinstance(expected, str):
            members = [v.strip().lower() for v in expected.split(",") if v.strip()]
        else:
            return False
        return normalized in members
    return False


def to_decision_path(result: DecisionResult | None) -> list[DecisionPathEntry]:
    """Render a decision result as the 1-based path shown to API consumers."""
    if result is None:
        return []

    entries = []
    for i, step in enumerate(result.path, start=1):
        if step.type == "condition":
            value = "yes" if step.result else "no"
        else:
            value = step.answer
        entries.append(DecisionPathEntry(
            step=i,
            node=step.node_id,
            label=step.label,
            value=value,
            result=step.action.recommendation if step.action else None,
        ))
    return entries


# ---------------------------------------------------------------------------
# Internal Helpers
# ---------------------------------------------------------------------------


def _resolve_question_child(node: QuestionNode, answer: str) -> str | None:
    """
    Map an answer onto one of the node's children.

    Lookup order: exact key, normalized key, normalized stored keys. Legacy
    trees whose question declares no options fall back to a `default` /
    `__default__` edge or to their only edge.
    """
    children = node.children_by_answer
    if not children:
        return None

    if children.get(answer):
        return children[answer]

    key = answer_to_key(answer)
    if not key:
        return None
    if children.get(key):
        return children[key]

    for stored, child_id in children.items():
        if answer_to_key(stored) == key:
            return child_id

    declared = [o for o in (answer_to_key(opt) for opt in node.question.options) if o]
    if not declared:
        if children.get("default"):
            return children["default"]
        if children.get("__default__"):
            return children["__default__"]
        if len(children) == 1:
            return next(iter(children.values()))

    return None


def _as_text(value: str | int | float | list[str]) -> str:
    if isinstance(value, list):
        return ",".join(value).strip().lower()
    return str(value).strip().lower()


def _as_number(value: str | int | float | list[str]) -> float:
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, list):
        return math.nan
    text = value.strip()
    if not text:
        return 0.0
    try:
        return float(text)
    except ValueError:
        return math.nan
