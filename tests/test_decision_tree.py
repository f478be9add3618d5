# =============================================================================
# Unit Tests: Decision Tree Evaluator
# =============================================================================
#
# Pure functions over (tree, params); no services involved.
# =============================================================================

from expert_engine.engine.decision_tree import (
    MAX_STEPS,
    evaluate_condition,
    execute_decision_tree,
    extract_query_params,
    to_decision_path,
)
from expert_engine.engine.types import (
    Action,
    ActionNode,
    Condition,
    ConditionNode,
    DecisionTree,
    Question,
    QuestionNode,
)


def _cover_tree() -> DecisionTree:
    """exposure question → grade condition → two actions."""
    return DecisionTree.model_validate({
        "rootNodeId": "q1",
        "nodes": {
            "q1": {
                "id": "q1",
                "type": "question",
                "label": "Exposure class",
                "question": {
                    "text": "What is the exposure?",
                    "options": ["Severe", "Mild"],
                    "extractFrom": "exposure",
                },
                "childrenByAnswer": {"severe": "c1", "mild": "a2"},
            },
            "c1": {
                "id": "c1",
                "type": "condition",
                "label": "Grade above M25",
                "condition": {"field": "grade", "operator": "gt", "value": 25},
                "trueChildId": "a1",
                "falseChildId": "a2",
            },
            "a1": {
                "id": "a1",
                "type": "action",
                "label": "45mm cover",
                "action": {
                    "recommendation": "Use 45mm nominal cover",
                    "sourceHint": "Table 16",
                    "severity": "warning",
                },
            },
            "a2": {
                "id": "a2",
                "type": "action",
                "label": "30mm cover",
                "action": {"recommendation": "Use 30mm nominal cover"},
            },
        },
    })


# ---------------------------------------------------------------------------
# Test: Parameter Extraction
# ---------------------------------------------------------------------------


class TestExtractQueryParams:

    def test_structural_query(self):
        params = extract_query_params("Cover for a beam in severe exposure, M30")
        assert params == {"member_type": "beam", "exposure": "severe", "grade": "30"}

    def test_load_type_keeps_whole_match(self):
        params = extract_query_params("design for wind load on the wall")
        assert params["load_type"] == "wind load"
        assert params["member_type"] == "wall"

    def test_diameter(self):
        assert extract_query_params("a 16 mm dia bar")["diameter"] == "16"

    def test_no_match(self):
        assert extract_query_params("hello there") == {}


# ---------------------------------------------------------------------------
# Test: Conditions
# ---------------------------------------------------------------------------


class TestEvaluateCondition:

    def test_missing_value_is_false(self):
        assert evaluate_condition(Condition(field="x", operator="eq", value="a"), None) is False

    def test_eq_is_case_insensitive(self):
        assert evaluate_condition(Condition(operator="eq", value="Severe"), " severe ")

    def test_contains(self):
        assert evaluate_condition(Condition(operator="contains", value="load"), "Wind Load")

    def test_numeric_comparisons(self):
        assert evaluate_condition(Condition(operator="gt", value=25), "30")
        assert not evaluate_condition(Condition(operator="lt", value="25"), "30")

    def test_non_numeric_comparison_is_false(self):
        assert not evaluate_condition(Condition(operator="gt", value=25), "abc")
        assert not evaluate_condition(Condition(operator="lt", value=25), "abc")

    def test_in_with_list_and_csv(self):
        assert evaluate_condition(Condition(operator="in", value=["Beam", "Slab"]), "slab")
        assert evaluate_condition(Condition(operator="in", value="beam, slab"), "Beam")
        assert not evaluate_condition(Condition(operator="in", value=5), "5")


# ---------------------------------------------------------------------------
# Test: Tree Walk
# ---------------------------------------------------------------------------


class TestExecuteDecisionTree:

    def test_reaches_action(self):
        result = execute_decision_tree(_cover_tree(), {"exposure": "Severe", "grade": "30"})

        assert [s.node_id for s in result.path] == ["q1", "c1", "a1"]
        assert result.path[0].answer == "Severe"
        assert result.path[1].result is True
        assert result.recommendation is not None
        assert result.recommendation.recommendation == "Use 45mm nominal cover"
        assert result.recommendation.severity == "warning"

    def test_false_branch(self):
        result = execute_decision_tree(_cover_tree(), {"exposure": "severe", "grade": "20"})
        assert [s.node_id for s in result.path] == ["q1", "c1", "a2"]
        assert result.path[1].result is False

    def test_unanswered_question_stops(self):
        result = execute_decision_tree(_cover_tree(), {})
        assert len(result.path) == 1
        assert result.path[0].answer == "unresolved"
        assert result.recommendation is None

    def test_unmapped_answer_stops_with_answer(self):
        result = execute_decision_tree(_cover_tree(), {"exposure": "extreme"})
        assert len(result.path) == 1
        assert result.path[0].answer == "extreme"

    def test_missing_root_gives_empty_path(self):
        tree = DecisionTree(root_node_id="nope", nodes={})
        result = execute_decision_tree(tree, {"a": "b"})
        assert result.path == []
        assert result.recommendation is None

    def test_missing_child_ends_walk(self):
        tree = DecisionTree(
            root_node_id="c1",
            nodes={"c1": ConditionNode(
                id="c1",
                condition=Condition(field="x", operator="eq", value="1"),
                true_child_id="ghost",
            )},
        )
        result = execute_decision_tree(tree, {"x": "1"})
        assert len(result.path) == 1

    def test_cycle_is_bounded(self):
        tree = DecisionTree(
            root_node_id="a",
            nodes={
                "a": ConditionNode(id="a", condition=Condition(field="f", operator="eq", value="x"),
                                   true_child_id="b", false_child_id="b"),
                "b": ConditionNode(id="b", condition=Condition(field="f", operator="eq", value="x"),
                                   true_child_id="a", false_child_id="a"),
            },
        )
        result = execute_decision_tree(tree, {"f": "x"})
        assert len(result.path) == MAX_STEPS

    def test_legacy_question_uses_default_edge(self):
        tree = DecisionTree(
            root_node_id="q",
            nodes={
                "q": QuestionNode(
                    id="q",
                    question=Question(text="?", extract_from="member_type"),
                    children_by_answer={"default": "a"},
                ),
                "a": ActionNode(id="a", action=Action(recommendation="Check span")),
            },
        )
        result = execute_decision_tree(tree, {"member_type": "column"})
        assert [s.node_id for s in result.path] == ["q", "a"]

    def test_declared_options_disable_fallback(self):
        tree = DecisionTree(
            root_node_id="q",
            nodes={
                "q": QuestionNode(
                    id="q",
                    question=Question(text="?", options=["Beam"], extract_from="member_type"),
                    children_by_answer={"beam": "a"},
                ),
                "a": ActionNode(id="a"),
            },
        )
        result = execute_decision_tree(tree, {"member_type": "column"})
        assert [s.node_id for s in result.path] == ["q"]

    def test_same_input_same_output(self):
        tree = _cover_tree()
        params = {"exposure": "severe", "grade": "30"}
        assert execute_decision_tree(tree, params) == execute_decision_tree(tree, params)


class TestToDecisionPath:

    def test_none_is_empty(self):
        assert to_decision_path(None) == []

    def test_renders_steps(self):
        result = execute_decision_tree(_cover_tree(), {"exposure": "severe", "grade": "30"})
        path = to_decision_path(result)

        assert [e.step for e in path] == [1, 2, 3]
        assert path[0].value == "severe"
        assert path[1].value == "yes"
        assert path[2].result == "Use 45mm nominal cover"
