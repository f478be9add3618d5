# =============================================================================
# Engine Value Types
# =============================================================================
#
# Every value produced by the reasoning core is a frozen pydantic model.
# Processing stages never mutate their input; they build a new value from
# the previous one (e.g. the hallucination guard returns a new
# CitationResult rather than editing the one it was given).
#
# Decision trees are stored as camelCase JSON (rootNodeId, trueChildId,
# childrenByAnswer, ...). The tree models accept both camelCase and
# snake_case and dump camelCase with `by_alias=True`.
# =============================================================================

from __future__ import annotations

from typing import Annotated, Literal

from pydantic import AliasChoices, BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

Confidence = Literal["high", "medium", "low"]
Severity = Literal["error", "warning", "info", "pass"]
Compliance = Literal["compliant", "partially-compliant", "non-compliant"]
CollaborationMode = Literal["debate", "consensus", "review"]
NodeType = Literal["question", "condition", "action"]
ConditionOperator = Literal["eq", "gt", "lt", "contains", "in"]
ActionSeverity = Literal["info", "warning", "critical"]


class _Frozen(BaseModel):
    model_config = ConfigDict(frozen=True)


# ---------------------------------------------------------------------------
# Citations
# ---------------------------------------------------------------------------


class CitationEntry(_Frozen):
    """One resolved `[Source N]` marker, deduplicated per chunk."""

    id: str
    document: str
    document_id: str
    chunk_id: str
    chunk_index: int
    source_rank: int
    similarity: float
    file_type: str | None = None
    page: int | None = None
    section: str | None = None
    excerpt: str


class CitationResult(_Frozen):
    """Grounding verdict for one generated answer."""

    cleaned_answer: str
    citations: list[CitationEntry] = Field(default_factory=list)
    confidence: Confidence
    phantom_count: int = 0
    real_ref_count: int = 0
    unresolved_refs: list[int] = Field(default_factory=list)
    used_source_indices: list[int] = Field(default_factory=list)
    total_refs: int = 0


# ---------------------------------------------------------------------------
# Decision Trees
# ---------------------------------------------------------------------------


class _TreeModel(BaseModel):
    model_config = ConfigDict(
        frozen=True,
        alias_generator=to_camel,
        populate_by_name=True,
    )


class Condition(_TreeModel):
    field: str = ""
    operator: ConditionOperator = "eq"
    value: str | int | float | list[str] = ""


class Question(_TreeModel):
    text: str = ""
    options: list[str] = Field(default_factory=list)
    extract_from: str | None = None


class Action(_TreeModel):
    recommendation: str = ""
    source_hint: str = ""
    severity: ActionSeverity = "info"


class QuestionNode(_TreeModel):
    id: str
    type: Literal["question"] = "question"
    label: str = ""
    question: Question = Field(default_factory=Question)
    children_by_answer: dict[str, str] = Field(default_factory=dict)


class ConditionNode(_TreeModel):
    id: str
    type: Literal["condition"] = "condition"
    label: str = ""
    condition: Condition = Field(default_factory=Condition)
    true_child_id: str | None = None
    false_child_id: str | None = None


class ActionNode(_TreeModel):
    id: str
    type: Literal["action"] = "action"
    label: str = ""
    action: Action = Field(default_factory=Action)


DecisionNode = Annotated[
    QuestionNode | ConditionNode | ActionNode,
    Field(discriminator="type"),
]


class DecisionTree(_TreeModel):
    """A static question/condition/action graph keyed by node id."""

    root_node_id: str
    nodes: dict[str, DecisionNode]


class DecisionStep(_Frozen):
    """One visited node plus the branch taken."""

    node_id: str
    label: str
    type: NodeType
    result: bool | None = None
    answer: str | None = None
    action: Action | None = None


class DecisionResult(_Frozen):
    path: list[DecisionStep] = Field(default_factory=list)
    recommendation: Action | None = None


class DecisionPathEntry(_Frozen):
    """A decision step as shown to API consumers."""

    step: int
    node: str
    label: str
    value: str | None = None
    result: str | None = None


# ---------------------------------------------------------------------------
# Collaboration
# ---------------------------------------------------------------------------


class ExpertResponse(_Frozen):
    plugin_slug: str
    plugin_name: str
    domain: str
    answer: str
    citations: list[CitationEntry] = Field(default_factory=list)
    confidence: Confidence
    revised: bool = False
    revision_note: str | None = None


class CollaborationRound(_Frozen):
    round_number: int
    responses: list[ExpertResponse]


class ConflictPosition(_Frozen):
    expert: str = ""
    stance: str = ""


class ConsensusConflict(_Frozen):
    topic: str = ""
    positions: list[ConflictPosition] = Field(default_factory=list)
    resolved: bool = False
    resolution: str | None = None


class ExpertContribution(_Frozen):
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    expert: str
    domain: str = ""
    key_points: list[str] = Field(
        default_factory=list,
        validation_alias=AliasChoices("key_points", "keyPoints"),
    )


class ConsensusData(_Frozen):
    answer: str
    confidence: Confidence
    agreement_level: float = Field(ge=0.0, le=1.0)
    citations: list[CitationEntry] = Field(default_factory=list)
    conflicts: list[ConsensusConflict] = Field(default_factory=list)
    expert_contributions: list[ExpertContribution] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Document Review
# ---------------------------------------------------------------------------


class ReviewSegment(_Frozen):
    index: int
    start_line: int
    end_line: int
    content: str
    section_title: str | None = None


class ReviewAnnotation(_Frozen):
    id: str
    segment_index: int
    start_line: int
    end_line: int
    original_text: str
    severity: Severity
    category: str
    issue: str
    suggested_fix: str | None = None
    citations: list[CitationEntry] = Field(default_factory=list)
    confidence: Confidence


class ReviewSummary(_Frozen):
    error_count: int
    warning_count: int
    info_count: int
    pass_count: int
    overall_compliance: Compliance
    top_issues: list[str] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Pipeline Results
# ---------------------------------------------------------------------------


class QueryResult(_Frozen):
    answer: str
    citations: list[CitationEntry]
    decision_path: list[DecisionPathEntry]
    confidence: Confidence
    plugin_version: str


class CollaborationResult(_Frozen):
    rounds: list[CollaborationRound]
    consensus: ConsensusData
    latency_ms: int


class ReviewResult(_Frozen):
    document_title: str
    total_segments: int
    annotations: list[ReviewAnnotation]
    summary: ReviewSummary
    confidence: Confidence
    plugin_version: str
    latency_ms: int
    failed_batches: list[int] = Field(default_factory=list)
