# =============================================================================
# Progress Events & Server-Sent-Event Framing
# =============================================================================
#
# Every streaming pipeline emits a closed set of typed events, strictly in
# execution order, ending with exactly one `done` or `error` event.
#
#   single expert   status, delta,                         done | error
#   collaboration   status, experts_resolved, round_start,
#                   expert_thinking, expert_response,
#                   round_complete,                        done | error
#   review          status, annotation, batch_complete,    done | error
#
# Each pipeline has its own discriminated union on `type`, so a consumer
# can match exhaustively. On the wire an event is one SSE frame:
#   data: {"type": "...", ...}\n\n
# =============================================================================

from __future__ import annotations

from typing import Annotated, Literal, Union

from pydantic import BaseModel, ConfigDict, Field

from expert_engine.engine.types import (
    CitationEntry,
    CollaborationResult,
    Confidence,
    DecisionPathEntry,
    ReviewAnnotation,
    ReviewResult,
)

ERROR_MESSAGE_LIMIT = 200


class _Event(BaseModel):
    model_config = ConfigDict(frozen=True)


# ---------------------------------------------------------------------------
# Shared
# ---------------------------------------------------------------------------


class StatusEvent(_Event):
    type: Literal["status"] = "status"
    status: str
    message: str
    source_count: int | None = None


class ErrorEvent(_Event):
    type: Literal["error"] = "error"
    error: str


# ---------------------------------------------------------------------------
# Single Expert
# ---------------------------------------------------------------------------


class DeltaEvent(_Event):
    type: Literal["delta"] = "delta"
    text: str


class QueryDoneEvent(_Event):
    """
    Terminal event of a streamed answer.

    `answer` is the grounded answer. It differs from the concatenated
    deltas when phantom markers were stripped or the answer was refused.
    """

    type: Literal["done"] = "done"
    answer: str
    citations: list[CitationEntry]
    decision_path: list[DecisionPathEntry]
    confidence: Confidence
    plugin_version: str


QueryEvent = Annotated[
    Union[StatusEvent, DeltaEvent, QueryDoneEvent, ErrorEvent],
    Field(discriminator="type"),
]


# ---------------------------------------------------------------------------
# Collaboration
# ---------------------------------------------------------------------------


class ExpertInfo(_Event):
    slug: str
    name: str
    domain: str
    source_count: int
    has_decision_tree: bool


class ExpertsResolvedEvent(_Event):
    type: Literal["experts_resolved"] = "experts_resolved"
    experts: list[ExpertInfo]


class RoundStartEvent(_Event):
    type: Literal["round_start"] = "round_start"
    round: int
    total_rounds: int


class ExpertThinkingEvent(_Event):
    type: Literal["expert_thinking"] = "expert_thinking"
    expert: str
    expert_name: str
    domain: str
    message: str


class ExpertResponseEvent(_Event):
    type: Literal["expert_response"] = "expert_response"
    round: int
    expert: str
    expert_name: str
    domain: str
    answer: str
    citations: list[CitationEntry]
    confidence: Confidence
    revised: bool


class RoundCompleteEvent(_Event):
    type: Literal["round_complete"] = "round_complete"
    round: int


class CollaborationDoneEvent(CollaborationResult):
    type: Literal["done"] = "done"


CollaborationEvent = Annotated[
    Union[
        StatusEvent,
        ExpertsResolvedEvent,
        RoundStartEvent,
        ExpertThinkingEvent,
        ExpertResponseEvent,
        RoundCompleteEvent,
        CollaborationDoneEvent,
        ErrorEvent,
    ],
    Field(discriminator="type"),
]


# ---------------------------------------------------------------------------
# Review
# ---------------------------------------------------------------------------


class AnnotationEvent(_Event):
    type: Literal["annotation"] = "annotation"
    annotation: ReviewAnnotation


class BatchCompleteEvent(_Event):
    type: Literal["batch_complete"] = "batch_complete"
    batch_index: int
    total_batches: int
    message: str


class ReviewDoneEvent(ReviewResult):
    type: Literal["done"] = "done"


ReviewEvent = Annotated[
    Union[StatusEvent, AnnotationEvent, BatchCompleteEvent, ReviewDoneEvent, ErrorEvent],
    Field(discriminator="type"),
]


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def truncate_error(message: str) -> str:
    """Cap an error message; upstream errors can echo whole vectors or prompts."""
    if len(message) > ERROR_MESSAGE_LIMIT:
        return message[:ERROR_MESSAGE_LIMIT] + "..."
    return message


def error_event(exc: BaseException) -> ErrorEvent:
    return ErrorEvent(error=truncate_error(str(exc) or type(exc).__name__))


def format_sse(event: BaseModel) -> str:
    """Frame one event as a server-sent event."""
    return f"data: {event.model_dump_json(exclude_none=True)}\n\n"
