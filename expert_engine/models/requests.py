# =============================================================================
# API Request Models: Pydantic V2 Schemas
# =============================================================================
#
# Bodies accepted by the /v1 endpoints. Length limits come from settings,
# so they are checked in validators rather than static Field constraints.
#
# Expert-count rules for collaboration (2..5) are enforced by the engine,
# which answers 400 before doing any I/O; the schema only caps max_rounds.
# =============================================================================

from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator

from expert_engine.config import settings
from expert_engine.engine.collaboration import MAX_ROUNDS


class QueryRequest(BaseModel):
    """
    Request body for POST /v1/query: ask one expert a question.

    Example:
        {"expert": "concrete-design", "query": "Minimum cover for a beam in severe exposure?"}
    """

    expert: str = Field(..., min_length=1, description="Expert slug")
    query: str = Field(..., min_length=1, description="The question to answer")
    stream: bool = Field(
        default=False,
        description="Return text/event-stream progress events instead of JSON",
    )
    web_search: bool = Field(
        default=True,
        description="Allow supplementary (uncited) web search when supported",
    )

    model_config = ConfigDict(
        json_schema_extra={
            "examples": [
                {
                    "expert": "concrete-design",
                    "query": "What is the minimum cover for a beam in severe exposure?",
                },
            ]
        }
    )

    @field_validator("query")
    @classmethod
    def _query_length(cls, v: str) -> str:
        if len(v) > settings.max_query_length:
            raise ValueError(
                f"Query must be under {settings.max_query_length} characters"
            )
        return v


class CollaborateRequest(BaseModel):
    """
    Request body for POST /v1/collaborate: deliberate across 2-5 experts.

    `max_rounds` above 3 is clamped to 3; consensus mode always runs one round.
    """

    experts: list[str] = Field(..., description="Expert slugs, 2 to 5")
    query: str = Field(..., description="The question to deliberate on")
    mode: Literal["debate", "consensus", "review"] = "debate"
    max_rounds: int = Field(default=MAX_ROUNDS, ge=1)
    stream: bool = False

    model_config = ConfigDict(
        json_schema_extra={
            "examples": [
                {
                    "experts": ["concrete-design", "fire-safety"],
                    "query": "Is 25mm cover enough for a 2-hour fire rating?",
                    "mode": "debate",
                    "max_rounds": 2,
                },
            ]
        }
    )

    @field_validator("max_rounds")
    @classmethod
    def _clamp_rounds(cls, v: int) -> int:
        return min(v, MAX_ROUNDS)

    @field_validator("query")
    @classmethod
    def _query_length(cls, v: str) -> str:
        if len(v) > settings.max_query_length:
            raise ValueError(
                f"Query must be under {settings.max_query_length} characters"
            )
        return v


class ReviewRequest(BaseModel):
    """Request body for POST /v1/review: annotate a document against one expert."""

    expert: str = Field(..., min_length=1)
    document_text: str = Field(..., min_length=1)
    document_title: str = Field(default="Untitled", max_length=500)
    stream: bool = False

    @field_validator("document_text")
    @classmethod
    def _document_length(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("Document text must not be blank")
        if len(v) > settings.max_document_length:
            raise ValueError(
                f"Document must be under {settings.max_document_length} characters"
            )
        return v
