"""Prompt context shared by the answer, collaboration and review pipelines."""

from __future__ import annotations

from collections.abc import Sequence

from expert_engine.engine.types import DecisionResult, DecisionStep
from expert_engine.services.vectorstore import RetrievedChunk

SOURCE_SEPARATOR = "\n\n---\n\n"


def format_source_context(sources: Sequence[RetrievedChunk]) -> str:
    """
    Number the sources the way citation resolution expects.

    [Source 1] (handbook.pdf, Cover Requirements)
    <chunk text>
    """
    blocks = []
    for i, source in enumerate(sources, start=1):
        origin = source.document_name
        if source.section_title:
            origin = f"{origin}, {source.section_title}"
        blocks.append(f"[Source {i}] ({origin})\n{source.content}")
    return SOURCE_SEPARATOR.join(blocks)


def format_decision_context(
    result: DecisionResult | None,
    heading: str = "Decision Tree Analysis",
) -> str:
    if result is None:
        return ""
    lines = "\n".join(f"- {step.label}: {_step_outcome(step)}" for step in result.path)
    return f"\n{heading}:\n{lines}"


def _step_outcome(step: DecisionStep) -> str:
    if step.answer:
        return step.answer
    if step.result is not None:
        return "yes" if step.result else "no"
    if step.action is not None:
        return step.action.recommendation
    return ""
