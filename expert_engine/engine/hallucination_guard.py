"""Refusal policy applied to every citation result before it reaches a user.

Checks run in order and the first hit replaces the answer with
REFUSAL_MESSAGE, empty citations and low confidence:

1. no resolved citation at all
2. a short answer that is itself a refusal
3. more phantom references than real ones

Otherwise the result is returned unchanged. The guard is a pure function
and applying it to its own output is a no-op.
"""

from __future__ import annotations

import logging

from expert_engine.engine.types import CitationResult

logger = logging.getLogger(__name__)

REFUSAL_MESSAGE = (
    "I don't have verified information on this topic in my knowledge base. "
    "Please consult a qualified professional."
)

# Unambiguous refusals only. Generic advice such as "consult a qualified
# professional" also closes good, well-cited answers and must not match.
REFUSAL_PATTERNS = (
    "i don't have verified information",
    "i don't have enough information",
    "i cannot answer this question",
    "not available in my knowledge base",
    "beyond the scope of the provided sources",
    "the provided sources do not contain",
    "the source documents do not contain",
)

# Genuine refusals are one-liners; longer answers keep their disclaimers.
SELF_REFUSAL_MAX_LENGTH = 300


def detect_self_refusal(answer: str) -> bool:
    if len(answer) > SELF_REFUSAL_MAX_LENGTH:
        return False
    lower = answer.lower()
    return any(phrase in lower for phrase in REFUSAL_PATTERNS)


def apply_hallucination_guard(result: CitationResult) -> CitationResult:
    if not result.citations:
        reason = "no resolved citations"
    elif detect_self_refusal(result.cleaned_answer):
        reason = "self-refusal"
    elif result.phantom_count > 0 and result.phantom_count > result.real_ref_count:
        reason = "phantom majority"
    else:
        return result

    logger.info(
        "Hallucination guard refused answer (%s; real=%d, phantom=%d)",
        reason, result.real_ref_count, result.phantom_count,
    )
    return result.model_copy(update={
        "cleaned_answer": REFUSAL_MESSAGE,
        "citations": [],
        "confidence": "low",
    })
