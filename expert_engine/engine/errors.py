"""Exception taxonomy for the reasoning core.

Grounding failures are not exceptions: the hallucination guard substitutes
a refusal answer instead. Upstream failures (retrieval, LLM, storage) keep
the provider's own exception types and propagate unchanged.
"""

from __future__ import annotations


class EngineError(Exception):
    """Base class for errors raised by the expert engine."""


class ExpertNotFoundError(EngineError, LookupError):
    """An expert slug or decision tree reference does not exist."""

    def __init__(self, slug: str) -> None:
        super().__init__(f"Expert not found: {slug}")
        self.slug = slug


class ExpertNotPublishedError(EngineError, PermissionError):
    """The expert exists but is not published."""

    def __init__(self, slug: str) -> None:
        super().__init__(f"Expert is not published: {slug}")
        self.slug = slug


class CollaborationValidationError(EngineError, ValueError):
    """A collaboration request was malformed. Raised before any I/O."""


class PipelineTimeoutError(EngineError, TimeoutError):
    """A caller-side deadline expired while an I/O call was in flight."""


class AnnotationParseError(EngineError, ValueError):
    """A review batch's LLM output was not a JSON array of annotations."""


class SynthesisParseError(EngineError, ValueError):
    """The consensus synthesis output did not contain the expected JSON."""
