# =============================================================================
# Unit Tests: Document Review Batcher
# =============================================================================

from __future__ import annotations

import json
import re

import pytest
from fakes import (
    FakeRetriever,
    RecordingSink,
    ScriptedLLM,
    make_chunk,
    make_deps,
    make_expert,
    run,
)

from expert_engine.config import settings
from expert_engine.engine.errors import AnnotationParseError, ExpertNotFoundError
from expert_engine.engine.events import (
    AnnotationEvent,
    BatchCompleteEvent,
    ErrorEvent,
    ReviewDoneEvent,
    StatusEvent,
)
from expert_engine.engine.review import (
    build_annotation,
    compute_overall_confidence,
    compute_summary,
    deduplicate_sources,
    make_batches,
    parse_annotations,
    run_review,
    segment_document,
    segment_title,
    stream_review,
)
from expert_engine.engine.types import ReviewSegment
from expert_engine.services.audit import ReviewAuditRecord

EXPERT = make_expert()
SOURCES = [make_chunk(1), make_chunk(2)]

_SEGMENT_HEADER = re.compile(r"--- Segment (\d+) \(")


def _document(paragraphs: int) -> str:
    return "\n\n".join(f"Paragraph {i} says cover is 20mm." for i in range(paragraphs))


def _annotations_for(user: str) -> str:
    """One warning per segment in the prompt, citing Source 1."""
    return json.dumps([
        {
            "segmentIndex": int(index),
            "originalText": "cover is 20mm",
            "severity": "warning",
            "category": "non-compliance",
            "issue": f"Segment {index} cover below minimum",
            "suggestedFix": "Use 45mm",
            "citations": ["[Source 1]"],
        }
        for index in _SEGMENT_HEADER.findall(user)
    ])


def _deps(reply=None, **kwargs):
    llm = ScriptedLLM(reply or (lambda system, user: _annotations_for(user)))
    return make_deps(
        [EXPERT], llm, retriever=FakeRetriever({EXPERT.id: SOURCES}), **kwargs,
    )


async def _collect(events):
    return [e async for e in events]


# ---------------------------------------------------------------------------
# Test: Segmentation
# ---------------------------------------------------------------------------


class TestSegmentDocument:

    def test_blank_lines_split(self):
        segments = segment_document("A\nB\n\nC")

        assert [s.content for s in segments] == ["A\nB", "C"]
        assert (segments[0].start_line, segments[0].end_line) == (1, 2)
        assert (segments[1].start_line, segments[1].end_line) == (4, 4)
        assert [s.index for s in segments] == [0, 1]

    def test_repeated_blank_lines(self):
        segments = segment_document("\n\nA\n\n\n\nB\n")
        assert [s.content for s in segments] == ["A", "B"]
        assert segments[0].start_line == 3
        assert segments[1].start_line == 7

    def test_size_cap_closes_segment(self):
        text = "\n".join(["x" * 30] * 3)
        segments = segment_document(text, max_chars=70)

        assert len(segments) == 2
        assert segments[0].end_line == 2
        assert segments[1].start_line == 3

    def test_oversized_line_is_split(self):
        segments = segment_document("x" * 150 + "\nshort", max_chars=70)

        assert all(len(s.content) <= 70 for s in segments)
        assert "".join(s.content.split("\n")[0] for s in segments) == "x" * 150
        assert [(s.start_line, s.end_line) for s in segments] == [(1, 1), (1, 1), (1, 2)]
        assert segments[-1].content.endswith("\nshort")

    def test_empty_document(self):
        assert segment_document("   \n\n  ") == []

    def test_titles(self):
        assert segment_title("## Cover\ntext") == "Cover"
        assert segment_title("GENERAL NOTES\ntext") == "GENERAL NOTES"
        assert segment_title("Plain sentence here") is None
        assert segment_title("123\n") is None

    def test_batches(self):
        segments = segment_document(_document(9))
        batches = make_batches(segments, 4)
        assert [len(b) for b in batches] == [4, 4, 1]


# ---------------------------------------------------------------------------
# Test: Parsing
# ---------------------------------------------------------------------------


class TestParseAnnotations:

    def test_fenced(self):
        assert parse_annotations('```json\n[{"issue": "x"}]\n```') == [{"issue": "x"}]

    def test_prose_around_array(self):
        assert parse_annotations('Here you go: [{"issue": "x"}] Done.') == [{"issue": "x"}]

    def test_non_objects_dropped(self):
        assert parse_annotations('[1, "a", {"issue": "x"}]') == [{"issue": "x"}]

    def test_invalid(self):
        with pytest.raises(AnnotationParseError):
            parse_annotations("not json")

    def test_object_is_not_array(self):
        with pytest.raises(AnnotationParseError):
            parse_annotations('{"issue": "x"}')


class TestBuildAnnotation:

    BATCH = [
        ReviewSegment(index=4, start_line=10, end_line=12, content="Cover 20mm"),
        ReviewSegment(index=5, start_line=14, end_line=14, content="Grade M20"),
    ]

    def test_defaults(self):
        annotation = build_annotation(
            {"segmentIndex": 99, "severity": "fatal"}, self.BATCH, SOURCES, "ann_0_0",
        )

        assert annotation.segment_index == 4
        assert annotation.start_line == 10
        assert annotation.severity == "info"
        assert annotation.category == "best-practice"
        assert annotation.issue == "No details provided"
        assert annotation.original_text == "Cover 20mm"
        assert annotation.suggested_fix is None
        assert annotation.citations == []
        assert annotation.confidence == "low"

    def test_grounded_citations(self):
        annotation = build_annotation(
            {
                "segmentIndex": "5",
                "severity": "error",
                "issue": "Grade too low",
                "citations": ["[Source 2]", "[Source 9]"],
                "originalText": "y" * 500,
            },
            self.BATCH, SOURCES, "ann_1_0",
        )

        assert annotation.segment_index == 5
        assert [c.id for c in annotation.citations] == ["src_2"]
        assert annotation.confidence == "medium"
        assert len(annotation.original_text) == 200

    def test_phantom_only_citations_dropped(self):
        annotation = build_annotation(
            {"issue": "x", "citations": ["[Source 7]"]}, self.BATCH, SOURCES, "a",
        )
        assert annotation.citations == []


# ---------------------------------------------------------------------------
# Test: Aggregation
# ---------------------------------------------------------------------------


class TestAggregation:

    def test_deduplicate_keeps_best_similarity(self):
        low = make_chunk(1, similarity=0.5)
        high = make_chunk(1, similarity=0.9)
        other = make_chunk(2, similarity=0.7)
        assert deduplicate_sources([low, other, high]) == [high, other]

    def _annotation(self, severity, cited=False, issue="i"):
        return build_annotation(
            {
                "severity": severity,
                "issue": issue,
                "citations": ["[Source 1]"] if cited else [],
            },
            TestBuildAnnotation.BATCH, SOURCES, "a",
        )

    def test_summary_compliance(self):
        assert compute_summary([]).overall_compliance == "compliant"
        assert compute_summary([self._annotation("pass")]).overall_compliance == "compliant"
        assert compute_summary([self._annotation("warning")]).overall_compliance == (
            "partially-compliant"
        )
        assert compute_summary(
            [self._annotation("warning"), self._annotation("error")]
        ).overall_compliance == "non-compliant"

    def test_top_issues_capped(self):
        annotations = [self._annotation("error", issue=f"e{i}") for i in range(7)]
        annotations.append(self._annotation("info", issue="note"))
        summary = compute_summary(annotations)

        assert summary.error_count == 7
        assert summary.info_count == 1
        assert summary.top_issues == ["e0", "e1", "e2", "e3", "e4"]

    def test_overall_confidence(self):
        cited, bare = self._annotation("info", cited=True), self._annotation("info")
        assert compute_overall_confidence([]) == "low"
        assert compute_overall_confidence([cited, cited, bare]) == "high"
        assert compute_overall_confidence([cited, bare, bare]) == "medium"
        assert compute_overall_confidence([cited, bare, bare, bare, bare]) == "low"


# ---------------------------------------------------------------------------
# Test: run_review / stream_review
# ---------------------------------------------------------------------------


class TestRunReview:

    def test_batches_and_annotations(self):
        deps = _deps()
        result = run(run_review("concrete", _document(10), "Spec A", deps=deps))

        assert result.total_segments == 10
        assert len(deps.llm.prompts) == 3
        assert len(result.annotations) == 10
        assert result.failed_batches == []
        assert [a.segment_index for a in result.annotations] == list(range(10))
        assert result.annotations[0].id == "ann_0_0"
        assert result.annotations[4].id == "ann_1_0"
        assert result.summary.warning_count == 10
        assert result.summary.overall_compliance == "partially-compliant"
        assert result.confidence == "high"
        assert result.document_title == "Spec A"

    def test_segments_embedded_per_batch(self):
        deps = _deps()
        run(run_review("concrete", _document(5), deps=deps))

        assert sorted(len(texts) for texts in deps.retriever.embedded) == [1, 4]
        assert {(top_k, threshold) for _, top_k, threshold in deps.retriever.calls} == {
            (settings.review_top_k, settings.review_similarity_threshold),
        }

    def test_failed_batch_is_isolated(self):
        def reply(system, user):
            if "--- Segment 4 (" in user:
                return "Sorry, I cannot produce JSON today."
            return _annotations_for(user)

        result = run(run_review("concrete", _document(12), deps=_deps(reply)))

        assert result.failed_batches == [1]
        assert sorted(a.segment_index for a in result.annotations) == [0, 1, 2, 3, 8, 9, 10, 11]

    def test_reviewer_system_prompt(self):
        deps = _deps()
        run(run_review("concrete", _document(1), deps=deps))
        system, _ = deps.llm.prompts[0]
        assert system.startswith(EXPERT.system_prompt)
        assert "reviewing a document for compliance" in system

    def test_empty_document(self):
        deps = _deps()
        result = run(run_review("concrete", "\n\n", deps=deps))

        assert result.total_segments == 0
        assert result.annotations == []
        assert result.confidence == "low"
        assert deps.llm.prompts == []

    def test_unknown_expert(self):
        with pytest.raises(ExpertNotFoundError):
            run(run_review("ghost", _document(2), deps=_deps()))

    def test_audit_record(self):
        sink = RecordingSink()
        deps = _deps(sink=sink)

        async def scenario():
            await run_review("concrete", _document(3), deps=deps)
            await deps.audit.flush()

        run(scenario())
        assert len(sink.records) == 1
        assert isinstance(sink.records[0], ReviewAuditRecord)
        assert sink.records[0].total_segments == 3


class TestStreamReview:

    def test_event_sequence(self):
        events = run(_collect(stream_review("concrete", _document(6), deps=_deps())))

        statuses = [e.status for e in events if isinstance(e, StatusEvent)]
        assert statuses[:3] == ["segmenting", "segmented", "reviewing"]
        assert statuses.count("reviewing_batch") == 2
        assert sum(isinstance(e, AnnotationEvent) for e in events) == 6

        completes = [e for e in events if isinstance(e, BatchCompleteEvent)]
        assert sorted(e.batch_index for e in completes) == [0, 1]
        assert completes[-1].message == "Completed 2 of 2 batches"

        done = events[-1]
        assert isinstance(done, ReviewDoneEvent)
        assert done.total_segments == 6

    def test_batch_error_event(self):
        def reply(system, user):
            raise RuntimeError("model overloaded")

        events = run(_collect(stream_review("concrete", _document(2), deps=_deps(reply))))
        errors = [e for e in events if isinstance(e, StatusEvent) and e.status == "batch_error"]

        assert len(errors) == 1
        assert "model overloaded" in errors[0].message
        assert events[-1].failed_batches == [0]
        assert not any(isinstance(e, ErrorEvent) for e in events)

    def test_unknown_expert_error_event(self):
        events = run(_collect(stream_review("ghost", "text", deps=_deps())))
        assert len(events) == 1
        assert isinstance(events[0], ErrorEvent)
