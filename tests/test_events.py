# =============================================================================
# Unit Tests: Progress Events, SSE Framing and Deadlines
# =============================================================================

from __future__ import annotations

import asyncio
import json

import pytest
from fakes import run
from pydantic import TypeAdapter

from expert_engine.engine.deadline import run_with_deadline, stream_with_deadline
from expert_engine.engine.errors import PipelineTimeoutError
from expert_engine.engine.events import (
    DeltaEvent,
    ErrorEvent,
    QueryEvent,
    StatusEvent,
    error_event,
    format_sse,
    truncate_error,
)


class TestEvents:

    def test_sse_frame(self):
        frame = format_sse(StatusEvent(status="searching_kb", message="Searching..."))

        assert frame.startswith("data: ")
        assert frame.endswith("\n\n")
        payload = json.loads(frame[len("data: "):])
        assert payload == {"type": "status", "status": "searching_kb", "message": "Searching..."}

    def test_union_discriminates_on_type(self):
        adapter = TypeAdapter(QueryEvent)
        event = adapter.validate_python({"type": "delta", "text": "Hi"})
        assert event == DeltaEvent(text="Hi")

    def test_truncate_error(self):
        assert truncate_error("short") == "short"
        assert truncate_error("e" * 250) == "e" * 200 + "..."

    def test_error_event_falls_back_to_type_name(self):
        assert error_event(KeyError()) == ErrorEvent(error="KeyError")


class TestDeadline:

    def test_no_deadline(self):
        async def work():
            return 42

        assert run(run_with_deadline(work(), None)) == 42

    def test_deadline_exceeded(self):
        with pytest.raises(PipelineTimeoutError):
            run(run_with_deadline(asyncio.sleep(1), 0.01))

    def test_stream_within_deadline(self):
        async def events():
            for i in range(3):
                yield i

        async def collect():
            return [e async for e in stream_with_deadline(events(), 5)]

        assert run(collect()) == [0, 1, 2]

    def test_stream_deadline_exceeded(self):
        async def events():
            yield "first"
            await asyncio.sleep(1)
            yield "second"

        received = []

        async def collect():
            async for e in stream_with_deadline(events(), 0.05):
                received.append(e)

        with pytest.raises(PipelineTimeoutError):
            run(collect())
        assert received == ["first"]

    def test_slow_consumer_does_not_time_out(self):
        async def events():
            yield 1
            yield 2

        async def collect():
            out = []
            async for e in stream_with_deadline(events(), 0.05):
                await asyncio.sleep(0.1)
                out.append(e)
            return out

        assert run(collect()) == [1, 2]
