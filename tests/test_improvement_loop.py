"""
Tests for the Scheduled Improvement Loop and Outcome Recorder
=============================================================
"""

import json
import tempfile
from datetime import timedelta
from pathlib import Path

import pytest
import pytest_asyncio
from sqlalchemy import func, select

from adaptloop.db import (
    GenerationOutcomeModel,
    PromptImprovementModel,
    PromptVersionModel,
    init_db,
)
from adaptloop.db.models import utcnow
from adaptloop.errors import NoActivePromptVersion, SynthesisUnavailable
from adaptloop.improvement_loop import ImprovementStatus, ScheduledImprovementLoop
from adaptloop.notifications import Notifier
from adaptloop.outcomes import OutcomeRecorder
from adaptloop.prompt_versions import PromptVersionStore


IMPROVED_REPLY = json.dumps({
    "newPrompt": "You are an expert web developer. Always close every HTML tag.",
    "improvements": ["Require closed tags", "Forbid markdown fences"],
    "reasoning": "Most failures were truncated or fenced markup",
})


class FakeCompletion:
    model = "fake-model"

    def __init__(self, reply: str = IMPROVED_REPLY, error: Exception = None):
        self.reply = reply
        self.error = error
        self.calls = []

    async def complete(self, messages, temperature=None, max_tokens=None):
        self.calls.append({"messages": messages, "temperature": temperature, "max_tokens": max_tokens})
        if self.error is not None:
            raise self.error
        return self.reply


# =============================================================================
# Fixtures
# =============================================================================

@pytest_asyncio.fixture
async def session_maker():
    with tempfile.TemporaryDirectory() as tmpdir:
        db = await init_db(Path(tmpdir))
        yield db.session_maker
        await db.dispose()


@pytest.fixture
def recorder(session_maker):
    return OutcomeRecorder(session_maker)


@pytest.fixture
def versions(session_maker):
    return PromptVersionStore(session_maker)


@pytest_asyncio.fixture
async def primary(versions):
    return await versions.create_version(
        "v1.0.0", "You are an expert web developer.", traffic_percentage=100, is_active=True,
    )


def make_loop(session_maker, completion, **kwargs) -> ScheduledImprovementLoop:
    return ScheduledImprovementLoop(
        OutcomeRecorder(session_maker),
        PromptVersionStore(session_maker),
        completion,
        notifier=Notifier(session_maker),
        **kwargs,
    )


async def seed_outcomes(recorder, successes: int, failures: int, artifact: str = None):
    for i in range(successes):
        await recorder.record("v1.0.0", f"site {i}", "success", generation_time_ms=1200)
    for i in range(failures):
        await recorder.record(
            "v1.0.0", f"broken site {i}", "failure" if i % 2 else "error",
            error_message="Unclosed <div>", generated_artifact=artifact,
        )


async def count(session_maker, model) -> int:
    async with session_maker() as session:
        result = await session.execute(select(func.count(model.id)))
        return result.scalar_one()


# =============================================================================
# OutcomeRecorder Tests
# =============================================================================

class TestOutcomeRecorder:
    """Tests for recording and aggregating outcomes."""

    @pytest.mark.asyncio
    async def test_record_and_window(self, recorder):
        assert await recorder.record("v1.0.0", "a bakery", "success") is True
        assert await recorder.record("v1.0.0", "a gym", "failure", error_message="bad") is True

        counts = await recorder.window_statuses(utcnow() - timedelta(days=7))
        assert counts == {"success": 1, "failure": 1}

    @pytest.mark.asyncio
    async def test_invalid_status(self, recorder):
        with pytest.raises(ValueError):
            await recorder.record("v1.0.0", "x", "maybe")

    @pytest.mark.asyncio
    async def test_write_failure_is_swallowed(self, recorder, session_maker):
        """Test that a broken store returns False instead of raising."""
        async with session_maker() as session:
            await session.run_sync(lambda s: GenerationOutcomeModel.__table__.drop(s.connection()))
            await session.commit()

        assert await recorder.record("v1.0.0", "x", "success") is False

    @pytest.mark.asyncio
    async def test_window_excludes_old_rows(self, recorder, session_maker):
        async with session_maker() as session:
            session.add(GenerationOutcomeModel(
                prompt_version="v1.0.0", user_prompt="old", status="failure",
                created_at=utcnow() - timedelta(days=30),
            ))
            await session.commit()
        await recorder.record("v1.0.0", "new", "success")

        since = utcnow() - timedelta(days=7)
        assert await recorder.window_statuses(since) == {"success": 1}
        assert await recorder.recent_failures(since) == []

    @pytest.mark.asyncio
    async def test_recent_failures_newest_first_and_limited(self, recorder):
        await seed_outcomes(recorder, successes=2, failures=5)

        failures = await recorder.recent_failures(utcnow() - timedelta(days=1), limit=3)

        assert [f.user_prompt for f in failures] == ["broken site 4", "broken site 3", "broken site 2"]

    @pytest.mark.asyncio
    async def test_version_stats(self, recorder):
        await recorder.record("v1.0.0", "a", "success")
        await recorder.record("v1.0.0", "b", "failure")
        await recorder.record("v1.1.0", "c", "success")

        stats = {s.prompt_version: s for s in await recorder.version_stats(utcnow() - timedelta(days=1))}

        assert stats["v1.0.0"].total == 2
        assert stats["v1.0.0"].success_rate == 0.5
        assert stats["v1.1.0"].success_rate == 1.0


# =============================================================================
# Guard Tests
# =============================================================================

class TestImprovementGuards:
    """Tests for the early exits."""

    @pytest.mark.asyncio
    async def test_insufficient_data(self, session_maker, recorder, primary):
        """Test that <50 outcomes skips without writing a version."""
        await seed_outcomes(recorder, successes=10, failures=39)
        completion = FakeCompletion()

        result = await make_loop(session_maker, completion).run()

        assert result.status == ImprovementStatus.SKIPPED_INSUFFICIENT_DATA
        assert result.sample_size == 49
        assert completion.calls == []
        assert await count(session_maker, PromptVersionModel) == 1

    @pytest.mark.asyncio
    async def test_healthy(self, session_maker, recorder, primary):
        """Test that a success rate >= 90% skips without writing a version."""
        await seed_outcomes(recorder, successes=45, failures=5)
        completion = FakeCompletion()

        result = await make_loop(session_maker, completion).run()

        assert result.status == ImprovementStatus.SKIPPED_HEALTHY
        assert result.success_rate == pytest.approx(0.9)
        assert completion.calls == []
        assert await count(session_maker, PromptVersionModel) == 1

    @pytest.mark.asyncio
    async def test_old_outcomes_ignored(self, session_maker, recorder, primary):
        """Test that rows outside the window don't count toward the sample."""
        async with session_maker() as session:
            for i in range(60):
                session.add(GenerationOutcomeModel(
                    prompt_version="v1.0.0", user_prompt=f"old {i}", status="failure",
                    created_at=utcnow() - timedelta(days=8),
                ))
            await session.commit()

        result = await make_loop(session_maker, FakeCompletion()).run()

        assert result.status == ImprovementStatus.SKIPPED_INSUFFICIENT_DATA
        assert result.sample_size == 0

    @pytest.mark.asyncio
    async def test_no_active_version_raises(self, session_maker, recorder):
        await seed_outcomes(recorder, successes=20, failures=40)

        with pytest.raises(NoActivePromptVersion):
            await make_loop(session_maker, FakeCompletion()).run()


# =============================================================================
# Candidate Creation Tests
# =============================================================================

class TestImprovementRun:
    """Tests for the synthesis path."""

    @pytest.mark.asyncio
    async def test_creates_exactly_one_inactive_candidate(self, session_maker, recorder, primary):
        """Test 60 outcomes with 40 failures produce one inactive candidate."""
        await seed_outcomes(recorder, successes=20, failures=40)

        result = await make_loop(session_maker, FakeCompletion()).run()

        assert result.status == ImprovementStatus.CREATED
        assert result.sample_size == 60
        assert result.success_rate == pytest.approx(20 / 60)
        assert result.failure_count == 30
        assert result.parent_version == "v1.0.0"
        assert result.new_version == "v1.1.0"
        assert result.improvements == ["Require closed tags", "Forbid markdown fences"]

        async with session_maker() as session:
            rows = (await session.execute(
                select(PromptVersionModel).where(PromptVersionModel.version != "v1.0.0")
            )).scalars().all()
        assert len(rows) == 1
        candidate = rows[0]
        assert candidate.is_active is False
        assert candidate.traffic_percentage == 0
        assert candidate.parent_version == "v1.0.0"
        assert candidate.system_prompt.startswith("You are an expert web developer. Always close")
        assert candidate.notes == "Most failures were truncated or fenced markup"

    @pytest.mark.asyncio
    async def test_improvement_record_and_notification(self, session_maker, recorder, primary):
        await seed_outcomes(recorder, successes=20, failures=40)
        loop = make_loop(session_maker, FakeCompletion())

        await loop.run()

        async with session_maker() as session:
            record = (await session.execute(select(PromptImprovementModel))).scalar_one()
        assert record.old_version == "v1.0.0"
        assert record.new_version == "v1.1.0"
        assert record.status == "pending"
        assert record.analysis["failure_count"] == 30
        assert record.analysis["success_rate"] == 33.3

        notes = await loop.notifier.recent()
        assert len(notes) == 1
        assert "v1.1.0" in notes[0].message
        assert notes[0].data["improvement_count"] == 2

    @pytest.mark.asyncio
    async def test_meta_prompt_contents(self, session_maker, recorder, primary):
        """Test the request sent to the completion service."""
        await seed_outcomes(recorder, successes=20, failures=40, artifact="<div>" * 200)
        completion = FakeCompletion()

        await make_loop(session_maker, completion).run()

        call = completion.calls[0]
        assert call["temperature"] == 0.3
        assert call["max_tokens"] == 4000
        prompt = call["messages"][0]["content"]
        assert "Current Prompt (v1.0.0)" in prompt
        assert "Current Success Rate: 33.3%" in prompt
        assert "Unclosed <div>" in prompt
        assert "<div>" * 60 in prompt
        assert "<div>" * 61 not in prompt

    @pytest.mark.asyncio
    async def test_cooldown_prevents_duplicates(self, session_maker, recorder, primary):
        """Test that a second run within the cool-down proposes nothing."""
        await seed_outcomes(recorder, successes=20, failures=40)
        completion = FakeCompletion()
        loop = make_loop(session_maker, completion)

        first = await loop.run()
        second = await loop.run()

        assert first.status == ImprovementStatus.CREATED
        assert second.status == ImprovementStatus.SKIPPED_COOLDOWN
        assert len(completion.calls) == 1
        assert await count(session_maker, PromptVersionModel) == 2

    @pytest.mark.asyncio
    async def test_cooldown_expires(self, session_maker, recorder, primary):
        await seed_outcomes(recorder, successes=20, failures=40)
        loop = make_loop(session_maker, FakeCompletion())
        await loop.run()

        loop.clock = lambda: utcnow() + timedelta(hours=25)
        loop.window_days = 8
        result = await loop.run()

        assert result.status == ImprovementStatus.CREATED
        assert result.new_version == "v1.2.0"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("reply", [
        "Here are my thoughts: the prompt should be better.",
        '{"newPrompt": "Be better", "improvements": ["x"',
        '{"improvements": ["x"], "reasoning": "no prompt"}',
        '{"newPrompt": "   ", "improvements": []}',
    ])
    async def test_unusable_reply_aborts(self, session_maker, recorder, primary, reply):
        """Test that a bad reply raises and commits nothing."""
        await seed_outcomes(recorder, successes=20, failures=40)

        with pytest.raises(SynthesisUnavailable) as exc_info:
            await make_loop(session_maker, FakeCompletion(reply)).run()

        assert exc_info.value.kind == SynthesisUnavailable.UNPARSABLE
        assert await count(session_maker, PromptVersionModel) == 1
        assert await count(session_maker, PromptImprovementModel) == 0

    @pytest.mark.asyncio
    async def test_service_error_propagates(self, session_maker, recorder, primary):
        await seed_outcomes(recorder, successes=20, failures=40)
        completion = FakeCompletion(error=SynthesisUnavailable(SynthesisUnavailable.SERVICE, "503"))

        with pytest.raises(SynthesisUnavailable):
            await make_loop(session_maker, completion).run()

        assert await count(session_maker, PromptVersionModel) == 1
