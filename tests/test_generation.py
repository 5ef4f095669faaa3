"""
Tests for Website Generation and the AdaptiveLoop facade
========================================================
"""

import json
import tempfile
from datetime import timedelta
from pathlib import Path

import pytest
import pytest_asyncio

from adaptloop.config import LoopConfig
from adaptloop.db import init_db
from adaptloop.db.models import utcnow
from adaptloop.errors import SynthesisUnavailable
from adaptloop.generation import WebsiteGenerator
from adaptloop.improvement_loop import ImprovementStatus
from adaptloop.outcomes import OutcomeRecorder
from adaptloop.prompt_router import PromptRouter
from adaptloop.prompt_versions import PromptVersionStore
from adaptloop.service import AdaptiveLoop


class FakeCompletion:
    model = "fake-model"

    def __init__(self, reply: str = "<!DOCTYPE html><p>hi</p>", error: Exception = None):
        self.reply = reply
        self.error = error
        self.calls = []

    async def complete(self, messages, temperature=None, max_tokens=None):
        self.calls.append({"messages": messages, "temperature": temperature})
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


def make_generator(session_maker, completion):
    versions = PromptVersionStore(session_maker)
    recorder = OutcomeRecorder(session_maker)
    return WebsiteGenerator(PromptRouter(versions), recorder, completion), versions, recorder


# =============================================================================
# WebsiteGenerator Tests
# =============================================================================

class TestWebsiteGenerator:
    """Tests for generate()."""

    @pytest.mark.asyncio
    async def test_success_is_recorded(self, session_maker):
        completion = FakeCompletion("```html\n<!DOCTYPE html><h1>Gym</h1>\n```")
        generator, versions, recorder = make_generator(session_maker, completion)
        await versions.create_version("v1.3.0", "Build pages.", traffic_percentage=100, is_active=True)

        site = await generator.generate("A gym homepage")

        assert site.html == "<!DOCTYPE html><h1>Gym</h1>"
        assert site.prompt_version == "v1.3.0"

        call = completion.calls[0]
        assert call["temperature"] == 0.7
        assert call["messages"][0] == {"role": "system", "content": "Build pages."}
        assert call["messages"][1] == {"role": "user", "content": "A gym homepage"}

        stats = await recorder.version_stats(utcnow() - timedelta(minutes=5))
        assert [(s.prompt_version, s.total, s.successes) for s in stats] == [("v1.3.0", 1, 1)]

    @pytest.mark.asyncio
    async def test_service_error_recorded_and_raised(self, session_maker):
        """Test that a failed completion is logged as an error outcome."""
        completion = FakeCompletion(error=SynthesisUnavailable(SynthesisUnavailable.TIMEOUT, "slow"))
        generator, _, recorder = make_generator(session_maker, completion)

        with pytest.raises(SynthesisUnavailable):
            await generator.generate("A bakery")

        failures = await recorder.recent_failures(utcnow() - timedelta(minutes=5))
        assert len(failures) == 1
        assert failures[0].status == "error"
        assert "slow" in failures[0].error_message
        assert failures[0].prompt_version == "v1.0.0"

    @pytest.mark.asyncio
    async def test_empty_prompt_rejected(self, session_maker):
        completion = FakeCompletion()
        generator, _, _ = make_generator(session_maker, completion)

        with pytest.raises(ValueError):
            await generator.generate("  ")
        assert completion.calls == []


# =============================================================================
# AdaptiveLoop Tests
# =============================================================================

class TestAdaptiveLoop:
    """Tests for the wired-up facade."""

    @pytest.mark.asyncio
    async def test_full_cycle(self):
        """Test outcomes feeding an improvement that an operator then promotes."""
        reply = json.dumps({
            "newPrompt": "Build pages. Always close tags.",
            "improvements": ["Close tags"],
            "reasoning": "Unclosed tags",
        })
        with tempfile.TemporaryDirectory() as tmpdir:
            config = LoopConfig(database_url=tmpdir, rate_limit_audit=False, min_sample_size=10)
            loop = await AdaptiveLoop.from_config(config, completion=FakeCompletion(reply))
            try:
                await loop.versions.create_version(
                    "v1.0.0", "Build pages.", traffic_percentage=100, is_active=True,
                )
                for i in range(10):
                    status = "success" if i < 3 else "failure"
                    assert await loop.record_outcome("v1.0.0", f"site {i}", status, error_message="Unclosed tag")

                result = await loop.run_scheduled_improvement()
                assert result.status == ImprovementStatus.CREATED
                assert (await loop.select_prompt_for_generation()).version == "v1.0.0"

                await loop.set_traffic({"v1.0.0": 50, result.new_version: 50})
                serving = [v.version for v in await loop.versions.list_serving()]
                assert serving == ["v1.0.0", result.new_version]
            finally:
                await loop.close()

    @pytest.mark.asyncio
    async def test_report_error_default_identifier(self):
        reply = json.dumps({
            "diagnosis": "d", "rootCause": "r", "solution": {"steps": ["fix it"]},
        })
        with tempfile.TemporaryDirectory() as tmpdir:
            config = LoopConfig(database_url=tmpdir, rate_limit_audit=False, rate_limit_max_requests=1)
            loop = await AdaptiveLoop.from_config(config, completion=FakeCompletion(reply))
            try:
                result = await loop.report_error("TypeError: x is not a function")
                assert result.category == "runtime"
                assert result.rate_limit.identifier == "unknown"
            finally:
                await loop.close()

    @pytest.mark.asyncio
    async def test_each_loop_owns_its_engine(self):
        """Test that closing one loop leaves another loop's database usable."""
        with tempfile.TemporaryDirectory() as dir_a, tempfile.TemporaryDirectory() as dir_b:
            loop_a = await AdaptiveLoop.from_config(
                LoopConfig(database_url=dir_a, rate_limit_audit=False), completion=FakeCompletion(),
            )
            loop_b = await AdaptiveLoop.from_config(
                LoopConfig(database_url=dir_b, rate_limit_audit=False), completion=FakeCompletion(),
            )
            try:
                assert loop_a.db.engine is not loop_b.db.engine

                await loop_a.close()
                assert loop_a.db.engine.pool.checkedout() == 0

                assert await loop_b.record_outcome("v1.0.0", "A gym homepage", "success")
                stats = await loop_b.outcomes.version_stats(utcnow() - timedelta(minutes=5))
                assert [(s.prompt_version, s.total) for s in stats] == [("v1.0.0", 1)]
            finally:
                await loop_b.close()
