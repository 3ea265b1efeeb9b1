"""
Unit tests for the Validator's smoke and integrity gates.
"""

import pytest

from migrator.exceptions import ValidationFailure
from migrator.models import Environment
from migrator.observability import MockTracer
from migrator.validator import Validator, record_hash
from tests.fixtures import FakeInspector, FakeSmokeTester, make_record

BLUE = Environment("p1-blue", "p1", "v1")
GREEN = Environment("p1-green-1", "p1", "v2")


@pytest.fixture
def smoke_tester() -> FakeSmokeTester:
    return FakeSmokeTester()


@pytest.fixture
def inspector() -> FakeInspector:
    return FakeInspector()


@pytest.fixture
def validator(smoke_tester, inspector) -> Validator:
    return Validator(smoke_tester, inspector, sample_size=10, enable_tracing=False)


class TestRecordHash:
    def test_key_order_does_not_matter(self):
        assert record_hash({"a": 1, "b": 2}) == record_hash({"b": 2, "a": 1})

    def test_values_matter(self):
        assert record_hash({"a": 1}) != record_hash({"a": 2})


class TestPreCutover:
    async def test_identical_environments_pass(self, validator, smoke_tester):
        result = await validator.validate("p1", make_record(), BLUE, GREEN)
        assert result.passed
        assert result.reasons == ()
        assert result.phase == "pre_cutover"
        assert smoke_tester.runs == [GREEN.env_id]

    async def test_smoke_failures_are_reported(self, validator, smoke_tester):
        smoke_tester.failures["p1"] = ["login returns 500"]
        result = await validator.validate("p1", None, BLUE, GREEN)
        assert not result.passed
        assert result.reasons == ("smoke: login returns 500",)

    async def test_hash_mismatch_detected(self, validator, inspector):
        inspector.corrupted.add("p1")
        result = await validator.validate("p1", None, BLUE, GREEN)
        assert not result.passed
        assert any("hash mismatch for 1" in reason for reason in result.reasons)

    async def test_count_mismatch_detected(self, validator, inspector):
        class ShortInspector(FakeInspector):
            async def record_counts(self, env):
                counts = await super().record_counts(env)
                if env == GREEN:
                    counts["users"] += 1
                return counts

        strict = Validator(FakeSmokeTester(), ShortInspector(), enable_tracing=False)
        result = await strict.validate("p1", None, BLUE, GREEN)
        assert "integrity: users count mismatch (source=3, target=4)" in result.reasons

    async def test_zero_sample_size_skips_spot_checks(self, validator, inspector):
        inspector.corrupted.add("p1")
        result = await validator.validate("p1", None, BLUE, GREEN, sample_size=0)
        assert result.passed


class TestPostCutover:
    async def test_extra_records_are_allowed(self):
        class GrowingInspector(FakeInspector):
            async def record_counts(self, env):
                counts = await super().record_counts(env)
                if env == GREEN:
                    counts["users"] += 5
                return counts

        validator = Validator(FakeSmokeTester(), GrowingInspector(), enable_tracing=False)
        result = await validator.validate("p1", None, BLUE, GREEN, phase="post_cutover")
        assert result.passed

    async def test_lost_records_fail(self):
        class LossyInspector(FakeInspector):
            async def sample_records(self, env, collection, keys=None, limit=25):
                records = await super().sample_records(env, collection, keys, limit)
                if env == GREEN:
                    records.pop("u0", None)
                return records

        validator = Validator(FakeSmokeTester(), LossyInspector(), enable_tracing=False)
        result = await validator.validate("p1", None, BLUE, GREEN, phase="post_cutover")
        assert not result.passed
        assert "integrity: users missing 1 sampled record(s) on target" in result.reasons

    async def test_changed_values_are_not_loss(self, validator, inspector):
        inspector.corrupted.add("p1")
        result = await validator.validate("p1", None, BLUE, GREEN, phase="post_cutover")
        assert result.passed


class TestRequire:
    async def test_raises_with_stage(self, validator, smoke_tester):
        smoke_tester.failures["p1"] = ["checkout broken"]
        record = make_record()
        with pytest.raises(ValidationFailure) as exc_info:
            await validator.require("p1", record, BLUE, GREEN, stage="testing")
        assert exc_info.value.stage == "testing"
        assert exc_info.value.plan_id == record.plan_id
        assert exc_info.value.reasons == ["smoke: checkout broken"]

    async def test_returns_result_on_success(self, validator):
        result = await validator.require("p1", None, BLUE, GREEN)
        assert result.passed


class TestTracing:
    async def test_span_carries_phase(self, smoke_tester, inspector):
        tracer = MockTracer()
        validator = Validator(smoke_tester, inspector, tracer=tracer)
        record = make_record()
        await validator.validate("p1", record, BLUE, GREEN, phase="post_cutover")

        name, attributes = tracer.spans[0]
        assert name == "migrator.validator.validate"
        assert attributes["migrator.validation.phase"] == "post_cutover"
        assert attributes["migrator.plan.id"] == str(record.plan_id)
