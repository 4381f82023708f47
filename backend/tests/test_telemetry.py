"""Tests for telemetry.py -- the per-batch telemetry accumulator."""

from events.types import LLMMetrics
from telemetry import BatchTelemetry, Stage


class TestBatchTelemetry:
    def test_stages_recorded_in_order(self) -> None:
        telemetry = BatchTelemetry(actor_id="chat_1", batch_id="b1")
        telemetry.record_stage(Stage.PROMOTED, message_count=2)
        telemetry.record_stage(Stage.PROCESSING)

        stages = telemetry.to_dict()["stages"]

        assert [s["stage"] for s in stages] == ["promoted", "processing"]
        assert stages[0]["message_count"] == 2
        assert stages[0]["offset_ms"] <= stages[1]["offset_ms"]

    def test_llm_calls_accumulate(self) -> None:
        telemetry = BatchTelemetry(actor_id="chat_1")
        telemetry.record_llm_call(
            LLMMetrics(model="a", input_tokens=10, output_tokens=5, latency_ms=1)
        )
        telemetry.record_llm_call(
            LLMMetrics(model="b", input_tokens=1, output_tokens=2, latency_ms=1)
        )
        telemetry.record_llm_call(
            LLMMetrics(model="a", input_tokens=0, output_tokens=0, latency_ms=1)
        )

        data = telemetry.to_dict()

        assert data["llm_calls"] == 3
        assert data["total_tokens"] == 18
        assert data["models"] == ["a", "b"]

    def test_plan_route_and_errors(self) -> None:
        telemetry = BatchTelemetry(actor_id="chat_1")
        telemetry.record_route("orchestration")
        telemetry.record_plan(total_steps=3, succeeded=1, failed=1, skipped=1)
        telemetry.record_error("step_2 failed")

        data = telemetry.finish().to_dict()

        assert data["route"] == "orchestration"
        assert (data["plan_steps"], data["steps_skipped"]) == (3, 1)
        assert data["errors"] == ["step_2 failed"]
        assert data["duration_ms"] >= 0

    def test_to_dict_is_detached(self) -> None:
        telemetry = BatchTelemetry(actor_id="chat_1")
        telemetry.record_error("x")
        telemetry.to_dict()["errors"].append("y")
        assert telemetry.errors == ["x"]
