"""Tests for the CloudWatch metrics client."""

from __future__ import annotations

from unittest.mock import MagicMock, patch

from dental_agent.services.metrics import NAMESPACE, MetricsClient


def _make_client(*, enabled: bool = False) -> MetricsClient:
    with (
        patch.dict("os.environ", {"METRICS_ENABLED": str(enabled).lower()}),
        patch.object(MetricsClient, "_start_flush_thread"),
    ):
        return MetricsClient()


class TestMetricsRecording:
    """Verify that record_success / record_failure / record_event buffer the right data."""

    def test_record_success_appends_two_data_points(self):
        client = _make_client()
        client.record_success("supabase", "GET appointments", latency_ms=123.4)
        # Should buffer RequestCount + Latency
        assert len(client._buffer) == 2
        names = {m["MetricName"] for m in client._buffer}
        assert names == {"ExternalAPI/RequestCount", "ExternalAPI/Latency"}

    def test_record_failure_appends_count_and_error(self):
        client = _make_client()
        client.record_failure("deepseek", "chat_completion", error_type="ReadTimeout")
        # No latency since default 0
        assert len(client._buffer) == 2
        names = {m["MetricName"] for m in client._buffer}
        assert names == {"ExternalAPI/RequestCount", "ExternalAPI/ErrorCount"}

    def test_record_failure_with_latency_appends_three_data_points(self):
        client = _make_client()
        client.record_failure("whatsapp", "send_text", error_type="4xx", latency_ms=500.0)
        names = {m["MetricName"] for m in client._buffer}
        assert names == {
            "ExternalAPI/RequestCount",
            "ExternalAPI/ErrorCount",
            "ExternalAPI/Latency",
        }

    def test_success_dimensions_include_service_and_status(self):
        client = _make_client()
        client.record_success("deepseek", "chat_completion", latency_ms=50.0)
        count_metric = next(
            m for m in client._buffer
            if m["MetricName"] == "ExternalAPI/RequestCount"
        )
        dim_map = {d["Name"]: d["Value"] for d in count_metric["Dimensions"]}
        assert dim_map == {"Service": "deepseek", "Status": "success"}

    def test_failure_dimensions_include_error_type(self):
        client = _make_client()
        client.record_failure("deepseek", "chat_completion", error_type="LLMAPIError")
        error_metric = next(
            m for m in client._buffer
            if m["MetricName"] == "ExternalAPI/ErrorCount"
        )
        dim_map = {d["Name"]: d["Value"] for d in error_metric["Dimensions"]}
        assert dim_map["ErrorType"] == "LLMAPIError"

    def test_record_event(self):
        client = _make_client()
        client.record_event("Compaction", outcome="success")
        (datum,) = client._buffer
        assert datum["MetricName"] == "Agent/Compaction"
        assert datum["Value"] == 1
        assert datum["Dimensions"] == [{"Name": "outcome", "Value": "success"}]


class TestMetricsFlush:
    """Verify flush behaviour with and without CloudWatch enabled."""

    def test_flush_when_disabled_does_not_call_boto3(self):
        client = _make_client()
        client.record_success("deepseek", "chat_completion", latency_ms=100.0)
        with patch("boto3.client") as mock_boto:
            assert client.flush() == 0
        mock_boto.assert_not_called()

    def test_flush_clears_buffer(self):
        client = _make_client()
        client.record_event("Handoff", source="safety_gate")
        client.flush()
        assert client._buffer == []

    def test_flush_when_enabled_calls_put_metric_data(self):
        client = _make_client(enabled=True)
        mock_cw = MagicMock()
        client._cw_client = mock_cw  # inject mock

        client.record_success("deepseek", "chat_completion", latency_ms=100.0)
        sent = client.flush()

        assert sent == 2
        mock_cw.put_metric_data.assert_called_once()
        call_args = mock_cw.put_metric_data.call_args
        assert call_args[1]["Namespace"] == NAMESPACE == "LuxeDental"
        assert len(call_args[1]["MetricData"]) == 2

    def test_flush_failure_is_logged_not_raised(self):
        client = _make_client(enabled=True)
        client._cw_client = MagicMock()
        client._cw_client.put_metric_data.side_effect = RuntimeError("throttled")
        client.record_event("AgentError")
        assert client.flush() == 0

    def test_flush_empty_buffer_returns_zero(self):
        assert _make_client(enabled=True).flush() == 0
