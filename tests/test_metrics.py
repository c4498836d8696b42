"""Tests for the CloudWatch metrics client."""

from __future__ import annotations

from unittest.mock import MagicMock, patch

import pytest

from patient_assistant.services.metrics import MetricsClient


def _dims(metric) -> dict[str, str]:
    return {d["Name"]: d["Value"] for d in metric["Dimensions"]}


class TestMetricsRecording:
    """Verify that record_success / record_failure buffer the right data."""

    def _make_client(self, *, enabled: bool = False) -> MetricsClient:
        with patch.dict("os.environ", {"METRICS_ENABLED": str(enabled).lower()}):
            return MetricsClient()

    def test_record_success_appends_two_data_points(self):
        client = self._make_client()
        client.record_success("backend", "GET therapists", latency_ms=123.4)
        names = {m["MetricName"] for m in client._buffer}
        assert len(client._buffer) == 2
        assert names == {"Upstream/RequestCount", "Upstream/Latency"}

    def test_record_failure_without_latency(self):
        client = self._make_client()
        client.record_failure("anthropic", "llm_invoke", error_type="APITimeoutError")
        names = {m["MetricName"] for m in client._buffer}
        assert names == {"Upstream/RequestCount", "Upstream/ErrorCount"}

    def test_record_failure_with_latency_appends_three_data_points(self):
        client = self._make_client()
        client.record_failure("chroma", "query", error_type="ConnectionError", latency_ms=500.0)
        assert len(client._buffer) == 3

    def test_failure_dimensions_include_error_type(self):
        client = self._make_client()
        client.record_failure("anthropic", "llm_invoke", error_type="BadRequestError")
        error_metric = next(m for m in client._buffer if m["MetricName"] == "Upstream/ErrorCount")
        assert _dims(error_metric) == {"Service": "anthropic", "ErrorType": "BadRequestError"}

    def test_record_action(self):
        client = self._make_client()
        client.record_action("book_appointment", success=False, error_type="ValidationError")
        client.record_action("list_therapists", success=True)
        failed, ok = client._buffer
        assert failed["MetricName"] == "Actions/DispatchCount"
        assert _dims(failed) == {
            "Action": "book_appointment",
            "Status": "failure",
            "ErrorType": "ValidationError",
        }
        assert _dims(ok) == {"Action": "list_therapists", "Status": "success"}


class TestTimed:
    def test_records_success(self):
        client = MetricsClient(enabled=False)
        with client.timed("chroma", "connect"):
            pass
        assert {m["MetricName"] for m in client._buffer} == {
            "Upstream/RequestCount",
            "Upstream/Latency",
        }

    def test_records_failure_and_reraises(self):
        client = MetricsClient(enabled=False)
        with pytest.raises(TimeoutError):
            with client.timed("anthropic", "llm_invoke"):
                raise TimeoutError
        error_metric = next(m for m in client._buffer if m["MetricName"] == "Upstream/ErrorCount")
        assert _dims(error_metric)["ErrorType"] == "TimeoutError"


class TestMetricsFlush:
    """Verify flush behaviour with and without CloudWatch enabled."""

    def test_flush_when_disabled_does_not_call_boto3(self):
        client = MetricsClient(enabled=False)
        client.record_success("backend", "GET therapists", latency_ms=100.0)
        assert client.flush() == 0
        assert client._buffer == []

    def test_flush_when_enabled_calls_put_metric_data(self):
        with patch.object(MetricsClient, "_start_flush_thread"):
            client = MetricsClient(enabled=True)
        mock_cw = MagicMock()
        client._cw_client = mock_cw

        client.record_success("backend", "GET therapists", latency_ms=100.0)
        sent = client.flush()

        assert sent == 2
        mock_cw.put_metric_data.assert_called_once()
        call_args = mock_cw.put_metric_data.call_args
        assert call_args[1]["Namespace"] == "PatientAssistant"
        assert len(call_args[1]["MetricData"]) == 2

    def test_flush_failure_is_logged_not_raised(self):
        with patch.object(MetricsClient, "_start_flush_thread"):
            client = MetricsClient(enabled=True)
        client._cw_client = MagicMock()
        client._cw_client.put_metric_data.side_effect = RuntimeError("throttled")
        client.record_action("get_profile", success=True)
        assert client.flush() == 0

    def test_flush_empty_buffer_returns_zero(self):
        assert MetricsClient(enabled=False).flush() == 0
