"""CloudWatch custom metrics with background batching.

Records latency and failures for every upstream the assistant talks to
(``anthropic``, ``chroma``, ``backend``) and the outcome of every
dispatched action.

* Data points are buffered in memory under a lock.
* When ``METRICS_ENABLED=true`` a daemon thread flushes the buffer every
  ``FLUSH_INTERVAL_SECONDS``; otherwise points are only logged at DEBUG.
* ``put_metric_data`` accepts at most 1 000 points per call.

>>> from patient_assistant.services.metrics import metrics
>>> metrics.record_success("anthropic", "llm_invoke", latency_ms=812.0)
>>> metrics.record_action("book_appointment", success=False, error_type="ValidationError")
"""

from __future__ import annotations

import atexit
import logging
import os
import threading
import time
from contextlib import contextmanager
from datetime import UTC, datetime
from typing import Any

logger = logging.getLogger(__name__)

NAMESPACE = "PatientAssistant"
FLUSH_INTERVAL_SECONDS = 60
MAX_BATCH_SIZE = 1_000


def _point(name: str, dims: dict[str, str], value: float, unit: str) -> dict[str, Any]:
    return {
        "MetricName": name,
        "Dimensions": [{"Name": k, "Value": v} for k, v in dims.items()],
        "Timestamp": datetime.now(UTC),
        "Value": value,
        "Unit": unit,
    }


class MetricsClient:
    """Batched CloudWatch metrics publisher."""

    def __init__(self, enabled: bool | None = None) -> None:
        if enabled is None:
            enabled = os.getenv("METRICS_ENABLED", "false").lower() == "true"
        self._enabled = enabled
        self._buffer: list[dict[str, Any]] = []
        self._lock = threading.Lock()
        self._cw_client = None

        if self._enabled:
            self._start_flush_thread()

    def _get_cw_client(self):
        if self._cw_client is None:
            import boto3

            self._cw_client = boto3.client("cloudwatch")
        return self._cw_client

    # ── Upstream calls ────────────────────────────────────────────────

    def record_success(self, service: str, operation: str, latency_ms: float) -> None:
        self._append(_point("Upstream/RequestCount", {"Service": service, "Status": "success"}, 1, "Count"))
        self._append(
            _point("Upstream/Latency", {"Service": service, "Operation": operation}, latency_ms, "Milliseconds")
        )
        logger.debug("Metric: %s %s ok latency=%.1fms", service, operation, latency_ms)

    def record_failure(
        self,
        service: str,
        operation: str,
        error_type: str,
        latency_ms: float = 0,
    ) -> None:
        self._append(_point("Upstream/RequestCount", {"Service": service, "Status": "failure"}, 1, "Count"))
        self._append(_point("Upstream/ErrorCount", {"Service": service, "ErrorType": error_type}, 1, "Count"))
        if latency_ms > 0:
            self._append(
                _point("Upstream/Latency", {"Service": service, "Operation": operation}, latency_ms, "Milliseconds")
            )
        logger.debug(
            "Metric: %s %s failed error=%s latency=%.1fms", service, operation, error_type, latency_ms,
        )

    @contextmanager
    def timed(self, service: str, operation: str):
        """Record success or failure (by exception type) of the wrapped block."""
        t0 = time.perf_counter()
        try:
            yield
        except Exception as exc:
            self.record_failure(
                service, operation,
                error_type=type(exc).__name__,
                latency_ms=(time.perf_counter() - t0) * 1000,
            )
            raise
        self.record_success(service, operation, latency_ms=(time.perf_counter() - t0) * 1000)

    # ── Dispatch outcomes ─────────────────────────────────────────────

    def record_action(self, action: str, *, success: bool, error_type: str | None = None) -> None:
        dims = {"Action": action, "Status": "success" if success else "failure"}
        if error_type:
            dims["ErrorType"] = error_type
        self._append(_point("Actions/DispatchCount", dims, 1, "Count"))
        logger.debug("Metric: action %s success=%s error=%s", action, success, error_type)

    # ── Flushing ──────────────────────────────────────────────────────

    def flush(self) -> int:
        """Send buffered metrics to CloudWatch.  Returns count sent."""
        with self._lock:
            if not self._buffer:
                return 0
            batch = self._buffer[:]
            self._buffer.clear()

        if not self._enabled:
            logger.debug("Metrics flush skipped (not enabled): %d items", len(batch))
            return 0

        sent = 0
        try:
            cw = self._get_cw_client()
            for i in range(0, len(batch), MAX_BATCH_SIZE):
                chunk = batch[i : i + MAX_BATCH_SIZE]
                cw.put_metric_data(Namespace=NAMESPACE, MetricData=chunk)
                sent += len(chunk)
            logger.info("Flushed %d metrics to CloudWatch", sent)
        except Exception:
            logger.exception("Failed to flush metrics to CloudWatch")
        return sent

    def _append(self, metric_data: dict[str, Any]) -> None:
        with self._lock:
            self._buffer.append(metric_data)

    def _start_flush_thread(self) -> None:
        def _loop():
            while True:
                time.sleep(FLUSH_INTERVAL_SECONDS)
                try:
                    self.flush()
                except Exception:
                    logger.exception("Metrics flush thread error")

        t = threading.Thread(target=_loop, daemon=True, name="metrics-flush")
        t.start()
        atexit.register(self.flush)
        logger.info("Metrics flush thread started (interval=%ds)", FLUSH_INTERVAL_SECONDS)


metrics = MetricsClient()
