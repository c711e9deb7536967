"""
Delivery metrics.

``CloudWatchMetrics`` buffers data points and ships them in batches;
``NullMetrics`` has the same lifecycle and does nothing. The instance lives
as long as the container; each handler invocation calls ``start()`` first and
``shutdown()`` (flush, then stop recording) in its ``finally``.
"""

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from botocore.exceptions import BotoCoreError, ClientError

from moony_sms.utils.logger import get_logger

logger = get_logger("metrics")

MAX_BATCH = 20


class NullMetrics:
    def start(self) -> None:
        pass

    def record(self, name: str, value: float = 1, unit: str = "Count", dimensions: Optional[Dict[str, str]] = None) -> None:
        pass

    def flush(self) -> None:
        pass

    def shutdown(self) -> None:
        pass


class CloudWatchMetrics:
    def __init__(self, client: Any, namespace: str, max_batch: int = MAX_BATCH):
        self.client = client
        self.namespace = namespace
        self.max_batch = max_batch
        self._buffer: List[Dict[str, Any]] = []
        self._running = False

    def start(self) -> None:
        self._running = True

    def record(self, name: str, value: float = 1, unit: str = "Count", dimensions: Optional[Dict[str, str]] = None) -> None:
        if not self._running:
            return
        self._buffer.append(
            {
                "MetricName": name,
                "Dimensions": [{"Name": k, "Value": v} for k, v in (dimensions or {}).items()],
                "Value": value,
                "Unit": unit,
                "Timestamp": datetime.now(timezone.utc),
            }
        )
        if len(self._buffer) >= self.max_batch:
            self.flush()

    def flush(self) -> None:
        while self._buffer:
            batch, self._buffer = self._buffer[: self.max_batch], self._buffer[self.max_batch :]
            try:
                self.client.put_metric_data(Namespace=self.namespace, MetricData=batch)
            except (ClientError, BotoCoreError) as e:
                # Metrics are best effort; a dropped batch must not fail a send.
                logger.warning("metrics.flush_failed", extra={"error": str(e), "dropped": len(batch)})

    def shutdown(self) -> None:
        self.flush()
        self._running = False
