"""
Pipeline metrics — counters and latency measurements.

Publishes to CloudWatch custom metrics in production and logs through
structlog in development. Every publish is best-effort: a metrics failure is
logged and never fails the event being processed.
"""
from __future__ import annotations

import asyncio
import structlog
from collections import deque
from datetime import datetime, timezone
from typing import Any, Optional

logger = structlog.get_logger()


class MetricsPublisher:

    def __init__(
        self,
        namespace: str = "RadioPager",
        use_cloudwatch: bool = False,
        aws_region: str = "us-east-2",
    ):
        self.namespace = namespace
        self.use_cloudwatch = use_cloudwatch
        self.aws_region = aws_region
        self._cw_client = None
        self.recorded: deque[dict[str, Any]] = deque(maxlen=1000)

    def _client(self):
        if self._cw_client is None:
            import boto3
            self._cw_client = boto3.client("cloudwatch", region_name=self.aws_region)
        return self._cw_client

    async def put(
        self,
        name: str,
        value: float,
        unit: str = "Count",
        dimensions: Optional[dict[str, str]] = None,
        namespace: Optional[str] = None,
        timestamp: Optional[datetime] = None,
    ) -> None:
        datum = {
            "MetricName": name,
            "Value": value,
            "Unit": unit,
            "Timestamp": timestamp or datetime.now(timezone.utc),
            "Dimensions": [
                {"Name": k, "Value": str(v)} for k, v in (dimensions or {}).items()
            ],
        }
        self.recorded.append(datum)
        try:
            if self.use_cloudwatch:
                await asyncio.to_thread(
                    self._client().put_metric_data,
                    Namespace=namespace or self.namespace,
                    MetricData=[datum],
                )
            else:
                logger.info("pipeline_metric", name=name, value=value, unit=unit,
                            dimensions=dimensions or {})
        except Exception as e:
            logger.warning("metric_publish_failed", name=name, error=str(e))

    async def increment(self, name: str, **dimensions: str) -> None:
        await self.put(name, 1, "Count", dimensions)

    async def timing(self, name: str, seconds: float, **dimensions: str) -> None:
        await self.put(name, seconds, "Seconds", dimensions)
