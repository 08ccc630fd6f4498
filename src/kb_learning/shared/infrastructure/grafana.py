"""
Grafana OTLP Metrics Exporter
==============================

Pushes pipeline metrics to Grafana Cloud via OTLP.

Metrics exported:
- llm_tokens_total / llm_latency_ms: per generation or embedding call
- learning_patterns_found / learning_articles_created /
  learning_articles_published / learning_failures: per learning run
"""

import base64
import time
from typing import Dict, List, Optional, Tuple

import httpx

from kb_learning.config import settings
from kb_learning.shared.infrastructure.logging import get_logger

logger = get_logger(__name__)

# (name, unit, value)
Gauge = Tuple[str, str, int]


class GrafanaOTLPExporter:
    """
    Export pipeline metrics to Grafana Cloud via OTLP HTTP endpoint.

    Disabled (every export returns False) unless host, API key and instance
    ID are all configured.
    """

    def __init__(
        self,
        host: Optional[str] = None,
        api_key: Optional[str] = None,
        instance_id: Optional[str] = None
    ):
        self._host = host or settings.grafana_host
        self._api_key = api_key or settings.grafana_api_key
        self._instance_id = instance_id or settings.grafana_instance_id
        self._enabled = bool(self._host and self._api_key and self._instance_id)

        if self._enabled:
            auth_pair = f"{self._instance_id}:{self._api_key}"
            self._auth_encoded = base64.b64encode(auth_pair.encode()).decode()
            if "/otlp/v1/metrics" not in self._host:
                self._url = f"{self._host}/otlp/v1/metrics"
            else:
                self._url = self._host

    def is_enabled(self) -> bool:
        """Check if exporter is properly configured."""
        return self._enabled

    def _build_payload(self, gauges: List[Gauge], attributes: Dict[str, str]) -> dict:
        timestamp_ns = int(time.time() * 1_000_000_000)
        metric_attributes = [
            {"key": key, "value": {"stringValue": str(value)}}
            for key, value in {"service": settings.app_name, **attributes}.items()
        ]
        return {
            "resourceMetrics": [{
                "resource": {
                    "attributes": [
                        {"key": "service.name", "value": {"stringValue": settings.app_name}},
                        {"key": "service.version", "value": {"stringValue": settings.app_version}},
                    ]
                },
                "scopeMetrics": [{
                    "metrics": [
                        {
                            "name": name,
                            "unit": unit,
                            "gauge": {
                                "dataPoints": [{
                                    "asInt": value,
                                    "timeUnixNano": timestamp_ns,
                                    "attributes": metric_attributes,
                                }]
                            },
                        }
                        for name, unit, value in gauges
                    ]
                }],
            }]
        }

    async def _push(self, gauges: List[Gauge], attributes: Dict[str, str]) -> bool:
        if not self._enabled:
            return False

        headers = {
            "Content-Type": "application/json",
            "Authorization": f"Basic {self._auth_encoded}",
        }
        try:
            async with httpx.AsyncClient(timeout=10.0) as client:
                response = await client.post(
                    self._url,
                    headers=headers,
                    json=self._build_payload(gauges, attributes)
                )
        except httpx.HTTPError as e:
            logger.error("Error exporting metrics to Grafana", extra={"error": str(e)})
            return False

        if response.status_code != 200:
            logger.warning(
                "Failed to export metrics to Grafana",
                extra={"status_code": response.status_code, "response": response.text[:500]}
            )
            return False
        return True

    async def export_llm_metrics(
        self,
        model: str,
        prompt_tokens: int,
        completion_tokens: int,
        latency_ms: int,
        operation: str = "chat_completion"
    ) -> bool:
        """Export token usage and latency for one provider call."""
        return await self._push(
            [
                ("llm_tokens_total", "1", prompt_tokens + completion_tokens),
                ("llm_latency_ms", "ms", latency_ms),
            ],
            {"model": model, "operation": operation},
        )

    async def export_learning_run(
        self,
        trigger: str,
        patterns_found: int,
        articles_created: int,
        articles_published: int,
        failures: int
    ) -> bool:
        """Export the counters of a finished batch run or worker drain."""
        return await self._push(
            [
                ("learning_patterns_found", "1", patterns_found),
                ("learning_articles_created", "1", articles_created),
                ("learning_articles_published", "1", articles_published),
                ("learning_failures", "1", failures),
            ],
            {"trigger": trigger},
        )


# Global exporter instance
_grafana_exporter: Optional[GrafanaOTLPExporter] = None


def get_grafana_exporter() -> GrafanaOTLPExporter:
    """Get or create global Grafana exporter instance."""
    global _grafana_exporter
    if _grafana_exporter is None:
        _grafana_exporter = GrafanaOTLPExporter()
    return _grafana_exporter


def init_grafana_exporter(host: str, api_key: str, instance_id: str) -> GrafanaOTLPExporter:
    """Replace the global exporter with one built from explicit credentials."""
    global _grafana_exporter
    _grafana_exporter = GrafanaOTLPExporter(host=host, api_key=api_key, instance_id=instance_id)
    return _grafana_exporter
