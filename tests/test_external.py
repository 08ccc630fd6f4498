"""Policy file loading, Slack alerts, metrics export and the job scheduler."""

import time

import httpx
import pytest
from unittest.mock import AsyncMock

from kb_learning.config import FailureKind
from kb_learning.shared.infrastructure.grafana import GrafanaOTLPExporter
from kb_learning.learning.infrastructure import (
    CircuitBreaker,
    CircuitState,
    LearningConfigManager,
    LearningScheduler,
    SlackClient,
)


WEBHOOK = "https://hooks.slack.test/services/T000/B000/XXXX"


class TestLearningConfigManager:

    def test_missing_file_uses_environment_defaults(self, tmp_path):
        manager = LearningConfigManager()
        policy = manager.load(tmp_path / "absent.yaml")

        assert policy == manager()
        assert policy.publishing.publish_threshold == 0.75

    def test_file_overrides_only_given_keys(self, tmp_path):
        path = tmp_path / "learning_config.yaml"
        path.write_text("publishing:\n  publish_threshold: 0.9\ngate:\n  auto_response_enabled: true\n")

        policy = LearningConfigManager().load(path)

        assert policy.publishing.publish_threshold == 0.9
        assert policy.publishing.auto_publish_enabled is True
        assert policy.gate.auto_response_enabled is True
        assert policy.gate.high_threshold == 0.85

    def test_invalid_reload_keeps_previous_policy(self, tmp_path):
        path = tmp_path / "learning_config.yaml"
        path.write_text("clustering:\n  similarity_threshold: 0.9\n")
        manager = LearningConfigManager()
        manager.load(path)

        path.write_text("gate:\n  high_threshold: 0.5\n  medium_threshold: 0.7\n")
        assert manager.reload() is False
        assert manager.policy.clustering.similarity_threshold == 0.9

        path.write_text("clustering:\n  similarity_threshold: 0.75\n")
        assert manager.reload() is True
        assert manager.policy.clustering.similarity_threshold == 0.75

    @pytest.mark.parametrize("body", ["unknown_section:\n  x: 1\n", "- just\n- a list\n"])
    def test_invalid_file_at_startup_raises(self, tmp_path, body):
        path = tmp_path / "learning_config.yaml"
        path.write_text(body)
        with pytest.raises(ValueError):
            LearningConfigManager().load(path)

    def test_policy_before_load_raises(self):
        with pytest.raises(RuntimeError):
            LearningConfigManager().policy


class TestCircuitBreaker:

    def test_opens_after_threshold(self):
        breaker = CircuitBreaker(failure_threshold=2, recovery_timeout=60)
        breaker.record_failure()
        assert breaker.allow_request()
        breaker.record_failure()
        assert breaker.state == CircuitState.OPEN
        assert not breaker.allow_request()

    def test_half_open_after_recovery_timeout(self):
        breaker = CircuitBreaker(failure_threshold=1, recovery_timeout=0.01)
        breaker.record_failure()
        time.sleep(0.02)
        assert breaker.state == CircuitState.HALF_OPEN
        breaker.record_success()
        assert breaker.state == CircuitState.CLOSED


def _slack(handler) -> SlackClient:
    client = SlackClient(webhook_url=WEBHOOK, channel="#kb-learning", sleep=AsyncMock())
    client._http_client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return client


class TestSlackClient:

    @pytest.mark.asyncio
    async def test_no_webhook_configured(self):
        client = SlackClient(webhook_url="")
        assert await client.send_failure_alert(["T-1"], FailureKind.TRANSIENT_PROVIDER, "down") is False

    @pytest.mark.asyncio
    async def test_successful_alert(self):
        requests = []

        def handler(request):
            requests.append(request)
            return httpx.Response(200, text="ok")

        client = _slack(handler)
        sent = await client.send_failure_alert(
            [f"T-{n}" for n in range(12)], FailureKind.MALFORMED_OUTPUT, "missing category"
        )
        await client.close()

        assert sent is True
        assert len(requests) == 1
        body = requests[0].read().decode()
        assert "malformed output" in body
        assert "(+2 more)" in body
        assert "#kb-learning" in body

    @pytest.mark.asyncio
    async def test_repeated_failures_open_the_circuit(self):
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(500)

        client = _slack(handler)
        for _ in range(5):
            assert await client.send_failure_alert(["T-1"], FailureKind.TRANSIENT_PROVIDER, "down") is False
        assert len(calls) == 15

        assert await client.send_failure_alert(["T-1"], FailureKind.TRANSIENT_PROVIDER, "down") is False
        assert len(calls) == 15
        await client.close()

    @pytest.mark.asyncio
    async def test_transport_errors_are_retried(self):
        attempts = []

        def handler(request):
            attempts.append(request)
            if len(attempts) < 3:
                raise httpx.ConnectError("connection refused", request=request)
            return httpx.Response(200)

        client = _slack(handler)
        assert await client.send_failure_alert(["T-1"], FailureKind.TRANSIENT_PROVIDER, "down") is True
        assert len(attempts) == 3
        await client.close()


class TestLearningScheduler:

    @pytest.mark.asyncio
    async def test_start_registers_jobs_once(self):
        scheduler = LearningScheduler()
        job = AsyncMock()
        scheduler.add_job("learning_queue_drain", job, 30)
        scheduler.add_job("effectiveness_scoring", job, 3600)

        await scheduler.start()
        await scheduler.start()
        try:
            assert scheduler.is_running
            assert scheduler.job_ids == ["learning_queue_drain", "effectiveness_scoring"]
            assert scheduler._scheduler.get_job("learning_queue_drain").max_instances == 1
        finally:
            await scheduler.stop()

        assert not scheduler.is_running


class TestGrafanaExporter:

    @pytest.mark.asyncio
    async def test_unconfigured_exporter_sends_nothing(self):
        exporter = GrafanaOTLPExporter(host="", api_key="", instance_id="")
        assert not exporter.is_enabled()
        assert await exporter.export_learning_run("batch", 3, 3, 2, 0) is False

    def test_payload_carries_every_gauge(self):
        exporter = GrafanaOTLPExporter(host="https://otlp.grafana.test", api_key="key", instance_id="42")
        payload = exporter._build_payload(
            [("learning_patterns_found", "1", 3), ("learning_failures", "1", 1)],
            {"trigger": "worker"},
        )

        metrics = payload["resourceMetrics"][0]["scopeMetrics"][0]["metrics"]
        assert [m["name"] for m in metrics] == ["learning_patterns_found", "learning_failures"]
        point = metrics[0]["gauge"]["dataPoints"][0]
        assert point["asInt"] == 3
        assert {"key": "trigger", "value": {"stringValue": "worker"}} in point["attributes"]
        assert exporter._url == "https://otlp.grafana.test/otlp/v1/metrics"
