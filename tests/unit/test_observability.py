from niblet.utils.observability import RequestMetrics, time_phase


def test_request_metrics_snapshot():
    metrics = RequestMetrics()
    metrics.record("/v1/conversations/{conversation_id}/turns", 10.0)
    metrics.record("/v1/conversations/{conversation_id}/turns", 20.0)
    metrics.record("/v1/session", 5.0)
    metrics.record_phase("gating", 12.0)
    metrics.record_phase("reply", 25.0)
    metrics.record_turn_outcome("completed")
    metrics.record_turn_outcome("completed")
    metrics.record_turn_outcome("completed")
    metrics.record_turn_outcome("delivery_failed")
    metrics.increment_counter("delivery::retry")
    metrics.increment_counter("delivery::retry")

    with time_phase(metrics, "phase_test"):
        pass

    snapshot = metrics.snapshot()
    turns_endpoint = snapshot["/v1/conversations/{conversation_id}/turns"]
    assert turns_endpoint["count"] == 2
    assert turns_endpoint["avg_latency_ms"] == 15.0
    assert turns_endpoint["p50_latency_ms"] == 10.0
    assert turns_endpoint["p95_latency_ms"] == 20.0
    assert snapshot["/v1/session"]["count"] == 1

    phases = snapshot["phases"]
    assert phases["gating"]["avg_latency_ms"] == 12.0
    assert phases["reply"]["count"] == 1
    assert phases["phase_test"]["count"] == 1

    turns = snapshot["turns"]
    assert turns["completed"] == 3
    assert turns["delivery_failed"] == 1
    assert turns["total"] == 4

    status = snapshot["status"]
    assert status["latency_gating"]["status"] == "green"
    assert status["turn_failure_rate"]["value"] == 0.25
    assert status["turn_failure_rate"]["status"] == "red"
    assert "latency_delivery" not in status

    assert snapshot["counters"]["delivery::retry"] == 2


def test_cancelled_turns_do_not_count_as_failures():
    metrics = RequestMetrics()
    metrics.record_turn_outcome("cancelled")
    metrics.record_turn_outcome("completed")

    status = metrics.snapshot()["status"]
    assert status["turn_failure_rate"]["value"] == 0.0
    assert status["turn_failure_rate"]["status"] == "green"


def test_slow_phase_turns_amber_then_red():
    metrics = RequestMetrics()
    metrics.record_phase("gating", 600.0)
    assert metrics.snapshot()["status"]["latency_gating"]["status"] == "amber"

    metrics.record_phase("gating", 5000.0)
    assert metrics.snapshot()["status"]["latency_gating"]["status"] == "red"


def test_reset_clears_everything():
    metrics = RequestMetrics()
    metrics.record("/v1/metrics", 1.0)
    metrics.increment_counter("gate::timeout")
    metrics.record_turn_outcome("reply_failed")

    metrics.reset()

    snapshot = metrics.snapshot()
    assert "counters" not in snapshot
    assert "/v1/metrics" not in snapshot
    assert snapshot["turns"]["total"] == 0
    assert snapshot["status"] == {"turn_failure_rate": {"value": 0.0, "status": "green"}}
