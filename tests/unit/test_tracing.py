from niblet.utils.tracing import _parse_headers, add_span_event, start_span


def test_start_span_no_op_without_tracer(monkeypatch):
    monkeypatch.setattr("niblet.utils.tracing.trace", None)
    with start_span("turn.deliver", {"conversation_id": "thread_1"}) as span:
        assert span is None


def test_add_span_event_ignores_missing_span():
    add_span_event(None, "delivery.retry", {"attempt": 2})


def test_parse_headers_skips_malformed_pairs():
    assert _parse_headers("api-key=abc, broken ,=x,team = niblet") == {"api-key": "abc", "team": "niblet"}
