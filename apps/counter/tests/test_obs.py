from __future__ import annotations

import json
import logging

from counter_app import obs
from counter_app.models import CountAction


def test_http_metrics_event_flags_status_class():
    ev = obs.build_emf(**obs.http_metrics_event(route="/api/count", method="POST", status_code=503, latency_ms=12.5))

    assert ev["Service"] == obs.SERVICE
    assert ev["Route"] == "/api/count"
    assert ev["Method"] == "POST"
    assert ev["RequestLatencyMs"] == 12.5
    assert ev["RequestCount"] == 1.0
    assert ev["Request4xx"] == 0.0
    assert ev["Request5xx"] == 1.0

    cw = ev["_aws"]["CloudWatchMetrics"][0]
    assert cw["Namespace"] == obs.METRICS_NS
    assert ["Service"] in cw["Dimensions"]
    assert {m["Name"] for m in cw["Metrics"]} == {"RequestLatencyMs", "RequestCount", "Request4xx", "Request5xx"}
    # every dimension key must be present on the event itself
    for dims in cw["Dimensions"]:
        for key in dims:
            assert key in ev


def test_emf_event_is_json_serialisable():
    ev = obs.build_emf(**obs.http_metrics_event(route="/", method="GET", status_code=404, latency_ms=1))
    assert json.loads(json.dumps(ev))["Request4xx"] == 1.0


def test_trace_filter_stamps_records():
    record = logging.LogRecord("counter", logging.INFO, __file__, 1, "hello", (), None)

    token = obs.trace_id_var.set("abc")
    try:
        assert obs.TraceFilter().filter(record)
        assert record.trace_id == "abc"
        assert obs.current_trace_id() == "abc"
    finally:
        obs.trace_id_var.reset(token)

    assert obs.TraceFilter().filter(record)
    assert record.trace_id == "-"


def test_count_action_parse():
    assert CountAction.parse("inc") is CountAction.INCREMENT
    assert CountAction.parse("clear") is CountAction.CLEAR
    assert CountAction.parse("unknown") is CountAction.UNKNOWN
    assert CountAction.parse(None) is CountAction.UNKNOWN
    assert CountAction.parse(" inc") is CountAction.UNKNOWN
    assert CountAction.parse(0) is CountAction.UNKNOWN
