# apps/counter/counter_app/obs.py
from __future__ import annotations

import os
import time
import uuid
import contextvars
import logging
import json
from fastapi import Request

trace_id_var = contextvars.ContextVar("trace_id", default=None)

SERVICE = os.getenv("SERVICE_NAME", "counter")
METRICS_NS = os.getenv("METRICS_NAMESPACE", "CounterService")
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

# ---------------------------------------------------------------------
# EMF logger: raw JSON lines only, CloudWatch parses the top-level object.
# ---------------------------------------------------------------------
_emf_logger = logging.getLogger("emf")
_emf_logger.setLevel(LOG_LEVEL)
_emf_logger.propagate = False
if not _emf_logger.handlers:
    _h = logging.StreamHandler()
    _h.setFormatter(logging.Formatter("%(message)s"))
    _emf_logger.addHandler(_h)


class TraceFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        record.trace_id = trace_id_var.get() or "-"
        return True


def setup_json_logging():
    """
    Structured app logs with trace_id. This is separate from EMF.
    """
    from pythonjsonlogger import jsonlogger

    root = logging.getLogger()
    root.setLevel(LOG_LEVEL)

    for h in list(root.handlers):
        root.removeHandler(h)

    handler = logging.StreamHandler()
    fmt = jsonlogger.JsonFormatter("%(asctime)s %(levelname)s %(name)s %(message)s %(trace_id)s")
    handler.setFormatter(fmt)
    handler.addFilter(TraceFilter())
    root.addHandler(handler)


def get_or_create_trace_id(request: Request) -> str:
    tid = request.headers.get("x-trace-id") or request.headers.get("x-request-id")
    if not tid:
        tid = uuid.uuid4().hex
    trace_id_var.set(tid)
    return tid


def current_trace_id() -> str:
    return trace_id_var.get() or ""


# ---------------------------------------------------------------------
# EMF helpers
# ---------------------------------------------------------------------
def build_emf(*, dimensions: dict, metrics: list[tuple[str, str]], values: dict, dimension_sets: list[list[str]]) -> dict:
    """
    Build ONE EMF event publishing the same values under several dimension sets.
    """
    return {
        "_aws": {
            "Timestamp": int(time.time() * 1000),
            "CloudWatchMetrics": [{
                "Namespace": METRICS_NS,
                "Dimensions": dimension_sets,
                "Metrics": [{"Name": n, "Unit": u} for n, u in metrics],
            }]
        },
        **dimensions,
        **values,
    }


def _emit_emf(**kwargs):
    _emf_logger.info(json.dumps(build_emf(**kwargs), separators=(",", ":"), ensure_ascii=False))


def http_metrics_event(*, route: str, method: str, status_code: int, latency_ms: float) -> dict:
    dims_all = {
        "Service": SERVICE,
        "Route": route,
        "Method": method,
    }

    vals = {
        "RequestLatencyMs": float(latency_ms),
        "RequestCount": 1.0,
        "Request4xx": 1.0 if 400 <= status_code < 500 else 0.0,
        "Request5xx": 1.0 if status_code >= 500 else 0.0,
    }

    mets = [
        ("RequestLatencyMs", "Milliseconds"),
        ("RequestCount", "Count"),
        ("Request4xx", "Count"),
        ("Request5xx", "Count"),
    ]

    # Service-wide rollup, then per-route/per-method for debugging
    dimension_sets = [
        ["Service"],
        ["Service", "Route", "Method"],
    ]

    return dict(dimensions=dims_all, metrics=mets, values=vals, dimension_sets=dimension_sets)


def emit_http_metrics(*, route: str, method: str, status_code: int, latency_ms: float):
    _emit_emf(**http_metrics_event(
        route=route,
        method=method,
        status_code=status_code,
        latency_ms=latency_ms,
    ))
