"""Routing metrics: JSONL request log, Prometheus exposition and optional OpenTelemetry.

Every served request is appended to ``requests-YYYYMMDD.jsonl`` (the input of
``scripts/analyze.py``). The engine additionally reports per-model outcomes
(``win`` when a model's answer is delivered, ``failure`` when it is
penalised) through :meth:`MetricsLogger.record_outcome`.

``SEEK_METRICS_EXPORT_MODE`` selects ``prom`` (default), ``otel`` or ``both``;
``SEEK_OTEL_METRICS_EXPORT`` alone implies ``both``.
"""

from __future__ import annotations

import asyncio
import json
import os
import threading
import time
from typing import Any, ClassVar, Iterable, Optional, TYPE_CHECKING

if TYPE_CHECKING:  # pragma: no cover
    from opentelemetry.sdk.metrics.export import MetricReader  # type: ignore[import-not-found]
else:  # pragma: no cover
    class MetricReader:  # type: ignore[too-many-ancestors]
        """Runtime placeholder when OpenTelemetry is unavailable."""

        pass

MODE_ENV = "SEEK_METRICS_EXPORT_MODE"
OTEL_FLAG_ENV = "SEEK_OTEL_METRICS_EXPORT"
PROM_FILE = "prometheus.prom"
PROM_CONTENT_TYPE = "text/plain; version=0.0.4; charset=utf-8"

OUTCOME_WIN = "win"
OUTCOME_FAILURE = "failure"

LATENCY_BUCKETS_S: tuple[float, ...] = (0.05, 0.1, 0.25, 0.5, 1.0, 2.0, 5.0, 10.0, 30.0)
ATTEMPT_BUCKETS: tuple[float, ...] = (0, 1, 2, 3, 4, 6, 8)

_MODES = ("prom", "otel", "both")
_INF_LE = 'le="+Inf"'


def _metrics_mode_from_env() -> str:
    mode = (os.environ.get(MODE_ENV) or "").strip().lower()
    if mode in _MODES:
        return mode
    flag = (os.environ.get(OTEL_FLAG_ENV) or "").strip().lower()
    return "both" if flag in {"1", "true", "yes", "on"} else "prom"


def _label(value: Any) -> str:
    return str(value).replace("\\", "\\\\").replace("\n", "\\n").replace('"', '\\"')


def _cache_result(record: dict[str, Any]) -> str:
    value = record.get("cache")
    return value if value in ("hit", "miss") else "none"


class _Family:
    """One Prometheus metric family: a counter, or a histogram when ``buckets`` is set."""

    __slots__ = ("name", "help", "labels", "buckets", "samples")

    def __init__(self, name: str, help_text: str, labels: tuple[str, ...], buckets: Optional[tuple[float, ...]] = None):
        self.name = name
        self.help = help_text
        self.labels = labels
        self.buckets = buckets
        self.samples: dict[tuple[str, ...], Any] = {}

    def inc(self, key: tuple[str, ...]) -> None:
        self.samples[key] = self.samples.get(key, 0) + 1

    def observe(self, key: tuple[str, ...], value: float) -> None:
        assert self.buckets is not None
        state = self.samples.get(key)
        if state is None:
            state = self.samples[key] = {"counts": [0] * len(self.buckets), "count": 0, "sum": 0.0}
        for idx, bound in enumerate(self.buckets):
            if value <= bound:
                state["counts"][idx] += 1
        state["count"] += 1
        state["sum"] += value

    def _selector(self, key: tuple[str, ...], *extra: str) -> str:
        pairs = [f'{name}="{_label(value)}"' for name, value in zip(self.labels, key)]
        pairs.extend(extra)
        return "{" + ",".join(pairs) + "}"

    def render(self) -> Iterable[str]:
        yield f"# HELP {self.name} {self.help}"
        yield f"# TYPE {self.name} {'counter' if self.buckets is None else 'histogram'}"
        for key, sample in sorted(self.samples.items()):
            if self.buckets is None:
                yield f"{self.name}{self._selector(key)} {sample}"
                continue
            for bound, count in zip(self.buckets, sample["counts"]):
                le = 'le="' + format(bound, ".6g") + '"'
                yield f"{self.name}_bucket{self._selector(key, le)} {count}"
            yield f"{self.name}_bucket{self._selector(key, _INF_LE)} {sample['count']}"
            yield f"{self.name}_count{self._selector(key)} {sample['count']}"
            yield f"{self.name}_sum{self._selector(key)} {sample['sum']}"


class _PromMetrics:
    def __init__(self, dirpath: str) -> None:
        self._dir = dirpath
        self._lock = threading.Lock()
        self.requests = _Family("seek_requests_total", "Requests served per route and task", ("route", "task", "ok"))
        self.cache = _Family("seek_cache_lookups_total", "Answer and suggestion cache lookups per route", ("route", "result"))
        self.latency = _Family(
            "seek_request_latency_seconds",
            "Request latency per route and cache result",
            ("route", "cache"),
            LATENCY_BUCKETS_S,
        )
        self.attempts = _Family(
            "seek_upstream_attempts",
            "Upstream model attempts per uncached AI request",
            ("route", "task"),
            ATTEMPT_BUCKETS,
        )
        self.outcomes = _Family(
            "seek_model_outcomes_total",
            "Delivered answers and penalised failures per model",
            ("model", "tier", "outcome"),
        )
        self._families = (self.requests, self.cache, self.latency, self.attempts, self.outcomes)

    def record_request(self, record: dict[str, Any]) -> None:
        route = str(record.get("route") or "unknown")
        task = str(record.get("task") or "none")
        ok = "true" if record.get("ok") is True else "false"
        cache = _cache_result(record)
        latency_s = max(float(record.get("latency_ms") or 0) / 1000.0, 0.0)
        with self._lock:
            self.requests.inc((route, task, ok))
            if cache != "none":
                self.cache.inc((route, cache))
            self.latency.observe((route, cache), latency_s)
            # hits never reach the engine
            if task != "none" and cache != "hit":
                self.attempts.observe((route, task), float(record.get("attempts") or 0))
            self._write_locked()

    def record_outcome(self, model: str, tier: str, outcome: str) -> None:
        with self._lock:
            self.outcomes.inc((model, tier, outcome))
            self._write_locked()

    def render(self) -> str:
        with self._lock:
            return self._render_locked()

    def _render_locked(self) -> str:
        lines: list[str] = []
        for family in self._families:
            lines.extend(family.render())
        return "\n".join(lines) + "\n"

    def _write_locked(self) -> None:
        os.makedirs(self._dir, exist_ok=True)
        path = os.path.join(self._dir, PROM_FILE)
        tmp_path = f"{path}.tmp"
        with open(tmp_path, "w", encoding="utf-8") as handle:
            handle.write(self._render_locked())
        os.replace(tmp_path, path)


class _OtelMetrics:
    def __init__(self, reader: Optional["MetricReader"] = None):
        from opentelemetry.sdk.metrics import MeterProvider  # type: ignore[import-not-found]
        from opentelemetry.sdk.metrics.export import InMemoryMetricReader
        from opentelemetry.sdk.resources import Resource  # type: ignore[import-not-found]

        self._provider = MeterProvider(
            resource=Resource.create({"service.name": "seekrouter"}),
            metric_readers=[reader or InMemoryMetricReader()],
        )
        meter = self._provider.get_meter("seekrouter.metrics")
        self._requests = meter.create_counter("requests_total", description="Requests served.")
        self._latency = meter.create_histogram("latency_ms", unit="ms", description="Request latency.")
        self._attempts = meter.create_histogram("upstream_attempts", description="Model attempts per uncached request.")
        self._outcomes = meter.create_counter("model_outcomes_total", description="Model wins and penalised failures.")
        self._closed = False

    def record_request(self, record: dict[str, Any]) -> None:
        attrs: dict[str, Any] = {
            key: record[key] for key in ("route", "task", "tier") if isinstance(record.get(key), str) and record[key]
        }
        attrs["cache"] = _cache_result(record)
        attrs["ok"] = record.get("ok") is True
        self._requests.add(1, attributes=attrs)
        latency = record.get("latency_ms")
        if isinstance(latency, (int, float)):
            self._latency.record(float(latency), attributes=attrs)
        if "task" in attrs and attrs["cache"] != "hit":
            self._attempts.record(int(record.get("attempts") or 0), attributes={"route": attrs.get("route", "unknown")})

    def record_outcome(self, model: str, tier: str, outcome: str) -> None:
        self._outcomes.add(1, attributes={"model": model, "tier": tier, "outcome": outcome})

    async def flush(self) -> None:
        if not self._closed:
            await asyncio.get_running_loop().run_in_executor(None, self._provider.force_flush)

    def shutdown(self) -> None:
        if not self._closed:
            self._provider.shutdown()
            self._closed = True


class MetricsLogger:
    # One exporter per process, shared by every logger instance.
    _otel_lock: ClassVar[threading.Lock] = threading.Lock()
    _otel: ClassVar[Optional[_OtelMetrics]] = None
    _otel_unavailable: ClassVar[bool] = False
    _reader: ClassVar[Optional["MetricReader"]] = None

    def __init__(self, dirpath: str):
        self.dir = dirpath
        os.makedirs(self.dir, exist_ok=True)
        self.mode = _metrics_mode_from_env()
        self._prom = _PromMetrics(self.dir) if self.mode in ("prom", "both") else None
        self._write_lock: Optional[asyncio.Lock] = None

    @classmethod
    def configure_metric_reader(cls, reader: Optional["MetricReader"]) -> None:
        with cls._otel_lock:
            if cls._otel is not None:
                cls._otel.shutdown()
            cls._otel = None
            cls._otel_unavailable = False
            cls._reader = reader

    @classmethod
    def _ensure_otel(cls, mode: str) -> Optional[_OtelMetrics]:
        if mode not in ("otel", "both"):
            return None
        with cls._otel_lock:
            if cls._otel is None and not cls._otel_unavailable:
                try:
                    cls._otel = _OtelMetrics(cls._reader)
                except ImportError:
                    cls._otel_unavailable = True
            return cls._otel

    def _file(self) -> str:
        return os.path.join(self.dir, f"requests-{time.strftime('%Y%m%d')}.jsonl")

    async def write(self, record: dict[str, Any]) -> None:
        if self._write_lock is None:
            self._write_lock = asyncio.Lock()
        async with self._write_lock:
            with open(self._file(), "a", encoding="utf-8") as handle:
                handle.write(json.dumps(record, ensure_ascii=False) + "\n")
        if self._prom is not None:
            self._prom.record_request(record)
        otel = self._ensure_otel(self.mode)
        if otel is not None:
            otel.record_request(record)

    def record_outcome(self, model: str, tier: str, outcome: str) -> None:
        if self._prom is not None:
            self._prom.record_outcome(model, tier, outcome)
        otel = self._ensure_otel(self.mode)
        if otel is not None:
            otel.record_outcome(model, tier, outcome)

    def render_prometheus(self) -> bytes:
        if self._prom is None:
            return b""
        return self._prom.render().encode("utf-8")

    async def flush(self) -> None:
        otel = self._ensure_otel(self.mode)
        if otel is not None:
            await otel.flush()
