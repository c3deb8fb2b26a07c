"""Per-attempt metrics for provider calls.

Every provider attempt (chat, stream or health probe) becomes one
``AttemptRecord``. ``MetricsLogger`` appends it to a daily JSONL audit file and
hands it to the exporters selected by ``AIROUTER_METRICS_EXPORT_MODE``
(``prom``, ``otel`` or ``both``). ``UsageTracker`` folds the same records into
the in-memory tallies reported by ``get_provider_stats``.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import threading
import time
from collections import defaultdict
from dataclasses import asdict, dataclass, field
from typing import TYPE_CHECKING, ClassVar, Optional

from .types import AIProvider, ProviderUsage, ResponseTimeStats

if TYPE_CHECKING:  # pragma: no cover
    from opentelemetry.sdk.metrics.export import MetricReader

logger = logging.getLogger(__name__)

EXPORT_MODE_ENV = "AIROUTER_METRICS_EXPORT_MODE"
EXPORT_MODES: tuple[str, ...] = ("prom", "otel", "both")
PROM_FILENAME = "prometheus.prom"
LATENCY_BUCKETS_S: tuple[float, ...] = (0.05, 0.1, 0.25, 0.5, 1.0, 2.0, 5.0, 10.0, 30.0)


@dataclass(frozen=True)
class AttemptRecord:
    provider: AIProvider
    kind: str
    ok: bool
    latency_ms: float
    model: str | None = None
    error: str | None = None
    usage_prompt: int = 0
    usage_completion: int = 0
    ts: float = field(default_factory=time.time)

    @property
    def outcome(self) -> str:
        return "success" if self.ok else "error"

    def to_json(self) -> str:
        payload = asdict(self)
        payload["provider"] = self.provider.value
        payload["latency_ms"] = int(self.latency_ms)
        return json.dumps(payload, ensure_ascii=False)


def export_mode_from_env() -> str:
    mode = (os.environ.get(EXPORT_MODE_ENV) or "").strip().lower()
    return mode if mode in EXPORT_MODES else "prom"


@dataclass
class _LatencyHistogram:
    counts: list[int] = field(default_factory=lambda: [0] * len(LATENCY_BUCKETS_S))
    total: int = 0
    sum_s: float = 0.0

    def observe(self, seconds: float) -> None:
        self.total += 1
        self.sum_s += seconds
        for index, bound in enumerate(LATENCY_BUCKETS_S):
            if seconds <= bound:
                self.counts[index] += 1


class _PrometheusFile:
    """Text exposition, rewritten atomically after every attempt."""

    def __init__(self, dirpath: str) -> None:
        self.path = os.path.join(dirpath, PROM_FILENAME)
        self._lock = threading.Lock()
        self._attempts: defaultdict[tuple[str, str, str], int] = defaultdict(int)
        self._latency: defaultdict[tuple[str, str], _LatencyHistogram] = defaultdict(_LatencyHistogram)

    def observe(self, record: AttemptRecord) -> None:
        provider = record.provider.value
        with self._lock:
            self._attempts[(provider, record.kind, record.outcome)] += 1
            self._latency[(provider, record.kind)].observe(max(record.latency_ms, 0.0) / 1000.0)
            text = self._render()
            tmp_path = f"{self.path}.tmp"
            with open(tmp_path, "w", encoding="utf-8") as handle:
                handle.write(text)
            os.replace(tmp_path, self.path)

    def render(self) -> str:
        with self._lock:
            return self._render()

    def _render(self) -> str:
        lines = [
            "# HELP airouter_attempts_total Provider attempts by kind and outcome",
            "# TYPE airouter_attempts_total counter",
        ]
        for (provider, kind, outcome), count in sorted(self._attempts.items()):
            lines.append(
                f'airouter_attempts_total{{provider="{provider}",kind="{kind}",outcome="{outcome}"}} {count}'
            )
        lines.append("# HELP airouter_attempt_latency_seconds Provider attempt latency")
        lines.append("# TYPE airouter_attempt_latency_seconds histogram")
        for (provider, kind), histogram in sorted(self._latency.items(), key=lambda item: item[0]):
            labels = f'provider="{provider}",kind="{kind}"'
            for bound, count in zip(LATENCY_BUCKETS_S, histogram.counts):
                lines.append(f'airouter_attempt_latency_seconds_bucket{{{labels},le="{bound:g}"}} {count}')
            lines.append(f'airouter_attempt_latency_seconds_bucket{{{labels},le="+Inf"}} {histogram.total}')
            lines.append(f"airouter_attempt_latency_seconds_count{{{labels}}} {histogram.total}")
            lines.append(f"airouter_attempt_latency_seconds_sum{{{labels}}} {histogram.sum_s:.6f}")
        return "\n".join(lines) + "\n"


class _OtelInstruments:
    def __init__(self, reader: Optional["MetricReader"] = None) -> None:
        from opentelemetry.sdk.metrics import MeterProvider
        from opentelemetry.sdk.metrics.export import InMemoryMetricReader
        from opentelemetry.sdk.resources import Resource

        # Private provider: the global one can only be set once per process.
        self._provider = MeterProvider(
            resource=Resource.create({"service.name": "airouter"}),
            metric_readers=[reader or InMemoryMetricReader()],
        )
        meter = self._provider.get_meter("airouter.metrics")
        self._attempts = meter.create_counter(
            "provider_attempts_total", description="Provider attempts by kind and outcome."
        )
        self._latency = meter.create_histogram(
            "provider_latency_ms", unit="ms", description="Provider attempt latency in milliseconds."
        )
        self._closed = False

    def observe(self, record: AttemptRecord) -> None:
        attributes = {"provider": record.provider.value, "kind": record.kind, "ok": record.ok}
        self._attempts.add(1, attributes=attributes)
        self._latency.record(float(record.latency_ms), attributes=attributes)

    async def flush(self) -> None:
        if self._closed:
            return
        await asyncio.get_running_loop().run_in_executor(None, self._provider.force_flush)

    def shutdown(self) -> None:
        if not self._closed:
            self._provider.shutdown()
            self._closed = True


class MetricsLogger:
    # One OpenTelemetry pipeline per process, shared by every logger.
    _otel_lock: ClassVar[threading.Lock] = threading.Lock()
    _otel_shared: ClassVar[Optional[_OtelInstruments]] = None
    _otel_unavailable: ClassVar[bool] = False
    _otel_reader: ClassVar[Optional["MetricReader"]] = None

    def __init__(self, dirpath: str, mode: str | None = None):
        self.dir = dirpath
        os.makedirs(self.dir, exist_ok=True)
        self.mode = mode if mode in EXPORT_MODES else export_mode_from_env()
        self._write_lock: asyncio.Lock | None = None
        self._prom = _PrometheusFile(self.dir) if self.mode in ("prom", "both") else None
        self._otel = self._shared_otel() if self.mode in ("otel", "both") else None

    @classmethod
    def configure_metric_reader(cls, reader: Optional["MetricReader"]) -> None:
        with cls._otel_lock:
            if cls._otel_shared is not None:
                cls._otel_shared.shutdown()
            cls._otel_shared = None
            cls._otel_reader = reader
            cls._otel_unavailable = False

    @classmethod
    def _shared_otel(cls) -> Optional[_OtelInstruments]:
        with cls._otel_lock:
            if cls._otel_shared is None and not cls._otel_unavailable:
                try:
                    cls._otel_shared = _OtelInstruments(cls._otel_reader)
                except ImportError:
                    logger.warning("metrics.otel_unavailable mode=%s", export_mode_from_env())
                    cls._otel_unavailable = True
            return cls._otel_shared

    def audit_path(self) -> str:
        return os.path.join(self.dir, f"attempts-{time.strftime('%Y%m%d')}.jsonl")

    def render_prometheus(self) -> str:
        return self._prom.render() if self._prom is not None else ""

    async def write(self, record: AttemptRecord) -> None:
        if self._write_lock is None:
            self._write_lock = asyncio.Lock()
        async with self._write_lock:
            with open(self.audit_path(), "a", encoding="utf-8") as handle:
                handle.write(record.to_json() + "\n")
        if self._prom is not None:
            self._prom.observe(record)
        if self._otel is not None:
            self._otel.observe(record)

    async def flush(self) -> None:
        if self._otel is not None:
            await self._otel.flush()


@dataclass
class _ProviderTally:
    total: int = 0
    successful: int = 0
    latency_sum_ms: float = 0.0
    latency_min_ms: float = float("inf")
    latency_max_ms: float = 0.0


class UsageTracker:
    def __init__(self) -> None:
        self._tallies: defaultdict[AIProvider, _ProviderTally] = defaultdict(_ProviderTally)

    def observe(self, record: AttemptRecord) -> None:
        tally = self._tallies[record.provider]
        tally.total += 1
        tally.successful += int(record.ok)
        tally.latency_sum_ms += record.latency_ms
        tally.latency_min_ms = min(tally.latency_min_ms, record.latency_ms)
        tally.latency_max_ms = max(tally.latency_max_ms, record.latency_ms)

    def usage(self) -> dict[AIProvider, ProviderUsage]:
        return {
            provider: ProviderUsage(
                total_requests=tally.total,
                successful_requests=tally.successful,
                failed_requests=tally.total - tally.successful,
            )
            for provider, tally in self._tallies.items()
        }

    def response_times(self) -> dict[AIProvider, ResponseTimeStats]:
        return {
            provider: ResponseTimeStats(
                average=tally.latency_sum_ms / tally.total,
                min=tally.latency_min_ms,
                max=tally.latency_max_ms,
            )
            for provider, tally in self._tallies.items()
            if tally.total
        }
