"""Request metrics: a daily JSONL audit log plus Prometheus text.

Every gateway outcome is appended to ``requests-YYYYMMDD.jsonl`` and folded
into in-process counters which are rendered to ``prometheus.prom`` and served
at ``GET /metrics``. Set ``GATEWAY_METRICS_PROM=0`` to skip the text file.
"""

from __future__ import annotations

import asyncio
import json
import os
import threading
import time
from collections import defaultdict
from typing import Any, Optional

from .config import _env_var_as_bool

_PROM_FILE = "prometheus.prom"
_PROM_FLAG = "GATEWAY_METRICS_PROM"
_HISTOGRAM_BUCKETS: tuple[float, ...] = (0.05, 0.1, 0.25, 0.5, 1.0, 2.0, 5.0, 10.0, 30.0)


def _new_histogram_state() -> dict[str, Any]:
    return {"buckets": [0] * (len(_HISTOGRAM_BUCKETS) + 1), "count": 0, "sum": 0.0}


class _PromMetrics:
    __slots__ = ("_dir", "_write_file", "_lock", "_counter", "_tokens", "_histogram")

    def __init__(self, dirpath: str, *, write_file: bool = True) -> None:
        self._dir = dirpath
        self._write_file = write_file
        self._lock = threading.Lock()
        self._counter: defaultdict[tuple[str, str, str, str], int] = defaultdict(int)
        self._tokens: defaultdict[tuple[str, str], int] = defaultdict(int)
        self._histogram: defaultdict[tuple[str, str], dict[str, Any]] = defaultdict(_new_histogram_state)

    def record(self, payload: dict[str, Any]) -> None:
        feature = str(payload.get("feature") or "unknown")
        provider = str(payload.get("provider") or "unknown")
        status = str(payload.get("status") or "0")
        ok_label = "true" if bool(payload.get("ok")) else "false"
        latency_seconds = max(float(payload.get("latency_ms") or 0.0) / 1000.0, 0.0)
        tokens = int(payload.get("total_tokens") or 0)

        with self._lock:
            self._counter[(feature, provider, status, ok_label)] += 1
            if tokens > 0:
                self._tokens[(feature, provider)] += tokens
            hist_state = self._histogram[(feature, ok_label)]
            buckets = hist_state["buckets"]
            for idx, bound in enumerate(_HISTOGRAM_BUCKETS):
                if latency_seconds <= bound:
                    buckets[idx] += 1
            buckets[-1] += 1
            hist_state["count"] += 1
            hist_state["sum"] += latency_seconds
            if self._write_file:
                self._write_locked()

    def render(self) -> str:
        with self._lock:
            return self._render_locked()

    def _render_locked(self) -> str:
        lines: list[str] = [
            "# HELP gateway_requests_total Total number of gateway AI requests",
            "# TYPE gateway_requests_total counter",
        ]
        for (feature, provider, status, ok_label), value in sorted(self._counter.items()):
            lines.append(
                f'gateway_requests_total{{feature="{feature}",provider="{provider}",status="{status}",ok="{ok_label}"}} {value}'
            )
        lines.append("# HELP gateway_tokens_total Tokens billed through the gateway")
        lines.append("# TYPE gateway_tokens_total counter")
        for (feature, provider), value in sorted(self._tokens.items()):
            lines.append(f'gateway_tokens_total{{feature="{feature}",provider="{provider}"}} {value}')
        lines.append("# HELP gateway_request_latency_seconds Request latency for gateway requests")
        lines.append("# TYPE gateway_request_latency_seconds histogram")
        for (feature, ok_label), state in sorted(self._histogram.items()):
            buckets = state["buckets"]
            for idx, bound in enumerate(_HISTOGRAM_BUCKETS):
                le_value = format(bound, ".6g")
                lines.append(
                    f'gateway_request_latency_seconds_bucket{{feature="{feature}",ok="{ok_label}",le="{le_value}"}} {buckets[idx]}'
                )
            lines.append(
                f'gateway_request_latency_seconds_bucket{{feature="{feature}",ok="{ok_label}",le="+Inf"}} {buckets[-1]}'
            )
            lines.append(
                f'gateway_request_latency_seconds_count{{feature="{feature}",ok="{ok_label}"}} {state["count"]}'
            )
            lines.append(
                f'gateway_request_latency_seconds_sum{{feature="{feature}",ok="{ok_label}"}} {state["sum"]}'
            )
        return "\n".join(lines) + "\n"

    def _write_locked(self) -> None:
        os.makedirs(self._dir, exist_ok=True)
        prom_path = os.path.join(self._dir, _PROM_FILE)
        tmp_path = f"{prom_path}.tmp"
        with open(tmp_path, "w", encoding="utf-8") as handle:
            handle.write(self._render_locked())
        os.replace(tmp_path, prom_path)


class MetricsLogger:
    def __init__(self, dirpath: str):
        self.dir = dirpath
        os.makedirs(self.dir, exist_ok=True)
        self._lock: Optional[asyncio.Lock] = None
        self._prom = _PromMetrics(self.dir, write_file=_env_var_as_bool(_PROM_FLAG, default=True))

    def _file(self) -> str:
        return os.path.join(self.dir, f"requests-{time.strftime('%Y%m%d', time.gmtime())}.jsonl")

    async def write(self, record: dict[str, Any]) -> None:
        if self._lock is None:
            self._lock = asyncio.Lock()
        async with self._lock:
            with open(self._file(), "a", encoding="utf-8") as handle:
                handle.write(json.dumps(record, ensure_ascii=False) + "\n")
        self._prom.record(record)

    def render_prometheus(self) -> str:
        return self._prom.render()
