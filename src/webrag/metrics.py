"""
Request metrics and host resource snapshots for the QA service.

Tracks: latency, throughput, status codes, cold-path requests, shortcut
replies and timeouts by phase. Logs one structured line per request to
metrics.jsonl.
"""
from __future__ import annotations

import json
import os
import platform
import threading
import time
from collections import Counter
from datetime import datetime, timezone
from pathlib import Path

import psutil

from .config import LOG_DIR

_MB = 1024 * 1024


def utc_timestamp() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


class MetricsCollector:
    """Thread-safe request metrics tracker with JSONL file logging."""

    def __init__(self, log_dir: str | Path | None = LOG_DIR):
        self._lock = threading.Lock()
        self._start_time: float = time.time()

        # Counters.
        self._total_requests: int = 0
        self._total_latency_ms: float = 0.0
        self._min_latency_ms: float = float("inf")
        self._max_latency_ms: float = 0.0
        self._status_counts: Counter[int] = Counter()
        self._endpoint_counts: Counter[str] = Counter()
        self._timeouts_by_phase: Counter[str] = Counter()
        self._cold_requests: int = 0
        self._shortcut_replies: int = 0

        # Logging.
        self._log_path: Path | None = None
        if log_dir is not None:
            log_root = Path(log_dir)
            log_root.mkdir(parents=True, exist_ok=True)
            self._log_path = log_root / "metrics.jsonl"

        # Process handle for memory tracking.
        self._process = psutil.Process(os.getpid())

    def record_request(
        self,
        endpoint: str,
        latency_ms: float,
        status_code: int,
        *,
        cold: bool = False,
        shortcut: bool = False,
        timeout_phase: str | None = None,
    ) -> None:
        """Records a single request's outcome and appends to the JSONL log."""
        entry = {
            "timestamp": utc_timestamp(),
            "endpoint": endpoint,
            "latency_ms": round(latency_ms, 2),
            "status_code": int(status_code),
            "cold": bool(cold),
            "shortcut": bool(shortcut),
            "timeout_phase": timeout_phase,
        }

        with self._lock:
            self._total_requests += 1
            self._total_latency_ms += latency_ms
            if latency_ms < self._min_latency_ms:
                self._min_latency_ms = latency_ms
            if latency_ms > self._max_latency_ms:
                self._max_latency_ms = latency_ms
            self._status_counts[int(status_code)] += 1
            self._endpoint_counts[endpoint] += 1
            if cold:
                self._cold_requests += 1
            if shortcut:
                self._shortcut_replies += 1
            if timeout_phase:
                self._timeouts_by_phase[timeout_phase] += 1

        if self._log_path is None:
            return
        # Append to JSONL file outside the lock.
        try:
            with open(self._log_path, "a", encoding="utf-8") as fh:
                fh.write(json.dumps(entry, ensure_ascii=True) + "\n")
        except OSError:
            pass

    def get_summary(self) -> dict:
        """Returns a metrics snapshot."""
        with self._lock:
            total = self._total_requests
            avg_lat = (self._total_latency_ms / total) if total > 0 else 0.0
            min_lat = self._min_latency_ms if total > 0 else 0.0
            max_lat = self._max_latency_ms if total > 0 else 0.0
            statuses = {str(code): count for code, count in sorted(self._status_counts.items())}
            endpoints = dict(self._endpoint_counts)
            timeouts = dict(self._timeouts_by_phase)
            cold = self._cold_requests
            shortcuts = self._shortcut_replies
            errors = sum(count for code, count in self._status_counts.items() if code >= 400)

        uptime_s = time.time() - self._start_time
        throughput_rps = (total / uptime_s) if uptime_s > 0 else 0.0
        mem_info = self._process.memory_info()

        return {
            "latency": {
                "avg_ms": round(avg_lat, 2),
                "min_ms": round(min_lat, 2),
                "max_ms": round(max_lat, 2),
            },
            "throughput": {
                "total_requests": total,
                "requests_per_second": round(throughput_rps, 4),
                "uptime_seconds": round(uptime_s, 1),
            },
            "requests": {
                "by_endpoint": endpoints,
                "by_status": statuses,
                "cold_path": cold,
                "shortcut_replies": shortcuts,
                "timeouts_by_phase": timeouts,
            },
            "memory": {
                "rss_mb": round(mem_info.rss / _MB, 1),
                "vms_mb": round(mem_info.vms / _MB, 1),
            },
            "errors": {
                "count": errors,
                "rate_percent": round((errors / total * 100) if total > 0 else 0.0, 2),
            },
        }


def _cpu_model() -> str:
    model = platform.processor()
    if model:
        return model
    try:
        with open("/proc/cpuinfo", encoding="utf-8") as fh:
            for line in fh:
                if line.lower().startswith("model name"):
                    return line.split(":", 1)[1].strip()
    except OSError:
        pass
    return platform.machine() or "unknown"


def system_snapshot(process: psutil.Process | None = None) -> dict:
    """Host CPU and memory usage plus this process's footprint."""
    proc = process or psutil.Process(os.getpid())
    mem = proc.memory_info()
    vm = psutil.virtual_memory()
    freq = psutil.cpu_freq()
    try:
        load_average = [round(value, 2) for value in os.getloadavg()]
    except (AttributeError, OSError):
        load_average = [0.0, 0.0, 0.0]

    return {
        "cpu": {
            "usage": psutil.cpu_percent(interval=None),
            "cores": psutil.cpu_count(logical=True) or 0,
            "model": _cpu_model(),
            "speed": round(freq.current) if freq else 0,
            "loadAverage": load_average,
        },
        "memory": {
            "rss": round(mem.rss / _MB),
            "vms": round(mem.vms / _MB),
        },
        "system": {
            "freeMemory": round(vm.available / _MB),
            "totalMemory": round(vm.total / _MB),
            "uptime": round(time.time() - proc.create_time(), 1),
        },
        "timestamp": utc_timestamp(),
    }
