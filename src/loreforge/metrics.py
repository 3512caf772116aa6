"""
Narration metrics collector.

Tracks: generation latency, fallback count, attempts per turn, memory usage.
Logs structured metrics to <log_dir>/metrics.jsonl.
"""
from __future__ import annotations

import json
import os
import threading
import time
from pathlib import Path

import psutil


class NarrationMetrics:
    """Thread-safe narration outcome tracker with JSONL file logging."""

    def __init__(self, log_dir: str | Path = "sessions"):
        self._lock = threading.Lock()
        self._start_time: float = time.time()

        self._total_generations: int = 0
        self._total_latency_ms: float = 0.0
        self._fallback_count: int = 0
        self._total_attempts: int = 0
        self._min_latency_ms: float = float("inf")
        self._max_latency_ms: float = 0.0
        self._per_provider: dict[str, int] = {}

        self._log_dir = Path(log_dir)
        self._log_dir.mkdir(parents=True, exist_ok=True)
        self._log_path = self._log_dir / "metrics.jsonl"

        self._process = psutil.Process(os.getpid())

    @property
    def log_path(self) -> Path:
        return self._log_path

    def record_generation(
        self,
        latency_ms: float,
        success: bool,
        attempts: int = 1,
        provider: str = "",
    ) -> None:
        """Records one narration turn and appends it to the JSONL log."""
        entry = {
            "timestamp": time.strftime("%Y-%m-%dT%H:%M:%S%z"),
            "latency_ms": round(latency_ms, 2),
            "success": success,
            "attempts": attempts,
            "provider": provider,
        }

        with self._lock:
            self._total_generations += 1
            self._total_latency_ms += latency_ms
            self._total_attempts += attempts
            if latency_ms < self._min_latency_ms:
                self._min_latency_ms = latency_ms
            if latency_ms > self._max_latency_ms:
                self._max_latency_ms = latency_ms
            if not success:
                self._fallback_count += 1
            if provider:
                self._per_provider[provider] = self._per_provider.get(provider, 0) + 1

        # Append to JSONL file outside the lock.
        try:
            with open(self._log_path, "a", encoding="utf-8") as fh:
                fh.write(json.dumps(entry, ensure_ascii=True) + "\n")
        except OSError:
            pass

    def get_summary(self) -> dict:
        with self._lock:
            total = self._total_generations
            avg_lat = (self._total_latency_ms / total) if total > 0 else 0.0
            min_lat = self._min_latency_ms if total > 0 else 0.0
            max_lat = self._max_latency_ms if total > 0 else 0.0
            fallbacks = self._fallback_count
            attempts = self._total_attempts
            per_provider = dict(self._per_provider)

        uptime_s = time.time() - self._start_time
        mem_info = self._process.memory_info()

        return {
            "latency": {
                "avg_ms": round(avg_lat, 2),
                "min_ms": round(min_lat, 2),
                "max_ms": round(max_lat, 2),
            },
            "generations": {
                "total": total,
                "total_attempts": attempts,
                "by_provider": per_provider,
                "uptime_seconds": round(uptime_s, 1),
            },
            "memory": {
                "rss_mb": round(mem_info.rss / (1024 * 1024), 1),
                "vms_mb": round(mem_info.vms / (1024 * 1024), 1),
            },
            "fallbacks": {
                "count": fallbacks,
                "rate_percent": round((fallbacks / total * 100) if total > 0 else 0.0, 2),
            },
        }
