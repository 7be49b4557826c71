"""Host resource guard: decides whether the loop may spawn new workers.

``evaluate_resources`` is pure: it takes a point sample and thresholds and
returns a throttle decision. ``sample_host`` is the only part that touches
the machine (via psutil).
"""
from __future__ import annotations

from dataclasses import dataclass, field
import logging
import os

import psutil

logger = logging.getLogger("codispatch.resources")


@dataclass(frozen=True)
class ResourceSample:
    cpu_count: int
    load1: float
    free_mem_bytes: int
    total_mem_bytes: int

    @property
    def load_ratio(self) -> float:
        return self.load1 / max(1, self.cpu_count)

    @property
    def free_mem_ratio(self) -> float:
        if self.total_mem_bytes <= 0:
            return 0.0
        return self.free_mem_bytes / self.total_mem_bytes


@dataclass(frozen=True)
class ResourceThresholds:
    max_load_ratio: float = 0.9
    min_free_mem_bytes: int = 1024 * 1024 * 1024
    min_free_mem_ratio: float = 0.05


@dataclass(frozen=True)
class ResourceDecision:
    throttle: bool
    reasons: list[str] = field(default_factory=list)
    load_ratio: float = 0.0
    free_mem_ratio: float = 0.0

    def to_dict(self) -> dict:
        return {
            "throttle": self.throttle,
            "reasons": list(self.reasons),
            "load_ratio": round(self.load_ratio, 3),
            "free_mem_ratio": round(self.free_mem_ratio, 3),
        }


def _mb(value: int) -> int:
    return int(value / (1024 * 1024))


def evaluate_resources(sample: ResourceSample, thresholds: ResourceThresholds) -> ResourceDecision:
    """Return a throttle decision. A value exactly at a threshold passes."""
    reasons: list[str] = []
    load_ratio = sample.load_ratio
    free_ratio = sample.free_mem_ratio

    if load_ratio > thresholds.max_load_ratio:
        reasons.append(
            f"max_load_ratio: load ratio {load_ratio:.2f} exceeds {thresholds.max_load_ratio:.2f}"
            f" (load1={sample.load1:.2f}, cpus={sample.cpu_count})"
        )
    if sample.free_mem_bytes < thresholds.min_free_mem_bytes:
        reasons.append(
            f"min_free_mem_bytes: free memory {_mb(sample.free_mem_bytes)}MB below"
            f" {_mb(thresholds.min_free_mem_bytes)}MB"
        )
    if free_ratio < thresholds.min_free_mem_ratio:
        reasons.append(
            f"min_free_mem_ratio: free memory ratio {free_ratio:.3f} below {thresholds.min_free_mem_ratio:.3f}"
        )

    return ResourceDecision(
        throttle=bool(reasons),
        reasons=reasons,
        load_ratio=load_ratio,
        free_mem_ratio=free_ratio,
    )


def sample_host() -> ResourceSample:
    """Read CPU count, 1-minute load and memory from the running host."""
    memory = psutil.virtual_memory()
    load1, _, _ = psutil.getloadavg()
    cpu_count = psutil.cpu_count(logical=True) or os.cpu_count() or 1
    return ResourceSample(
        cpu_count=int(cpu_count),
        load1=float(load1),
        free_mem_bytes=int(memory.available),
        total_mem_bytes=int(memory.total),
    )


class ResourceGuard:
    """Samples the host and applies thresholds; logs throttle transitions."""

    def __init__(self, thresholds: ResourceThresholds, sampler=sample_host) -> None:
        self.thresholds = thresholds
        self._sampler = sampler
        self._throttled = False

    def check(self) -> ResourceDecision:
        try:
            sample = self._sampler()
        except (OSError, RuntimeError, psutil.Error) as exc:
            logger.warning("Resource sample failed, not throttling: %s", exc)
            return ResourceDecision(throttle=False)
        decision = evaluate_resources(sample, self.thresholds)
        if decision.throttle and not self._throttled:
            logger.warning("Resource guard throttling new spawns: %s", "; ".join(decision.reasons))
        elif not decision.throttle and self._throttled:
            logger.info("Resource guard cleared (load_ratio=%.2f)", decision.load_ratio)
        self._throttled = decision.throttle
        return decision
