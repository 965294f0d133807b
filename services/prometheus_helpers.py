"""Prometheus collector factories that survive module reloads.

Reimporting a module that defines collectors (uvicorn reload, pytest reusing
the default registry) raises ``ValueError`` for duplicated time series; in that
case the already registered collector is returned instead.
"""

from __future__ import annotations

from typing import Any, Iterable, Optional, Sequence, Type, TypeVar

from prometheus_client import REGISTRY, Counter, Gauge, Histogram
from prometheus_client.metrics import MetricWrapperBase

from core.logging import get_logger

logger = get_logger(__name__)

_M = TypeVar("_M", bound=MetricWrapperBase)


def _registered(name: str) -> Optional[Any]:
    collectors = getattr(REGISTRY, "_names_to_collectors", None)
    if not isinstance(collectors, dict):
        return None
    # Counters register under both ``name`` and ``name_total``.
    return collectors.get(name) or collectors.get(f"{name}_total")


def _build(kind: Type[_M], name: str, documentation: str, labelnames: Optional[Sequence[str]], **kwargs: Any) -> Optional[_M]:
    try:
        return kind(name, documentation, tuple(labelnames or ()), **kwargs)
    except ValueError:
        collector = _registered(name)
        if collector is None:
            logger.debug("%s %s already registered but not found in registry.", kind.__name__, name)
        return collector


def build_counter(name: str, documentation: str, labelnames: Optional[Sequence[str]] = None) -> Optional[Counter]:
    return _build(Counter, name, documentation, labelnames)


def build_gauge(name: str, documentation: str, labelnames: Optional[Sequence[str]] = None) -> Optional[Gauge]:
    return _build(Gauge, name, documentation, labelnames)


def build_histogram(
    name: str,
    documentation: str,
    labelnames: Optional[Sequence[str]] = None,
    buckets: Optional[Iterable[float]] = None,
) -> Optional[Histogram]:
    if buckets is None:
        return _build(Histogram, name, documentation, labelnames)
    return _build(Histogram, name, documentation, labelnames, buckets=tuple(buckets))


__all__ = ["build_counter", "build_gauge", "build_histogram"]
