"""
Normalization of Pinterest pin analytics responses.

The analytics endpoint has answered with several envelope shapes over time
(``all.summary_metrics``, ``all.lifetime_metrics``, top-level summaries,
per-day lists, or a bare mapping).  ``METRIC_SHAPES`` lists them in
priority order as plain data; :func:`normalize_metrics` walks the table and
collapses the first matching shape into one :class:`PinMetrics`.
"""

from datetime import datetime
from typing import Any, Dict, Mapping, Optional, Tuple

from pinscheduler.scheduling.models import PinMetrics

# (path of keys into the response, reducer)
#   "mapping":   node is a {METRIC_NAME: value} mapping
#   "daily_sum": node is a list of {"data_status", "metrics": {...}} entries
METRIC_SHAPES: Tuple[Tuple[Tuple[str, ...], str], ...] = (
    (("all", "summary_metrics"), "mapping"),
    (("all", "lifetime_metrics"), "mapping"),
    (("summary_metrics",), "mapping"),
    (("lifetime_metrics",), "mapping"),
    (("all", "daily_metrics"), "daily_sum"),
    (("daily_metrics",), "daily_sum"),
    ((), "mapping"),
)

# Canonical counter -> accepted metric names, first present wins.
METRIC_ALIASES: Dict[str, Tuple[str, ...]] = {
    "impressions": ("IMPRESSION", "impression", "impressions"),
    "clicks": ("PIN_CLICK", "OUTBOUND_CLICK", "CLICKTHROUGH", "clicks"),
    "saves": ("SAVE", "saves"),
    "engagement": ("ENGAGEMENT", "engagement"),
}

# Daily entries with any other status are partial and must not be summed.
_READY_STATUS = "READY"


def compute_rate(count: int, impressions: int) -> float:
    """Percentage of ``count`` over ``impressions``, two decimals, 0 if no impressions."""
    if impressions <= 0:
        return 0.0
    return round(count / impressions * 100, 2)


def _dig(data: Any, path: Tuple[str, ...]) -> Any:
    node = data
    for key in path:
        if not isinstance(node, Mapping):
            return None
        node = node.get(key)
    return node


def _to_int(value: Any) -> int:
    try:
        return int(value or 0)
    except (TypeError, ValueError):
        return 0


def _extract_counters(node: Mapping[str, Any]) -> Optional[Dict[str, int]]:
    counters: Dict[str, int] = {}
    for canonical, aliases in METRIC_ALIASES.items():
        for alias in aliases:
            if alias in node:
                counters[canonical] = _to_int(node[alias])
                break
    return counters or None


def _sum_daily(node: Any) -> Optional[Dict[str, int]]:
    if not isinstance(node, list):
        return None
    totals: Dict[str, int] = {}
    for entry in node:
        if not isinstance(entry, Mapping):
            continue
        if entry.get("data_status", _READY_STATUS) != _READY_STATUS:
            continue
        counters = _extract_counters(entry.get("metrics") or {})
        for name, value in (counters or {}).items():
            totals[name] = totals.get(name, 0) + value
    return totals or None


def extract_counters(raw: Any) -> Optional[Dict[str, int]]:
    """Return canonical counters from the first matching shape, or ``None``."""
    for path, reducer in METRIC_SHAPES:
        node = _dig(raw, path)
        if reducer == "daily_sum":
            counters = _sum_daily(node)
        elif isinstance(node, Mapping):
            counters = _extract_counters(node)
        else:
            counters = None
        if counters:
            return counters
    return None


def normalize_metrics(raw: Any, collected_at: Optional[datetime] = None) -> PinMetrics:
    """Collapse a raw analytics response into a :class:`PinMetrics`.

    Unknown shapes produce all-zero metrics.  Engagement falls back to
    ``clicks + saves`` when the response carries no engagement counter.

    Args:
        raw: Decoded JSON returned by the analytics endpoint.
        collected_at: Timestamp recorded as ``last_updated``.

    Returns:
        Normalized metrics with derived rates.
    """
    counters = extract_counters(raw) or {}
    impressions = counters.get("impressions", 0)
    clicks = counters.get("clicks", 0)
    saves = counters.get("saves", 0)
    engagement = counters.get("engagement", clicks + saves)

    return PinMetrics(
        impressions=impressions,
        clicks=clicks,
        saves=saves,
        engagement_rate=compute_rate(engagement, impressions),
        click_through_rate=compute_rate(clicks, impressions),
        save_rate=compute_rate(saves, impressions),
        last_updated=collected_at,
    )


__all__ = [
    "METRIC_SHAPES",
    "METRIC_ALIASES",
    "compute_rate",
    "extract_counters",
    "normalize_metrics",
]
