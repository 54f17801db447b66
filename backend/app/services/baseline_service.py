r"""backend\app\services\baseline_service.py

Demand baseline cascade.

The resolver tries a fixed list of strategies and keeps the first estimate
that is not ``None``:

1. monthly formula over caller supplied history
2. the same formula over monthly totals rebuilt from daily outbound history
3. EWMA over the last ``ewma_days`` calendar days
4. median of category peers
5. metrics the caller already knows

Every strategy is a plain function so it can be tested in isolation.  The
resolver only handles I/O (history lookups with a timeout) and note
collection.
"""

from __future__ import annotations

import asyncio
import calendar
import logging
import math
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from typing import Callable, Dict, Iterable, List, Mapping, Optional, Protocol, Sequence

from ..core.config import PolicyConfig
from ..models.schemas import (
    BaselineEstimate,
    DailyHistoryPoint,
    DemandMetrics,
    DemandSample,
    HistoryPoint,
    PeerProduct,
    ProductRecord,
    WeeklyHistoryPoint,
    normalize_date_key,
)
from . import stats

LOGGER = logging.getLogger(__name__)


class HistoryLookup(Protocol):
    """Source of per-SKU outbound history."""

    def get_daily_history(self, sku: str, days: int) -> List[DailyHistoryPoint]: ...

    def get_weekly_history(self, sku: str, days: int) -> List[WeeklyHistoryPoint]: ...


class PeerRegistry(Protocol):
    """Catalogue view used to find products in the same category."""

    def get_product(self, sku: str) -> Optional[ProductRecord]: ...

    def list_products_by_category(self, category: str) -> List[PeerProduct]: ...


@dataclass
class BaselineResolution:
    baseline: Optional[BaselineEstimate]
    notes: List[str] = field(default_factory=list)


def _utc_today() -> date:
    return datetime.now(timezone.utc).date()


def _days_in_month(key: str) -> int:
    try:
        anchor = date.fromisoformat(key[:10])
    except ValueError:
        return 30
    return calendar.monthrange(anchor.year, anchor.month)[1]


def _finite_non_negative(value: Optional[float]) -> Optional[float]:
    if value is None:
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    if not math.isfinite(number):
        return None
    return max(number, 0.0)


# ---------------------------------------------------------------------------
# Monthly formula


def demand_samples_from_history(history: Iterable[HistoryPoint]) -> List[DemandSample]:
    """One sample per calendar day of caller history, oldest first.

    Entries without a date or an actual are ignored.  When the same calendar
    day appears twice the later entry wins.
    """

    per_day: Dict[str, float] = {}
    for point in history:
        if point.date is None or point.actual is None:
            continue
        actual = _finite_non_negative(point.actual)
        if actual is None:
            continue
        per_day[point.date[:10]] = float(stats.non_negative_int(actual))
    return [DemandSample(date=key, quantity=per_day[key]) for key in sorted(per_day)]


def demand_samples_from_daily(daily: Iterable[DailyHistoryPoint]) -> List[DemandSample]:
    samples: List[DemandSample] = []
    for point in daily:
        quantity = _finite_non_negative(point.outbound_quantity) or 0.0
        try:
            samples.append(
                DemandSample(date=point.date, quantity=float(stats.non_negative_int(quantity)))
            )
        except ValueError:
            LOGGER.debug("Skipping daily point with invalid date %r", point.date)
    return samples


def monthly_totals_from_samples(samples: Iterable[DemandSample]) -> Dict[str, float]:
    """Collapse samples to ``{YYYY-MM-01: total}``."""

    totals: Dict[str, float] = {}
    for sample in samples:
        month_key = f"{sample.date[:7]}-01"
        totals[month_key] = totals.get(month_key, 0.0) + sample.quantity
    return totals


def monthly_totals_from_history(history: Iterable[HistoryPoint]) -> Dict[str, float]:
    return monthly_totals_from_samples(demand_samples_from_history(history))


def monthly_totals_from_daily(daily: Iterable[DailyHistoryPoint]) -> Dict[str, float]:
    """Sum daily outbound quantities into month buckets."""

    return monthly_totals_from_samples(demand_samples_from_daily(daily))


def formula_from_monthly_totals(
    totals: Mapping[str, float],
    config: PolicyConfig,
) -> Optional[BaselineEstimate]:
    """Daily mean and spread of the most recent monthly totals.

    Each month is divided by its own day count before averaging, so a 31-day
    month and a 28-day month with the same total yield different daily rates.
    """

    months = sorted(totals)
    if len(months) < config.min_monthly_window:
        return None

    recent = months[-config.monthly_window :]
    daily_values = [totals[key] / _days_in_month(key) for key in recent]

    method = "formula-monthly" if len(recent) >= config.monthly_window else "formula-monthly-partial"
    return BaselineEstimate(
        forecast_demand=stats.non_negative_int(stats.mean(daily_values)),
        demand_std_dev=stats.non_negative_int(stats.population_std_dev(daily_values)),
        method=method,
        sample_count=len(recent),
        window_label=f"last {len(recent)} months",
        raw_daily_values=daily_values,
    )


def formula_from_history(
    history: Iterable[HistoryPoint],
    config: PolicyConfig,
) -> Optional[BaselineEstimate]:
    return formula_from_monthly_totals(monthly_totals_from_history(history), config)


# ---------------------------------------------------------------------------
# Daily EWMA


def ewma_from_daily(
    daily: Iterable[DailyHistoryPoint],
    config: PolicyConfig,
    today: date,
) -> Optional[BaselineEstimate]:
    """EWMA over a dense window of ``config.ewma_days`` days ending ``today``.

    Days without an observation count as zero.  An all-zero window means
    there is nothing to smooth and ``None`` is returned.
    """

    lookup: Dict[str, float] = {}
    for point in daily:
        try:
            key = normalize_date_key(point.date)
        except ValueError:
            continue
        lookup[key] = _finite_non_negative(point.outbound_quantity) or 0.0

    values = [
        lookup.get((today - timedelta(days=offset)).isoformat(), 0.0)
        for offset in range(config.ewma_days - 1, -1, -1)
    ]
    if all(value == 0 for value in values):
        return None

    smoothed = stats.exponential_smooth(values, config.smoothing_alpha)
    return BaselineEstimate(
        forecast_demand=stats.non_negative_int(smoothed),
        demand_std_dev=stats.non_negative_int(stats.population_std_dev(values)),
        method="daily-ewma",
        sample_count=len(values),
        window_label=f"last {config.ewma_days} days",
        raw_daily_values=values,
    )


# ---------------------------------------------------------------------------
# Peers and metrics


def peer_median(
    peers: Sequence[PeerProduct],
    sku: str,
    category: str,
    config: PolicyConfig,
) -> Optional[BaselineEstimate]:
    """Median demand of the other products in ``category``."""

    target = sku.strip().upper()
    others = [peer for peer in peers if peer.sku.strip().upper() != target]
    averages = [v for v in (_finite_non_negative(p.daily_avg) for p in others) if v is not None]
    spreads = [v for v in (_finite_non_negative(p.daily_std_dev) for p in others) if v is not None]

    median_avg = stats.median(averages)
    if median_avg is None:
        return None
    median_std = stats.median(spreads)
    if median_std is None:
        median_std = median_avg * config.peer_std_ratio

    return BaselineEstimate(
        forecast_demand=stats.non_negative_int(median_avg),
        demand_std_dev=stats.non_negative_int(median_std),
        method="category-peer-median",
        sample_count=len(others),
        window_label=f"{len(others)} peers in {category}",
    )


def metrics_fallback(
    metrics: Optional[DemandMetrics],
    config: PolicyConfig,
) -> Optional[BaselineEstimate]:
    if metrics is None:
        return None
    average = _finite_non_negative(metrics.daily_avg)
    if average is None:
        average = _finite_non_negative(metrics.avg_outbound_7d)
    if average is None:
        return None

    spread = _finite_non_negative(metrics.daily_std)
    if spread is None:
        spread = average * config.peer_std_ratio

    return BaselineEstimate(
        forecast_demand=stats.non_negative_int(average),
        demand_std_dev=stats.non_negative_int(spread),
        method="metrics-fallback",
        window_label="product metrics",
    )


# ---------------------------------------------------------------------------
# Resolver


class BaselineResolver:
    """Run the strategy cascade for one product."""

    def __init__(
        self,
        history_lookup: Optional[HistoryLookup] = None,
        peer_registry: Optional[PeerRegistry] = None,
        config: Optional[PolicyConfig] = None,
        today: Callable[[], date] = _utc_today,
    ) -> None:
        self.history_lookup = history_lookup
        self.peer_registry = peer_registry
        self.config = config or PolicyConfig()
        self._today = today

    # ------------------------------------------------------------------
    async def _daily_history(self, sku: str) -> List[DailyHistoryPoint]:
        """Fetch daily history, degrading to an empty list on failure."""

        if self.history_lookup is None:
            return []
        days = max(self.config.monthly_lookback_months * 31, self.config.ewma_days)
        try:
            result = await asyncio.wait_for(
                asyncio.to_thread(self.history_lookup.get_daily_history, sku, days),
                timeout=self.config.history_timeout_seconds,
            )
        except asyncio.TimeoutError:
            LOGGER.warning("Daily history lookup for %s timed out; treating as empty", sku)
            return []
        except Exception:
            LOGGER.exception("Daily history lookup for %s failed; treating as empty", sku)
            return []
        return list(result or [])

    # ------------------------------------------------------------------
    async def _peers(self, sku: str, category: Optional[str]) -> tuple[Optional[str], List[PeerProduct]]:
        registry = self.peer_registry
        if registry is None:
            return category, []

        def lookup() -> tuple[Optional[str], List[PeerProduct]]:
            resolved = category
            if not resolved:
                record = registry.get_product(sku)
                resolved = record.category if record is not None else None
            if not resolved:
                return None, []
            return resolved, list(registry.list_products_by_category(resolved))

        try:
            return await asyncio.wait_for(
                asyncio.to_thread(lookup), timeout=self.config.history_timeout_seconds
            )
        except asyncio.TimeoutError:
            LOGGER.warning("Peer lookup for %s timed out; skipping peer median", sku)
        except Exception:
            LOGGER.exception("Peer lookup for %s failed; skipping peer median", sku)
        return category, []

    # ------------------------------------------------------------------
    async def resolve(
        self,
        sku: Optional[str],
        history: Optional[Iterable[HistoryPoint]] = None,
        metrics: Optional[DemandMetrics] = None,
        category: Optional[str] = None,
    ) -> BaselineResolution:
        cfg = self.config
        notes: List[str] = []
        normalized_sku = (sku or "").strip().upper()

        def accept(estimate: BaselineEstimate, note: str) -> BaselineResolution:
            notes.append(note)
            notes.append(estimate.summary())
            LOGGER.debug("Baseline for %s resolved via %s", normalized_sku or "-", estimate.method)
            return BaselineResolution(baseline=estimate, notes=notes)

        direct = formula_from_history(history or [], cfg)
        if direct is not None:
            if direct.method == "formula-monthly":
                note = f"Converted monthly outbound totals for the {direct.window_label} to daily rates."
            else:
                note = (
                    f"Only the {direct.window_label} of monthly data were available; "
                    "precision improves as more outbound history accumulates."
                )
            return accept(direct, note)

        if normalized_sku:
            daily = await self._daily_history(normalized_sku)

            rebuilt = formula_from_monthly_totals(monthly_totals_from_daily(daily), cfg)
            if rebuilt is not None:
                return accept(
                    rebuilt,
                    f"Rebuilt monthly totals from daily outbound history for the {rebuilt.window_label}.",
                )

            ewma = ewma_from_daily(daily, cfg, self._today())
            if ewma is not None:
                return accept(
                    ewma,
                    f"Applied EWMA (alpha={cfg.smoothing_alpha}) to daily outbound over the "
                    f"{ewma.window_label}.",
                )

            resolved_category, peers = await self._peers(normalized_sku, category)
            if resolved_category and peers:
                peer = peer_median(peers, normalized_sku, resolved_category, cfg)
                if peer is not None:
                    return accept(peer, f"Used the median of {peer.window_label}.")

        fallback = metrics_fallback(metrics, cfg)
        if fallback is not None:
            return accept(fallback, "Used the product metrics supplied with the request.")

        notes.append(
            f"Insufficient outbound data in the last {cfg.monthly_window} months "
            "to compute a formula baseline."
        )
        LOGGER.info("No baseline available for %s", normalized_sku or "-")
        return BaselineResolution(baseline=None, notes=notes)
