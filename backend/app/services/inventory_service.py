r"""backend\app\services\inventory_service.py

Movement analytics and product catalogue backed by pandas.

Outbound movements and product records are loaded from ``DATA_DIR``
(``movements.csv`` / ``products.csv``, or their Parquet siblings) on first use
and can also be registered programmatically.  The service implements the
history lookup and peer registry used by the baseline cascade."""

from __future__ import annotations

import logging
import threading
from datetime import date, datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional

import pandas as pd

from ..models.schemas import (
    DailyHistoryPoint,
    PeerProduct,
    ProductRecord,
    StockState,
    WeeklyHistoryPoint,
    normalize_date_key,
)
from .io_utils import dataset_exists, prefer_parquet

LOGGER = logging.getLogger(__name__)

MOVEMENT_COLUMNS = ["sku", "date", "outbound_quantity"]


def _utc_today() -> date:
    return datetime.now(timezone.utc).date()


def normalize_sku(value: Any) -> str:
    return str(value or "").strip().upper()


class InventoryService:
    """Provide daily/weekly outbound history and product metadata."""

    def __init__(
        self,
        data_root: str = "data",
        *,
        today: Callable[[], date] = _utc_today,
        autoload: bool = True,
    ) -> None:
        self.data_root = Path(data_root)
        self._today = today
        self._autoload = autoload
        self._lock = threading.RLock()
        self._movements: Optional[pd.DataFrame] = None
        self._products: Optional[Dict[str, ProductRecord]] = None

    # ------------------------------------------------------------------
    def _movements_path(self) -> Path:
        return self.data_root / "movements.csv"

    def _products_path(self) -> Path:
        return self.data_root / "products.csv"

    # ------------------------------------------------------------------
    def load_movements(self) -> pd.DataFrame:
        path = self._movements_path()
        if not dataset_exists(path):
            raise FileNotFoundError(f"Movements dataset not found at {path}")
        frame = prefer_parquet(path, columns=MOVEMENT_COLUMNS, dtype={"sku": "string"})
        return self._normalise_movements(frame)

    @staticmethod
    def _normalise_movements(frame: pd.DataFrame) -> pd.DataFrame:
        if frame.empty:
            return pd.DataFrame(columns=MOVEMENT_COLUMNS)
        frame = frame.copy()
        frame["sku"] = frame["sku"].astype(str).str.strip().str.upper()
        frame["date"] = pd.to_datetime(frame["date"], errors="coerce", utc=True).dt.tz_convert(None).dt.normalize()
        frame["outbound_quantity"] = pd.to_numeric(frame["outbound_quantity"], errors="coerce")
        frame = frame.dropna(subset=["date", "outbound_quantity"])
        frame["outbound_quantity"] = frame["outbound_quantity"].clip(lower=0.0)
        return frame[MOVEMENT_COLUMNS]

    def _ensure_movements(self) -> pd.DataFrame:
        with self._lock:
            if self._movements is not None:
                return self._movements
            frame = pd.DataFrame(columns=MOVEMENT_COLUMNS)
            if self._autoload:
                try:
                    frame = self.load_movements()
                except FileNotFoundError:
                    LOGGER.debug("No movements dataset under %s; starting empty", self.data_root)
                except (ValueError, KeyError, OSError) as exc:
                    LOGGER.warning("Unable to load movements from %s: %s", self._movements_path(), exc)
            self._movements = frame
            return frame

    def record_movement(self, sku: str, day: str | date | datetime, outbound_quantity: float) -> None:
        """Append one outbound movement (quantities are clamped to zero)."""

        row = pd.DataFrame(
            [{"sku": sku, "date": normalize_date_key(day), "outbound_quantity": outbound_quantity}]
        )
        row = self._normalise_movements(row)
        with self._lock:
            current = self._ensure_movements()
            self._movements = row if current.empty else pd.concat([current, row], ignore_index=True)

    # ------------------------------------------------------------------
    def _window(self, sku: str, days: int) -> pd.Series:
        """Daily outbound totals for ``sku`` within the last ``days`` days."""

        frame = self._ensure_movements()
        if frame.empty or days <= 0:
            return pd.Series(dtype=float)
        end = pd.Timestamp(self._today())
        start = end - pd.Timedelta(days=days - 1)
        mask = (frame["sku"] == normalize_sku(sku)) & (frame["date"] >= start) & (frame["date"] <= end)
        subset = frame.loc[mask]
        if subset.empty:
            return pd.Series(dtype=float)
        return subset.groupby("date")["outbound_quantity"].sum().sort_index()

    def get_daily_history(self, sku: str, days: int) -> List[DailyHistoryPoint]:
        daily = self._window(sku, days)
        return [
            DailyHistoryPoint(date=stamp.date().isoformat(), outbound_quantity=float(qty))
            for stamp, qty in daily.items()
        ]

    def get_weekly_history(self, sku: str, days: int) -> List[WeeklyHistoryPoint]:
        """Weekly totals keyed by the Monday that starts each week."""

        daily = self._window(sku, days)
        if daily.empty:
            return []
        week_starts = daily.index - pd.to_timedelta(daily.index.weekday, unit="D")
        weekly = daily.groupby(week_starts).sum().sort_index()
        return [
            WeeklyHistoryPoint(week_start=stamp.date().isoformat(), outbound_quantity=float(qty))
            for stamp, qty in weekly.items()
        ]

    def get_monthly_totals(self, sku: str, months: int = 6) -> Dict[str, float]:
        daily = self._window(sku, months * 31)
        if daily.empty:
            return {}
        monthly = daily.groupby(daily.index.to_period("M")).sum()
        return {f"{period}-01": float(qty) for period, qty in monthly.items()}

    # ------------------------------------------------------------------
    def load_products(self) -> List[ProductRecord]:
        path = self._products_path()
        if not dataset_exists(path):
            raise FileNotFoundError(f"Products dataset not found at {path}")
        frame = prefer_parquet(path)
        frame = frame.astype(object).where(pd.notna(frame), None)
        fields = set(ProductRecord.model_fields)
        records = []
        for row in frame.to_dict(orient="records"):
            payload = {key: value for key, value in row.items() if key in fields and value is not None}
            records.append(ProductRecord(**payload))
        return records

    def _ensure_products(self) -> Dict[str, ProductRecord]:
        with self._lock:
            if self._products is not None:
                return self._products
            products: Dict[str, ProductRecord] = {}
            if self._autoload:
                try:
                    products = {record.sku: record for record in self.load_products()}
                except FileNotFoundError:
                    LOGGER.debug("No products dataset under %s; starting empty", self.data_root)
                except (ValueError, KeyError, OSError) as exc:
                    LOGGER.warning("Unable to load products from %s: %s", self._products_path(), exc)
            self._products = products
            return products

    def register_product(self, record: ProductRecord) -> ProductRecord:
        with self._lock:
            self._ensure_products()[record.sku] = record
        return record

    def register_products(self, records: Iterable[ProductRecord]) -> None:
        for record in records:
            self.register_product(record)

    def get_product(self, sku: str) -> Optional[ProductRecord]:
        return self._ensure_products().get(normalize_sku(sku))

    def list_products(self) -> List[ProductRecord]:
        return sorted(self._ensure_products().values(), key=lambda record: record.sku)

    def list_products_by_category(self, category: str) -> List[PeerProduct]:
        return [
            PeerProduct(sku=record.sku, daily_avg=record.daily_avg, daily_std_dev=record.daily_std)
            for record in self.list_products()
            if record.category == category
        ]

    def get_stock_state(self, sku: str) -> Optional[StockState]:
        record = self.get_product(sku)
        if record is None:
            return None
        return StockState(on_hand=record.on_hand, reserved=record.reserved)
