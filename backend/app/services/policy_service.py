r"""backend\app\services\policy_service.py

Persistent store of per-SKU policy drafts.

A draft is created the first time a SKU is evaluated, seeded from the
resolved recommendation, and later edited by planners.  Drafts are kept in
memory and mirrored to a JSON file written atomically."""

from __future__ import annotations

import json
import logging
import math
import os
import shutil
import tempfile
import threading
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Optional

from ..core.config import PolicyConfig, get_settings
from ..core.errors import ValidationError
from ..models.schemas import PolicyDraft, RecommendationResult
from . import stats
from .advisory_service import clamp_service_level

LOGGER = logging.getLogger(__name__)


def _nullable_non_negative(value: Any) -> Optional[float]:
    if value is None or isinstance(value, bool):
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    if not math.isfinite(number):
        return None
    return max(number, 0.0)


def normalize_policy_draft(raw: Mapping[str, Any], config: PolicyConfig) -> Optional[PolicyDraft]:
    """Return a sanitised draft or ``None`` when the SKU is missing.

    Accepts both snake_case and camelCase keys.
    """

    sku = str(raw.get("sku") or "").strip().upper()
    if not sku:
        return None

    name = raw.get("name")
    name = name.strip() or None if isinstance(name, str) else None

    lead_time = _nullable_non_negative(raw.get("lead_time_days", raw.get("leadTimeDays")))
    service_level = _nullable_non_negative(
        raw.get("service_level_percent", raw.get("serviceLevelPercent"))
    )
    return PolicyDraft(
        sku=sku,
        name=name,
        forecast_demand=_nullable_non_negative(raw.get("forecast_demand", raw.get("forecastDemand"))),
        demand_std_dev=_nullable_non_negative(raw.get("demand_std_dev", raw.get("demandStdDev"))),
        lead_time_days=stats.non_negative_int(lead_time) if lead_time is not None else None,
        service_level_percent=clamp_service_level(service_level),
        smoothing_alpha=config.smoothing_alpha,
        correlation_rho=config.correlation_rho,
    )


class PolicyService:
    """CRUD-style access to policy drafts."""

    def __init__(self, store_path: Optional[str] = None, config: Optional[PolicyConfig] = None) -> None:
        self.store_path = Path(store_path or os.path.join(get_settings().data_dir, "policies.json"))
        self.config = config or PolicyConfig()
        self._lock = threading.Lock()
        self._drafts: Optional[Dict[str, PolicyDraft]] = None

    # ------------------------------------------------------------------
    def _load(self) -> Dict[str, PolicyDraft]:
        if self._drafts is not None:
            return self._drafts

        drafts: Dict[str, PolicyDraft] = {}
        if self.store_path.exists():
            try:
                with self.store_path.open("r", encoding="utf-8") as handle:
                    payload = json.load(handle)
            except (OSError, json.JSONDecodeError) as exc:
                LOGGER.warning("Unable to read policy drafts from %s: %s", self.store_path, exc)
                payload = []
            for entry in payload if isinstance(payload, list) else []:
                if isinstance(entry, dict):
                    draft = normalize_policy_draft(entry, self.config)
                    if draft is not None:
                        drafts[draft.sku] = draft
        self._drafts = drafts
        return drafts

    def _persist(self) -> None:
        directory = self.store_path.parent
        directory.mkdir(parents=True, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(prefix=".tmp-", suffix=".json", dir=directory)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                json.dump(
                    [draft.model_dump() for draft in self._load().values()],
                    handle,
                    indent=2,
                    ensure_ascii=False,
                )
            shutil.move(tmp_path, self.store_path)
        finally:
            if os.path.exists(tmp_path):
                os.unlink(tmp_path)

    # ------------------------------------------------------------------
    def get_draft(self, sku: str) -> Optional[PolicyDraft]:
        with self._lock:
            return self._load().get(sku.strip().upper())

    def list_drafts(self, valid_skus: Optional[Iterable[str]] = None) -> List[PolicyDraft]:
        """Return drafts sorted by SKU, pruning those whose product no longer exists."""

        with self._lock:
            drafts = self._load()
            if valid_skus is not None:
                keep = {sku.strip().upper() for sku in valid_skus}
                orphans = [sku for sku in drafts if sku not in keep]
                if orphans:
                    for sku in orphans:
                        del drafts[sku]
                    LOGGER.info("Pruned %d orphaned policy drafts", len(orphans))
                    self._persist()
            return [drafts[sku] for sku in sorted(drafts)]

    def upsert(self, raw: Mapping[str, Any]) -> Optional[PolicyDraft]:
        draft = normalize_policy_draft(raw, self.config)
        if draft is None:
            return None
        with self._lock:
            self._load()[draft.sku] = draft
            self._persist()
        return draft

    def bulk_save(self, items: Iterable[Mapping[str, Any]]) -> List[PolicyDraft]:
        saved: List[PolicyDraft] = []
        with self._lock:
            drafts = self._load()
            for raw in items:
                draft = normalize_policy_draft(raw, self.config)
                if draft is None:
                    LOGGER.debug("Skipping policy draft without SKU: %r", raw)
                    continue
                drafts[draft.sku] = draft
                saved.append(draft)
            if saved:
                self._persist()
        return saved

    def ensure_policy_draft(
        self,
        sku: str,
        name: Optional[str] = None,
        recommendation: Optional[RecommendationResult] = None,
    ) -> Optional[PolicyDraft]:
        """Create the draft for ``sku`` on first sight; refresh its name afterwards."""

        normalized = (sku or "").strip().upper()
        if not normalized:
            return None
        clean_name = name.strip() or None if isinstance(name, str) else None

        with self._lock:
            drafts = self._load()
            existing = drafts.get(normalized)
            if existing is not None:
                if clean_name and existing.name != clean_name:
                    drafts[normalized] = existing.model_copy(update={"name": clean_name})
                    self._persist()
                return drafts[normalized]

            seed: Dict[str, Any] = {"sku": normalized, "name": clean_name}
            if recommendation is not None:
                seed.update(
                    forecast_demand=recommendation.forecast_demand,
                    demand_std_dev=recommendation.demand_std_dev,
                    lead_time_days=recommendation.lead_time_days,
                    service_level_percent=recommendation.service_level_percent,
                )
            draft = normalize_policy_draft(seed, self.config)
            if draft is None:
                raise ValidationError(f"cannot build a policy draft for {normalized!r}")
            drafts[normalized] = draft
            self._persist()
            LOGGER.info("Created policy draft for %s", normalized)
            return draft
