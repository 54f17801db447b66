r"""backend\app\services\action_plan_service.py

Action-plan lifecycle: storage, status transitions and item generation.

Plans move ``draft -> reviewed -> approved`` and nothing else.  The allowed
moves are listed in :data:`TRANSITIONS`; every other (status, event) pair
raises :class:`InvalidTransitionError` and leaves the record untouched.
Each successful transition is appended to a JSONL audit log.
"""

from __future__ import annotations

import asyncio
import json
import logging
import math
import os
import threading
import uuid
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Union

from ..core.config import get_settings
from ..core.errors import (
    AdvisoryUnavailableError,
    InvalidTransitionError,
    PlanNotFoundError,
    ValidationError,
)
from ..models.schemas import (
    ActionItem,
    ActionItemKpi,
    ActionPlan,
    ActionPlanEvent,
    ActionPlanSource,
    ActionPlanStatus,
)
from . import llm_service

LOGGER = logging.getLogger(__name__)

TRANSITIONS: Dict[tuple[ActionPlanStatus, ActionPlanEvent], ActionPlanStatus] = {
    (ActionPlanStatus.DRAFT, ActionPlanEvent.SUBMIT): ActionPlanStatus.REVIEWED,
    (ActionPlanStatus.REVIEWED, ActionPlanEvent.APPROVE): ActionPlanStatus.APPROVED,
}

PLANNER_ACTOR = "sales-planning-team"
APPROVER_ACTOR = "sales-lead"

DEFAULT_ITEM_CONFIDENCE = 0.5
ADVISORY_ITEM_CONFIDENCE = 0.6
ACTION_WINDOW_DAYS = 7


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def next_status(current: ActionPlanStatus, event: ActionPlanEvent) -> Optional[ActionPlanStatus]:
    return TRANSITIONS.get((current, event))


# ---------------------------------------------------------------------------
# Items


def _text(value: Any) -> str:
    return value.strip() if isinstance(value, str) else ""


def sanitize_action_items(
    raw_items: Iterable[Union[ActionItem, Mapping[str, Any]]],
    default_confidence: float = DEFAULT_ITEM_CONFIDENCE,
) -> List[ActionItem]:
    """Drop incomplete items and normalise the rest.

    Items missing who/what/when or a KPI name/window are discarded.
    Confidence is clamped to ``[0, 1]``; ids default to ``plan-<n>``.
    """

    items: List[ActionItem] = []
    for index, raw in enumerate(raw_items):
        if isinstance(raw, ActionItem):
            items.append(raw)
            continue
        if not isinstance(raw, Mapping):
            continue

        kpi = raw.get("kpi") if isinstance(raw.get("kpi"), Mapping) else {}
        who, what, when = _text(raw.get("who")), _text(raw.get("what")), _text(raw.get("when"))
        kpi_name, kpi_window = _text(kpi.get("name")), _text(kpi.get("window"))
        if not (who and what and when and kpi_name and kpi_window):
            LOGGER.debug("Dropping incomplete action item at position %d", index)
            continue

        confidence = raw.get("confidence")
        if isinstance(confidence, (int, float)) and not isinstance(confidence, bool) and math.isfinite(confidence):
            confidence = min(max(float(confidence), 0.0), 1.0)
        else:
            confidence = default_confidence

        target = kpi.get("target")
        if isinstance(target, bool) or not isinstance(target, (str, int, float)):
            target = ""

        items.append(
            ActionItem(
                id=_text(raw.get("id")) or f"plan-{index + 1}",
                who=who,
                what=what,
                when=when,
                rationale=_text(raw.get("rationale")),
                confidence=confidence,
                kpi=ActionItemKpi(name=kpi_name, target=target, window=kpi_window),
            )
        )
    return items


def build_fallback_action_items(
    available_stock: float,
    safety_stock: float,
    recommended_order_quantity: Optional[float] = None,
    today: Optional[datetime] = None,
) -> List[ActionItem]:
    """Deterministic plan used when no advisory items are available."""

    due = ((today or _utcnow()) + timedelta(days=ACTION_WINDOW_DAYS)).date().isoformat()
    items: List[ActionItem] = []

    if available_stock < safety_stock:
        quantity = recommended_order_quantity
        if quantity is None:
            quantity = safety_stock - available_stock
        items.append(
            ActionItem(
                id="fallback-replenish",
                who="Sales planning team",
                what=f"Confirm a purchase order for {max(quantity, 0):,.0f} units",
                when=due,
                rationale="Available stock is below safety stock; urgent replenishment needed.",
                confidence=0.75,
                kpi=ActionItemKpi(name="Service level", target=">=95%", window="next 4 weeks"),
            )
        )
    else:
        items.append(
            ActionItem(
                id="fallback-optimize",
                who="Marketing team",
                what="Plan a promotion to work down excess stock",
                when=due,
                rationale="Stock comfortably exceeds safety stock; demand generation needed.",
                confidence=0.62,
                kpi=ActionItemKpi(name="DOS", target="<=30 days", window="next 8 weeks"),
            )
        )

    items.append(
        ActionItem(
            id="fallback-check",
            who="Supply chain team",
            what="Review lead time and confirm supply constraints",
            when=due,
            rationale="Validate lead-time assumptions to reduce stock volatility.",
            confidence=0.58,
            kpi=ActionItemKpi(name="Lead time deviation", target="<=2 days", window="quarter"),
        )
    )
    return items


# ---------------------------------------------------------------------------
# Store


class ActionPlanStore:
    """In-memory plan store; writes to one plan id are serialised."""

    def __init__(
        self,
        audit_log_path: Optional[str] = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.audit_log_path = Path(
            audit_log_path or os.path.join(get_settings().data_dir, "action_plan_audit_log.jsonl")
        )
        self._clock = clock
        self._plans: Dict[str, ActionPlan] = {}
        self._locks: Dict[str, threading.Lock] = {}
        self._registry_lock = threading.Lock()

    # ------------------------------------------------------------------
    def _lock_for(self, plan_id: str) -> threading.Lock:
        with self._registry_lock:
            if plan_id not in self._plans:
                raise PlanNotFoundError(plan_id)
            return self._locks[plan_id]

    def _write_audit(self, event: Dict[str, Any]) -> None:
        self.audit_log_path.parent.mkdir(parents=True, exist_ok=True)
        with self.audit_log_path.open("a", encoding="utf-8") as handle:
            handle.write(json.dumps(event, separators=(",", ":"), default=str) + "\n")

    def read_audit_log(self, limit: int = 50) -> List[Dict[str, Any]]:
        if not self.audit_log_path.exists():
            return []
        events: List[Dict[str, Any]] = []
        with self.audit_log_path.open("r", encoding="utf-8") as handle:
            for line in handle:
                line = line.strip()
                if not line:
                    continue
                try:
                    events.append(json.loads(line))
                except json.JSONDecodeError:
                    LOGGER.warning("Skipping corrupt audit log line in %s", self.audit_log_path)
        return events[-limit:] if limit > 0 else events

    # ------------------------------------------------------------------
    def create_plan(
        self,
        sku: str,
        items: Iterable[Union[ActionItem, Mapping[str, Any]]],
        *,
        product_id: Optional[int] = None,
        source: ActionPlanSource = "manual",
        created_by: str = "system",
        language: str = "en",
        version: str = "v1",
    ) -> ActionPlan:
        normalized_sku = (sku or "").strip()
        if not normalized_sku:
            raise ValidationError("sku is required")
        clean_items = sanitize_action_items(items)
        if not clean_items:
            raise ValidationError("items must contain at least one complete action item")

        now = self._clock()
        plan = ActionPlan(
            id=str(uuid.uuid4()),
            sku=normalized_sku,
            product_id=product_id,
            items=clean_items,
            source=source,
            language=language,
            version=version,
            created_by=created_by,
            created_at=now,
            updated_at=now,
        )
        with self._registry_lock:
            self._plans[plan.id] = plan
            self._locks[plan.id] = threading.Lock()
        LOGGER.info("Created %s action plan %s for %s", source, plan.id, normalized_sku)
        return plan

    def get_plan(self, plan_id: str) -> ActionPlan:
        with self._registry_lock:
            plan = self._plans.get(plan_id)
        if plan is None:
            raise PlanNotFoundError(plan_id)
        return plan

    def list_plans(
        self,
        sku: Optional[str] = None,
        product_id: Optional[int] = None,
        status: Optional[ActionPlanStatus] = None,
        limit: Optional[int] = None,
    ) -> List[ActionPlan]:
        with self._registry_lock:
            plans = list(self._plans.values())
        selected = [
            plan
            for plan in plans
            if (not sku or plan.sku == sku)
            and (product_id is None or plan.product_id == product_id)
            and (status is None or plan.status == status)
        ]
        selected.sort(key=lambda plan: plan.updated_at, reverse=True)
        return selected[:limit] if limit and limit > 0 else selected

    def replace_items(
        self, plan_id: str, items: Iterable[Union[ActionItem, Mapping[str, Any]]]
    ) -> ActionPlan:
        """Swap the item list of a draft plan."""

        clean_items = sanitize_action_items(items)
        if not clean_items:
            raise ValidationError("items must contain at least one complete action item")
        with self._lock_for(plan_id):
            plan = self._plans[plan_id]
            if plan.status is not ActionPlanStatus.DRAFT:
                raise InvalidTransitionError(plan_id, plan.status.value, "edit")
            updated = plan.model_copy(update={"items": clean_items, "updated_at": self._clock()})
            self._plans[plan_id] = updated
        return updated

    def update_plan_status(
        self, plan_id: str, event: ActionPlanEvent, actor: Optional[str] = None
    ) -> ActionPlan:
        with self._lock_for(plan_id):
            plan = self._plans[plan_id]
            target = next_status(plan.status, event)
            if target is None:
                LOGGER.warning(
                    "Rejected %s on action plan %s in status %s", event.value, plan_id, plan.status.value
                )
                raise InvalidTransitionError(plan_id, plan.status.value, event.value)

            now = self._clock()
            changes: Dict[str, Any] = {"status": target, "updated_at": now}
            if target is ActionPlanStatus.REVIEWED:
                changes.update(reviewed_by=actor or PLANNER_ACTOR, submitted_at=now)
            elif target is ActionPlanStatus.APPROVED:
                changes.update(approved_by=actor or APPROVER_ACTOR, approved_at=now)
            updated = plan.model_copy(update=changes)

            # The transition only takes effect once its audit record is on disk
            self._write_audit(
                {
                    "plan_id": plan_id,
                    "sku": plan.sku,
                    "event": event.value,
                    "from": plan.status.value,
                    "to": target.value,
                    "actor": changes.get("reviewed_by") or changes.get("approved_by"),
                    "recorded_at": now.isoformat(),
                }
            )
            self._plans[plan_id] = updated
        LOGGER.info("Action plan %s moved %s -> %s", plan_id, plan.status.value, target.value)
        return updated

    def submit(self, plan_id: str, actor: str = PLANNER_ACTOR) -> ActionPlan:
        return self.update_plan_status(plan_id, ActionPlanEvent.SUBMIT, actor)

    def approve(self, plan_id: str, actor: str = APPROVER_ACTOR) -> ActionPlan:
        return self.update_plan_status(plan_id, ActionPlanEvent.APPROVE, actor)

    def reset(self) -> None:
        with self._registry_lock:
            self._plans.clear()
            self._locks.clear()


# ---------------------------------------------------------------------------
# Generation


class ActionPlanService:
    """Generate draft plans from the advisory client or the fallback builder."""

    def __init__(
        self,
        store: Optional[ActionPlanStore] = None,
        client: Optional[Any] = None,
        advisory_enabled: bool = True,
        timeout: float = 20.0,
    ) -> None:
        self.store = store or ActionPlanStore()
        self.client = client
        self.advisory_enabled = advisory_enabled
        self.timeout = timeout

    async def _advisory_items(self, sku: str, context: Mapping[str, Any]) -> List[ActionItem]:
        if not self.advisory_enabled or self.client is None:
            return []
        prompt = llm_service.build_action_plan_prompt(sku, context)
        try:
            raw = await asyncio.wait_for(self.client.request_action_items(prompt), timeout=self.timeout)
        except asyncio.TimeoutError:
            LOGGER.warning("Action item advisory for %s timed out; using fallback plan", sku)
            return []
        except AdvisoryUnavailableError as exc:
            LOGGER.warning("Action item advisory for %s failed (%s): %s", sku, exc.reason, exc)
            return []
        return sanitize_action_items(raw, default_confidence=ADVISORY_ITEM_CONFIDENCE)

    async def generate_plan(
        self,
        sku: str,
        *,
        available_stock: float,
        safety_stock: float,
        recommended_order_quantity: Optional[float] = None,
        product_id: Optional[int] = None,
        context: Optional[Mapping[str, Any]] = None,
    ) -> ActionPlan:
        prompt_context = {
            "available_stock": available_stock,
            "safety_stock": safety_stock,
            "recommended_order_quantity": recommended_order_quantity,
            **dict(context or {}),
        }
        items = await self._advisory_items(sku, prompt_context)
        source: ActionPlanSource = "llm"
        if not items:
            items = build_fallback_action_items(available_stock, safety_stock, recommended_order_quantity)
            source = "manual"
        return self.store.create_plan(sku, items, product_id=product_id, source=source)
