"""Threshold alerting with cooldown over a tenant's recent feedback."""

from __future__ import annotations

import enum
import logging
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence

from sqlalchemy.future import select

from database import async_session_maker
from models.notification_record import NotificationRecord
from models.preferences import Preferences
from services.notifications import EmailDelivery, render_alert_email
from services.tenancy import NOISE_CATEGORY, TenantKey, as_utc
from services.window_metrics import compute_window_metrics, load_window_items, resolve_window, top_items

logger = logging.getLogger(__name__)

Checkpoint = Optional[Callable[[], Awaitable[None]]]


class AlertState(str, enum.Enum):
    IDLE = "idle"
    EVALUATING = "evaluating"
    NO_TRIGGER = "no_trigger"
    TRIGGERED = "triggered"


@dataclass(frozen=True)
class AlertThresholds:
    issue_threshold: int = 3
    volume_threshold_multiplier: float = 1.5
    sentiment_threshold: float = 0.0
    comment_growth_threshold: float = 2.0

    @classmethod
    def from_preferences(cls, prefs: Preferences) -> "AlertThresholds":
        return cls(
            issue_threshold=int(prefs.issue_threshold if prefs.issue_threshold is not None else 3),
            volume_threshold_multiplier=float(
                prefs.volume_threshold_multiplier if prefs.volume_threshold_multiplier is not None else 1.5
            ),
            sentiment_threshold=float(prefs.sentiment_threshold if prefs.sentiment_threshold is not None else 0.0),
            comment_growth_threshold=float(
                prefs.comment_growth_threshold if prefs.comment_growth_threshold is not None else 2.0
            ),
        )


@dataclass
class CategoryEvaluation:
    category: str
    count: int
    previous_count: int
    comments: int
    previous_comments: int
    avg_sentiment: Optional[float]
    volume_triggered: bool
    sentiment_triggered: bool
    comment_growth_triggered: bool
    trending: bool
    item_ids: List[str] = field(default_factory=list)
    top_items: List[Dict[str, Any]] = field(default_factory=list)

    @property
    def triggered(self) -> bool:
        return self.volume_triggered or self.sentiment_triggered or self.comment_growth_triggered

    @property
    def reasons(self) -> List[str]:
        reasons = []
        if self.volume_triggered:
            reasons.append("volume")
        if self.sentiment_triggered:
            reasons.append("sentiment")
        if self.comment_growth_triggered:
            reasons.append("comment growth")
        return reasons


@dataclass
class AlertOutcome:
    state: AlertState
    reason: str
    transitions: List[AlertState] = field(default_factory=list)
    evaluations: List[CategoryEvaluation] = field(default_factory=list)
    record_id: Optional[str] = None
    delivered: bool = False


def comment_growth_triggered(comments: int, previous_comments: int, threshold: float) -> bool:
    """Growth ratio against the previous window, or the absolute total when it had none."""
    if previous_comments > 0:
        return comments / previous_comments >= threshold
    return comments >= threshold


def evaluate_thresholds(
    current_items: Sequence[Any],
    previous_items: Sequence[Any],
    thresholds: AlertThresholds,
) -> List[CategoryEvaluation]:
    """Evaluate every real category (Noise and unclassified excluded)."""
    current: Dict[str, List[Any]] = defaultdict(list)
    for item in current_items:
        if item.category and item.category != NOISE_CATEGORY:
            current[item.category].append(item)
    previous: Dict[str, List[Any]] = defaultdict(list)
    for item in previous_items:
        if item.category and item.category != NOISE_CATEGORY:
            previous[item.category].append(item)

    evaluations = []
    for category in sorted(current):
        members = current[category]
        count = len(members)
        previous_count = len(previous.get(category, []))
        comments = sum(int(i.num_comments or 0) for i in members)
        previous_comments = sum(int(i.num_comments or 0) for i in previous.get(category, []))
        scored = [float(i.sentiment_score) for i in members if i.sentiment_score is not None]
        avg_sentiment = round(sum(scored) / len(scored), 4) if scored else None

        if previous_count > 0:
            trending = count >= previous_count * thresholds.volume_threshold_multiplier
        else:
            trending = count >= thresholds.issue_threshold

        evaluations.append(
            CategoryEvaluation(
                category=category,
                count=count,
                previous_count=previous_count,
                comments=comments,
                previous_comments=previous_comments,
                avg_sentiment=avg_sentiment,
                volume_triggered=count >= thresholds.issue_threshold,
                sentiment_triggered=avg_sentiment is not None and avg_sentiment <= thresholds.sentiment_threshold,
                comment_growth_triggered=comment_growth_triggered(
                    comments, previous_comments, thresholds.comment_growth_threshold
                ),
                trending=trending,
                item_ids=[i.id for i in members],
                top_items=top_items(members, 3),
            )
        )
    return evaluations


def _sections(evaluations: Sequence[CategoryEvaluation]) -> List[Dict[str, Any]]:
    return [
        {
            "category": e.category,
            "count": e.count,
            "avg_sentiment": e.avg_sentiment,
            "comments": e.comments,
            "trending": e.trending,
            "reasons": e.reasons,
            "top_items": e.top_items,
        }
        for e in evaluations
    ]


async def run_alert_check(
    tenant: TenantKey,
    *,
    now: Optional[datetime] = None,
    sink: Optional[EmailDelivery] = None,
) -> AlertOutcome:
    """One pass of IDLE -> EVALUATING -> NO_TRIGGER | TRIGGERED -> IDLE."""
    now = as_utc(now) or datetime.now(timezone.utc)
    transitions = [AlertState.IDLE]

    async with async_session_maker() as db:
        prefs = (await db.execute(select(Preferences).where(tenant.scope(Preferences)))).scalar_one_or_none()
        recipients = [str(e).strip() for e in ((prefs.emails if prefs else None) or []) if str(e).strip()]
        if prefs is None or not prefs.enabled or not recipients:
            return AlertOutcome(state=AlertState.IDLE, reason="disabled", transitions=transitions)

        window_hours = max(int(prefs.time_window or 24), 1)
        last_notified = as_utc(prefs.last_notified)
        if last_notified is not None and now - last_notified < timedelta(hours=window_hours):
            logger.info("Alert check for %s in cooldown until %s", tenant, last_notified + timedelta(hours=window_hours))
            return AlertOutcome(state=AlertState.IDLE, reason="cooldown", transitions=transitions)

        transitions.append(AlertState.EVALUATING)
        bounds = resolve_window(window_hours, now)
        current, previous = await load_window_items(db, tenant, bounds)
        evaluations = evaluate_thresholds(current, previous, AlertThresholds.from_preferences(prefs))
        triggered = [e for e in evaluations if e.triggered]
        if not triggered:
            transitions.extend([AlertState.NO_TRIGGER, AlertState.IDLE])
            return AlertOutcome(
                state=AlertState.NO_TRIGGER,
                reason="below_thresholds",
                transitions=transitions,
                evaluations=evaluations,
            )

        transitions.append(AlertState.TRIGGERED)
        issue_count = sum(e.count for e in triggered)
        subject = f"Feedback alert: {issue_count} issue(s) across {len(triggered)} categor{'y' if len(triggered) == 1 else 'ies'}"
        body = render_alert_email(str(tenant), window_hours, _sections(triggered))
        delivered = await (sink or EmailDelivery()).deliver(recipients, subject, body)

        content_ids: List[str] = []
        for evaluation in triggered:
            for item_id in evaluation.item_ids:
                if item_id not in content_ids:
                    content_ids.append(item_id)
        record = NotificationRecord(
            **tenant.column_values(),
            kind="alert",
            subject=subject,
            categories=[e.category for e in triggered],
            content_item_ids=content_ids,
            issue_count=issue_count,
            recipients=recipients,
            delivered=delivered,
            sent_at=now,
        )
        db.add(record)
        if delivered:
            prefs.last_notified = now
        await db.commit()

    transitions.append(AlertState.IDLE)
    if not delivered:
        logger.warning("Alert for %s triggered but delivery failed; cooldown not started", tenant)
    return AlertOutcome(
        state=AlertState.TRIGGERED,
        reason="delivered" if delivered else "delivery_failed",
        transitions=transitions,
        evaluations=evaluations,
        record_id=record.id,
        delivered=delivered,
    )


async def run_notification_check(
    tenant: TenantKey,
    *,
    sink: Optional[EmailDelivery] = None,
    checkpoint: Checkpoint = None,
) -> Dict[str, Any]:
    """Notification job body: persist a window snapshot, then evaluate alerts."""
    async with async_session_maker() as db:
        prefs = (await db.execute(select(Preferences).where(tenant.scope(Preferences)))).scalar_one_or_none()
        window_hours = max(int((prefs.time_window if prefs else None) or 24), 1)
        snapshot = await compute_window_metrics(tenant=tenant, window=window_hours, db=db, persist=True)
    if checkpoint is not None:
        await checkpoint()
    outcome = await run_alert_check(tenant, sink=sink)
    return {
        "snapshot_id": snapshot.get("snapshot_id"),
        "state": outcome.state.value,
        "reason": outcome.reason,
        "record_id": outcome.record_id,
    }
