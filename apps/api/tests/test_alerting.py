from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy.future import select

from models.content_item import ContentItem
from models.notification_record import NotificationRecord
from models.preferences import Preferences
from services.alerting import AlertState, AlertThresholds, comment_growth_triggered, run_alert_check
from services.tenancy import TenantKey

TENANT = TenantKey(kind="user", id="user-1")
NOW = datetime(2026, 10, 18, 12, 0, tzinfo=timezone.utc)


class FakeSink:
    def __init__(self, delivered=True):
        self.delivered = delivered
        self.sent = []

    async def deliver(self, recipients, subject, html_body):
        self.sent.append({"recipients": list(recipients), "subject": subject, "body": html_body})
        return self.delivered


async def _setup(session_maker, items, **prefs):
    values = {"emails": ["ops@example.com"], "enabled": True, "time_window": 24}
    values.update(prefs)
    async with session_maker() as db:
        db.add(Preferences(user_id=TENANT.id, **values))
        for index, item in enumerate(items):
            hours_ago = item.pop("hours_ago", 1)
            db.add(
                ContentItem(
                    id=item.pop("id", f"item-{index}"),
                    user_id=TENANT.id,
                    channel="widgets",
                    title=f"post {index}",
                    created_utc=NOW - timedelta(hours=hours_ago),
                    needs_processing=False,
                    **item,
                )
            )
        await db.commit()


async def _state(session_maker):
    async with session_maker() as db:
        prefs = (await db.execute(select(Preferences))).scalar_one()
        records = (await db.execute(select(NotificationRecord))).scalars().all()
    return prefs, records


def test_comment_growth_uses_ratio_only_when_previous_has_comments():
    assert comment_growth_triggered(4, 2, 2.0) is True
    assert comment_growth_triggered(3, 2, 2.0) is False
    assert comment_growth_triggered(2, 0, 2.0) is True
    assert comment_growth_triggered(1, 0, 2.0) is False


def test_thresholds_fall_back_to_defaults():
    prefs = Preferences(user_id="u", issue_threshold=None, volume_threshold_multiplier=None)
    thresholds = AlertThresholds.from_preferences(prefs)
    assert thresholds.issue_threshold == 3
    assert thresholds.volume_threshold_multiplier == 1.5


@pytest.mark.asyncio
async def test_disabled_preferences_stay_idle(session_maker):
    await _setup(session_maker, [], enabled=False)
    sink = FakeSink()

    outcome = await run_alert_check(TENANT, now=NOW, sink=sink)

    assert outcome.state == AlertState.IDLE
    assert outcome.reason == "disabled"
    assert sink.sent == []


@pytest.mark.asyncio
async def test_missing_preferences_stay_idle(session_maker):
    outcome = await run_alert_check(TENANT, now=NOW, sink=FakeSink())
    assert outcome.state == AlertState.IDLE


@pytest.mark.asyncio
async def test_cooldown_suppresses_evaluation(session_maker):
    await _setup(
        session_maker,
        [{"category": "Crash", "sentiment_score": 0.0} for _ in range(5)],
        last_notified=NOW - timedelta(hours=2),
    )
    sink = FakeSink()

    outcome = await run_alert_check(TENANT, now=NOW, sink=sink)

    assert outcome.reason == "cooldown"
    assert AlertState.EVALUATING not in outcome.transitions
    assert sink.sent == []


@pytest.mark.asyncio
async def test_below_thresholds_records_nothing(session_maker):
    await _setup(session_maker, [{"category": "Crash", "sentiment_score": 3.0}])
    sink = FakeSink()

    outcome = await run_alert_check(TENANT, now=NOW, sink=sink)

    assert outcome.state == AlertState.NO_TRIGGER
    assert outcome.transitions == [AlertState.IDLE, AlertState.EVALUATING, AlertState.NO_TRIGGER, AlertState.IDLE]
    prefs, records = await _state(session_maker)
    assert records == []
    assert prefs.last_notified is None


@pytest.mark.asyncio
async def test_noise_never_triggers(session_maker):
    await _setup(session_maker, [{"category": "Noise", "sentiment_score": 0.0} for _ in range(5)])
    outcome = await run_alert_check(TENANT, now=NOW, sink=FakeSink())
    assert outcome.state == AlertState.NO_TRIGGER
    assert outcome.evaluations == []


@pytest.mark.asyncio
async def test_volume_trigger_sends_one_email_and_starts_cooldown(session_maker):
    await _setup(session_maker, [{"category": "Crash", "sentiment_score": 3.0} for _ in range(3)])
    sink = FakeSink()

    outcome = await run_alert_check(TENANT, now=NOW, sink=sink)

    assert outcome.state == AlertState.TRIGGERED
    assert outcome.delivered is True
    assert len(sink.sent) == 1
    assert sink.sent[0]["recipients"] == ["ops@example.com"]
    assert "Crash" in sink.sent[0]["body"]
    prefs, records = await _state(session_maker)
    assert len(records) == 1
    assert records[0].id == outcome.record_id
    assert records[0].categories == ["Crash"]
    assert records[0].issue_count == 3
    assert sorted(records[0].content_item_ids) == ["item-0", "item-1", "item-2"]
    assert prefs.last_notified is not None

    again = await run_alert_check(TENANT, now=NOW + timedelta(hours=1), sink=sink)
    assert again.reason == "cooldown"
    assert len(sink.sent) == 1


@pytest.mark.asyncio
async def test_negative_sentiment_triggers_below_volume(session_maker):
    await _setup(session_maker, [{"category": "Battery", "sentiment_score": 0.0}])
    outcome = await run_alert_check(TENANT, now=NOW, sink=FakeSink())

    assert outcome.state == AlertState.TRIGGERED
    assert outcome.evaluations[0].reasons == ["sentiment"]


@pytest.mark.asyncio
async def test_comment_growth_against_previous_window(session_maker):
    await _setup(
        session_maker,
        [
            {"id": "now", "category": "Sync", "num_comments": 5},
            {"id": "before", "category": "Sync", "num_comments": 2, "hours_ago": 30},
        ],
    )
    outcome = await run_alert_check(TENANT, now=NOW, sink=FakeSink())

    evaluation = outcome.evaluations[0]
    assert evaluation.previous_comments == 2
    assert evaluation.reasons == ["comment growth"]
    assert outcome.state == AlertState.TRIGGERED


@pytest.mark.asyncio
async def test_failed_delivery_is_recorded_without_cooldown(session_maker):
    await _setup(session_maker, [{"category": "Crash", "sentiment_score": 0.0} for _ in range(3)])

    outcome = await run_alert_check(TENANT, now=NOW, sink=FakeSink(delivered=False))

    assert outcome.state == AlertState.TRIGGERED
    assert outcome.reason == "delivery_failed"
    prefs, records = await _state(session_maker)
    assert [r.delivered for r in records] == [False]
    assert prefs.last_notified is None
