from datetime import datetime, timedelta, timezone
from unittest.mock import patch

import pytest
from sqlalchemy.future import select

from config import settings
from models.bucket import Bucket, BucketMembership
from models.content_item import ContentItem
from models.feedback_category import FeedbackCategory
from models.notification_record import NotificationRecord
from models.preferences import Preferences
from models.product_category import ProductCategory
from services import job_queue
from services.categorization import CategorizationAbortedError, reset_pending_priorities, run_categorization
from services.classifier import BucketSuggestion, ClassificationError, ClassificationResult
from services.tenancy import TenantKey

TENANT = TenantKey(kind="user", id="user-1")
BASE_TIME = datetime(2026, 10, 1, tzinfo=timezone.utc)


class FakeClassifier:
    """Returns scripted results; a callable entry decides per batch."""

    def __init__(self, responder):
        self.responder = responder
        self.batches = []

    async def classify(self, items, feedback_categories, product_categories, buckets=()):
        self.batches.append([item.id for item in items])
        return self.responder(items, buckets)


class RecordingSink:
    def __init__(self):
        self.sent = []

    async def deliver(self, recipients, subject, html_body):
        self.sent.append((list(recipients), subject))
        return True


def _crash_result(item, buckets=(), confidence=0.0):
    return ClassificationResult(
        item_id=item.id,
        category="Crash",
        product="Phone",
        sentiment_score=1.0,
        buckets=[BucketSuggestion(bucket_id=b.id, confidence=confidence) for b in buckets],
    )


async def _seed(session_maker, count=3, with_categories=True):
    async with session_maker() as db:
        if with_categories:
            db.add(FeedbackCategory(user_id=TENANT.id, name="Crash", keywords=["crash"]))
            db.add(ProductCategory(user_id=TENANT.id, name="Phone", keywords=["phone"]))
        for index in range(count):
            db.add(
                ContentItem(
                    id=f"p{index}",
                    user_id=TENANT.id,
                    channel="widgets",
                    title=f"post {index}",
                    created_utc=BASE_TIME + timedelta(minutes=index),
                    needs_processing=True,
                    processing_priority=0,
                )
            )
        await db.commit()


async def _items(session_maker):
    async with session_maker() as db:
        rows = (await db.execute(select(ContentItem).order_by(ContentItem.id))).scalars().all()
    return {row.id: row for row in rows}


@pytest.mark.asyncio
async def test_without_categories_everything_pending_becomes_noise(session_maker):
    await _seed(session_maker, count=2, with_categories=False)
    classifier = FakeClassifier(lambda items, buckets: [])

    summary = await run_categorization(TENANT, classifier=classifier)

    assert summary["noise"] == 2
    assert classifier.batches == []
    items = await _items(session_maker)
    assert all(i.category == "Noise" and i.product == "Noise" and not i.needs_processing for i in items.values())


@pytest.mark.asyncio
async def test_batches_follow_priority_then_creation_order(session_maker):
    await _seed(session_maker, count=3)
    async with session_maker() as db:
        row = await db.get(ContentItem, "p0")
        row.processing_priority = 2
        await db.commit()

    classifier = FakeClassifier(lambda items, buckets: [_crash_result(i) for i in items])
    with patch("services.categorization.settings.CLASSIFIER_BATCH_SIZE", 2):
        summary = await run_categorization(TENANT, classifier=classifier)

    assert classifier.batches == [["p1", "p2"], ["p0"]]
    assert summary["classified"] == 3
    items = await _items(session_maker)
    assert items["p1"].category == "Crash"
    assert items["p1"].sentiment_category == "Negative"
    assert items["p1"].classified_at is not None


@pytest.mark.asyncio
async def test_unknown_category_names_fall_back_to_noise(session_maker):
    await _seed(session_maker, count=1)
    classifier = FakeClassifier(
        lambda items, buckets: [ClassificationResult(item_id=i.id, category="Billing", product="Phone") for i in items]
    )

    await run_categorization(TENANT, classifier=classifier)

    item = (await _items(session_maker))["p0"]
    assert item.category == "Noise"
    assert item.product == "Phone"
    assert item.needs_processing is False


@pytest.mark.asyncio
async def test_partial_batch_result_leaves_whole_batch_pending(session_maker):
    await _seed(session_maker, count=2)
    # only one of two items comes back
    classifier = FakeClassifier(lambda items, buckets: [_crash_result(items[0])])

    await run_categorization(TENANT, classifier=classifier)

    items = await _items(session_maker)
    assert all(i.needs_processing for i in items.values())
    assert all(i.category is None for i in items.values())
    assert all(i.processing_priority == 1 for i in items.values())


@pytest.mark.asyncio
async def test_failed_batch_is_deprioritized_and_run_continues(session_maker):
    await _seed(session_maker, count=2)
    calls = {"n": 0}

    def _responder(items, buckets):
        calls["n"] += 1
        if calls["n"] == 1:
            raise ClassificationError("bad json")
        return [_crash_result(i) for i in items]

    with patch("services.categorization.settings.CLASSIFIER_BATCH_SIZE", 1):
        summary = await run_categorization(TENANT, classifier=FakeClassifier(_responder))

    assert summary["failed_batches"] == 1
    assert summary["classified"] == 1
    items = await _items(session_maker)
    assert items["p0"].needs_processing is True
    assert items["p0"].processing_priority == 1
    assert items["p1"].needs_processing is False


@pytest.mark.asyncio
async def test_consecutive_failures_abort_the_run(session_maker):
    await _seed(session_maker, count=4)

    def _always_fail(items, buckets):
        raise ClassificationError("model unavailable")

    classifier = FakeClassifier(_always_fail)
    with patch("services.categorization.settings.CLASSIFIER_BATCH_SIZE", 1):
        with pytest.raises(CategorizationAbortedError):
            await run_categorization(TENANT, classifier=classifier)

    assert len(classifier.batches) == 3
    items = await _items(session_maker)
    assert items["p3"].processing_priority == 0


@pytest.mark.asyncio
async def test_bucket_membership_requires_confidence_above_threshold(session_maker):
    await _seed(session_maker, count=2)
    async with session_maker() as db:
        db.add(Bucket(id="b-crash", user_id=TENANT.id, name="Crashes"))
        await db.commit()

    def _responder(items, buckets):
        return [
            _crash_result(items[0], buckets, confidence=0.9),
            _crash_result(items[1], buckets, confidence=0.6),
        ]

    sink = RecordingSink()
    await run_categorization(TENANT, classifier=FakeClassifier(_responder), sink=sink)

    async with session_maker() as db:
        links = (await db.execute(select(BucketMembership))).scalars().all()
    assert [(m.bucket_id, m.content_item_id, m.added_by_ai) for m in links] == [("b-crash", "p0", True)]
    items = await _items(session_maker)
    assert items["p0"].added_to_bucket_by_ai is True
    assert items["p1"].added_to_bucket_by_ai is False
    # no preferences row means no recipients
    assert sink.sent == []


@pytest.mark.asyncio
async def test_reset_pending_priorities_only_touches_pending_items(session_maker):
    await _seed(session_maker, count=2)
    async with session_maker() as db:
        first = await db.get(ContentItem, "p0")
        first.processing_priority = 4
        second = await db.get(ContentItem, "p1")
        second.processing_priority = 4
        second.needs_processing = False
        await db.commit()

    reset = await reset_pending_priorities(TENANT)

    assert reset == 1
    items = await _items(session_maker)
    assert items["p0"].processing_priority == 0
    assert items["p1"].processing_priority == 4


@pytest.mark.asyncio
async def test_bucket_additions_are_emailed_and_recorded(session_maker):
    await _seed(session_maker, count=1)
    async with session_maker() as db:
        db.add(Bucket(id="b-crash", user_id=TENANT.id, name="Crashes"))
        db.add(Preferences(user_id=TENANT.id, emails=["ops@example.com"], enabled=True))
        await db.commit()

    sink = RecordingSink()
    await run_categorization(
        TENANT,
        classifier=FakeClassifier(lambda items, buckets: [_crash_result(i, buckets, confidence=0.95) for i in items]),
        sink=sink,
    )

    assert sink.sent == [(["ops@example.com"], "New posts in bucket: Crashes")]
    async with session_maker() as db:
        record = (await db.execute(select(NotificationRecord))).scalar_one()
    assert record.kind == "bucket"
    assert record.content_item_ids == ["p0"]
    assert record.delivered is True


class HeldLock:
    """Redis lock that another worker already holds."""

    def __init__(self):
        self.released = False

    def acquire(self, blocking=True):
        return False

    def release(self):
        self.released = True


class LeaseRedis:
    def __init__(self, lock):
        self.lock_instance = lock
        self.names = []

    def lock(self, name, timeout=None, blocking=True):
        self.names.append((name, timeout))
        return self.lock_instance


@pytest.mark.asyncio
async def test_held_lease_skips_the_run_without_classifying(session_maker):
    await _seed(session_maker, count=2)
    classifier = FakeClassifier(lambda items, buckets: [_crash_result(item) for item in items])
    held = HeldLock()
    connection = LeaseRedis(held)

    with (
        patch("services.categorization.tenant_lease", job_queue.tenant_lease),
        patch("services.job_queue.get_redis_connection", return_value=connection),
    ):
        summary = await run_categorization(TENANT, classifier=classifier)

    assert summary == {"status": "skipped", "reason": "lease_held"}
    assert classifier.batches == []
    assert held.released is False
    assert connection.names == [("pulse:lease:categorization:user:user-1", settings.CLASSIFICATION_LEASE_SECONDS)]
    items = await _items(session_maker)
    assert all(item.needs_processing for item in items.values())
