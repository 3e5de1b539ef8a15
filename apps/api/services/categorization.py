"""Batched classification of pending content items."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence

from sqlalchemy import update
from sqlalchemy.future import select

from config import settings
from database import async_session_maker
from models.bucket import Bucket, BucketMembership
from models.content_item import ContentItem
from models.feedback_category import FeedbackCategory
from models.notification_record import NotificationRecord
from models.preferences import Preferences
from models.product_category import ProductCategory
from services.classifier import (
    BucketOption,
    CategoryOption,
    ClassificationError,
    ClassifierInput,
    FeedbackClassifier,
    results_by_item,
)
from services.job_queue import CATEGORIZATION, tenant_lease
from services.notifications import EmailDelivery, render_bucket_email
from services.tenancy import NOISE_CATEGORY, ContentFilter, TenantKey, build_content_query

logger = logging.getLogger(__name__)

Checkpoint = Optional[Callable[[], Awaitable[None]]]


class CategorizationAbortedError(Exception):
    """Too many consecutive batches failed; the run gives up."""


async def _load_taxonomy(tenant: TenantKey):
    async with async_session_maker() as db:
        feedback = (
            await db.execute(select(FeedbackCategory).where(tenant.scope(FeedbackCategory)))
        ).scalars().all()
        products = (
            await db.execute(select(ProductCategory).where(tenant.scope(ProductCategory)))
        ).scalars().all()
        buckets = (
            await db.execute(select(Bucket).where(tenant.scope(Bucket), Bucket.is_active.is_(True)))
        ).scalars().all()
    return (
        [CategoryOption(name=c.name, description=c.description or "", keywords=list(c.keywords or [])) for c in feedback],
        [CategoryOption(name=c.name, description=c.description or "", keywords=list(c.keywords or [])) for c in products],
        [BucketOption(id=b.id, name=b.name, description=b.description or "") for b in buckets],
    )


async def _pending_item_ids(tenant: TenantKey) -> List[str]:
    query = build_content_query(ContentFilter(tenant=tenant, needs_processing=True)).order_by(
        ContentItem.processing_priority.asc(),
        ContentItem.created_utc.asc(),
    )
    async with async_session_maker() as db:
        result = await db.execute(query.with_only_columns(ContentItem.id))
        return [row[0] for row in result.all()]


async def _mark_all_noise(tenant: TenantKey) -> int:
    async with async_session_maker() as db:
        result = await db.execute(
            update(ContentItem)
            .where(tenant.scope(ContentItem), ContentItem.needs_processing.is_(True))
            .values(
                category=NOISE_CATEGORY,
                product=NOISE_CATEGORY,
                needs_processing=False,
                classified_at=datetime.now(timezone.utc),
            )
        )
        await db.commit()
        return int(result.rowcount or 0)


async def _bump_priority(item_ids: Sequence[str]) -> None:
    async with async_session_maker() as db:
        await db.execute(
            update(ContentItem)
            .where(ContentItem.id.in_(list(item_ids)))
            .values(processing_priority=ContentItem.processing_priority + 1)
        )
        await db.commit()


def _valid_name(value: str, allowed: set) -> str:
    return value if value in allowed else NOISE_CATEGORY


async def _apply_batch(
    item_ids: Sequence[str],
    results,
    *,
    feedback_names: set,
    product_names: set,
    bucket_ids: set,
) -> Dict[str, List[Dict[str, Any]]]:
    """Write one batch of results atomically; returns newly bucketed items per bucket id."""
    by_item = results_by_item(results)
    missing = [item_id for item_id in item_ids if item_id not in by_item]
    if missing:
        raise ClassificationError(f"Classifier returned no result for {len(missing)} item(s): {missing[:5]}")

    threshold = float(settings.BUCKET_CONFIDENCE_THRESHOLD)
    bucketed: Dict[str, List[Dict[str, Any]]] = {}
    now = datetime.now(timezone.utc)
    async with async_session_maker() as db:
        try:
            rows = (
                await db.execute(select(ContentItem).where(ContentItem.id.in_(list(item_ids))))
            ).scalars().all()
            existing_links = {
                (m.bucket_id, m.content_item_id)
                for m in (
                    await db.execute(
                        select(BucketMembership).where(BucketMembership.content_item_id.in_(list(item_ids)))
                    )
                ).scalars().all()
            }
            for row in rows:
                result = by_item[row.id]
                row.category = _valid_name(result.category, feedback_names)
                row.product = _valid_name(result.product, product_names)
                row.same_issues_count = result.same_issues_count
                row.same_device_count = result.same_device_count
                row.solutions_count = result.solutions_count
                row.update_issue_mention = result.update_issue_mention
                row.update_resolved_mention = result.update_resolved_mention
                row.sentiment_score = result.sentiment_score
                row.sentiment_category = result.resolved_sentiment_category()
                row.needs_processing = False
                row.classified_at = now

                matched = False
                for suggestion in result.buckets:
                    if suggestion.bucket_id not in bucket_ids or suggestion.confidence <= threshold:
                        continue
                    matched = True
                    if (suggestion.bucket_id, row.id) in existing_links:
                        continue
                    db.add(
                        BucketMembership(
                            bucket_id=suggestion.bucket_id,
                            content_item_id=row.id,
                            confidence=suggestion.confidence,
                            added_by_ai=True,
                        )
                    )
                    existing_links.add((suggestion.bucket_id, row.id))
                    bucketed.setdefault(suggestion.bucket_id, []).append(
                        {
                            "id": row.id,
                            "title": row.title,
                            "permalink": row.permalink,
                            "confidence": suggestion.confidence,
                        }
                    )
                if matched:
                    row.added_to_bucket_by_ai = True
            await db.commit()
        except Exception:
            await db.rollback()
            raise
    return bucketed


async def _notify_bucket_additions(
    tenant: TenantKey,
    bucketed: Dict[str, List[Dict[str, Any]]],
    sink: Optional[EmailDelivery],
) -> None:
    if not bucketed:
        return
    async with async_session_maker() as db:
        prefs = (await db.execute(select(Preferences).where(tenant.scope(Preferences)))).scalar_one_or_none()
        buckets = {
            b.id: b.name
            for b in (await db.execute(select(Bucket).where(Bucket.id.in_(list(bucketed))))).scalars().all()
        }
    recipients = list((prefs.emails if prefs else None) or [])
    if not recipients:
        logger.info("Bucket additions for %s not emailed: no recipients configured", tenant)
        return
    sink = sink or EmailDelivery()
    records = []
    for bucket_id, items in bucketed.items():
        name = buckets.get(bucket_id, bucket_id)
        subject = f"New posts in bucket: {name}"
        delivered = await sink.deliver(recipients, subject, render_bucket_email(name, items))
        records.append(
            NotificationRecord(
                **tenant.column_values(),
                kind="bucket",
                subject=subject,
                categories=[name],
                content_item_ids=[item["id"] for item in items],
                issue_count=len(items),
                recipients=recipients,
                delivered=delivered,
                sent_at=datetime.now(timezone.utc),
            )
        )
    async with async_session_maker() as db:
        db.add_all(records)
        await db.commit()


async def run_categorization(
    tenant: TenantKey,
    *,
    classifier: Optional[FeedbackClassifier] = None,
    sink: Optional[EmailDelivery] = None,
    checkpoint: Checkpoint = None,
) -> Dict[str, Any]:
    """Classify every pending item of a tenant in priority order."""
    with tenant_lease(CATEGORIZATION, tenant) as acquired:
        if not acquired:
            logger.info("Categorization for %s already running; skipping", tenant)
            return {"status": "skipped", "reason": "lease_held"}
        return await _run_categorization(tenant, classifier=classifier, sink=sink, checkpoint=checkpoint)


async def _run_categorization(
    tenant: TenantKey,
    *,
    classifier: Optional[FeedbackClassifier],
    sink: Optional[EmailDelivery],
    checkpoint: Checkpoint,
) -> Dict[str, Any]:
    feedback, products, buckets = await _load_taxonomy(tenant)
    if not feedback and not products:
        marked = await _mark_all_noise(tenant)
        logger.info("No categories configured for %s; marked %s pending item(s) as Noise", tenant, marked)
        return {"status": "completed", "classified": 0, "noise": marked, "failed_batches": 0}

    pending = await _pending_item_ids(tenant)
    if not pending:
        return {"status": "completed", "classified": 0, "noise": 0, "failed_batches": 0}

    classifier = classifier or FeedbackClassifier()
    batch_size = max(int(settings.CLASSIFIER_BATCH_SIZE), 1)
    max_failures = max(int(settings.CLASSIFIER_MAX_CONSECUTIVE_BATCH_FAILURES), 1)
    feedback_names = {c.name for c in feedback}
    product_names = {c.name for c in products}
    bucket_ids = {b.id for b in buckets}

    classified = 0
    failed_batches = 0
    consecutive_failures = 0
    batches = [pending[i:i + batch_size] for i in range(0, len(pending), batch_size)]
    for index, batch_ids in enumerate(batches):
        if checkpoint is not None:
            await checkpoint()
        if index > 0 and settings.CLASSIFIER_BATCH_DELAY_SECONDS > 0:
            await asyncio.sleep(settings.CLASSIFIER_BATCH_DELAY_SECONDS)

        async with async_session_maker() as db:
            rows = (
                await db.execute(select(ContentItem).where(ContentItem.id.in_(batch_ids)))
            ).scalars().all()
        inputs = [ClassifierInput(id=r.id, title=r.title or "", body=r.body or "", channel=r.channel or "") for r in rows]
        live_ids = [r.id for r in rows]

        try:
            results = await classifier.classify(inputs, feedback, products, buckets)
            bucketed = await _apply_batch(
                live_ids,
                results,
                feedback_names=feedback_names,
                product_names=product_names,
                bucket_ids=bucket_ids,
            )
        except Exception as exc:
            failed_batches += 1
            consecutive_failures += 1
            logger.warning(
                "Categorization batch %s/%s for %s failed (%s consecutive): %s",
                index + 1,
                len(batches),
                tenant,
                consecutive_failures,
                exc,
            )
            await _bump_priority(live_ids)
            if consecutive_failures >= max_failures:
                raise CategorizationAbortedError(
                    f"Categorization for {tenant} aborted after {consecutive_failures} consecutive failed batches"
                ) from exc
            continue

        consecutive_failures = 0
        classified += len(live_ids)
        try:
            await _notify_bucket_additions(tenant, bucketed, sink)
        except Exception as exc:
            logger.exception("Bucket notification failed for %s: %s", tenant, exc)

    logger.info(
        "Categorization for %s: classified=%s failed_batches=%s",
        tenant,
        classified,
        failed_batches,
    )
    return {"status": "completed", "classified": classified, "noise": 0, "failed_batches": failed_batches}


async def reset_pending_priorities(tenant: TenantKey) -> int:
    """Reset processing priority for a tenant's pending items."""
    async with async_session_maker() as db:
        result = await db.execute(
            update(ContentItem)
            .where(tenant.scope(ContentItem), ContentItem.needs_processing.is_(True))
            .values(processing_priority=0)
        )
        await db.commit()
        return int(result.rowcount or 0)
