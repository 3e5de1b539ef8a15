"""LLM-backed feedback classifier with a local keyword fallback."""

from __future__ import annotations

import asyncio
import json
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Literal, Optional, Sequence

from openai import APIConnectionError, APITimeoutError, OpenAI, RateLimitError
from pydantic import BaseModel, Field, ValidationError, field_validator
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_random_exponential

from config import settings
from services.tenancy import NOISE_CATEGORY

logger = logging.getLogger(__name__)

SentimentCategory = Literal["Positive", "Neutral", "Negative"]

_WORD_RE = re.compile(r"[a-z0-9']+")
_NEGATIVE_WORDS = {
    "bug", "broken", "crash", "crashes", "error", "fail", "fails", "failed", "issue", "issues",
    "problem", "slow", "worse", "worst", "hate", "annoying", "stuck", "lag", "disappointed",
}
_POSITIVE_WORDS = {
    "love", "great", "awesome", "fixed", "works", "working", "thanks", "amazing", "good",
    "excellent", "smooth", "happy", "resolved",
}


class ClassificationError(Exception):
    """Classifier output was unusable for a batch."""


@dataclass
class CategoryOption:
    name: str
    description: str = ""
    keywords: Sequence[str] = field(default_factory=list)


@dataclass
class BucketOption:
    id: str
    name: str
    description: str = ""


@dataclass
class ClassifierInput:
    id: str
    title: str
    body: str
    channel: str = ""


class BucketSuggestion(BaseModel):
    bucket_id: str
    confidence: float = Field(ge=0.0, le=1.0)


class ClassificationResult(BaseModel):
    item_id: str
    category: str = NOISE_CATEGORY
    product: str = NOISE_CATEGORY
    same_issues_count: int = Field(default=0, ge=0)
    same_device_count: int = Field(default=0, ge=0)
    solutions_count: int = Field(default=0, ge=0)
    update_issue_mention: bool = False
    update_resolved_mention: bool = False
    sentiment_score: float = Field(default=2.5, ge=0.0, le=5.0)
    sentiment_category: Optional[SentimentCategory] = None
    buckets: List[BucketSuggestion] = Field(default_factory=list)

    @field_validator("category", "product", mode="before")
    @classmethod
    def _blank_to_noise(cls, value: Any) -> str:
        text = str(value or "").strip()
        return text or NOISE_CATEGORY

    @field_validator("sentiment_category", mode="before")
    @classmethod
    def _normalize_sentiment(cls, value: Any) -> Optional[str]:
        text = str(value or "").strip().capitalize()
        return text or None

    def resolved_sentiment_category(self) -> str:
        if self.sentiment_category:
            return self.sentiment_category
        return sentiment_category_for(self.sentiment_score)


def sentiment_category_for(score: float) -> str:
    if score < 2.0:
        return "Negative"
    if score > 3.0:
        return "Positive"
    return "Neutral"


def get_openai_client(api_key: str) -> Optional[OpenAI]:
    """Get OpenAI client, handling placeholders."""
    if not api_key or "your_" in api_key or api_key == "test-key":
        return None
    return OpenAI(api_key=api_key)


def _tokens(text: str) -> List[str]:
    return _WORD_RE.findall((text or "").lower())


def _keyword_match(option: CategoryOption, text: str, tokens: set) -> int:
    hits = 0
    for keyword in list(option.keywords or []) + [option.name]:
        needle = str(keyword or "").strip().lower()
        if not needle:
            continue
        if " " in needle:
            hits += 1 if needle in text else 0
        elif needle in tokens:
            hits += 1
    return hits


def _best_option(options: Sequence[CategoryOption], text: str, tokens: set) -> str:
    best_name = NOISE_CATEGORY
    best_hits = 0
    for option in options:
        hits = _keyword_match(option, text, tokens)
        if hits > best_hits:
            best_name, best_hits = option.name, hits
    return best_name


def classify_locally(
    items: Sequence[ClassifierInput],
    feedback_categories: Sequence[CategoryOption],
    product_categories: Sequence[CategoryOption],
    buckets: Sequence[BucketOption],
) -> List[ClassificationResult]:
    """Deterministic keyword classifier used when no API key is configured."""
    results: List[ClassificationResult] = []
    for item in items:
        text = f"{item.title}\n{item.body}".lower()
        tokens = set(_tokens(text))
        negative = len(tokens & _NEGATIVE_WORDS)
        positive = len(tokens & _POSITIVE_WORDS)
        score = max(0.0, min(5.0, 2.5 + 0.75 * positive - 0.75 * negative))
        category = _best_option(feedback_categories, text, tokens)
        suggestions = []
        for bucket in buckets:
            bucket_tokens = set(_tokens(f"{bucket.name} {bucket.description}"))
            overlap = len(bucket_tokens & tokens)
            if bucket_tokens and overlap:
                suggestions.append(
                    BucketSuggestion(bucket_id=bucket.id, confidence=round(min(overlap / len(bucket_tokens), 1.0), 3))
                )
        results.append(
            ClassificationResult(
                item_id=item.id,
                category=category,
                product=_best_option(product_categories, text, tokens),
                update_issue_mention="update" in tokens and negative > 0,
                update_resolved_mention="update" in tokens and ("fixed" in tokens or "resolved" in tokens),
                sentiment_score=round(score, 2),
                sentiment_category=sentiment_category_for(score),
                buckets=suggestions,
            )
        )
    return results


def _build_prompt(
    items: Sequence[ClassifierInput],
    feedback_categories: Sequence[CategoryOption],
    product_categories: Sequence[CategoryOption],
    buckets: Sequence[BucketOption],
) -> str:
    payload = {
        "feedback_categories": [
            {"name": c.name, "description": c.description, "keywords": list(c.keywords or [])}
            for c in feedback_categories
        ],
        "product_categories": [
            {"name": c.name, "description": c.description, "keywords": list(c.keywords or [])}
            for c in product_categories
        ],
        "buckets": [{"id": b.id, "name": b.name, "description": b.description} for b in buckets],
        "posts": [
            {"id": item.id, "subreddit": item.channel, "title": item.title, "body": item.body[:4000]}
            for item in items
        ],
    }
    return json.dumps(payload, ensure_ascii=False)


SYSTEM_PROMPT = """
You classify community feedback posts for a product team.
For every post return one entry with:
  item_id, category (one of feedback_categories names or "Noise"),
  product (one of product_categories names or "Noise"),
  same_issues_count, same_device_count, solutions_count (integers >= 0),
  update_issue_mention, update_resolved_mention (booleans),
  sentiment_score (0 very negative .. 5 very positive),
  sentiment_category ("Positive" | "Neutral" | "Negative"),
  buckets: list of {bucket_id, confidence 0..1} for buckets the post belongs to.
Return strict JSON: {"results": [ ... ]}
"""


class FeedbackClassifier:
    """Classify a batch of posts against a tenant's categories and buckets."""

    def __init__(self, api_key: Optional[str] = None, model: Optional[str] = None):
        self.model = model or settings.CLASSIFIER_MODEL
        self.client = get_openai_client(api_key if api_key is not None else settings.OPENAI_API_KEY)

    @retry(
        wait=wait_random_exponential(min=1, max=20),
        stop=stop_after_attempt(3),
        retry=retry_if_exception_type((APIConnectionError, APITimeoutError, RateLimitError)),
        reraise=True,
    )
    def _complete(self, prompt: str) -> str:
        response = self.client.chat.completions.create(
            model=self.model,
            messages=[
                {"role": "system", "content": SYSTEM_PROMPT},
                {"role": "user", "content": prompt},
            ],
            response_format={"type": "json_object"},
            temperature=0.1,
        )
        return response.choices[0].message.content or ""

    @staticmethod
    def parse_results(raw: str) -> List[ClassificationResult]:
        try:
            payload = json.loads(raw)
        except (TypeError, json.JSONDecodeError) as exc:
            raise ClassificationError(f"Classifier returned invalid JSON: {exc}") from exc
        entries: Any = payload.get("results") if isinstance(payload, dict) else payload
        if not isinstance(entries, list):
            raise ClassificationError("Classifier response has no results list")
        try:
            return [ClassificationResult.model_validate(entry) for entry in entries]
        except ValidationError as exc:
            raise ClassificationError(f"Classifier result failed validation: {exc}") from exc

    async def classify(
        self,
        items: Sequence[ClassifierInput],
        feedback_categories: Sequence[CategoryOption],
        product_categories: Sequence[CategoryOption],
        buckets: Sequence[BucketOption] = (),
    ) -> List[ClassificationResult]:
        if not items:
            return []
        if self.client is None:
            logger.warning("Using MOCK classifier (OPENAI_API_KEY not configured).")
            return classify_locally(items, feedback_categories, product_categories, buckets)

        prompt = _build_prompt(items, feedback_categories, product_categories, buckets)
        raw = await asyncio.to_thread(self._complete, prompt)
        return self.parse_results(raw)


def results_by_item(results: Sequence[ClassificationResult]) -> Dict[str, ClassificationResult]:
    return {result.item_id: result for result in results}
