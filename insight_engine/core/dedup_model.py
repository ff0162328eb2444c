"""
Merge decisions for insight pairs.

Uses the active fine-tuned classifier when one is registered in
`deduplication_models`, and falls back to an embedding similarity threshold
otherwise. The adapter never raises: any model or lookup failure degrades to
the similarity rule.
"""

import math
import time
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Mapping

from openai import OpenAI

from insight_engine.core.logging import get_logger
from insight_engine.core.schemas_insights import InsightText, MergeDecision

logger = get_logger(__name__)

DEDUP_SYSTEM_PROMPT = (
    "You are an expert at determining if two medical insights express the same idea, "
    "even if worded differently. Consider the core meaning, not just the exact words."
)

InsightLike = InsightText | Mapping[str, Any]


def _fields(insight: InsightLike) -> dict[str, Any]:
    if isinstance(insight, InsightText):
        return insight.model_dump()
    return dict(insight)


def _describe(label: str, insight: InsightLike) -> str:
    data = _fields(insight)
    lines = [f"{label}: {data.get('statement', '')}"]
    if data.get("context_note"):
        lines.append(f"Context: {data['context_note']}")
    lines.append(f"Confidence: {data.get('confidence') or 'medium'}")
    lines.append(f"Evidence: {data.get('evidence_type') or 'Other'}")
    return "\n".join(lines)


def build_merge_prompt(
    insight_a: InsightLike, insight_b: InsightLike, similarity_score: float | None = None
) -> str:
    """User prompt shared by inference and the fine-tuning export."""
    prompt = f"{_describe('Insight 1', insight_a)}\n\n{_describe('Insight 2', insight_b)}"
    if similarity_score is not None:
        prompt += f"\nSimilarity Score: {similarity_score:.3f}"
    return prompt + "\n\nShould these insights be merged into one?"


def parse_merge_verdict(response_text: str) -> bool:
    """MERGE unless the reply negates it."""
    upper = response_text.upper()
    if "DON'T" in upper or "DON’T" in upper or "DO NOT" in upper:
        return False
    return "MERGE" in upper


def confidence_from_logprobs(logprobs: Any) -> float | None:
    """Mean token probability, or None when no token logprobs came back."""
    content = getattr(logprobs, "content", None) if logprobs is not None else None
    if not content:
        return None

    values = [token.logprob for token in content if getattr(token, "logprob", None) is not None]
    if not values:
        return None

    mean_probability = sum(math.exp(v) for v in values) / len(values)
    return min(1.0, max(0.0, mean_probability))


class DeduplicationModel:
    """Decides whether two insights denote the same fact."""

    def __init__(
        self,
        client: OpenAI,
        store: Any,
        threshold: float = 0.90,
        batch_size: int = 10,
        batch_delay_seconds: float = 0.1,
    ):
        self.client = client
        self.store = store
        self.threshold = threshold
        self.batch_size = batch_size
        self.batch_delay_seconds = batch_delay_seconds

    def get_active_model_id(self) -> str | None:
        """Active fine-tuned model id; lookup failures are treated as no model."""
        try:
            return self.store.get_active_dedup_model_id()
        except Exception as e:
            logger.warning(f"Could not read active deduplication model: {e}")
            return None

    def _similarity_fallback(self, similarity_score: float | None, reasoning: str) -> MergeDecision:
        should_merge = similarity_score is not None and similarity_score >= self.threshold
        confidence = similarity_score if similarity_score is not None else 0.5
        return MergeDecision(
            should_merge=should_merge,
            confidence=min(1.0, max(0.0, confidence)),
            reasoning=reasoning,
        )

    def predict_merge_decision(
        self,
        insight_a: InsightLike,
        insight_b: InsightLike,
        similarity_score: float | None = None,
    ) -> MergeDecision:
        """
        Predict whether two insights should be merged.

        Args:
            insight_a: First insight (statement, context_note, confidence, evidence_type)
            insight_b: Second insight
            similarity_score: Optional embedding cosine similarity

        Returns:
            MergeDecision with verdict, confidence in [0, 1] and reasoning
        """
        model_id = self.get_active_model_id()

        if not model_id:
            logger.debug("No active fine-tuned model, using similarity threshold")
            return self._similarity_fallback(
                similarity_score, "Using embedding similarity (no fine-tuned model available)"
            )

        try:
            completion = self.client.chat.completions.create(
                model=model_id,
                messages=[
                    {"role": "system", "content": DEDUP_SYSTEM_PROMPT},
                    {"role": "user", "content": build_merge_prompt(insight_a, insight_b, similarity_score)},
                ],
                temperature=0.1,
                max_tokens=100,
                logprobs=True,
            )

            choice = completion.choices[0] if completion.choices else None
            response_text = (choice.message.content if choice else None) or ""

            confidence = confidence_from_logprobs(choice.logprobs if choice else None)
            if confidence is None:
                confidence = similarity_score if similarity_score is not None else 0.5

            return MergeDecision(
                should_merge=parse_merge_verdict(response_text),
                confidence=min(1.0, max(0.0, confidence)),
                reasoning=response_text,
            )

        except Exception as e:
            logger.error(f"Error calling fine-tuned model {model_id}: {e}")
            return self._similarity_fallback(
                similarity_score, f"Model error, using similarity fallback: {e}"
            )

    def batch_predict_merge_decisions(
        self, pairs: list[tuple[InsightLike, InsightLike, float | None]]
    ) -> list[MergeDecision]:
        """
        Predict decisions for many pairs, `batch_size` concurrent calls at a time.

        Results keep the input order.
        """
        results: list[MergeDecision] = []

        with ThreadPoolExecutor(max_workers=self.batch_size) as executor:
            for start in range(0, len(pairs), self.batch_size):
                batch = pairs[start : start + self.batch_size]
                results.extend(
                    executor.map(lambda pair: self.predict_merge_decision(*pair), batch)
                )

                if start + self.batch_size < len(pairs) and self.batch_delay_seconds > 0:
                    time.sleep(self.batch_delay_seconds)

        return results
