"""
Answer provider interface and a keyword-matched FAQ catalog.

The knowledge-base lookup (retrieval + generation) lives outside the
conversation core. The core only needs ``answer()`` returning text and
source references; any failure or timeout surfaces as RetrievalError.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Mapping, Optional, Protocol

from leadflow.errors import RetrievalError

logger = logging.getLogger(__name__)


@dataclass
class AnswerResult:
    text: str
    sources: list[str] = field(default_factory=list)


class AnswerProvider(Protocol):
    async def answer(
        self,
        chatbot_id: str,
        query: str,
        instructions: str,
        style_hints: Mapping[str, Optional[str]],
    ) -> AnswerResult:
        ...


async def answer_with_timeout(
    provider: AnswerProvider,
    chatbot_id: str,
    query: str,
    instructions: str,
    style_hints: Mapping[str, Optional[str]],
    timeout: float,
) -> AnswerResult:
    """Call the provider with an upper bound; any failure becomes RetrievalError."""
    try:
        return await asyncio.wait_for(
            provider.answer(chatbot_id, query, instructions, style_hints),
            timeout=timeout,
        )
    except RetrievalError:
        raise
    except asyncio.TimeoutError:
        raise RetrievalError(f"Answer provider timed out after {timeout:.1f}s") from None
    except Exception as exc:
        raise RetrievalError(f"Answer provider failed: {exc}") from exc


DEFAULT_FAQ_CATALOG: dict[str, dict] = {
    "pricing": {
        "keywords": ["price", "pricing", "cost", "plan", "how much", "quote"],
        "answer": (
            "Our plans start at $49/month for Starter, $149/month for Growth, "
            "and custom pricing for Enterprise. All plans include a 14-day free trial."
        ),
        "source": "https://example.com/pricing",
    },
    "integrations": {
        "keywords": ["integrat", "connect", "hubspot", "salesforce", "zapier", "slack"],
        "answer": (
            "We integrate with HubSpot, Salesforce, Slack and Zapier out of the box, "
            "and offer a REST API for anything else."
        ),
        "source": "https://example.com/integrations",
    },
    "features": {
        "keywords": ["feature", "what does", "what can", "do you offer", "capabilit"],
        "answer": (
            "The platform answers visitor questions from your own content, captures "
            "leads, asks qualification questions and books calls on your calendar."
        ),
        "source": "https://example.com/features",
    },
    "support": {
        "keywords": ["support", "help desk", "onboarding", "training"],
        "answer": (
            "Every plan includes email support. Growth and Enterprise customers get "
            "guided onboarding and a dedicated success manager."
        ),
        "source": "https://example.com/support",
    },
    "security": {
        "keywords": ["security", "gdpr", "soc", "privacy", "data"],
        "answer": "We are SOC 2 Type II certified and GDPR compliant. Data is encrypted at rest and in transit.",
        "source": "https://example.com/security",
    },
}

FALLBACK_ANSWER = (
    "I don't have specific information about that yet, but I'm happy to help "
    "with questions about our plans, features and integrations."
)


class CatalogAnswerProvider:
    """
    Deterministic answer provider backed by a keyword-matched FAQ catalog.

    In production, this would be a vector search over the chatbot's crawled
    content followed by an LLM call. The catalog keeps the demo and tests
    free of network access.
    """

    def __init__(self, catalog: Optional[dict[str, dict]] = None) -> None:
        self._catalog = catalog if catalog is not None else DEFAULT_FAQ_CATALOG
        self.calls: list[str] = []

    def match_topic(self, query: str) -> Optional[str]:
        """Return the catalog entry with the most keyword hits, if any."""
        normalized = query.lower()
        best_topic, best_hits = None, 0
        for topic, entry in self._catalog.items():
            hits = sum(1 for kw in entry["keywords"] if kw in normalized)
            if hits > best_hits:
                best_topic, best_hits = topic, hits
        return best_topic

    async def answer(
        self,
        chatbot_id: str,
        query: str,
        instructions: str,
        style_hints: Mapping[str, Optional[str]],
    ) -> AnswerResult:
        self.calls.append(query)
        # the query may carry a context preamble; match on the current message
        current = query.rsplit("Current message: ", 1)[-1]
        topic = self.match_topic(current)
        if topic is None:
            logger.debug("No catalog match for chatbot %s", chatbot_id)
            return AnswerResult(text=FALLBACK_ANSWER)

        entry = self._catalog[topic]
        text = entry["answer"]
        if style_hints.get("length") == "concise":
            text = text.split(". ")[0].rstrip(".") + "."
        return AnswerResult(text=text, sources=[entry["source"]])
