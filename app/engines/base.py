"""
Abstract base class for all field extraction strategies.
Every extractor must produce an ExtractionOutcome.
"""

from abc import ABC, abstractmethod
from typing import Iterable

from app.schemas.contracts import BudgetTableCandidate, ExtractedItem, ExtractionOutcome, ParsedDocument


class FieldExtractor(ABC):
    """
    Abstract base class for all field extractors.

    Every extractor must:
    1. Accept a loaded document and its localized tables
    2. Return ExtractionOutcome
    3. Report its name and version
    4. Handle errors gracefully (raise EngineError, never crash)
    5. Have no side effects, so a failed strategy can be retried with another
    """

    @property
    @abstractmethod
    def engine_name(self) -> str:
        """Unique identifier: 'rule', 'ai'"""
        ...

    @property
    @abstractmethod
    def engine_version(self) -> str:
        """Semver or API version string."""
        ...

    @abstractmethod
    async def extract(
        self,
        document: ParsedDocument,
        tables: list[BudgetTableCandidate],
    ) -> ExtractionOutcome:
        """
        Extract canonical budget facts from a document.

        Must raise EngineError on failure (never return partial/corrupt data).
        """
        ...

    async def health_check(self) -> bool:
        """Verify the extractor's backing service is available."""
        return True


class EngineError(Exception):
    """Raised when an extraction engine fails."""

    def __init__(self, engine_name: str, error_code: str, message: str):
        self.engine_name = engine_name
        self.error_code = error_code
        self.message = message
        super().__init__(f"[{engine_name}] {error_code}: {message}")


def merge_items(items: Iterable[ExtractedItem]) -> list[ExtractedItem]:
    """
    Collapse duplicate keys. The higher confidence wins (first seen on ties);
    snippets of both are kept, joined with ' | '.
    """
    merged: dict[str, ExtractedItem] = {}
    order: list[str] = []
    for item in items:
        if not item.key:
            continue
        current = merged.get(item.key)
        if current is None:
            merged[item.key] = item
            order.append(item.key)
            continue

        winner, loser = (item, current) if item.confidence.rank > current.confidence.rank else (current, item)
        snippets = [s for s in (winner.snippet, loser.snippet) if s]
        joined = " | ".join(dict.fromkeys(snippets)) or None
        merged[item.key] = winner.model_copy(update={"snippet": joined})
    return [merged[k] for k in order]
