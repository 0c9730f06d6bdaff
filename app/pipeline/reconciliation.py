"""
Channel reconciliation.

Merges the extractor's facts with the independent raw-text channel, OCR
re-reads of suspicious tables, and reviewer-supplied manual items into one
FieldDraft per canonical key, and grades confidence from their agreement:

- table value == raw-text value     -> HIGH, +RAW_TEXT_AGREE
- table value != raw-text value     -> LOW,  +RAW_TEXT_CONFLICT, table suspicious
- OCR value == table value          -> HIGH, +OCR_AGREE (clears the conflict)

HIGH fields are confirmed automatically; everything else waits for a reviewer.
"""

import re
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Optional

import structlog

from app.config import settings
from app.engines.rule_engine import SOURCE_DERIVED, SOURCE_RAW_TEXT, extract_text_facts
from app.models.enums import Confidence
from app.pipeline.alias_resolver import SOURCE_FUZZY, AliasResolver, best_guess_key
from app.schemas.batches import OcrResult
from app.schemas.contracts import ExtractedItem, ExtractionOutcome

logger = structlog.get_logger(__name__)

TAG_RAW_TEXT_AGREE = "RAW_TEXT_AGREE"
TAG_RAW_TEXT_CONFLICT = "RAW_TEXT_CONFLICT"
TAG_OCR_AGREE = "OCR_AGREE"
TAG_OCR_CONFLICT = "OCR_CONFLICT"
TAG_MANUAL = "MANUAL"

# Manual figures are often typed in 元 while tables are read in 万元
_UNIT_FACTORS = (Decimal("10000"), Decimal("10"))

_NOISE_ORDINAL = re.compile(r'^[一二三四五六七八九十]+[、.．]')
_EMBEDDED_AMOUNT = re.compile(r'\d[\d,，]*(?:\.\d+)?')
_DIGITS_ONLY = re.compile(r'^[\d,，.\s]+$')


@dataclass
class FieldDraft:
    key: str
    label: str = ""
    value: Optional[Decimal] = None
    raw_value: Optional[str] = None
    confidence: Confidence = Confidence.UNRECOGNIZED
    tags: list[str] = field(default_factory=list)
    snippet: Optional[str] = None
    confirmed: bool = False

    @property
    def match_source(self) -> str:
        return "|".join(self.tags)

    @property
    def table_key(self) -> Optional[str]:
        origin = self.tags[0] if self.tags else ""
        return origin.split(":", 1)[1] if origin.startswith("TABLE:") else None

    @classmethod
    def from_item(cls, item: ExtractedItem) -> "FieldDraft":
        return cls(
            key=item.key,
            label=item.label,
            value=item.value,
            raw_value=item.raw_value,
            confidence=item.confidence,
            tags=[item.source] if item.source else [],
            snippet=item.snippet,
        )


@dataclass
class Reconciliation:
    fields: dict[str, FieldDraft] = field(default_factory=dict)
    suspicious_table_keys: list[str] = field(default_factory=list)
    dual_conflicts: list[dict] = field(default_factory=list)
    manual_conflicts: list[dict] = field(default_factory=list)
    unmatched_labels: list[str] = field(default_factory=list)
    # (raw label, proposed key) pairs recorded as CANDIDATE mappings once the batch exists
    alias_candidates: list[tuple[str, str]] = field(default_factory=list)
    counts: dict[str, int] = field(default_factory=lambda: {
        "structured_matched": 0,
        "structured_conflicted": 0,
        "raw_text_only": 0,
        "ocr_agreed": 0,
        "ocr_filled": 0,
        "manual_filled": 0,
    })

    def mark_suspicious(self, table_key: Optional[str]) -> None:
        if table_key and table_key not in self.suspicious_table_keys:
            self.suspicious_table_keys.append(table_key)

    def note_unmatched(self, label: str) -> None:
        label = (label or "").strip()
        if is_noise_label(label) or label in self.unmatched_labels:
            return
        self.unmatched_labels.append(label)
        guess = best_guess_key(label)
        if guess:
            self.propose_alias(label, guess)

    def propose_alias(self, label: str, key: str) -> None:
        if label and key and (label, key) not in self.alias_candidates:
            self.alias_candidates.append((label, key))

    def finalize(self) -> None:
        for draft in self.fields.values():
            if draft.confidence == Confidence.HIGH and draft.value is not None:
                draft.confirmed = True

    def summary(self) -> dict:
        """JSON-ready summary stored on the batch; validation reads the *_items lists."""
        return {
            **self.counts,
            "manual_conflicts": len(self.manual_conflicts),
            "unmatched": len(self.unmatched_labels),
            "suspicious_table_keys": list(self.suspicious_table_keys),
            "dual_conflict_items": list(self.dual_conflicts),
            "manual_conflict_items": list(self.manual_conflicts),
            "unmatched_labels": list(self.unmatched_labels),
            "alias_candidates": len(self.alias_candidates),
        }


def _close(a: Decimal, b: Decimal, tolerance: Decimal) -> bool:
    return abs(a - b) <= tolerance


def _tolerance(tolerance: Optional[float]) -> Decimal:
    return Decimal(str(settings.BALANCE_TOLERANCE if tolerance is None else tolerance))


def is_unit_scale_equivalent(manual: Decimal, auto: Decimal, tolerance: Decimal) -> bool:
    """900000 (元) vs 90 (万元), or 900 (千元) vs 90."""
    for factor in _UNIT_FACTORS:
        if _close(manual, auto * factor, tolerance) or _close(manual * factor, auto, tolerance):
            return True
    return False


def is_noise_label(label: str) -> bool:
    """Pasted table lines ('九、住房保障支出 9,364,732') and bare numbers are not labels."""
    text = (label or "").strip()
    if not text or _DIGITS_ONLY.match(text):
        return True
    return bool(_NOISE_ORDINAL.match(text) and _EMBEDDED_AMOUNT.search(text))


def _remove_tag(draft: FieldDraft, tag: str) -> None:
    draft.tags = [t for t in draft.tags if t != tag]


def _add_tag(draft: FieldDraft, tag: str) -> None:
    if tag not in draft.tags:
        draft.tags.append(tag)


def reconcile(
    outcome: ExtractionOutcome,
    text_items: list[ExtractedItem],
    manual_items: Optional[list] = None,
    resolver: Optional[AliasResolver] = None,
    tolerance: Optional[float] = None,
    text_unmatched: Optional[list[ExtractedItem]] = None,
) -> Reconciliation:
    """
    Args:
        outcome: facts from the selected extraction strategy
        text_items: rule-based facts read from the document's raw text
        text_unmatched: raw-text labels the resolver could not map
        manual_items: objects with key (label or canonical key) and value
    """
    tol = _tolerance(tolerance)
    resolver = resolver or AliasResolver()
    result = Reconciliation()

    for item in outcome.items:
        if item.key and item.key not in result.fields:
            result.fields[item.key] = FieldDraft.from_item(item)

    text_by_key = {i.key: i for i in text_items if i.key and i.value is not None}

    for key, draft in result.fields.items():
        if draft.tags and draft.tags[0] == SOURCE_RAW_TEXT:
            result.counts["raw_text_only"] += 1
            continue
        text = text_by_key.get(key)
        if text is None or draft.value is None:
            continue
        if _close(draft.value, text.value, tol):
            draft.confidence = Confidence.HIGH
            _add_tag(draft, TAG_RAW_TEXT_AGREE)
            result.counts["structured_matched"] += 1
        else:
            draft.confidence = Confidence.LOW
            _add_tag(draft, TAG_RAW_TEXT_CONFLICT)
            result.counts["structured_conflicted"] += 1
            result.dual_conflicts.append({
                "key": key,
                "table_key": draft.table_key,
                "structured_value": float(draft.value),
                "raw_text_value": float(text.value),
                "raw_text_snippet": text.snippet,
            })
            result.mark_suspicious(draft.table_key)

    for key, text in text_by_key.items():
        if key not in result.fields:
            result.fields[key] = FieldDraft.from_item(text)
            result.counts["raw_text_only"] += 1

    _collect_labels(result, outcome, text_items, text_unmatched or [], resolver)

    # Localized tables that produced nothing were probably mis-read
    for table_key, count in outcome.table_fact_counts.items():
        if count == 0:
            result.mark_suspicious(table_key)

    _apply_manual(result, manual_items or [], resolver, tol)
    result.finalize()

    logger.info(
        "channels_reconciled",
        field_count=len(result.fields),
        suspicious=result.suspicious_table_keys,
        **result.counts,
    )
    return result


def _collect_labels(
    result: Reconciliation,
    outcome: ExtractionOutcome,
    text_items: list[ExtractedItem],
    text_unmatched: list[ExtractedItem],
    resolver: AliasResolver,
) -> None:
    """Fuzzy-resolved and unmatched text labels feed alias review; table cells do not."""
    for item in [*outcome.items, *text_items]:
        if not item.label or item.source.startswith("TABLE:") or item.source == SOURCE_DERIVED:
            continue
        resolution = resolver.resolve(item.label)
        if resolution.source == SOURCE_FUZZY:
            result.propose_alias(item.label, resolution.key)

    for item in [*outcome.unmatched, *text_unmatched]:
        result.note_unmatched(item.label)


def _apply_manual(result: Reconciliation, manual_items: list, resolver: AliasResolver, tol: Decimal) -> None:
    for manual in manual_items:
        label = str(manual.key or "")
        resolution = resolver.resolve(label)
        if not resolution.matched:
            result.note_unmatched(label)
            continue
        if manual.value is None:
            continue

        manual_value = Decimal(str(manual.value))
        auto = result.fields.get(resolution.key)
        if auto is not None and auto.value is not None:
            if not _close(manual_value, auto.value, tol) and not is_unit_scale_equivalent(manual_value, auto.value, tol):
                result.manual_conflicts.append({
                    "key": resolution.key,
                    "label": label,
                    "manual_value": float(manual_value),
                    "auto_value": float(auto.value),
                })
            continue

        result.fields[resolution.key] = FieldDraft(
            key=resolution.key,
            label=label,
            value=manual_value,
            raw_value=str(manual.value),
            confidence=Confidence.HIGH if resolution.confidence == Confidence.HIGH else Confidence.LOW,
            tags=[TAG_MANUAL],
        )
        result.counts["manual_filled"] += 1


def apply_ocr(
    result: Reconciliation,
    ocr: OcrResult,
    resolver: Optional[AliasResolver] = None,
    tolerance: Optional[float] = None,
) -> int:
    """
    Fold OCR text back into the fields of the tables it re-read.
    Returns how many OCR facts matched or filled a field.
    """
    tol = _tolerance(tolerance)
    resolver = resolver or AliasResolver()
    matched = 0

    for table_key, text in ocr.table_text_by_key.items():
        items, _unmatched = extract_text_facts(text, resolver, source=f"OCR:{table_key}")
        for item in items:
            if item.value is None:
                continue
            draft = result.fields.get(item.key)

            if draft is None or draft.value is None:
                if draft is not None and draft.table_key not in (None, table_key):
                    continue
                filled = FieldDraft.from_item(item)
                filled.confidence = Confidence.LOW
                result.fields[item.key] = filled
                result.counts["ocr_filled"] += 1
                matched += 1
                continue

            if draft.table_key != table_key:
                continue
            matched += 1
            if _close(draft.value, item.value, tol):
                draft.confidence = Confidence.HIGH
                draft.confirmed = True
                _remove_tag(draft, TAG_RAW_TEXT_CONFLICT)
                _add_tag(draft, TAG_OCR_AGREE)
                result.dual_conflicts = [c for c in result.dual_conflicts if c["key"] != item.key]
                result.counts["ocr_agreed"] += 1
            else:
                draft.confidence = Confidence.LOW
                draft.confirmed = False
                _add_tag(draft, TAG_OCR_CONFLICT)

    logger.info("ocr_reconciled", matched=matched, ocr_agreed=result.counts["ocr_agreed"])
    return matched
