"""
Tests for channel reconciliation and OCR folding.
"""

from decimal import Decimal

import pytest

from app.models.enums import Confidence, OcrReason
from app.pipeline.reconciliation import (
    TAG_MANUAL,
    TAG_OCR_AGREE,
    TAG_OCR_CONFLICT,
    TAG_RAW_TEXT_AGREE,
    TAG_RAW_TEXT_CONFLICT,
    apply_ocr,
    is_noise_label,
    is_unit_scale_equivalent,
    reconcile,
)
from app.schemas.batches import ManualItem, OcrResult
from app.schemas.contracts import ExtractedItem, ExtractionOutcome


def table_item(key, value, table_key="budget_summary", confidence=Confidence.HIGH):
    return ExtractedItem(
        key=key,
        label=key,
        value=Decimal(str(value)),
        confidence=confidence,
        source=f"TABLE:{table_key}",
    )


def text_item(key, value, confidence=Confidence.HIGH):
    return ExtractedItem(
        key=key,
        label=key,
        value=Decimal(str(value)),
        confidence=confidence,
        snippet=f"{key} {value}",
        source="RAW_TEXT",
    )


def outcome(*items, counts=None):
    return ExtractionOutcome(engine_name="rule", items=list(items), table_fact_counts=counts or {})


def ocr_result(text_by_key):
    return OcrResult(
        enabled=True,
        executed=True,
        reason=OcrReason.MOCK_OCR,
        table_text_by_key=text_by_key,
        processed_tables=list(text_by_key),
        mock_mode=True,
    )


class TestDualChannel:
    """Test table vs raw-text agreement."""

    def test_agreement_raises_to_high(self):
        result = reconcile(
            outcome(table_item("budget_revenue_total", 100, confidence=Confidence.MEDIUM)),
            [text_item("budget_revenue_total", 100)],
        )
        draft = result.fields["budget_revenue_total"]
        assert draft.confidence == Confidence.HIGH
        assert draft.confirmed
        assert TAG_RAW_TEXT_AGREE in draft.tags
        assert result.counts["structured_matched"] == 1

    def test_conflict_lowers_and_marks_table(self):
        result = reconcile(
            outcome(table_item("budget_revenue_total", 100)),
            [text_item("budget_revenue_total", 101)],
        )
        draft = result.fields["budget_revenue_total"]
        assert draft.confidence == Confidence.LOW
        assert not draft.confirmed
        assert TAG_RAW_TEXT_CONFLICT in draft.tags
        assert result.suspicious_table_keys == ["budget_summary"]
        [conflict] = result.dual_conflicts
        assert conflict["structured_value"] == 100.0
        assert conflict["raw_text_value"] == 101.0
        assert conflict["table_key"] == "budget_summary"

    def test_raw_text_only_fills_gap(self):
        result = reconcile(outcome(), [text_item("operation_fund", 20)])
        draft = result.fields["operation_fund"]
        assert draft.value == Decimal("20")
        assert draft.tags == ["RAW_TEXT"]
        assert result.counts["raw_text_only"] == 1

    def test_empty_table_is_suspicious(self):
        result = reconcile(outcome(counts={"three_public": 0, "budget_summary": 2}), [])
        assert result.suspicious_table_keys == ["three_public"]

    def test_match_source_joins_tags(self):
        result = reconcile(
            outcome(table_item("budget_revenue_total", 100)),
            [text_item("budget_revenue_total", 100)],
        )
        assert result.fields["budget_revenue_total"].match_source == "TABLE:budget_summary|RAW_TEXT_AGREE"

    def test_summary_lists(self):
        result = reconcile(
            outcome(table_item("budget_revenue_total", 100)),
            [text_item("budget_revenue_total", 101)],
        )
        summary = result.summary()
        assert summary["structured_conflicted"] == 1
        assert summary["suspicious_table_keys"] == ["budget_summary"]
        assert summary["dual_conflict_items"][0]["key"] == "budget_revenue_total"


class TestManualItems:
    """Test reviewer-supplied facts."""

    def test_fills_missing_key(self):
        result = reconcile(outcome(), [], manual_items=[ManualItem(key="机关运行经费", value=Decimal("20"))])
        draft = result.fields["operation_fund"]
        assert draft.value == Decimal("20")
        assert draft.confidence == Confidence.HIGH
        assert draft.tags == [TAG_MANUAL]
        assert result.counts["manual_filled"] == 1

    def test_conflict_recorded(self):
        result = reconcile(
            outcome(table_item("operation_fund", 20, "three_public")),
            [],
            manual_items=[ManualItem(key="operation_fund", value=Decimal("30"))],
        )
        [conflict] = result.manual_conflicts
        assert conflict["manual_value"] == 30.0
        assert conflict["auto_value"] == 20.0
        assert result.fields["operation_fund"].value == Decimal("20")

    def test_unit_scale_difference_is_not_a_conflict(self):
        result = reconcile(
            outcome(table_item("budget_expenditure_total", 90)),
            [],
            manual_items=[ManualItem(key="支出总计", value=Decimal("900000"))],
        )
        assert result.manual_conflicts == []

    def test_unmatched_label_recorded(self):
        result = reconcile(outcome(), [], manual_items=[ManualItem(key="单位负责人", value=Decimal("1"))])
        assert result.unmatched_labels == ["单位负责人"]

    def test_noise_label_dropped(self):
        result = reconcile(
            outcome(), [], manual_items=[ManualItem(key="九、住房保障支出 9,364,732", value=None)],
        )
        assert result.unmatched_labels == []

    def test_missing_value_skipped(self):
        result = reconcile(outcome(), [], manual_items=[ManualItem(key="operation_fund", value=None)])
        assert "operation_fund" not in result.fields


class TestLabelCollection:
    """Test which labels are reported as unmatched or proposed as aliases."""

    def test_fuzzy_text_label_proposed(self):
        fuzzy = ExtractedItem(
            key="three_public_vehicle_total",
            label="公务用车购置及运行经费",
            value=Decimal("8"),
            confidence=Confidence.LOW,
            source="RAW_TEXT",
        )
        result = reconcile(outcome(), [fuzzy])
        assert result.alias_candidates == [("公务用车购置及运行经费", "three_public_vehicle_total")]

    def test_table_items_not_proposed(self):
        item = table_item("three_public_vehicle_total", 8).model_copy(update={"label": "公务用车购置及运行经费"})
        assert reconcile(outcome(item), []).alias_candidates == []

    def test_extractor_and_text_unmatched_merged(self):
        unmatched = ExtractedItem(label="奇怪的标签", source="RAW_TEXT")
        noise = ExtractedItem(label="九、住房保障支出 9,364,732", source="RAW_TEXT")
        result = reconcile(
            ExtractionOutcome(engine_name="ai", unmatched=[unmatched]),
            [],
            text_unmatched=[unmatched, noise],
        )
        assert result.unmatched_labels == ["奇怪的标签"]
        assert result.alias_candidates == []

    def test_near_miss_gets_best_guess(self):
        result = reconcile(outcome(), [], text_unmatched=[ExtractedItem(label="财政拨款收", source="RAW_TEXT")])
        assert result.unmatched_labels == ["财政拨款收"]
        assert result.alias_candidates == [("财政拨款收", "budget_revenue_fiscal")]


class TestHelpers:
    @pytest.mark.parametrize("manual,auto,expected", [
        ("900000", "90", True),
        ("900", "90", True),
        ("90", "900000", True),
        ("95", "90", False),
    ])
    def test_unit_scale_equivalent(self, manual, auto, expected):
        assert is_unit_scale_equivalent(Decimal(manual), Decimal(auto), Decimal("0.0001")) is expected

    @pytest.mark.parametrize("label,expected", [
        ("", True),
        ("9,364,732", True),
        ("九、住房保障支出 9,364,732", True),
        ("九、住房保障支出", False),
        ("公务接待费", False),
    ])
    def test_noise_label(self, label, expected):
        assert is_noise_label(label) is expected


class TestApplyOcr:
    """Test folding OCR text into reconciled fields."""

    def test_agreement_clears_conflict(self):
        result = reconcile(
            outcome(table_item("budget_revenue_total", 100)),
            [text_item("budget_revenue_total", 101)],
        )
        matched = apply_ocr(result, ocr_result({"budget_summary": "收入总计 100"}))
        draft = result.fields["budget_revenue_total"]
        assert matched == 1
        assert draft.confidence == Confidence.HIGH
        assert draft.confirmed
        assert TAG_OCR_AGREE in draft.tags
        assert TAG_RAW_TEXT_CONFLICT not in draft.tags
        assert result.dual_conflicts == []

    def test_disagreement_keeps_field_low(self):
        result = reconcile(
            outcome(table_item("budget_revenue_total", 100)),
            [text_item("budget_revenue_total", 100)],
        )
        apply_ocr(result, ocr_result({"budget_summary": "收入总计 80"}))
        draft = result.fields["budget_revenue_total"]
        assert draft.confidence == Confidence.LOW
        assert not draft.confirmed
        assert TAG_OCR_CONFLICT in draft.tags
        assert draft.value == Decimal("100")

    def test_fills_missing_field_low(self):
        result = reconcile(outcome(counts={"three_public": 0}), [])
        apply_ocr(result, ocr_result({"three_public": "机关运行经费 20"}))
        draft = result.fields["operation_fund"]
        assert draft.value == Decimal("20")
        assert draft.confidence == Confidence.LOW
        assert result.counts["ocr_filled"] == 1

    def test_other_tables_fields_untouched(self):
        result = reconcile(outcome(table_item("budget_revenue_total", 100)), [])
        matched = apply_ocr(result, ocr_result({"three_public": "收入总计 50"}))
        assert matched == 0
        assert result.fields["budget_revenue_total"].value == Decimal("100")
