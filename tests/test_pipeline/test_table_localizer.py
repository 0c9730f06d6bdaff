"""
Tests for the table localizer.
"""

import pytest

from app.models.enums import TableStatus
from app.pipeline.table_localizer import (
    CATALOG_BY_KEY,
    TABLE_CATALOG,
    candidates_by_key,
    diagnose,
    localize_tables,
    score_sheet,
)


class TestScoreSheet:
    """Test per-pair scoring."""

    def test_title_alias_scores_one(self):
        score, matched = score_sheet(CATALOG_BY_KEY["three_public"], "三公经费预算表")
        assert score == 1.0
        assert matched == ["三公经费预算表"]

    def test_exclusion_beats_alias(self):
        # 收支预算总表 is a budget_summary alias, but 财政拨款 excludes it
        score, matched = score_sheet(CATALOG_BY_KEY["budget_summary"], "财政拨款收支预算总表")
        assert score == 0.0
        assert matched == []

    def test_keyword_ratio(self):
        entry = CATALOG_BY_KEY["income_summary"]
        score, matched = score_sheet(entry, "收入预算情况")
        assert matched == ["收入", "预算"]
        assert score == pytest.approx(2 / len(entry.keywords))

    def test_keywords_may_hit_leading_rows(self):
        entry = CATALOG_BY_KEY["basic_expenditure"]
        score, _ = score_sheet(entry, "表八", "表八基本支出经济分类人员经费公用经费")
        assert score == 1.0


class TestLocalizeTables:
    """Test candidate assignment over a whole document."""

    def test_one_candidate_per_catalog_key(self, full_document):
        candidates = localize_tables(full_document)
        assert [c.key for c in candidates] == [e.key for e in TABLE_CATALOG]

    def test_ready_tables(self, full_document):
        by_key = candidates_by_key(localize_tables(full_document))
        assert by_key["budget_summary"].status == TableStatus.READY
        assert by_key["budget_summary"].matched_sheet_or_page == "财务收支预算总表"
        assert by_key["expenditure_summary"].matched_sheet_or_page == "支出预算总表"
        assert by_key["three_public"].matched_sheet_or_page == "三公经费预算表"
        assert by_key["three_public"].row_count == 3
        assert by_key["three_public"].col_count == 7

    def test_sheet_is_claimed_once(self, full_document):
        # The summary sheet also scores 1.0 for fiscal_grant_summary via its rows
        by_key = candidates_by_key(localize_tables(full_document))
        assert by_key["fiscal_grant_summary"].status == TableStatus.MISSING
        sheets = [c.matched_sheet_or_page for c in by_key.values() if c.is_ready]
        assert len(sheets) == len(set(sheets))

    def test_missing_table_keeps_near_misses(self, make_doc):
        doc = make_doc(sheets=[("收入预算情况", [["项目", "金额"]])])
        by_key = candidates_by_key(localize_tables(doc))
        income = by_key["income_summary"]
        assert income.status == TableStatus.MISSING
        assert income.near_misses[0].sheet_name == "收入预算情况"
        assert income.near_misses[0].score < 0.6

    def test_near_misses_capped(self, make_doc):
        doc = make_doc(sheets=[(f"收入预算{i}", []) for i in range(5)])
        income = candidates_by_key(localize_tables(doc, top_n=2))["income_summary"]
        assert len(income.near_misses) == 2

    def test_threshold_is_configurable(self, make_doc):
        doc = make_doc(sheets=[("收入预算情况", [])])
        income = candidates_by_key(localize_tables(doc, min_score=0.3))["income_summary"]
        assert income.status == TableStatus.READY


class TestDiagnose:
    """Test the missing-table report."""

    def test_reports_only_missing(self, make_doc):
        doc = make_doc(sheets=[("三公经费预算表", []), ("收入预算情况", [])])
        report = diagnose(localize_tables(doc))
        keys = [r["table_key"] for r in report]
        assert "three_public" not in keys
        income = next(r for r in report if r["table_key"] == "income_summary")
        assert income["expected_title"] == "收入预算总表"
        assert income["candidates"][0]["sheet_name"] == "收入预算情况"
