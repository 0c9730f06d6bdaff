"""
Shared test fixtures.
"""

import os

# Settings are read at import time; keep tests off PostgreSQL and real OCR input
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.pop("OCR_MOCK_TEXT_JSON", None)

import pytest
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from app.config import settings
from app.models.database import Base
from app.schemas.contracts import ParsedDocument, SourceSheet


@pytest.fixture
async def session():
    """A fresh in-memory database per test."""
    engine = create_async_engine("sqlite+aiosqlite:///:memory:", poolclass=StaticPool)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    factory = async_sessionmaker(engine, expire_on_commit=False)
    async with factory() as s:
        yield s
    await engine.dispose()


@pytest.fixture
def small_required_keys(monkeypatch):
    """Limit FIELD_COVERAGE to the budget-summary keys."""
    monkeypatch.setattr(
        settings,
        "REQUIRED_FIELD_KEYS",
        "budget_revenue_total,budget_expenditure_total",
    )


def budget_summary_rows(revenue="100", expenditure="100"):
    return [
        ["编制部门：示例单位", "单位：万元", "", ""],
        ["一、财政拨款收入", "100", "一、一般公共服务支出", "100"],
        ["收入总计", revenue, "支出总计", expenditure],
    ]


def make_document(sheets=None, raw_text="", pdf_path=None, path="/data/unit-2024.xlsx") -> ParsedDocument:
    """sheets: (name, rows) or (name, rows, page_numbers) tuples."""
    built = []
    for entry in sheets or []:
        name, rows = entry[0], entry[1]
        pages = entry[2] if len(entry) > 2 else []
        built.append(SourceSheet(name=name, title=name, rows=rows, page_numbers=pages))
    return ParsedDocument(
        path=path,
        file_name=os.path.basename(path),
        sheets=built,
        raw_text=raw_text,
        pdf_path=pdf_path,
    )


@pytest.fixture
def make_doc():
    return make_document


@pytest.fixture
def summary_rows():
    return budget_summary_rows


@pytest.fixture
def summary_document():
    """A budget summary whose raw text disagrees on the revenue total."""
    return make_document(
        sheets=[("财务收支预算总表", budget_summary_rows())],
        raw_text="收入总计 101\n支出总计 100\n财政拨款收入 100",
    )


@pytest.fixture
def full_document():
    """Covers every default required key; revenue and expenditure balance."""
    return make_document(
        sheets=[
            ("财务收支预算总表", budget_summary_rows()),
            ("支出预算总表", [
                ["单位：万元", "", "", "", "", "", ""],
                ["功能分类科目编码", "", "", "功能分类科目名称", "合计", "基本支出", "项目支出"],
                ["201", "", "", "一般公共服务支出", "100", "60", "40"],
            ]),
            ("三公经费预算表", [
                ["单位：万元", "", "", "", "", "", ""],
                ["合计", "因公出国（境）费", "公务接待费", "小计", "购置费", "运行费", "机关运行经费"],
                ["17", "1", "0.5", "15.5", "12", "3.5", "20"],
            ]),
        ],
        raw_text="收入总计 100\n支出总计 100",
    )
