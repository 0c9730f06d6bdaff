"""
Python enums matching the CHECK constraints in the DB schema.
Names and values MUST match the DDL exactly.
"""

from enum import Enum


class BatchStatus(str, Enum):
    PENDING_REVIEW = "PENDING_REVIEW"
    REVIEWED = "REVIEWED"
    COMMITTED = "COMMITTED"
    REJECTED = "REJECTED"


class Confidence(str, Enum):
    HIGH = "HIGH"
    MEDIUM = "MEDIUM"
    LOW = "LOW"
    UNRECOGNIZED = "UNRECOGNIZED"

    @property
    def rank(self) -> int:
        """Higher is more trustworthy."""
        return _CONFIDENCE_RANK[self]


_CONFIDENCE_RANK = {
    Confidence.HIGH: 3,
    Confidence.MEDIUM: 2,
    Confidence.LOW: 1,
    Confidence.UNRECOGNIZED: 0,
}


class IssueLevel(str, Enum):
    ERROR = "ERROR"
    WARN = "WARN"


class AliasStatus(str, Enum):
    CANDIDATE = "CANDIDATE"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"


class TableStatus(str, Enum):
    READY = "READY"
    MISSING = "MISSING"


class HistoryStage(str, Enum):
    FINAL = "FINAL"


class ExtractionStrategy(str, Enum):
    RULE = "rule"
    AI = "ai"


class RuleId(str, Enum):
    """Validation rule identifiers carried on ValidationIssue.rule_id."""
    FIELD_COVERAGE = "FIELD_COVERAGE"
    BALANCE_REVENUE_EXPENDITURE = "BALANCE_REVENUE_EXPENDITURE"
    BALANCE_EXPENDITURE_COMPONENTS = "BALANCE_EXPENDITURE_COMPONENTS"
    BALANCE_FISCAL_GRANT = "BALANCE_FISCAL_GRANT"
    BALANCE_THREE_PUBLIC = "BALANCE_THREE_PUBLIC"
    BALANCE_THREE_PUBLIC_VEHICLE = "BALANCE_THREE_PUBLIC_VEHICLE"
    YOY_ANOMALY = "YOY_ANOMALY"
    MANUAL_CONFLICT = "MANUAL_CONFLICT"
    UNMATCHED_LABEL = "UNMATCHED_LABEL"
    DUAL_SOURCE_CONFLICT = "DUAL_SOURCE_CONFLICT"


class OcrReason(str, Enum):
    NO_SUSPICIOUS_TABLES = "NO_SUSPICIOUS_TABLES"
    MOCK_OCR = "MOCK_OCR"
    MOCK_NO_MATCH = "MOCK_NO_MATCH"
    MOCK_TEXT_NOT_PROVIDED = "MOCK_TEXT_NOT_PROVIDED"
    OCR_DISABLED = "OCR_DISABLED"
    PDF_NOT_FOUND = "PDF_NOT_FOUND"
    OCR_BINARY_MISSING = "OCR_BINARY_MISSING"
    TABLE_NOT_FOUND = "TABLE_NOT_FOUND"
    NO_PAGE_NUMBERS = "NO_PAGE_NUMBERS"
    OCR_PAGE_FAILED = "OCR_PAGE_FAILED"
    EMPTY_OCR_TEXT = "EMPTY_OCR_TEXT"
    OCR_APPLIED = "OCR_APPLIED"
    OCR_NO_OUTPUT = "OCR_NO_OUTPUT"
