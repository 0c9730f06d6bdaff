"""
Tests for the structlog processors.
"""

from app.observability.logging import MAX_TEXT_FIELD_CHARS, truncate_text_fields


class TestTruncateTextFields:
    def test_long_source_text_is_cut(self):
        event = truncate_text_fields(None, "info", {"event": "x", "raw_text": "收" * (MAX_TEXT_FIELD_CHARS + 20)})
        assert event["raw_text"].startswith("收" * MAX_TEXT_FIELD_CHARS)
        assert event["raw_text"].endswith("...(+20 chars)")

    def test_short_and_other_fields_untouched(self):
        long_label = "x" * (MAX_TEXT_FIELD_CHARS * 2)
        event = truncate_text_fields(None, "info", {"response_text": "[]", "label": long_label})
        assert event == {"response_text": "[]", "label": long_label}
