"""
Tests for logging helpers
"""
from cartcore.logging import get_logger, sanitize_id_for_logging


class TestSanitizeId:
    """Tests for sanitize_id_for_logging."""

    def test_control_characters_escaped(self):
        assert sanitize_id_for_logging("sku\n1\r\t\x00") == "sku\\n1\\r\\t"

    def test_long_ids_truncated(self):
        assert sanitize_id_for_logging("x" * 30) == "x" * 24 + "..."

    def test_empty(self):
        assert sanitize_id_for_logging(None) == "N/A"
        assert sanitize_id_for_logging("") == "N/A"


def test_get_logger_is_cached():
    assert get_logger("cartcore.test") is get_logger("cartcore.test")
