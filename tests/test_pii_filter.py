"""PII masking tests for log records."""

from app.integrations.pii_filter import PIIFilter, filter_log_record


class TestPIIFilter:
    def test_phone_is_masked(self) -> None:
        assert PIIFilter().mask("+59891234567") == "+5989****"

    def test_email_is_masked(self) -> None:
        assert PIIFilter().mask("ana.perez@example.com") == "a****@e****.com"

    def test_short_numbers_are_not_pii(self) -> None:
        assert not PIIFilter().contains_pii("slot 3 priority 12")


class TestLogProcessor:
    def test_address_fields_are_masked(self) -> None:
        event = filter_log_record(None, "info", {"event": "dispatcher.sent", "destination": "+59891234567"})
        assert event["destination"] == "+5989****"

    def test_free_text_with_numbers_is_masked(self) -> None:
        event = filter_log_record(None, "error", {"event": "x", "error": "send to +59891234567 failed"})
        assert "+59891234567" not in event["error"]

    def test_safe_fields_are_untouched(self) -> None:
        event = filter_log_record(
            None,
            "info",
            {"event": "supervisor.connected", "session_id": "59891234567_slot1", "channel": "+59890000001"},
        )
        assert event["session_id"] == "59891234567_slot1"
        assert event["channel"] == "+59890000001"

    def test_non_strings_pass_through(self) -> None:
        event = filter_log_record(None, "info", {"event": "x", "slot": 3, "attempts": 2})
        assert event["slot"] == 3
