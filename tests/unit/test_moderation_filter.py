"""Tests for message moderation."""

import pytest
from unittest.mock import AsyncMock

from radiochat.services.moderation_filter import (
    REASON_BLACKLIST,
    REASON_PHONE,
    REASON_URL,
    REDACTION,
    ModerationFilter,
    apply_blacklist,
    compile_blacklist_pattern,
    find_dangerous,
    strip_dangerous,
)


@pytest.fixture
def moderation():
    return ModerationFilter()


class TestDangerousMarkup:
    def test_script_tag(self):
        text, reason = strip_dangerous('hi <script>alert("x")</script> there')
        assert reason == "Script tags not allowed"
        assert text == f"hi {REDACTION} there"

    def test_multiline_script_tag(self):
        text, reason = strip_dangerous("<SCRIPT type='x'>\nbad()\n</SCRIPT>")
        assert reason == "Script tags not allowed"
        assert text == REDACTION

    def test_event_handler(self):
        text, reason = strip_dangerous('<img src=x onerror = "steal()">')
        assert reason == "Event handlers not allowed"
        assert "onerror" not in text

    def test_javascript_scheme(self):
        _, reason = strip_dangerous("click JavaScript : void(0)")
        assert reason == "JavaScript protocol not allowed"

    def test_data_url(self):
        _, reason = strip_dangerous("data:text/html;base64,AAAA")
        assert reason == "Data URLs not allowed"

    @pytest.mark.parametrize(
        "text,reason",
        [
            ("<style>body{}</style>", "Style tags not allowed"),
            ("<iframe src='x'>", "Embedded content not allowed"),
            ("<object data='x'>", "Embedded content not allowed"),
            ("<meta http-equiv='refresh'>", "Meta tags not allowed"),
            ("<base href='x'>", "Base tags not allowed"),
            ("<link rel='x'>", "Link tags not allowed"),
            ("<form action='x'>", "Form tags not allowed"),
            ("<textarea>", "Form inputs not allowed"),
        ],
    )
    def test_tag_families(self, text, reason):
        assert find_dangerous(text)[1] == reason

    def test_first_category_wins(self):
        # Script is checked before iframe; the iframe stays untouched
        text, reason = strip_dangerous("<script>a</script><iframe src=x>")
        assert reason == "Script tags not allowed"
        assert "<iframe" in text

    def test_all_occurrences_of_match_are_replaced(self):
        text, _ = strip_dangerous("onclick= and onclick= again")
        assert text == f"{REDACTION} and {REDACTION} again"

    def test_clean_text(self):
        assert strip_dangerous("hello <b>world</b>") == ("hello <b>world</b>", None)


class TestPublicFilter:
    def test_clean_message_untouched(self, moderation):
        result = moderation.filter_public("good evening everyone")
        assert result.filtered == "good evening everyone"
        assert result.modified is False
        assert result.reasons == []
        assert result.allowed is True

    def test_scheme_url(self, moderation):
        result = moderation.filter_public("see https://example.org/path?a=1 now")
        assert result.filtered == f"see {REDACTION} now"
        assert result.reasons == [REASON_URL]

    def test_bare_domain(self, moderation):
        result = moderation.filter_public("go to mysite.shop today")
        assert result.filtered == f"go to {REDACTION} today"
        assert REASON_URL in result.reasons

    def test_www_prefix(self, moderation):
        result = moderation.filter_public("www.something.example")
        assert REDACTION in result.filtered

    def test_phone_numbers(self, moderation):
        result = moderation.filter_public("call me at 555-123-4567 tonight")
        assert "555" not in result.filtered
        assert result.reasons == [REASON_PHONE]

    def test_international_phone(self, moderation):
        result = moderation.filter_public("+44 20 7946 0958")
        assert result.filtered == REDACTION
        assert REASON_PHONE in result.reasons

    def test_short_numbers_survive(self, moderation):
        result = moderation.filter_public("I am 25 and it is 10 past 9")
        assert result.modified is False

    def test_stages_combine_in_order(self, moderation):
        result = moderation.filter_public("<script>x</script> visit spam.biz or 555 123 4567")
        assert result.reasons == ["Script tags not allowed", REASON_URL, REASON_PHONE]
        assert result.filtered == f"{REDACTION} visit {REDACTION} or {REDACTION}"


class TestBlacklist:
    def test_glob_pattern(self):
        assert compile_blacklist_pattern("spam*.biz").search("buy at SPAMdeals.biz")

    def test_literal_characters_are_escaped(self):
        pattern = compile_blacklist_pattern("a.b")
        assert pattern.search("a.b")
        assert not pattern.search("axb")

    def test_apply(self):
        text, hit = apply_blacklist("try spamdeals.biz now", ["spam*.biz", "other.com"])
        assert hit
        assert text == f"try {REDACTION} now"

    def test_no_hit(self):
        assert apply_blacklist("fine text", ["spam*.biz"]) == ("fine text", False)


class TestPrivateFilter:
    @pytest.mark.asyncio
    async def test_blacklist_hit_records_violation(self):
        blacklist = AsyncMock()
        blacklist.patterns.return_value = ["spam*.biz"]
        violations = AsyncMock()
        moderation = ModerationFilter(blacklist, violations)

        result = await moderation.filter_private("visit spamdeals.biz", "10.0.0.1")

        assert result.filtered == f"visit {REDACTION}"
        assert result.reasons == [REASON_BLACKLIST]
        violations.record_and_check.assert_awaited_once_with("10.0.0.1", "spam_url")

    @pytest.mark.asyncio
    async def test_urls_and_phones_allowed_in_private(self):
        blacklist = AsyncMock()
        blacklist.patterns.return_value = []
        violations = AsyncMock()
        moderation = ModerationFilter(blacklist, violations)

        result = await moderation.filter_private("my site is example.com, call 555-123-4567", "10.0.0.1")

        assert result.modified is False
        violations.record_and_check.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_markup_still_stripped(self):
        moderation = ModerationFilter()
        result = await moderation.filter_private("<script>x</script>")
        assert result.filtered == REDACTION
        assert result.reasons == ["Script tags not allowed"]
