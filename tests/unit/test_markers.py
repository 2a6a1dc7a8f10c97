"""
Tests for voicestream/markers.py: inline suggestion tags and booking intent.
"""

import pytest

from voicestream.markers import (
    InlineSuggestionFilter,
    clean_suggestion_tags,
    detect_booking_intent,
    extract_suggestions,
    is_suggestion_fragment,
)


class TestExtractSuggestions:
    def test_pipe_separated(self):
        text = "Here you go. [SUGGESTIONS: What is X? | How much? | When?]"
        assert extract_suggestions(text) == ["What is X?", "How much?", "When?"]

    def test_semicolon_separated(self):
        assert extract_suggestions("[SUGGESTIONS: a; b]") == ["a", "b"]

    def test_limited_to_three(self):
        assert extract_suggestions("[SUGGESTIONS: a | b | c | d]") == ["a", "b", "c"]

    def test_overlong_items_dropped(self):
        long_item = "x" * 151
        assert extract_suggestions(f"[SUGGESTIONS: {long_item} | short]") == ["short"]

    def test_case_insensitive(self):
        assert extract_suggestions("[suggestions: one]") == ["one"]

    @pytest.mark.parametrize("text", ["", None, "No tag here."])
    def test_no_tag(self, text):
        assert extract_suggestions(text) == []


class TestCleanSuggestionTags:
    def test_complete_tag_removed(self):
        assert clean_suggestion_tags("Answer. [SUGGESTIONS: a | b]") == "Answer."

    def test_partial_tag_removed(self):
        assert clean_suggestion_tags("Answer. [SUGGESTIONS: a | b") == "Answer."

    def test_none(self):
        assert clean_suggestion_tags(None) == ""


class TestIsSuggestionFragment:
    def test_fragments(self):
        assert is_suggestion_fragment("[SUGGESTIONS: What next?") is True
        assert is_suggestion_fragment("| How much?") is True

    def test_regular_sentence(self):
        assert is_suggestion_fragment("Normal sentence.") is False


class TestInlineSuggestionFilter:
    def test_tag_split_across_tokens(self):
        f = InlineSuggestionFilter()
        tokens = ["Hello", " world.", " [SUGG", "ESTIONS: a | b]", " after"]
        spoken = [f.feed(t) for t in tokens]
        assert spoken == ["Hello", " world.", " ", "", " after"]
        assert f.saw_tag is True
        assert f.flush() == ""

    def test_bracket_that_is_not_a_tag(self):
        f = InlineSuggestionFilter()
        assert f.feed("Costs [") == "Costs "
        assert f.feed("note] apply") == "[note] apply"

    def test_unterminated_tag_dropped(self):
        f = InlineSuggestionFilter()
        assert f.feed("Hi [SUGGESTIONS: a | b") == "Hi "
        assert f.inside_tag is True
        assert f.flush() == ""
        assert f.inside_tag is False

    def test_flush_releases_held_text(self):
        f = InlineSuggestionFilter()
        assert f.feed("Ends with [SU") == "Ends with "
        assert f.flush() == "[SU"

    def test_no_tag_passes_through(self):
        f = InlineSuggestionFilter()
        assert f.feed("Plain text") == "Plain text"
        assert f.saw_tag is False


class TestBookingIntent:
    @pytest.mark.parametrize("query", [
        "Can I book a meeting next week?",
        "Check my CALENDAR please",
        "I'd like to schedule a demo",
    ])
    def test_matches(self, query):
        assert detect_booking_intent(query) is True

    @pytest.mark.parametrize("query", ["What is the price?", "", None])
    def test_no_match(self, query):
        assert detect_booking_intent(query) is False
