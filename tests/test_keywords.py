"""Tests for the keyword classifier."""

import pytest

from meowrelay.core.keywords import (
    GREETING_TERMS,
    NAME_ALIASES,
    PROFANITY_TERMS,
    Intent,
    classify,
    classify_self_command,
)


class TestClassify:
    @pytest.mark.parametrize("word", sorted(PROFANITY_TERMS))
    def test_every_profanity_term(self, word):
        assert classify(word) is Intent.PROFANITY

    @pytest.mark.parametrize("word", sorted(NAME_ALIASES))
    def test_every_name_alias(self, word):
        assert classify(word) is Intent.NAME_MENTION

    @pytest.mark.parametrize("word", sorted(GREETING_TERMS))
    def test_every_greeting(self, word):
        assert classify(word) is Intent.GREETING

    def test_meow_is_poll_trigger(self):
        assert classify("meow") is Intent.POLL_TRIGGER

    def test_surrounding_whitespace_ignored(self):
        assert classify("  halo \n") is Intent.GREETING

    def test_embedded_word_does_not_match(self):
        """Matching is whole-message equality, not substring search."""
        assert classify("halo apa kabar") is Intent.NONE
        assert classify("bang ozi") is Intent.NONE

    def test_empty_and_none(self):
        assert classify("") is Intent.NONE
        assert classify("   ") is Intent.NONE
        assert classify(None) is Intent.NONE

    def test_uppercase_is_callers_job(self):
        """The router lowercases first; the classifier itself is exact."""
        assert classify("HALO") is Intent.NONE
        assert classify("HALO".lower()) is Intent.GREETING

    def test_lists_are_disjoint_so_priority_is_stable(self):
        assert not PROFANITY_TERMS & NAME_ALIASES
        assert not PROFANITY_TERMS & GREETING_TERMS
        assert not NAME_ALIASES & GREETING_TERMS
        assert "meow" not in PROFANITY_TERMS | NAME_ALIASES | GREETING_TERMS


class TestSelfCommand:
    def test_status(self):
        assert classify_self_command("!status") is Intent.STATUS_COMMAND

    def test_speedtest(self):
        assert classify_self_command(" !speedtest ") is Intent.SPEEDTEST_COMMAND

    def test_other_text(self):
        assert classify_self_command("status") is Intent.NONE
        assert classify_self_command("!status now") is Intent.NONE
        assert classify_self_command("halo") is Intent.NONE
