"""Unit tests for the theme similarity helpers."""

import pytest


class TestNormalizeText:
    """Tests for normalize_text."""

    @pytest.mark.parametrize(
        "raw,expected",
        [
            ("  App CRASHES, on startup!! ", "app crashes on startup"),
            ("multi\n\tline   text", "multi line text"),
            ("", ""),
            (None, ""),
        ],
    )
    def test_normalize(self, raw, expected):
        """Case, punctuation and whitespace are folded."""
        from reviewpulse_core.domain.services.theme_similarity import normalize_text

        assert normalize_text(raw) == expected


class TestTitleSimilarity:
    """Tests for title_similarity."""

    def test_identical_after_normalization(self):
        """Titles equal after normalization score 1.0."""
        from reviewpulse_core.domain.services.theme_similarity import title_similarity

        assert title_similarity("Login Problems!", "login problems") == 1.0

    def test_containment_is_length_penalized(self):
        """A contained title scores between 0.5 and 1 depending on length ratio."""
        from reviewpulse_core.domain.services.theme_similarity import title_similarity

        score = title_similarity("login", "login problems on android")

        assert score == pytest.approx(0.5 + 0.5 * len("login") / len("login problems on android"))

    def test_containment_requires_word_boundaries(self):
        """A substring inside a longer word does not count as containment."""
        from reviewpulse_core.domain.services.theme_similarity import containment_similarity

        assert containment_similarity("log", "login problems") == 0.0

    def test_word_overlap(self):
        """Jaccard over significant words applies otherwise."""
        from reviewpulse_core.domain.services.theme_similarity import title_similarity

        assert title_similarity("sync fails offline", "offline sync broken") == pytest.approx(2 / 4)

    def test_empty_titles(self):
        """Empty titles are never similar."""
        from reviewpulse_core.domain.services.theme_similarity import title_similarity

        assert title_similarity("", "anything") == 0.0
        assert title_similarity("!!!", "???") == 0.0

    def test_symmetric(self):
        """Similarity does not depend on argument order."""
        from reviewpulse_core.domain.services.theme_similarity import title_similarity

        a, b = "Slow app startup", "App startup is slow on old phones"
        assert title_similarity(a, b) == title_similarity(b, a)


class TestContentSimilarity:
    """Tests for content_similarity."""

    def test_descriptions_only_without_quotes(self):
        """With no quotes on either side, only descriptions count."""
        from reviewpulse_core.domain.services.theme_similarity import content_similarity

        score = content_similarity("battery drains fast", "battery drains overnight", [], [])

        assert score == pytest.approx(2 / 4)

    def test_quotes_are_blended_in(self):
        """Shared quotes raise the score by the quote weight."""
        from reviewpulse_core.domain.services.theme_similarity import content_similarity

        score = content_similarity("", "", ["Dies by noon"], ["dies by noon!"])

        assert score == pytest.approx(0.4)


class TestSemanticBuckets:
    """Tests for semantic_buckets."""

    @pytest.mark.parametrize(
        "title,bucket",
        [
            ("App crashes constantly", "bugs"),
            ("Laggy scrolling", "performance"),
            ("Subscription is too expensive", "pricing"),
            ("Please add an option to export", "integration"),
            ("Dark mode needed", "ui_ux"),
        ],
    )
    def test_title_hits_bucket(self, title, bucket):
        """Keywords and word prefixes map titles into topic buckets."""
        from reviewpulse_core.domain.services.theme_similarity import semantic_buckets

        assert bucket in semantic_buckets(title)

    def test_short_keywords_need_whole_words(self):
        """Short keywords such as 'ui' do not match inside other words."""
        from reviewpulse_core.domain.services.theme_similarity import semantic_buckets

        assert "ui_ux" not in semantic_buckets("Quick guide")
        assert "ui_ux" in semantic_buckets("Confusing UI")

    def test_generic_words_do_not_hit_narrow_buckets(self):
        """'support' and 'font' alone are too generic to mark a topic."""
        from reviewpulse_core.domain.services.theme_similarity import semantic_buckets

        assert "support" not in semantic_buckets("Support for dark mode")
        assert "support" in semantic_buckets("Customer support unresponsive")
        assert "ui_ux" not in semantic_buckets("Font choice is ugly")
        assert "ui_ux" in semantic_buckets("Font size too small")

    def test_no_bucket(self):
        """Unrelated titles hit no bucket."""
        from reviewpulse_core.domain.services.theme_similarity import semantic_buckets

        assert semantic_buckets("Widget placement") == frozenset()
