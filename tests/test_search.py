"""Trigram relevance used by the in-memory store."""

import pytest

from boilerhub.storage.models import Boilerplate
from boilerhub.storage.search import matches_query, relevance_score, trigram_similarity, trigrams


def _item(title, description=None):
    return Boilerplate(id="b1", title=title, author_id="u1", description=description)


def test_trigrams_pad_each_word():
    assert trigrams("Cat") == {"  c", " ca", "cat", "at "}
    assert trigrams("a-b") == {"  a", " a ", "  b", " b "}
    assert trigrams("") == set()


def test_similarity_bounds():
    assert trigram_similarity("react", "react") == 1.0
    assert trigram_similarity("react", "") == 0.0
    assert 0.0 < trigram_similarity("react starter", "react") < 1.0


def test_relevance_takes_best_of_title_and_description():
    item = _item("Unrelated", "react starter")
    assert relevance_score(item, "react starter") == 1.0


class TestMatchModes:
    def test_contains_checks_title_and_description(self):
        assert matches_query(_item("Alpha", "with FastAPI"), "fastapi", "contains", 0.3) is not None
        assert matches_query(_item("Alpha"), "fastapi", "contains", 0.3) is None

    def test_exact_is_case_insensitive_on_title(self):
        assert matches_query(_item("Django Kit"), "django KIT", "exact", 0.3) == 1.0
        assert matches_query(_item("Django Kit", "django"), "django", "exact", 0.3) is None

    def test_starts_with(self):
        assert matches_query(_item("Flask Minimal"), "fla", "starts_with", 0.3) is not None
        assert matches_query(_item("Minimal Flask"), "fla", "starts_with", 0.3) is None

    def test_fuzzy_uses_threshold(self):
        item = _item("FastAPI Starter")
        assert matches_query(item, "fastapi startr", "fuzzy", 0.3) is not None
        assert matches_query(item, "django", "fuzzy", 0.3) is None

    def test_unknown_mode(self):
        with pytest.raises(ValueError):
            matches_query(_item("x"), "x", "regex", 0.3)
