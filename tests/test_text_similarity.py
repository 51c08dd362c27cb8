"""Tests for text similarity functions."""

import math

import pytest

from ammo_resolver.resolver.text_similarity import (
    compute_idf,
    compute_tf,
    cosine_similarity,
    jaccard_similarity,
    levenshtein_similarity,
    tfidf_cosine_similarity,
    tfidf_cosine_similarity_with_tokens,
    tokenize,
)


def test_tokenize_splits_digit_hyphen_tokens():
    assert tokenize("9mm-124gr") == ["9mm", "124gr"]


def test_tokenize_keeps_word_hyphenates():
    assert tokenize("full-metal-jacket") == ["full-metal-jacket"]


def test_tokenize_lowercases_and_drops_punctuation():
    assert tokenize("Federal, American Eagle (9MM)!") == ["federal", "american", "eagle", "9mm"]
    assert tokenize("") == []
    assert tokenize("!!!") == []


def test_compute_tf_and_idf():
    assert compute_tf(["a", "b", "a", "c"]) == {"a": 0.5, "b": 0.25, "c": 0.25}
    assert compute_tf([]) == {}

    idf = compute_idf([["a", "b"], ["a"]])
    assert idf["a"] == pytest.approx(math.log(3 / 3) + 1)
    assert idf["b"] == pytest.approx(math.log(3 / 2) + 1)


def test_cosine_similarity_empty_vectors():
    assert cosine_similarity({}, {"a": 1.0}) == 0.0
    assert cosine_similarity({"a": 1.0}, {}) == 0.0
    assert cosine_similarity({"a": 0.0}, {"a": 0.0}) == 0.0


def test_cosine_similarity_orthogonal_and_parallel():
    assert cosine_similarity({"a": 1.0}, {"b": 1.0}) == 0.0
    assert cosine_similarity({"a": 1.0, "b": 2.0}, {"a": 2.0, "b": 4.0}) == pytest.approx(1.0)


@pytest.mark.parametrize(
    "text",
    [
        "Federal American Eagle 9mm 115gr FMJ",
        "x",
        "CCI Blazer Brass 9mm-124gr full-metal-jacket 50 rounds",
    ],
)
def test_tfidf_cosine_is_reflexive(text):
    assert tfidf_cosine_similarity(text, text) == pytest.approx(1.0)


def test_tfidf_cosine_is_case_insensitive():
    a = "Federal American Eagle 9mm"
    assert tfidf_cosine_similarity(a, a.upper()) == pytest.approx(1.0)


def test_tfidf_cosine_empty_inputs():
    assert tfidf_cosine_similarity("", "federal") == 0.0
    assert tfidf_cosine_similarity("federal", "") == 0.0
    assert tfidf_cosine_similarity("...", "federal") == 0.0


def test_tfidf_cosine_orders_by_relatedness():
    query = "Federal American Eagle 9mm 115gr FMJ"
    close = tfidf_cosine_similarity(query, "Federal American Eagle 9mm 124gr FMJ")
    far = tfidf_cosine_similarity(query, "Hornady Critical Defense 380 ACP")
    assert close > far
    assert far == 0.0


def test_tokens_form_matches_text_form():
    query = "Federal American Eagle 9mm-115gr FMJ"
    tokens = tokenize(query)
    for candidate in (
        "Federal American Eagle 9mm 115gr FMJ 50rd",
        "Blazer Brass 9mm 115gr",
        "Winchester 12 Gauge Slug",
    ):
        assert tfidf_cosine_similarity_with_tokens(tokens, candidate) == tfidf_cosine_similarity(
            query, candidate
        )


def test_jaccard_similarity():
    assert jaccard_similarity("federal 9mm fmj", "federal 9mm jhp") == pytest.approx(2 / 4)
    assert jaccard_similarity("Federal", "federal") == 1.0
    assert jaccard_similarity("", "federal") == 0.0


def test_levenshtein_similarity():
    assert levenshtein_similarity("federal", "federal") == 1.0
    assert levenshtein_similarity("Federal", "FEDERAL") == 1.0
    assert levenshtein_similarity("", "federal") == 0.0
    assert levenshtein_similarity("federal", "") == 0.0
    assert levenshtein_similarity("hornady", "horandy") == pytest.approx(1 - 2 / 7)
