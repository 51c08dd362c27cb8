"""Text similarity for product titles.

TF-IDF cosine is the primary title signal. Jaccard (exact token overlap) and
Levenshtein (character edits, e.g. "Horandy" vs "Hornady") are available as
secondary signals.
"""

import math
import re
from collections import Counter
from typing import Iterable, Mapping

# "9mm-124gr", "50-round", "7-62" split; "full-metal-jacket" does not
_DIGIT_HYPHEN = re.compile(r"^(\d+[a-z]*)-([a-z0-9]+)$")
_PUNCTUATION = re.compile(r"[^\w\s-]")


def tokenize(text: str) -> list[str]:
    """
    Tokenize and normalize text for similarity comparison.

    Lowercases, replaces punctuation (except hyphens) with spaces, splits on
    whitespace and splits digit-led hyphenated tokens in two.
    """
    if not text:
        return []

    tokens = _PUNCTUATION.sub(" ", text.lower()).split()

    result: list[str] = []
    for token in tokens:
        match = _DIGIT_HYPHEN.match(token)
        if match:
            result.extend(part for part in match.groups() if part)
        elif token:
            result.append(token)
    return result


def compute_tf(tokens: list[str]) -> dict[str, float]:
    """Term frequency normalized by document length."""
    total = len(tokens)
    if total == 0:
        return {}
    return {term: count / total for term, count in Counter(tokens).items()}


def compute_idf(documents: Iterable[list[str]]) -> dict[str, float]:
    """Smoothed inverse document frequency: ln((N + 1) / (df + 1)) + 1."""
    documents = list(documents)
    n_docs = len(documents)

    doc_freq: Counter = Counter()
    for doc in documents:
        doc_freq.update(set(doc))

    return {
        term: math.log((n_docs + 1) / (df + 1)) + 1
        for term, df in doc_freq.items()
    }


def compute_tfidf(tokens: list[str], idf: Mapping[str, float]) -> dict[str, float]:
    """TF-IDF vector for one document; terms missing from idf weigh 1.0."""
    return {term: tf * idf.get(term, 1.0) for term, tf in compute_tf(tokens).items()}


def cosine_similarity(vec_a: Mapping[str, float], vec_b: Mapping[str, float]) -> float:
    """Cosine of two sparse vectors; 0.0 when either is empty or zero-magnitude."""
    if not vec_a or not vec_b:
        return 0.0

    dot = sum(value * vec_b[term] for term, value in vec_a.items() if term in vec_b)
    magnitude_a = math.sqrt(sum(value * value for value in vec_a.values()))
    magnitude_b = math.sqrt(sum(value * value for value in vec_b.values()))

    if magnitude_a == 0 or magnitude_b == 0:
        return 0.0

    return dot / (magnitude_a * magnitude_b)


def tfidf_cosine_similarity_with_tokens(tokens_a: list[str], text_b: str) -> float:
    """
    TF-IDF cosine between pre-tokenized input and a raw candidate text.

    IDF is computed over the two-document corpus, so the result is identical
    to tfidf_cosine_similarity(text_a, text_b) for tokens_a == tokenize(text_a).
    """
    if not tokens_a or not text_b:
        return 0.0

    tokens_b = tokenize(text_b)
    if not tokens_b:
        return 0.0

    idf = compute_idf([tokens_a, tokens_b])
    return cosine_similarity(compute_tfidf(tokens_a, idf), compute_tfidf(tokens_b, idf))


def tfidf_cosine_similarity(text_a: str, text_b: str) -> float:
    """TF-IDF cosine similarity between two texts."""
    if not text_a or not text_b:
        return 0.0
    return tfidf_cosine_similarity_with_tokens(tokenize(text_a), text_b)


def jaccard_similarity(text_a: str, text_b: str) -> float:
    """Token-set overlap |A & B| / |A | B|."""
    if not text_a or not text_b:
        return 0.0

    tokens_a = set(tokenize(text_a))
    tokens_b = set(tokenize(text_b))
    if not tokens_a or not tokens_b:
        return 0.0

    union = tokens_a | tokens_b
    return len(tokens_a & tokens_b) / len(union)


def levenshtein_distance(a: str, b: str) -> int:
    """Edit distance with unit insert/delete/substitute costs."""
    if len(a) < len(b):
        a, b = b, a

    previous = list(range(len(b) + 1))
    for i, char_a in enumerate(a, start=1):
        current = [i]
        for j, char_b in enumerate(b, start=1):
            cost = 0 if char_a == char_b else 1
            current.append(min(
                previous[j] + 1,  # deletion
                current[j - 1] + 1,  # insertion
                previous[j - 1] + cost,  # substitution
            ))
        previous = current
    return previous[-1]


def levenshtein_similarity(text_a: str, text_b: str) -> float:
    """1 - distance / max length, case-insensitive."""
    if not text_a or not text_b:
        return 0.0

    a = text_a.lower()
    b = text_b.lower()
    if a == b:
        return 1.0

    return 1.0 - levenshtein_distance(a, b) / max(len(a), len(b))
