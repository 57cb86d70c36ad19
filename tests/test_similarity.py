import pytest

from engines.similarity import levenshtein_distance, normalize_answer, similarity


@pytest.mark.parametrize(
    "a, b, distance",
    [
        ("", "", 0),
        ("abc", "", 3),
        ("", "abc", 3),
        ("kitten", "sitting", 3),
        ("flaw", "lawn", 2),
        ("same", "same", 0),
    ],
)
def test_levenshtein_distance(a, b, distance):
    assert levenshtein_distance(a, b) == distance
    assert levenshtein_distance(b, a) == distance


def test_similarity_range():
    assert similarity("", "") == 1.0
    assert similarity("abc", "abc") == 1.0
    assert similarity("abc", "xyz") == 0.0
    assert similarity("kitten", "sitting") == pytest.approx(1 - 3 / 7)


def test_carry_answers_link_through_a_shared_neighbour():
    a = "he forgot to carry the 1"
    b = "he forgot to carry the one"
    c = "forgot to carry the 1"

    assert similarity(a, b) > 0.8
    assert similarity(a, c) > 0.8
    assert similarity(b, c) < 0.8


def test_normalize_answer():
    assert normalize_answer("  He   forgot\tto CARRY ") == "he forgot to carry"
    assert normalize_answer(None) == ""
    assert normalize_answer("   ") == ""


@pytest.mark.parametrize(
    "a, b",
    [("kitten", "sitting"), ("2 + 2 = 5", "2 + 2 = 6"), ("seven", "the answer is twelve")],
)
def test_similarity_is_distance_over_longer_length(a, b):
    expected = 1 - levenshtein_distance(a, b) / max(len(a), len(b))

    assert similarity(a, b) == pytest.approx(expected)
    assert similarity(b, a) == pytest.approx(expected)
