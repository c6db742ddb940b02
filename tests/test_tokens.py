import pytest

from harvester.tokens import DEFAULT_SCHEME, available_schemes, get_token_counter


def test_default_scheme_counts_whitespace_separated_words():
    counter = get_token_counter()
    assert counter.scheme == DEFAULT_SCHEME == "whitespace-v1"
    assert counter.count("# Title\n\nSome  words,\there.") == 5
    assert counter.count("") == 0


def test_wordpunct_scheme_splits_punctuation():
    counter = get_token_counter("wordpunct-v1")
    assert counter.count("Hello, world!") == 4


def test_counting_is_deterministic():
    counter = get_token_counter()
    text = "alpha beta gamma " * 100
    assert counter.count(text) == counter.count(text) == 300


def test_unknown_scheme_rejected():
    assert "whitespace-v1" in available_schemes()
    with pytest.raises(ValueError):
        get_token_counter("bpe-v9")
