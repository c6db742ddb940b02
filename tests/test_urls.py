from harvester.urls import (
    UrlNormalizer,
    is_fetchable_url,
    normalize_url,
    parse_submitted_text,
)


def test_normalize_case_folds_scheme_and_host_and_strips_fragment():
    assert normalize_url("  HTTPS://Example.COM/Path/Page?q=1#section ") == (
        "https://example.com/Path/Page?q=1"
    )


def test_normalize_drops_default_ports_only():
    assert normalize_url("http://example.com:80/a") == "http://example.com/a"
    assert normalize_url("https://example.com:443/a") == "https://example.com/a"
    assert normalize_url("https://example.com:8443/a") == "https://example.com:8443/a"


def test_normalize_keeps_trailing_slash_and_query_order_by_default():
    assert normalize_url("https://example.com/a/?b=2&a=1") == "https://example.com/a/?b=2&a=1"


def test_normalizer_options():
    norm = UrlNormalizer(
        strip_trailing_slash=True,
        sort_query=True,
        drop_query_params=frozenset({"utm_source"}),
    )
    assert norm("https://example.com/a/?b=2&utm_source=x&a=1") == (
        "https://example.com/a?a=1&b=2"
    )
    assert norm("https://example.com/") == "https://example.com/"


def test_is_fetchable_url():
    assert is_fetchable_url("https://example.com/x")
    assert is_fetchable_url("http://localhost:8000/")
    assert not is_fetchable_url("ftp://example.com/file")
    assert not is_fetchable_url("https://")
    assert not is_fetchable_url("example.com/no-scheme")


def test_parse_submitted_text_trims_and_skips_blank_and_comment_lines():
    text = """
    https://a.example/one

    # a comment line
      https://b.example/two   https://c.example/three
    not-a-url
    mailto:someone@example.com
    """
    parsed = parse_submitted_text(text)
    assert parsed.urls == (
        "https://a.example/one",
        "https://b.example/two",
        "https://c.example/three",
    )
    assert parsed.rejected == ("not-a-url", "mailto:someone@example.com")


def test_parse_submitted_text_empty():
    parsed = parse_submitted_text("\n   \n# only comments\n")
    assert parsed.urls == ()
    assert parsed.rejected == ()
