import os

import pytest

from harvester.persist import (
    DocumentHeader,
    PersistError,
    atomic_write_text,
    build_markdown_document,
    parse_markdown_document,
    read_document,
    write_document,
)


def _header(**overrides) -> DocumentHeader:
    values = dict(
        url="https://example.com/page",
        title="A Page",
        fetched_utc="2024-05-01T12:00:00Z",
        encoding="utf-8",
        token_scheme="whitespace-v1",
        token_count=3,
    )
    values.update(overrides)
    return DocumentHeader(**values)


def test_document_front_matter_layout():
    text = build_markdown_document(_header(), "# A Page\n\nbody")
    assert text == (
        "---\n"
        "url: https://example.com/page\n"
        "title: A Page\n"
        "fetched_utc: 2024-05-01T12:00:00Z\n"
        "encoding: utf-8\n"
        "token_scheme: whitespace-v1\n"
        "token_count: 3\n"
        "---\n"
        "\n"
        "# A Page\n\nbody\n"
    )


def test_title_line_omitted_when_absent():
    text = build_markdown_document(_header(title=None), "x")
    assert "title:" not in text


def test_parse_reads_back_header_and_body():
    header = _header()
    doc = parse_markdown_document(build_markdown_document(header, "line one\n\nline two"))
    assert doc.header == header
    assert doc.body == "line one\n\nline two"


def test_parse_rejects_missing_front_matter():
    with pytest.raises(ValueError):
        parse_markdown_document("# no front matter\n")
    with pytest.raises(ValueError):
        parse_markdown_document("---\nurl: x\n")


def test_atomic_write_replaces_existing_file(tmp_path):
    target = tmp_path / "out.md"
    target.write_text("old", encoding="utf-8")
    written = atomic_write_text(target, "new contents")
    assert written == len("new contents")
    assert target.read_text(encoding="utf-8") == "new contents"
    assert [p.name for p in tmp_path.iterdir()] == ["out.md"]


def test_atomic_write_failure_leaves_no_partial_file(tmp_path, monkeypatch):
    target = tmp_path / "out.md"

    def _boom(src, dst):
        raise OSError("disk full")

    monkeypatch.setattr(os, "replace", _boom)
    with pytest.raises(PersistError):
        atomic_write_text(target, "data")
    assert list(tmp_path.iterdir()) == []


def test_persist_error_is_an_oserror():
    assert issubclass(PersistError, OSError)


def test_write_and_read_document(tmp_path):
    header = _header()
    size = write_document(tmp_path, "A-Page--abc.md", header, "body text")
    path = tmp_path / "A-Page--abc.md"
    assert size == path.stat().st_size
    doc = read_document(path)
    assert doc.header.title == "A Page"
    assert doc.body == "body text"
