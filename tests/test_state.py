import json

from harvester.models import CompletedJobSnapshot, ExtractedLink, LinkKind
from harvester.persist import DocumentHeader, write_document
from harvester.state import STATE_FILENAME, HarvestState


def test_missing_state_file_gives_empty_list(tmp_path):
    assert HarvestState(tmp_path).load() == []


def test_corrupt_state_file_gives_empty_list(tmp_path):
    (tmp_path / STATE_FILENAME).write_text("{not json", encoding="utf-8")
    assert HarvestState(tmp_path).load() == []


def test_non_object_state_file_gives_empty_list(tmp_path):
    (tmp_path / STATE_FILENAME).write_text("[1, 2]", encoding="utf-8")
    assert HarvestState(tmp_path).load() == []


def test_unknown_version_ignored(tmp_path):
    (tmp_path / STATE_FILENAME).write_text(
        json.dumps({"version": 99, "completed": [{"url": "https://a.example/"}]}),
        encoding="utf-8",
    )
    assert HarvestState(tmp_path).load() == []


def test_round_trip_with_links_and_optional_fields(tmp_path):
    snap = CompletedJobSnapshot(
        url="https://a.example/",
        tokens=5,
        bytes=120,
        links=(
            ExtractedLink("https://a.example/next", LinkKind.HYPERLINK, "next"),
            ExtractedLink("mailto:x@example.com", LinkKind.EMAIL),
        ),
        final_url="https://a.example/final",
        title="A",
        filename=None,
        fetched_utc="2024-01-01T00:00:00Z",
        token_scheme="whitespace-v1",
    )
    state = HarvestState(tmp_path)
    state.save([snap])

    raw = json.loads((tmp_path / STATE_FILENAME).read_text(encoding="utf-8"))
    assert raw["version"] == 1
    assert raw["completed"][0]["url"] == "https://a.example/"
    assert "body" not in raw["completed"][0]

    assert state.load() == [snap]


def test_minimal_entries_and_legacy_string_links_load(tmp_path):
    (tmp_path / STATE_FILENAME).write_text(
        json.dumps(
            {
                "version": 1,
                "completed": [
                    {"url": "https://a.example/", "tokens": 3, "bytes": 10, "links": ["https://a.example/x"]},
                    {"url": "https://b.example/"},
                    {"tokens": 4},
                    "garbage",
                ],
            }
        ),
        encoding="utf-8",
    )
    loaded = HarvestState(tmp_path).load()
    assert [s.url for s in loaded] == ["https://a.example/", "https://b.example/"]
    assert loaded[0].links == (ExtractedLink("https://a.example/x", LinkKind.HYPERLINK),)
    assert loaded[1].tokens is None
    assert loaded[1].links == ()
    assert loaded[1].body is None


def test_body_rehydrated_from_document_on_disk(tmp_path):
    header = DocumentHeader(
        url="https://a.example/final",
        title="From Disk",
        fetched_utc="2024-01-01T00:00:00Z",
        encoding="utf-8",
        token_scheme="whitespace-v1",
        token_count=2,
    )
    write_document(tmp_path, "From-Disk--abc.md", header, "two words")
    state = HarvestState(tmp_path)
    state.save(
        [
            CompletedJobSnapshot(url="https://a.example/", tokens=2, bytes=50, filename="From-Disk--abc.md"),
            CompletedJobSnapshot(url="https://gone.example/", tokens=1, bytes=5, filename="gone.md"),
        ]
    )

    loaded = state.load()
    assert loaded[0].body == "two words"
    assert loaded[0].title == "From Disk"
    assert loaded[0].final_url == "https://a.example/final"
    assert loaded[1].body is None
