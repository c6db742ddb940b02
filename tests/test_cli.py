import json

import responses

from harvester.cli import main

PAGE = "<html><head><title>Cli Page</title></head><body><article><p>alpha beta</p></article></body></html>"


@responses.activate
def test_run_then_inspect(tmp_path, capsys):
    responses.add(responses.GET, "https://example.com/ok", body=PAGE, content_type="text/html")
    out = tmp_path / "out"

    rc = main(["run", "--out", str(out), "--no-progress", "https://example.com/ok"])
    assert rc == 0
    captured = capsys.readouterr()
    assert "docs=1" in captured.out
    assert (out / "export.txt").is_file()
    assert (out / "manifest.json").is_file()

    rc = main(["inspect", "--out", str(out), "--json", "--validate"])
    assert rc == 0
    report = json.loads(capsys.readouterr().out)
    assert report["doc_count"] == 1
    assert report["total_tokens"] == 2
    assert report["missing_files"] == 0
    assert report["event_kinds"] == {"fetched": 1}


@responses.activate
def test_run_reports_failures_with_exit_code(tmp_path, capsys):
    responses.add(responses.GET, "https://example.com/ok", body=PAGE, content_type="text/html")
    responses.add(responses.GET, "https://example.com/gone", status=410, content_type="text/html")
    urls = tmp_path / "urls.txt"
    urls.write_text("# list\nhttps://example.com/ok\n\nhttps://example.com/gone\nnot a url\n", encoding="utf-8")

    rc = main(["run", "--out", str(tmp_path / "out"), "--no-progress", "--input", str(urls)])
    assert rc == 3
    err = capsys.readouterr().err
    assert "skipping non-http(s) entry: not" in err
    assert "http_status" in err


@responses.activate
def test_second_run_with_nothing_new_is_a_no_op(tmp_path, capsys):
    responses.add(responses.GET, "https://example.com/ok", body=PAGE, content_type="text/html")
    out = tmp_path / "out"
    assert main(["run", "--out", str(out), "--no-progress", "https://example.com/ok"]) == 0
    capsys.readouterr()

    assert main(["run", "--out", str(out), "--no-progress", "https://example.com/ok"]) == 0
    err = capsys.readouterr().err
    assert "restored 1 completed jobs" in err
    assert "nothing new to fetch" in err
    assert len(responses.calls) == 1


def test_inspect_missing_output_dir(tmp_path, capsys):
    assert main(["inspect", "--out", str(tmp_path / "nope")]) == 2
