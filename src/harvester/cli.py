from __future__ import annotations

import argparse
import json
import logging
import sys
import time
from pathlib import Path

from tqdm import tqdm

from .driver import SessionDriver
from .export import inspect_export
from .http_client import DEFAULT_MAX_BYTES, FetchSettings
from .intake import DEFAULT_INTAKE_CAPACITY
from .models import SessionState
from .pipeline import PipelineConfig, StageBudgets
from .runner import DEFAULT_TICK_INTERVAL_S, RunnerConfig
from .session import DEFAULT_TOKEN_LIMIT, SessionConfig
from .tokens import DEFAULT_SCHEME, available_schemes
from .urls import UrlNormalizer, parse_submitted_text


def _setup_logging(level: str, log_file: Path | None) -> None:
    handlers: list[logging.Handler] = []
    if log_file is not None:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(log_file, encoding="utf-8"))
    else:
        handlers.append(logging.StreamHandler(sys.stderr))
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.WARNING),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        handlers=handlers,
    )


def _read_input(args: argparse.Namespace) -> str:
    parts: list[str] = list(args.urls or [])
    if args.input is not None:
        if str(args.input) == "-":
            parts.append(sys.stdin.read())
        else:
            parts.append(args.input.read_text(encoding="utf-8"))
    return "\n".join(parts)


def _add_run_args(p: argparse.ArgumentParser) -> None:
    p.add_argument("urls", nargs="*", help="URLs to fetch")
    p.add_argument(
        "--input",
        type=Path,
        help="File with one or more URLs per line ('-' reads stdin)",
    )
    p.add_argument("--out", type=Path, required=True)
    p.add_argument("--export-name", default="export.txt")
    p.add_argument("--no-manifest", action="store_true")
    p.add_argument(
        "--no-restore",
        action="store_true",
        help="Ignore completed jobs saved by an earlier run",
    )
    p.add_argument("--max-in-flight", type=int, default=None)
    p.add_argument("--intake-capacity", type=int, default=DEFAULT_INTAKE_CAPACITY)
    p.add_argument("--connect-timeout", type=float, default=10.0)
    p.add_argument("--read-timeout", type=float, default=30.0)
    p.add_argument("--max-redirects", type=int, default=5)
    p.add_argument("--max-bytes", type=int, default=DEFAULT_MAX_BYTES)
    p.add_argument("--max-links", type=int, default=5000)
    p.add_argument("--fetch-budget", type=float, default=StageBudgets.fetch_s)
    p.add_argument(
        "--token-scheme",
        choices=available_schemes(),
        default=DEFAULT_SCHEME,
    )
    p.add_argument("--token-limit", type=int, default=DEFAULT_TOKEN_LIMIT)
    p.add_argument("--strip-trailing-slash", action="store_true")
    p.add_argument("--sort-query", action="store_true")
    p.add_argument(
        "--drop-query-param",
        action="append",
        default=[],
        help="Repeatable; e.g. --drop-query-param utm_source",
    )
    p.add_argument("--no-progress", action="store_true")


def _run(args: argparse.Namespace) -> int:
    text = _read_input(args)
    submitted = parse_submitted_text(text)
    for bad in submitted.rejected:
        print(f"harvester: skipping non-http(s) entry: {bad}", file=sys.stderr)

    normalizer = UrlNormalizer(
        strip_trailing_slash=bool(args.strip_trailing_slash),
        sort_query=bool(args.sort_query),
        drop_query_params=frozenset(p.lower() for p in args.drop_query_param),
    )
    session_config = SessionConfig(
        output_dir=args.out,
        export_name=args.export_name,
        write_manifest=not args.no_manifest,
        token_limit=args.token_limit,
        token_scheme=args.token_scheme,
        normalizer=normalizer,
    )
    fetch_settings = FetchSettings(
        connect_timeout_s=args.connect_timeout,
        read_timeout_s=args.read_timeout,
        max_redirects=args.max_redirects,
        max_bytes=args.max_bytes,
    )
    pipeline_config = PipelineConfig(
        output_dir=args.out,
        budgets=StageBudgets(fetch_s=args.fetch_budget),
        max_links=args.max_links,
        token_scheme=args.token_scheme,
        normalizer=normalizer,
    )
    runner_config = RunnerConfig(
        intake_capacity=args.intake_capacity,
        max_in_flight=args.max_in_flight,
    )

    try:
        driver = SessionDriver(
            session_config=session_config,
            fetch_settings=fetch_settings,
            pipeline_config=pipeline_config,
            runner_config=runner_config,
        )
    except ValueError as e:
        print(str(e), file=sys.stderr)
        return 2

    with driver:
        if not args.no_restore:
            restored = driver.restore()
            if restored:
                print(f"harvester: restored {restored} completed jobs", file=sys.stderr)
        driver.submit(text)
        view = driver.sync()
        if view.state is SessionState.IDLE:
            print(
                f"harvester: nothing new to fetch "
                f"(skipped={view.last_submission.skipped})",
                file=sys.stderr,
            )
            return 0

        try:
            with tqdm(
                total=view.total,
                initial=view.done,
                unit="url",
                desc="harvest",
                disable=bool(args.no_progress),
            ) as bar:
                while True:
                    view = driver.view
                    bar.n = view.done
                    bar.set_postfix(
                        tokens=f"{view.total_tokens}/{view.token_limit}",
                        failed=view.failed,
                        refresh=False,
                    )
                    bar.refresh()
                    if view.total and view.done >= view.total:
                        break
                    if driver.error is not None:
                        break
                    time.sleep(DEFAULT_TICK_INTERVAL_S)
        except KeyboardInterrupt:
            print("harvester: stopping, finishing in-flight stages...", file=sys.stderr)

        driver.stop()
        driver.wait_finished()
        if driver.error is not None:
            print(f"harvester: session driver failed: {driver.error}", file=sys.stderr)
            return 2

        view = driver.view
        errors = list(driver.runner.errors)

    print(
        f"harvester: docs={view.succeeded} failed={view.failed} "
        f"cancelled={view.cancelled} tokens={view.total_tokens} "
        f"skipped={view.skipped_duplicates}"
    )
    for row in view.jobs:
        if row.failure_kind is not None:
            print(
                f"- {row.url}: {row.failure_kind.value} at {row.stage.value}: {row.message}",
                file=sys.stderr,
            )
    if errors:
        for err in errors:
            print(err, file=sys.stderr)
        return 4
    if view.failed or view.cancelled:
        return 3
    return 0


def _inspect(args: argparse.Namespace) -> int:
    try:
        inspected = inspect_export(output_dir=args.out, export_name=args.export_name)
    except (OSError, ValueError) as e:
        print(str(e), file=sys.stderr)
        return 2

    if args.json:
        print(json.dumps(inspected.to_dict(), indent=2))
    else:
        print(
            f"inspect: docs={inspected.doc_count} tokens={inspected.total_tokens} "
            f"manifest_docs={inspected.manifest_doc_count} "
            f"missing_files={inspected.missing_files}"
        )
        if inspected.event_kinds:
            parts = ", ".join(f"{k}={v}" for k, v in sorted(inspected.event_kinds.items()))
            print(f"inspect: events: {parts}")
        if inspected.missing_paths_sample:
            print("inspect: missing_paths_sample:")
            for p in inspected.missing_paths_sample:
                print(f"- {p}")

    if args.validate and (
        inspected.missing_files
        or (
            inspected.manifest_doc_count is not None
            and inspected.manifest_doc_count != inspected.doc_count
        )
    ):
        return 4
    return 0


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(prog="harvester")
    parser.add_argument("--log-level", default="WARNING")
    parser.add_argument("--log-file", type=Path, default=None)
    sub = parser.add_subparsers(dest="cmd", required=True)

    run_p = sub.add_parser("run", help="Fetch URLs into Markdown documents and an export")
    _add_run_args(run_p)

    inspect_p = sub.add_parser(
        "inspect",
        help="Check an output directory's export against its manifest and documents",
    )
    inspect_p.add_argument("--out", type=Path, required=True)
    inspect_p.add_argument("--export-name", default="export.txt")
    inspect_p.add_argument("--json", action="store_true")
    inspect_p.add_argument(
        "--validate",
        action="store_true",
        help="Exit non-zero when documents are missing or counts disagree",
    )

    args = parser.parse_args(argv)
    _setup_logging(args.log_level, args.log_file)

    if args.cmd == "run":
        return _run(args)
    if args.cmd == "inspect":
        return _inspect(args)
    return 2
