import json
import pathlib

import scripts.analyze as analyze


def _write_log(directory: pathlib.Path, name: str, records) -> None:
    directory.mkdir(parents=True, exist_ok=True)
    with (directory / name).open("w", encoding="utf-8") as fp:
        for record in records:
            fp.write((record if isinstance(record, str) else json.dumps(record)) + "\n")


def test_load_stats_groups_by_route(tmp_path):
    _write_log(
        tmp_path,
        "requests-20260101.jsonl",
        [
            {"route": "stream", "ok": True, "latency_ms": 900, "attempts": 2, "cache": "miss", "model": "a/fast:free"},
            {"route": "stream", "ok": True, "latency_ms": 0, "attempts": 2, "cache": "hit", "model": "a/fast:free"},
            {"route": "stream", "ok": False, "latency_ms": 15000, "attempts": 4, "cache": "miss", "model": None},
            "not json",
            "",
        ],
    )
    _write_log(
        tmp_path,
        "requests-20260102.jsonl",
        [{"route": "answer", "ok": False, "latency_ms": "120", "attempts": 0, "cache": "miss", "model": "none"}],
    )

    stats = analyze.load_stats(tmp_path)

    stream = stats["stream"]
    assert stream.requests == 3
    assert stream.failures == 1
    assert stream.cache_hits == 1
    assert stream.latencies == [900, 15000]
    assert stream.attempts == [2, 4]
    assert stream.wins == {"a/fast:free": 2}
    assert stats["answer"].latencies == [120]
    assert not stats["answer"].wins


def test_load_stats_missing_directory(tmp_path):
    assert analyze.load_stats(tmp_path / "missing") == {}


def test_compute_p95():
    assert analyze.compute_p95([]) == 0
    assert analyze.compute_p95([42]) == 42
    assert analyze.compute_p95(list(range(1, 101))) >= 95
    assert analyze.compute_p95(["10"]) == 10
    assert analyze.compute_p95([float("nan")]) == 0


def test_main_writes_report(tmp_path, monkeypatch):
    metrics_dir = tmp_path / "metrics"
    report = tmp_path / "reports" / "routing.md"
    _write_log(
        metrics_dir,
        "requests-20260101.jsonl",
        [
            {"route": "stream", "ok": True, "latency_ms": 800, "attempts": 1, "cache": "miss", "model": "a/fast:free"},
            {"route": "search", "ok": True, "latency_ms": 50, "attempts": 0, "cache": None, "model": None},
        ],
    )
    monkeypatch.setattr(analyze, "METRICS_DIR", metrics_dir)
    monkeypatch.setattr(analyze, "REPORT", report)

    analyze.main()

    content = report.read_text(encoding="utf-8")
    assert content.startswith("# Routing Report (")
    assert "| stream | 1 | 100.00% | 0.00% | 800 | 1.00 |" in content
    assert "| search | 1 | 100.00% | 0.00% | 50 | 0.00 |" in content
    assert "- a/fast:free: 1" in content


def test_main_without_records(tmp_path, monkeypatch):
    report = tmp_path / "routing.md"
    monkeypatch.setattr(analyze, "METRICS_DIR", tmp_path / "nothing")
    monkeypatch.setattr(analyze, "REPORT", report)

    analyze.main()

    assert "No requests recorded." in report.read_text(encoding="utf-8")
