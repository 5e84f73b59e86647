import datetime
import json
import math
import pathlib
import statistics
from collections import Counter
from dataclasses import dataclass, field
from typing import Iterable, Sequence

METRICS_DIR = pathlib.Path("metrics")
REPORT = pathlib.Path("reports/routing.md")

_LOG_GLOB = "requests-*.jsonl"
_NO_MODELS = {"", "none", "fallback"}


def _normalize_duration(value: object) -> int:
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, (int, float)):
        if isinstance(value, float) and not math.isfinite(value):
            return 0
        return int(value)
    if isinstance(value, str):
        try:
            parsed = float(value)
        except ValueError:
            return 0
        if not math.isfinite(parsed):
            return 0
        return int(parsed)
    return 0


@dataclass
class RouteStats:
    requests: int = 0
    failures: int = 0
    cache_hits: int = 0
    latencies: list[int] = field(default_factory=list)
    attempts: list[int] = field(default_factory=list)
    wins: Counter = field(default_factory=Counter)


def iter_records(paths: Iterable[pathlib.Path]) -> Iterable[dict]:
    for path in paths:
        with path.open(encoding="utf-8", errors="strict") as f:
            for line in f:
                stripped = line.strip()
                if not stripped:
                    continue
                try:
                    obj = json.loads(stripped)
                except json.JSONDecodeError:
                    continue
                if isinstance(obj, dict):
                    yield obj


def load_stats(metrics_dir: pathlib.Path | None = None) -> dict[str, RouteStats]:
    directory = metrics_dir or METRICS_DIR
    stats: dict[str, RouteStats] = {}
    if not directory.exists():
        return stats
    for record in iter_records(sorted(directory.glob(_LOG_GLOB))):
        route = str(record.get("route") or "unknown")
        entry = stats.setdefault(route, RouteStats())
        entry.requests += 1
        if not record.get("ok"):
            entry.failures += 1
        if record.get("cache") == "hit":
            entry.cache_hits += 1
        else:
            entry.latencies.append(_normalize_duration(record.get("latency_ms")))
            entry.attempts.append(_normalize_duration(record.get("attempts")))
        model = record.get("model")
        if record.get("ok") and isinstance(model, str) and model not in _NO_MODELS:
            entry.wins[model] += 1
    return stats


def compute_p95(durations: Sequence[object]) -> int:
    normalized = [_normalize_duration(value) for value in durations]
    if not normalized:
        return 0
    if len(normalized) == 1:
        return normalized[0]

    sorted_durations = sorted(normalized)
    sample_count = len(sorted_durations)
    method = "inclusive" if sample_count < 20 else "exclusive"
    try:
        return int(statistics.quantiles(sorted_durations, n=20, method=method)[18])
    except statistics.StatisticsError:
        index = min(sample_count - 1, math.ceil(0.95 * sample_count) - 1)
        return int(sorted_durations[index])


def _rate_text(numerator: int, denominator: int) -> str:
    if denominator == 0:
        return "n/a"
    return f"{numerator / denominator:.2%}"


def _write_report(report_path: pathlib.Path, stats: dict[str, RouteStats], timestamp: str) -> None:
    report_path.parent.mkdir(parents=True, exist_ok=True)
    with report_path.open("w", encoding="utf-8") as handle:
        handle.write(f"# Routing Report ({timestamp})\n\n")
        if not stats:
            handle.write("No requests recorded.\n")
            return
        handle.write("| route | requests | success rate | cache hit rate | p95 latency (ms) | mean attempts |\n")
        handle.write("|---|---|---|---|---|---|\n")
        for route, entry in sorted(stats.items()):
            mean_attempts = statistics.fmean(entry.attempts) if entry.attempts else 0.0
            handle.write(
                f"| {route} | {entry.requests} "
                f"| {_rate_text(entry.requests - entry.failures, entry.requests)} "
                f"| {_rate_text(entry.cache_hits, entry.requests)} "
                f"| {compute_p95(entry.latencies)} | {mean_attempts:.2f} |\n"
            )
        wins: Counter = Counter()
        for entry in stats.values():
            wins.update(entry.wins)
        if wins:
            handle.write("\n## Wins per model\n")
            for model, count in wins.most_common():
                handle.write(f"- {model}: {count}\n")


def main() -> None:
    stats = load_stats()
    timestamp = datetime.datetime.now(datetime.timezone.utc).isoformat()
    _write_report(REPORT, stats, timestamp)


if __name__ == "__main__":
    main()
