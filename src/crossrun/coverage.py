"""
Coverage aggregation over Istanbul-shaped snapshots.

Each snapshot maps a file path to its counters:

    {"path": ..., "statementMap": {...}, "s": {...}, "fnMap": {...}, "f": {...},
     "branchMap": {...}, "b": {...}}

Snapshots from every sandbox on every target are merged by summing counters,
restricted to the tracked files, and checked against per-file thresholds.
Percentages follow Istanbul: floored to two decimals, 100 for empty totals.
"""

from __future__ import annotations

import json
import math
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Iterable, Mapping

import structlog

from crossrun.errors import ThresholdError, ThresholdMiss

logger = structlog.get_logger(__name__)

METRICS = ("lines", "functions", "statements", "branches")
FINAL_REPORT = "coverage-final.json"
SUMMARY_REPORT = "coverage-summary.json"
LCOV_REPORT = "lcov.info"
REPORTERS = ("json", "json-summary", "lcov", "text")
DEFAULT_REPORTERS = REPORTERS


def _normalize_path(path: str) -> str:
    return path[2:] if path.startswith("./") else path


def _percent(covered: int, total: int) -> float:
    if total <= 0:
        return 100.0
    return math.floor(covered * 10000 / total) / 100


@dataclass
class CoverageMetric:
    total: int = 0
    covered: int = 0
    pct: float = 100.0

    @classmethod
    def of(cls, covered: int, total: int) -> CoverageMetric:
        return cls(total=total, covered=covered, pct=_percent(covered, total))

    @classmethod
    def zero(cls) -> CoverageMetric:
        return cls(total=0, covered=0, pct=0.0)

    def to_dict(self) -> dict[str, Any]:
        return {"total": self.total, "covered": self.covered, "skipped": 0, "pct": self.pct}


@dataclass
class CoverageSummary:
    lines: CoverageMetric = field(default_factory=CoverageMetric)
    functions: CoverageMetric = field(default_factory=CoverageMetric)
    statements: CoverageMetric = field(default_factory=CoverageMetric)
    branches: CoverageMetric = field(default_factory=CoverageMetric)

    def metric(self, name: str) -> CoverageMetric:
        if name not in METRICS:
            raise KeyError(f"Unknown coverage metric {name}")
        return getattr(self, name)

    def to_dict(self) -> dict[str, Any]:
        return {name: self.metric(name).to_dict() for name in METRICS}

    @classmethod
    def combine(cls, summaries: Iterable[CoverageSummary]) -> CoverageSummary:
        totals = {name: [0, 0] for name in METRICS}
        for summary in summaries:
            for name in METRICS:
                metric = summary.metric(name)
                totals[name][0] += metric.covered
                totals[name][1] += metric.total
        return cls(**{name: CoverageMetric.of(covered, total) for name, (covered, total) in totals.items()})


@dataclass
class FileCoverage:
    """Counters for a single file."""

    path: str
    statement_map: dict[str, Any] = field(default_factory=dict)
    fn_map: dict[str, Any] = field(default_factory=dict)
    branch_map: dict[str, Any] = field(default_factory=dict)
    s: dict[str, int] = field(default_factory=dict)
    f: dict[str, int] = field(default_factory=dict)
    b: dict[str, list[int]] = field(default_factory=dict)
    executed: bool = True
    """False for tracked files no target ever loaded."""

    @classmethod
    def blank(cls, path: str) -> FileCoverage:
        return cls(path=path, executed=False)

    @classmethod
    def from_dict(cls, path: str, data: Mapping[str, Any]) -> FileCoverage:
        return cls(
            path=_normalize_path(path),
            statement_map=dict(data.get("statementMap") or {}),
            fn_map=dict(data.get("fnMap") or {}),
            branch_map=dict(data.get("branchMap") or {}),
            s={key: int(count) for key, count in (data.get("s") or {}).items()},
            f={key: int(count) for key, count in (data.get("f") or {}).items()},
            b={key: [int(count) for count in counts] for key, counts in (data.get("b") or {}).items()},
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "path": self.path,
            "statementMap": self.statement_map,
            "fnMap": self.fn_map,
            "branchMap": self.branch_map,
            "s": self.s,
            "f": self.f,
            "b": self.b,
        }

    def merge(self, other: FileCoverage) -> None:
        """Add other's counters into this file."""
        if not other.executed:
            return
        self.executed = True
        for key, location in other.statement_map.items():
            self.statement_map.setdefault(key, location)
        for key, location in other.fn_map.items():
            self.fn_map.setdefault(key, location)
        for key, location in other.branch_map.items():
            self.branch_map.setdefault(key, location)
        for key, count in other.s.items():
            self.s[key] = self.s.get(key, 0) + count
        for key, count in other.f.items():
            self.f[key] = self.f.get(key, 0) + count
        for key, counts in other.b.items():
            current = self.b.get(key, [])
            size = max(len(current), len(counts))
            current = current + [0] * (size - len(current))
            self.b[key] = [a + b for a, b in zip(current, counts + [0] * (size - len(counts)))]

    def line_hits(self) -> dict[int, int]:
        """Hit count per line, taking the busiest statement that starts on it."""
        lines: dict[int, int] = {}
        for key, location in self.statement_map.items():
            line = location.get("start", {}).get("line")
            if line is None:
                continue
            count = self.s.get(key, 0)
            lines[line] = max(lines.get(line, 0), count)
        return lines

    def summary(self) -> CoverageSummary:
        if not self.executed:
            return CoverageSummary(
                lines=CoverageMetric.zero(),
                functions=CoverageMetric.zero(),
                statements=CoverageMetric.zero(),
                branches=CoverageMetric.zero(),
            )
        lines = self.line_hits()
        branch_counts = [count for counts in self.b.values() for count in counts]
        return CoverageSummary(
            lines=CoverageMetric.of(sum(1 for count in lines.values() if count > 0), len(lines)),
            functions=CoverageMetric.of(sum(1 for count in self.f.values() if count > 0), len(self.f)),
            statements=CoverageMetric.of(sum(1 for count in self.s.values() if count > 0), len(self.s)),
            branches=CoverageMetric.of(sum(1 for count in branch_counts if count > 0), len(branch_counts)),
        )


class CoverageMap:
    """Merged file coverage keyed by path."""

    def __init__(self) -> None:
        self.files: dict[str, FileCoverage] = {}

    def __contains__(self, path: object) -> bool:
        return isinstance(path, str) and _normalize_path(path) in self.files

    def __len__(self) -> int:
        return len(self.files)

    def paths(self) -> list[str]:
        return list(self.files)

    def add_file(self, coverage: FileCoverage) -> None:
        existing = self.files.get(coverage.path)
        if existing is None:
            self.files[coverage.path] = coverage
        else:
            existing.merge(coverage)

    def add_snapshot(self, snapshot: Mapping[str, Any]) -> None:
        for path, data in snapshot.items():
            self.add_file(FileCoverage.from_dict(path, data))

    def file_coverage_for(self, path: str) -> FileCoverage:
        try:
            return self.files[_normalize_path(path)]
        except KeyError:
            raise KeyError(f"No coverage recorded for {path}") from None

    def filter(self, keep: Iterable[str]) -> None:
        allowed = {_normalize_path(path) for path in keep}
        self.files = {path: cov for path, cov in self.files.items() if path in allowed}

    def total_summary(self) -> CoverageSummary:
        return CoverageSummary.combine(cov.summary() for cov in self.files.values())

    def to_dict(self) -> dict[str, Any]:
        return {path: cov.to_dict() for path, cov in self.files.items()}


def create_coverage_map(
    snapshots: Iterable[Mapping[str, Any] | None],
    covered_files: Iterable[str] | None = None,
) -> CoverageMap:
    """
    Merge snapshots into one map.

    When covered_files is given the map is restricted to those files, and any
    of them absent from every snapshot are added as never-executed blanks.
    """
    coverage_map = CoverageMap()
    for snapshot in snapshots:
        if snapshot:
            coverage_map.add_snapshot(snapshot)

    if covered_files is not None:
        tracked = [_normalize_path(path) for path in covered_files]
        coverage_map.filter(tracked)
        for path in tracked:
            if path not in coverage_map.files:
                coverage_map.add_file(FileCoverage.blank(path))
    return coverage_map


def summarize(coverage_map: CoverageMap, file_path: str) -> CoverageSummary:
    return coverage_map.file_coverage_for(file_path).summary()


def find_threshold_misses(
    coverage_map: CoverageMap,
    thresholds: Mapping[str, Mapping[str, float]],
) -> list[ThresholdMiss]:
    misses: list[ThresholdMiss] = []
    for path, minimums in thresholds.items():
        if not minimums:
            continue
        if path in coverage_map:
            summary = summarize(coverage_map, path)
        else:
            summary = FileCoverage.blank(path).summary()
        for metric in METRICS:
            threshold = minimums.get(metric)
            if threshold is None:
                continue
            actual = summary.metric(metric).pct
            if actual < threshold:
                misses.append(ThresholdMiss(path, metric, actual, threshold))
    return misses


def enforce_thresholds(
    coverage_map: CoverageMap,
    thresholds: Mapping[str, Mapping[str, float]],
) -> None:
    """
    Raises:
        ThresholdError: Listing every metric below its minimum.
    """
    misses = find_threshold_misses(coverage_map, thresholds)
    if misses:
        raise ThresholdError(misses)


def format_lcov(coverage_map: CoverageMap) -> str:
    """Render the map in lcov tracefile format."""
    records: list[str] = []
    for path, cov in coverage_map.files.items():
        records.append("TN:")
        records.append(f"SF:{path}")
        for key, fn in cov.fn_map.items():
            line = fn.get("line") or fn.get("decl", {}).get("start", {}).get("line", 0)
            records.append(f"FN:{line},{fn.get('name') or f'(anonymous_{key})'}")
        for key, fn in cov.fn_map.items():
            records.append(f"FNDA:{cov.f.get(key, 0)},{fn.get('name') or f'(anonymous_{key})'}")
        records.append(f"FNF:{len(cov.f)}")
        records.append(f"FNH:{sum(1 for count in cov.f.values() if count > 0)}")

        hits = cov.line_hits()
        for line in sorted(hits):
            records.append(f"DA:{line},{hits[line]}")
        records.append(f"LF:{len(hits)}")
        records.append(f"LH:{sum(1 for count in hits.values() if count > 0)}")

        branch_total = branch_hit = 0
        for key, counts in cov.b.items():
            line = cov.branch_map.get(key, {}).get("line", 0)
            for index, count in enumerate(counts):
                records.append(f"BRDA:{line},{key},{index},{count if count else '-'}")
                branch_total += 1
                branch_hit += 1 if count > 0 else 0
        records.append(f"BRF:{branch_total}")
        records.append(f"BRH:{branch_hit}")
        records.append("end_of_record")
    return "\n".join(records) + ("\n" if records else "")


def format_text_report(coverage_map: CoverageMap) -> str:
    """Render a per-file percentage table."""
    width = max([len("All files"), *(len(path) for path in coverage_map.files)])
    header = f"{'File':<{width}} | % Stmts | % Branch | % Funcs | % Lines"
    rule = "-" * len(header)

    def row(name: str, summary: CoverageSummary) -> str:
        return (
            f"{name:<{width}} | {summary.statements.pct:>7g} | {summary.branches.pct:>8g} "
            f"| {summary.functions.pct:>7g} | {summary.lines.pct:>7g}"
        )

    lines = [rule, header, rule, row("All files", coverage_map.total_summary())]
    lines.extend(row(path, cov.summary()) for path, cov in coverage_map.files.items())
    lines.append(rule)
    return "\n".join(lines)


def write_coverage_report(
    coverage_map: CoverageMap,
    directory: str | Path,
    reporters: Iterable[str] = DEFAULT_REPORTERS,
) -> Path:
    """
    Write the file-based reports among reporters into directory.

    ``json`` writes coverage-final.json, ``json-summary`` coverage-summary.json
    and ``lcov`` lcov.info. ``text`` has no file; callers print
    :func:`format_text_report` instead.

    Raises:
        ValueError: For an unknown reporter name.
    """
    selected = list(reporters)
    unknown = [name for name in selected if name not in REPORTERS]
    if unknown:
        raise ValueError(f"Unknown coverage reporters: {', '.join(unknown)}")

    out = Path(directory)
    out.mkdir(parents=True, exist_ok=True)
    if "json" in selected:
        (out / FINAL_REPORT).write_text(json.dumps(coverage_map.to_dict(), indent=2), encoding="utf-8")
    if "json-summary" in selected:
        summary: dict[str, Any] = {"total": coverage_map.total_summary().to_dict()}
        for path, cov in coverage_map.files.items():
            summary[path] = cov.summary().to_dict()
        (out / SUMMARY_REPORT).write_text(json.dumps(summary, indent=2), encoding="utf-8")
    if "lcov" in selected:
        (out / LCOV_REPORT).write_text(format_lcov(coverage_map), encoding="utf-8")

    logger.info("coverage_report_written", directory=str(out), files=len(coverage_map), reporters=selected)
    return out
