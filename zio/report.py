from __future__ import annotations

import csv
import json
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import List, Optional

from .batch import BatchSummary
from .results import ProcessResult


@dataclass(frozen=True)
class FileReport:
    path: str
    outcome: str
    size_before: int
    size_after: int
    saved_bytes: int
    saved_percent: float
    tool: Optional[str]
    reason: Optional[str]


@dataclass(frozen=True)
class RunReport:
    created_utc: str
    summary: dict
    files: List[FileReport]


def build_report(results: List[ProcessResult], summary: BatchSummary) -> RunReport:
    created_utc = datetime.now(timezone.utc).isoformat(timespec="seconds").replace("+00:00", "Z")

    files: List[FileReport] = []
    for r in results:
        files.append(
            FileReport(
                path=str(r.path),
                outcome=r.outcome.value,
                size_before=r.size_before,
                size_after=r.size_after,
                saved_bytes=r.saved_bytes,
                saved_percent=round(r.saved_percent, 2),
                tool=r.tool,
                reason=r.reason,
            )
        )

    summary_dict = {
        "bytes_in": summary.bytes_in,
        "bytes_out": summary.bytes_out,
        "bytes_saved": summary.bytes_saved,
        "saved_percent": round(summary.saved_percent, 2),
        "optimized": summary.optimized,
        "total": summary.total_files,
        "skipped": summary.skipped,
        "failed": summary.failed,
        "elapsed_seconds": round(summary.elapsed, 3),
    }

    return RunReport(created_utc=created_utc, summary=summary_dict, files=files)


def save_report(report: RunReport, path: Path) -> None:
    """Write JSON, or CSV (files only) when path ends in .csv."""
    path = Path(path)
    if path.suffix.lower() == ".csv":
        save_report_csv(report, path)
    else:
        save_report_json(report, path)


def save_report_json(report: RunReport, path: Path) -> None:
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)

    with path.open("w", encoding="utf-8") as f:
        json.dump(asdict(report), f, indent=2, ensure_ascii=False)


def save_report_csv(report: RunReport, path: Path) -> None:
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)

    fields = list(FileReport.__dataclass_fields__)
    with path.open("w", encoding="utf-8", newline="") as f:
        writer = csv.DictWriter(f, fieldnames=fields)
        writer.writeheader()
        for row in report.files:
            writer.writerow(asdict(row))
