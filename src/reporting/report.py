"""Operation reporting.

Collects per-item results (services, backup components) for one command
and renders them as a summary table, a JSON-serializable dict, and
optionally JSON/markdown files in a report directory.
"""

import json
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Optional

OK = 'ok'
SKIPPED = 'skipped'
FAILED = 'failed'
WARNING = 'warning'


@dataclass
class ItemResult:
    """Result of one item in an operation."""
    name: str
    status: str  # 'ok', 'skipped', 'failed', 'warning'
    message: str = ''
    duration: float = 0.0


@dataclass
class OperationReport:
    """Collects item results and warnings for one operation."""
    operation: str
    items: list[ItemResult] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    next_steps: list[str] = field(default_factory=list)
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    success: bool = False

    def start(self):
        """Mark operation start."""
        self.started_at = datetime.now()

    def add(self, name: str, status: str, message: str = '', duration: float = 0.0) -> ItemResult:
        item = ItemResult(name=name, status=status, message=message, duration=duration)
        self.items.append(item)
        return item

    def ok(self, name: str, message: str = '', duration: float = 0.0) -> ItemResult:
        return self.add(name, OK, message, duration)

    def skip(self, name: str, message: str = '') -> ItemResult:
        return self.add(name, SKIPPED, message)

    def fail(self, name: str, message: str = '', duration: float = 0.0) -> ItemResult:
        return self.add(name, FAILED, message, duration)

    def warn(self, message: str) -> None:
        self.warnings.append(message)

    def names(self, status: str) -> list[str]:
        return [i.name for i in self.items if i.status == status]

    def finish(self, success: Optional[bool] = None):
        """Finalize; success defaults to 'no failed items'."""
        self.finished_at = datetime.now()
        self.success = not self.names(FAILED) if success is None else success

    @property
    def duration(self) -> float:
        if self.finished_at and self.started_at:
            return (self.finished_at - self.started_at).total_seconds()
        return 0.0

    def format_table(self) -> str:
        """Render the summary table."""
        width = max([len(i.name) for i in self.items] + [9])
        lines = [
            f"  {'COMPONENT':<{width}}  {'STATUS':<8} DETAIL",
            f"  {'-' * width}  {'-' * 8} {'-' * 30}",
        ]
        for i in self.items:
            lines.append(f"  {i.name:<{width}}  {i.status:<8} {i.message}")
        if self.warnings:
            lines.append("")
            lines.append("Warnings:")
            lines.extend(f"  ! {w}" for w in self.warnings)
        if self.next_steps:
            lines.append("")
            lines.append("Next steps:")
            lines.extend(f"  {n}. {step}" for n, step in enumerate(self.next_steps, 1))
        return '\n'.join(lines)

    def to_dict(self, extra: Optional[dict] = None) -> dict:
        """Return report as dictionary for JSON output.

        Args:
            extra: Additional JSON-serializable keys to merge in
        """
        result = {
            'operation': self.operation,
            'success': self.success,
            'duration_seconds': round(self.duration, 1),
            'items': [
                {
                    'name': i.name,
                    'status': i.status,
                    'message': i.message,
                    'duration': round(i.duration, 1),
                }
                for i in self.items
            ],
        }
        if self.warnings:
            result['warnings'] = list(self.warnings)
        if self.next_steps:
            result['next_steps'] = list(self.next_steps)
        if not self.success:
            for i in self.items:
                if i.status == FAILED and i.message:
                    result['error'] = i.message
                    break
        if extra:
            result.update(extra)
        return result

    def write(self, report_dir: Path) -> list[Path]:
        """Write JSON and markdown reports into report_dir."""
        report_dir.mkdir(parents=True, exist_ok=True)
        return [self._write_json(report_dir), self._write_markdown(report_dir)]

    def _write_json(self, report_dir: Path) -> Path:
        data = self.to_dict()
        data['started_at'] = self.started_at.isoformat() if self.started_at else None
        data['finished_at'] = self.finished_at.isoformat() if self.finished_at else None
        filename = self._report_filename(report_dir, 'json')
        with open(filename, 'w', encoding="utf-8") as f:
            json.dump(data, f, indent=2)
        return filename

    def _write_markdown(self, report_dir: Path) -> Path:
        status = 'SUCCEEDED' if self.success else 'FAILED'
        lines = [
            f"# {self.operation}",
            "",
            f"**Status**: {status}",
            f"**Date**: {self.started_at.strftime('%Y-%m-%d %H:%M:%S') if self.started_at else 'N/A'}",
            f"**Duration**: {self.duration:.1f}s",
            "",
            "## Items",
            "",
            "| Item | Status | Duration | Message |",
            "|------|--------|----------|---------|",
        ]
        for i in self.items:
            lines.append(f"| {i.name} | {i.status} | {i.duration:.1f}s | {i.message} |")
        if self.warnings:
            lines.extend(["", "## Warnings", ""])
            lines.extend(f"- {w}" for w in self.warnings)
        lines.extend(["", "---", f"Generated: {datetime.now().isoformat()}"])

        filename = self._report_filename(report_dir, 'md')
        with open(filename, 'w', encoding="utf-8") as f:
            f.write('\n'.join(lines))
        return filename

    def _report_filename(self, report_dir: Path, ext: str) -> Path:
        timestamp = self.started_at.strftime('%Y%m%d-%H%M%S') if self.started_at else 'unknown'
        status = 'succeeded' if self.success else 'failed'
        return report_dir / f"{timestamp}.{self.operation}.{status}.{ext}"
