"""
Typed result dataclasses for pipeline step and species tracking.

These types standardize what each pipeline step returns, enabling
structured logging, explicit recording of skipped species, and
provenance tracking.
"""

import subprocess
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Optional


class StepStatus(str, Enum):
    """Pipeline step outcome status."""
    SUCCESS = "success"
    SKIPPED = "skipped"
    ERROR = "error"


def _now_iso():
    return datetime.now(timezone.utc).isoformat()


def _get_git_sha():
    """Return the short git SHA of the current HEAD, or None."""
    try:
        return subprocess.check_output(
            ["git", "rev-parse", "--short", "HEAD"],
            stderr=subprocess.DEVNULL,
            text=True,
        ).strip()
    except (subprocess.SubprocessError, FileNotFoundError):
        return None


@dataclass
class StepResult:
    """Result of a single pipeline step execution."""

    step_name: str
    status: str  # "success", "skipped", "error"
    input_summary: dict = field(default_factory=dict)
    output_summary: dict = field(default_factory=dict)
    timing_seconds: float = 0.0
    warnings: list = field(default_factory=list)
    error: Optional[str] = None
    reason: Optional[str] = None
    started_at: str = field(default_factory=_now_iso)

    @property
    def ok(self):
        return self.status == StepStatus.SUCCESS

    @property
    def skipped(self):
        return self.status == StepStatus.SKIPPED

    def to_dict(self):
        return {
            "step_name": self.step_name,
            "status": getattr(self.status, "value", self.status),
            "input_summary": self.input_summary,
            "output_summary": self.output_summary,
            "timing_seconds": self.timing_seconds,
            "warnings": self.warnings,
            "error": self.error,
            "reason": self.reason,
            "started_at": self.started_at,
        }

    @classmethod
    def from_dict(cls, d):
        """Reconstruct a StepResult from a serialized dict."""
        return cls(
            step_name=d["step_name"],
            status=d["status"],
            input_summary=d.get("input_summary", {}),
            output_summary=d.get("output_summary", {}),
            timing_seconds=d.get("timing_seconds", 0.0),
            warnings=d.get("warnings", []),
            error=d.get("error"),
            reason=d.get("reason"),
            started_at=d.get("started_at", ""),
        )


@dataclass
class PipelineRunResult:
    """Result of a complete multi-species pipeline execution."""

    run_dir: str = ""
    input_path: str = ""
    species_requested: list = field(default_factory=list)
    species_fitted: list = field(default_factory=list)
    species_skipped: dict = field(default_factory=dict)  # name -> reason
    species_warnings: dict = field(default_factory=dict)  # name -> [warning]
    step_results: list = field(default_factory=list)
    total_time_seconds: float = 0.0
    output_files: list = field(default_factory=list)
    settings: dict = field(default_factory=dict)
    git_sha: Optional[str] = field(default_factory=_get_git_sha)
    started_at: str = field(default_factory=_now_iso)

    @property
    def all_ok(self):
        return all(s.ok for s in self.step_results)

    @property
    def failed_steps(self):
        return [s for s in self.step_results if s.status == StepStatus.ERROR]

    def to_dict(self):
        return {
            "run_dir": self.run_dir,
            "input_path": self.input_path,
            "species_requested": self.species_requested,
            "species_fitted": self.species_fitted,
            "species_skipped": self.species_skipped,
            "species_warnings": self.species_warnings,
            "steps": [s.to_dict() for s in self.step_results],
            "total_time_seconds": self.total_time_seconds,
            "output_files": self.output_files,
            "settings": self.settings,
            "all_ok": self.all_ok,
            "git_sha": self.git_sha,
            "started_at": self.started_at,
        }

    @classmethod
    def from_dict(cls, d):
        """Reconstruct a PipelineRunResult from a serialized dict."""
        result = cls(
            run_dir=d.get("run_dir", ""),
            input_path=d.get("input_path", ""),
            species_requested=d.get("species_requested", []),
            species_fitted=d.get("species_fitted", []),
            species_skipped=d.get("species_skipped", {}),
            species_warnings=d.get("species_warnings", {}),
            total_time_seconds=d.get("total_time_seconds", 0.0),
            output_files=d.get("output_files", []),
            settings=d.get("settings", {}),
            git_sha=d.get("git_sha"),
            started_at=d.get("started_at", ""),
        )
        result.step_results = [
            StepResult.from_dict(s) for s in d.get("steps", [])
        ]
        return result
