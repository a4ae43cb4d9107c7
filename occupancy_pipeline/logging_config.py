"""
Centralized logging configuration for the occupancy modelling pipeline.

Provides structured JSON Lines logging to files and human-readable
console output. Every record carries the pipeline run_id and, while a
species is being processed, the species name, so per-species traces can
be pulled out of the run log. All modules should use
get_pipeline_logger() instead of calling logging.basicConfig() directly.

Usage:
    from occupancy_pipeline.logging_config import get_pipeline_logger
    log = get_pipeline_logger(__name__)
"""

import contextlib
import contextvars
import json
import logging
import os
import time
import uuid
from logging.handlers import RotatingFileHandler


# Module-level run_id bound to every log entry via RunContextFilter.
_run_id = None

# Species currently being modelled (None outside the species loop).
_current_species = contextvars.ContextVar("current_species", default=None)

_STRUCTURED_KEYS = (
    "step_name", "species", "analysis", "input_summary", "output_summary",
    "timing_seconds", "n_models", "n_failed", "warnings",
)


def get_run_id():
    """Return the current pipeline run_id, generating one if needed."""
    global _run_id
    if _run_id is None:
        _run_id = str(uuid.uuid4())[:8]
    return _run_id


def set_run_id(run_id=None):
    """Set (or regenerate) the pipeline run_id."""
    global _run_id
    _run_id = run_id or str(uuid.uuid4())[:8]
    return _run_id


@contextlib.contextmanager
def species_context(species):
    """Tag every log record emitted inside the block with *species*."""
    token = _current_species.set(species)
    try:
        yield
    finally:
        _current_species.reset(token)


class RunContextFilter(logging.Filter):
    """Inject run_id and the active species into every log record."""

    def filter(self, record):
        record.run_id = get_run_id()
        if not hasattr(record, "species"):
            record.species = _current_species.get()
        return True


class JsonFormatter(logging.Formatter):
    """Format log records as JSON Lines for machine parsing."""

    def format(self, record):
        entry = {
            "timestamp": self.formatTime(record, "%Y-%m-%dT%H:%M:%S.") +
                         f"{int(record.msecs):03d}",
            "level": record.levelname,
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
            "run_id": getattr(record, "run_id", None),
            "message": record.getMessage(),
        }
        for key in _STRUCTURED_KEYS:
            value = getattr(record, key, None)
            if value is not None:
                entry[key] = value
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str)


class ConsoleFormatter(logging.Formatter):
    """Human-readable console format, prefixed with the species if set."""

    def __init__(self):
        super().__init__(
            fmt="%(asctime)s [%(levelname)s] %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )

    def format(self, record):
        text = super().format(record)
        species = getattr(record, "species", None)
        if species:
            head, sep, tail = text.partition("] ")
            text = f"{head}{sep}<{species}> {tail}"
        return text


# Track whether root logging has been configured to avoid duplicates.
_configured = False
_run_dir_handler = None


def setup_logging(run_dir=None, console_level=None, file_level=logging.DEBUG,
                  log_dir=None):
    """Configure root logger with console and optional file handlers.

    Call once at pipeline entry point. Subsequent calls only add the
    per-run handler if it is not attached yet.

    Parameters
    ----------
    run_dir : str, optional
        Directory for the per-run log file ``{run_dir}/pipeline.jsonl``.
    console_level : int, optional
        Console handler log level. Default: from LOG_LEVEL env var or INFO.
    file_level : int
        File handler log level. Default: DEBUG.
    log_dir : str, optional
        Directory for the rotating ``pipeline.log``. Default: ``./logs``.
    """
    global _configured, _run_dir_handler

    if console_level is None:
        env_level = os.environ.get("LOG_LEVEL", "INFO").upper()
        console_level = getattr(logging, env_level, logging.INFO)

    root = logging.getLogger()

    if not _configured:
        root.setLevel(logging.DEBUG)

        console = logging.StreamHandler()
        console.setLevel(console_level)
        console.setFormatter(ConsoleFormatter())
        console.addFilter(RunContextFilter())
        root.addHandler(console)

        log_dir = log_dir or os.path.join(os.getcwd(), "logs")
        os.makedirs(log_dir, exist_ok=True)
        rotating = RotatingFileHandler(
            os.path.join(log_dir, "pipeline.log"),
            maxBytes=10 * 1024 * 1024,  # 10 MB
            backupCount=3,
        )
        rotating.setLevel(file_level)
        rotating.setFormatter(JsonFormatter())
        rotating.addFilter(RunContextFilter())
        root.addHandler(rotating)

        _configured = True

    if run_dir and _run_dir_handler is None:
        os.makedirs(run_dir, exist_ok=True)
        fh = logging.FileHandler(os.path.join(run_dir, "pipeline.jsonl"))
        fh.setLevel(file_level)
        fh.setFormatter(JsonFormatter())
        fh.addFilter(RunContextFilter())
        root.addHandler(fh)
        _run_dir_handler = fh


def get_pipeline_logger(name):
    """Get a logger for a pipeline module.

    Handlers are attached by setup_logging() at the entry point; until
    then records propagate to whatever the host (e.g. pytest) installed.
    """
    return logging.getLogger(name)


def log_step_summary(
    logger,
    step_name,
    status="success",
    input_summary=None,
    output_summary=None,
    timing_seconds=None,
    warnings_list=None,
    species=None,
):
    """Log a structured step summary at INFO level.

    Parameters
    ----------
    logger : logging.Logger
    step_name : str
    status : str
        "success", "skipped", or "error".
    input_summary : dict, optional
    output_summary : dict, optional
    timing_seconds : float, optional
    warnings_list : list[str], optional
    species : str, optional
        Overrides the species bound by species_context().
    """
    parts = [f"[{step_name}] {status}"]
    if timing_seconds is not None:
        parts.append(f"({timing_seconds:.1f}s)")
    if output_summary:
        parts.append(f"output={output_summary}")

    extra = {"step_name": step_name}
    if species is not None:
        extra["species"] = species
    if input_summary:
        extra["input_summary"] = input_summary
    if output_summary:
        extra["output_summary"] = output_summary
    if timing_seconds is not None:
        extra["timing_seconds"] = timing_seconds
    if warnings_list:
        extra["warnings"] = warnings_list

    logger.info(" ".join(parts), extra=extra)


class StepTimer:
    """Context manager for timing pipeline steps.

    Usage:
        with StepTimer() as t:
            do_work()
        print(t.elapsed)
    """

    def __enter__(self):
        self.start = time.perf_counter()
        return self

    def __exit__(self, *args):
        self.elapsed = time.perf_counter() - self.start
