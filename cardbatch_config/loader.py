"""
Configuration Loader (``cardbatch_config.loader``).

Responsibility
--------------
Loads the batch YAML file and parses it into typed ``cardbatch_config.schema``
dataclasses.  The runtime entry point is ``cardbatch_config.get_batch_config()``.

Invariants enforced
-------------------
* Parse errors raise ``ValueError`` or ``KeyError`` with descriptive
  messages; no silent defaults for malformed values.
* Every parsed object is a frozen dataclass from ``schema.py``.
* ``compute_checksum`` produces a deterministic SHA-256 hash so the log trace
  of every run identifies the exact configuration it ran under.

Failure modes
-------------
* Missing YAML file  -> ``FileNotFoundError`` propagates.
* Malformed YAML  -> ``yaml.YAMLError`` propagates.
* Missing required keys  -> ``KeyError`` propagates.
* Out-of-range numbers  -> ``ValueError``.
"""

from __future__ import annotations

import hashlib
import json
from pathlib import Path
from typing import Any

import yaml

from cardbatch_config.schema import (
    BatchSettings,
    FaultPolicyDef,
    JobSettings,
    StepSettings,
)


def load_yaml_file(path: Path) -> dict[str, Any]:
    """
    Load a single YAML file and return its contents as a dict.

    Raises:
        FileNotFoundError: if the file does not exist.
        yaml.YAMLError: if the file contains invalid YAML.
    """
    with open(path) as f:
        return yaml.safe_load(f) or {}


def _positive_int(data: dict[str, Any], key: str, minimum: int) -> int | None:
    if key not in data or data[key] is None:
        return None
    value = data[key]
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValueError(f"{key} must be an integer, got {value!r}")
    if value < minimum:
        raise ValueError(f"{key} must be >= {minimum}, got {value}")
    return value


def _name_tuple(data: dict[str, Any], key: str) -> tuple[str, ...] | None:
    if key not in data or data[key] is None:
        return None
    value = data[key]
    if isinstance(value, str) or not isinstance(value, list):
        raise ValueError(f"{key} must be a list of exception names")
    return tuple(str(v) for v in value)


def parse_fault_policy(data: dict[str, Any]) -> FaultPolicyDef:
    """Parse the global ``defaults`` block."""
    base = FaultPolicyDef()
    chunk_size = _positive_int(data, "chunk_size", 1)
    skip_limit = _positive_int(data, "skip_limit", 0)
    retry_limit = _positive_int(data, "retry_limit", 1)
    skippable = _name_tuple(data, "skippable")
    retryable = _name_tuple(data, "retryable")
    return FaultPolicyDef(
        chunk_size=chunk_size if chunk_size is not None else base.chunk_size,
        skip_limit=skip_limit if skip_limit is not None else base.skip_limit,
        retry_limit=retry_limit if retry_limit is not None else base.retry_limit,
        skippable=skippable if skippable is not None else base.skippable,
        retryable=retryable if retryable is not None else base.retryable,
    )


def parse_step(data: dict[str, Any]) -> StepSettings:
    """Parse one entry of a job's ``steps`` list."""
    allow_continue = data.get("allow_continue")
    if allow_continue is not None and not isinstance(allow_continue, bool):
        raise ValueError(f"allow_continue must be a boolean, got {allow_continue!r}")
    return StepSettings(
        name=data["name"],
        chunk_size=_positive_int(data, "chunk_size", 1),
        skip_limit=_positive_int(data, "skip_limit", 0),
        retry_limit=_positive_int(data, "retry_limit", 1),
        skippable=_name_tuple(data, "skippable"),
        retryable=_name_tuple(data, "retryable"),
        allow_continue=allow_continue,
    )


def parse_job(name: str, data: dict[str, Any]) -> JobSettings:
    """Parse one entry of the ``jobs`` mapping."""
    return JobSettings(
        name=name,
        processing_window_minutes=_positive_int(data, "processing_window_minutes", 1),
        steps=tuple(parse_step(s) for s in data.get("steps", []) or []),
    )


def parse_batch_settings(data: dict[str, Any]) -> BatchSettings:
    """
    Parse the whole batch configuration document.

    Postconditions:
        - Returns a ``BatchSettings`` whose ``checksum`` identifies ``data``.
    """
    batch = data.get("batch", {}) or {}
    base = BatchSettings()
    io_timeout = _positive_int(batch, "io_timeout_seconds", 1)
    failure_limit = _positive_int(batch, "failure_report_limit", 0)
    jobs = data.get("jobs", {}) or {}
    return BatchSettings(
        database_url=batch.get("database_url", base.database_url),
        io_timeout_seconds=io_timeout if io_timeout is not None else base.io_timeout_seconds,
        failure_report_limit=(
            failure_limit if failure_limit is not None else base.failure_report_limit
        ),
        defaults=parse_fault_policy(data.get("defaults", {}) or {}),
        jobs=tuple(parse_job(name, body or {}) for name, body in sorted(jobs.items())),
        checksum=compute_checksum(data),
    )


def compute_checksum(data: dict[str, Any]) -> str:
    """Deterministic SHA-256 of a parsed configuration document."""
    canonical = json.dumps(data, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def load_batch_settings(path: Path) -> BatchSettings:
    return parse_batch_settings(load_yaml_file(path))
