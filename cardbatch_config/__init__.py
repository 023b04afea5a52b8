"""
cardbatch_config -- single public entrypoint for batch configuration.

Responsibility:
    ``get_batch_config()`` is the ONLY way components obtain configuration:
    database URL, I/O timeout, fault-policy defaults, per-job processing
    windows and per-step overrides.

Audit relevance:
    Every successful call emits a ``batch_config_loaded`` log entry with the
    source path and checksum, tying each run to the configuration that
    governed its skip/retry decisions.
"""

from __future__ import annotations

from pathlib import Path

from cardbatch_config.loader import load_batch_settings
from cardbatch_config.schema import (
    BatchSettings,
    FaultPolicyDef,
    JobSettings,
    StepSettings,
)
from cardbatch_kernel.logging_config import get_logger

_logger = get_logger("config")

DEFAULT_CONFIG_PATH = Path(__file__).parent / "defaults" / "batch.yaml"


def get_batch_config(config_path: Path | None = None) -> BatchSettings:
    """Load and return the batch configuration.

    Args:
        config_path: YAML file to load.  Defaults to the packaged
            ``defaults/batch.yaml``.

    Raises:
        FileNotFoundError, yaml.YAMLError, KeyError, ValueError: see loader.
    """
    path = Path(config_path) if config_path is not None else DEFAULT_CONFIG_PATH
    settings = load_batch_settings(path)
    _logger.info(
        "batch_config_loaded",
        extra={
            "config_path": str(path),
            "checksum": settings.checksum,
            "job_count": len(settings.jobs),
        },
    )
    return settings


__all__ = [
    "BatchSettings",
    "DEFAULT_CONFIG_PATH",
    "FaultPolicyDef",
    "JobSettings",
    "StepSettings",
    "get_batch_config",
]
