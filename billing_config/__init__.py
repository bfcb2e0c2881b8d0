"""
billing_config -- single public entrypoint for billing configuration.

Responsibility:
    Provides the ONLY way to obtain configuration at runtime through
    ``get_active_config()``.  Returns a validated, frozen
    ``BillingConfiguration``; ``billing_config.bridges`` turns it into
    engine instances.

Architecture position:
    Configuration -- YAML-driven policy.  Sits above ``billing_engines``
    and below ``billing_services`` callers.  The kernel and the engines
    MUST NEVER import from ``billing_config``.

Failure modes:
    - ``FileNotFoundError`` -- configuration file missing.
    - ``ValueError`` -- validation failures (all listed in the message).

Audit relevance:
    Every successful ``get_active_config()`` call emits a
    ``BILLING_CONFIG_TRACE`` log entry with config_id, version, checksum
    and tier count, tying every generated schedule to the exact policy
    that produced it.
"""

from __future__ import annotations

import logging
from pathlib import Path

from billing_config.loader import load_configuration
from billing_config.schema import BillingConfiguration
from billing_config.validator import validate_configuration

_logger = logging.getLogger("billing_kernel.config")

DEFAULT_CONFIG_PATH = Path(__file__).parent / "sets" / "default.yaml"


def get_active_config(path: Path | None = None) -> BillingConfiguration:
    """The ONLY public configuration entrypoint.

    Args:
        path: Override path to a configuration YAML file.  Defaults to
            billing_config/sets/default.yaml.

    Raises:
        FileNotFoundError: If the file does not exist.
        ValueError: If configuration validation fails.
    """
    config = load_configuration(path or DEFAULT_CONFIG_PATH)

    validation = validate_configuration(config)
    if not validation.is_valid:
        raise ValueError(
            "Configuration validation failed:\n"
            + "\n".join(f"  - {e}" for e in validation.errors)
        )
    for warning in validation.warnings:
        _logger.warning("config_validation_warning", extra={"warning": warning})

    _logger.info(
        "BILLING_CONFIG_TRACE",
        extra={
            "trace_type": "BILLING_CONFIG_TRACE",
            "config_id": config.config_id,
            "config_version": config.version,
            "checksum": config.checksum,
            "tier_count": len(config.scheduling.tiers),
        },
    )
    return config


__all__ = [
    "BillingConfiguration",
    "DEFAULT_CONFIG_PATH",
    "get_active_config",
]
