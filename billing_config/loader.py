"""
Configuration Loader (``billing_config.loader``).

Responsibility
--------------
Loads a billing configuration YAML file and parses it into typed
``billing_config.schema`` dataclass instances.  Runtime callers use
``billing_config.get_active_config()`` instead of calling this directly.

Architecture position
---------------------
**Config layer** -- infrastructure tooling.  No dependency on the kernel,
engines or services.

Invariants enforced
-------------------
* Required keys are required: a missing ``config_id``, ``version``, tier
  ``label`` or milestone ``type``/``percentage`` raises ``KeyError``.
* Every parsed object is a frozen dataclass from ``schema.py``.
* ``compute_checksum`` produces a deterministic SHA-256 hash for
  configuration identity.

Failure modes
-------------
* Missing YAML file  -> ``FileNotFoundError`` propagates.
* Malformed YAML  -> ``yaml.YAMLError`` propagates.
* Missing required keys  -> ``KeyError`` propagates.
"""

from __future__ import annotations

import hashlib
import json
from pathlib import Path
from typing import Any

import yaml

from billing_config.schema import (
    AuditPolicy,
    BillingConfiguration,
    ExemptPolicy,
    MilestoneDef,
    ScheduleTierDef,
    SchedulingPolicy,
    SequencingPolicy,
)


def load_yaml_file(path: Path) -> dict[str, Any]:
    """Load a single YAML file; an empty file yields an empty dict."""
    with open(path) as f:
        return yaml.safe_load(f) or {}


def parse_milestone(data: dict[str, Any]) -> MilestoneDef:
    return MilestoneDef(
        milestone_type=data["type"],
        percentage=data["percentage"],
        due=data.get("due", "now"),
        days=data.get("days", 0),
        description=data.get("description"),
    )


def parse_tier(data: dict[str, Any]) -> ScheduleTierDef:
    return ScheduleTierDef(
        label=data["label"],
        max_days=data.get("max_days"),
        milestones=tuple(parse_milestone(m) for m in data.get("milestones", [])),
    )


def parse_scheduling(data: dict[str, Any]) -> SchedulingPolicy:
    exempt = data.get("exempt") or {}
    defaults = ExemptPolicy()
    return SchedulingPolicy(
        tiers=tuple(parse_tier(t) for t in data.get("tiers", [])),
        exempt=ExemptPolicy(
            net_term_days=exempt.get("net_term_days", defaults.net_term_days),
            label=exempt.get("label", defaults.label),
            description=exempt.get("description", defaults.description),
        ),
    )


def parse_configuration(data: dict[str, Any]) -> BillingConfiguration:
    """Parse a whole configuration document."""
    sequencing = data.get("sequencing") or {}
    audit = data.get("audit") or {}
    return BillingConfiguration(
        config_id=data["config_id"],
        version=data["version"],
        sequencing=SequencingPolicy(gap=sequencing.get("gap", SequencingPolicy.gap)),
        scheduling=parse_scheduling(data.get("scheduling") or {}),
        audit=AuditPolicy(
            min_attribution_length=audit.get(
                "min_attribution_length", AuditPolicy.min_attribution_length,
            ),
        ),
        checksum=compute_checksum(data),
    )


def load_configuration(path: Path) -> BillingConfiguration:
    return parse_configuration(load_yaml_file(path))


def compute_checksum(data: dict[str, Any]) -> str:
    """SHA-256 of the canonical JSON serialization; identical data, identical hash."""
    canonical = json.dumps(data, sort_keys=True, default=str)
    return hashlib.sha256(canonical.encode()).hexdigest()
