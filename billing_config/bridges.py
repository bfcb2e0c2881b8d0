"""
Config -> Engine Bridges.

Functions that convert a BillingConfiguration into engine instances.  They
live here (the producer) because neither the kernel nor the engines may
import billing_config.

Usage:
    from billing_config import get_active_config
    from billing_config.bridges import build_milestone_scheduler, build_sequencer

    config = get_active_config()
    schedules = ScheduleService(session, scheduler=build_milestone_scheduler(config))
    line_items = LineItemService(session, sequencer=build_sequencer(config))
"""

from __future__ import annotations

from collections.abc import Iterable
from typing import Any

from billing_config.schema import BillingConfiguration, MilestoneDef
from billing_engines.change_detection import QUOTE_TRACKED_FIELDS, EditSession, TrackedField
from billing_engines.milestones import (
    DueRule,
    ExemptTerms,
    MilestoneRule,
    MilestoneScheduler,
    MilestoneType,
    ScheduleTier,
)
from billing_engines.sequencer import OrderKeySequencer


def build_sequencer(config: BillingConfiguration) -> OrderKeySequencer:
    return OrderKeySequencer(gap=config.sequencing.gap)


def _rule(m: MilestoneDef) -> MilestoneRule:
    return MilestoneRule(
        milestone_type=MilestoneType(m.milestone_type),
        percentage=m.percentage,
        due=DueRule(m.due),
        days=m.days,
        description=m.description,
    )


def build_schedule_tiers(config: BillingConfiguration) -> tuple[ScheduleTier, ...]:
    return tuple(
        ScheduleTier(
            label=t.label,
            max_days=t.max_days,
            rules=tuple(_rule(m) for m in t.milestones),
        )
        for t in config.scheduling.tiers
    )


def build_milestone_scheduler(config: BillingConfiguration) -> MilestoneScheduler:
    exempt = config.scheduling.exempt
    return MilestoneScheduler(
        tiers=build_schedule_tiers(config),
        exempt=ExemptTerms(
            net_term_days=exempt.net_term_days,
            label=exempt.label,
            description=exempt.description,
        ),
    )


def build_edit_session(
    config: BillingConfiguration,
    old: Any,
    new: Any,
    fields: Iterable[TrackedField | str] = QUOTE_TRACKED_FIELDS,
) -> EditSession:
    """An EditSession enforcing the configured attribution length."""
    return EditSession(
        old,
        new,
        fields=fields,
        min_attribution_length=config.audit.min_attribution_length,
    )
