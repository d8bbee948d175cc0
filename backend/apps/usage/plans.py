"""
Per-tier limits for AI features.

None means "not limited by this counter".
"""
from dataclasses import dataclass
from typing import Optional

from apps.usage.models import PlanTier


@dataclass(frozen=True)
class PlanSpec:
    tier: str
    chat_per_tender: Optional[int] = None
    brief_per_tender: Optional[int] = None
    briefs_per_trial: Optional[int] = None
    ai_monthly_limit: Optional[int] = None


PLAN_SPECS = {
    PlanTier.FREE: PlanSpec(PlanTier.FREE, chat_per_tender=2, brief_per_tender=1, briefs_per_trial=3),
    PlanTier.FREE_EXPIRED: PlanSpec(
        PlanTier.FREE_EXPIRED, chat_per_tender=0, brief_per_tender=0, briefs_per_trial=0, ai_monthly_limit=0,
    ),
    PlanTier.STANDARD: PlanSpec(PlanTier.STANDARD, ai_monthly_limit=120),
    PlanTier.PREMIUM: PlanSpec(PlanTier.PREMIUM, ai_monthly_limit=300),
    PlanTier.ENTERPRISE: PlanSpec(PlanTier.ENTERPRISE),
}

TRIAL_BRIEF_CREDITS = PLAN_SPECS[PlanTier.FREE].briefs_per_trial


def get_plan_spec(tier: str) -> PlanSpec:
    """Limits for `tier`; unknown tiers get the expired-trial limits."""
    return PLAN_SPECS.get(tier, PLAN_SPECS[PlanTier.FREE_EXPIRED])
