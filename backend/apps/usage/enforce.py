"""
Plan enforcement for chat and brief generation.

check_access() decides whether a feature is allowed and which counters it
consumes. metered() wraps a generation call so that those counters are
debited under a per-organization mutex and refunded if the call fails.
"""
import logging
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import date
from typing import Iterator, Optional

from django.conf import settings
from django.db import transaction
from django.db.models import F
from django.utils import timezone

from apps.indexing.locks import LockManager, USAGE_LOCK_TTL_MS, lock_ttl, usage_lock_key
from apps.usage.models import MonthlyUsage, OrganizationPlan, OrgTenderUsage, OrgTrialUsage, PlanTier
from apps.usage.plans import TRIAL_BRIEF_CREDITS, get_plan_spec

logger = logging.getLogger(__name__)

FEATURE_CHAT = 'chat'
FEATURE_BRIEF = 'brief'


class PlanError(Exception):
    """Access denied by the organization's plan."""
    http = 403

    TRIAL_EXPIRED = 'TRIAL_EXPIRED'
    TRIAL_LIMIT = 'TRIAL_LIMIT'
    TENDER_BRIEF_LIMIT = 'TENDER_BRIEF_LIMIT'
    PLAN_LIMIT_REACHED = 'PLAN_LIMIT_REACHED'
    UPGRADE_REQUIRED = 'UPGRADE_REQUIRED'

    def __init__(self, code: str, message: Optional[str] = None):
        super().__init__(message or code)
        self.code = code


class UsageBusyError(Exception):
    """Another metered request for the same organization is in flight."""
    http = 409


@dataclass(frozen=True)
class UsageActions:
    """Counters one metered call consumes."""
    tender_chats: bool = False
    tender_briefs: bool = False
    trial_brief_credit: bool = False
    monthly_chats: bool = False
    monthly_briefs: bool = False

    @property
    def empty(self) -> bool:
        return not any((
            self.tender_chats, self.tender_briefs, self.trial_brief_credit,
            self.monthly_chats, self.monthly_briefs,
        ))


@dataclass(frozen=True)
class AccessResult:
    plan: str
    actions: UsageActions = field(default_factory=UsageActions)


def enforcement_enabled() -> bool:
    return bool(getattr(settings, 'PLAN_ENFORCEMENT_ENABLED', True))


def month_start(today: Optional[date] = None) -> date:
    today = today or timezone.now().date()
    return today.replace(day=1)


def get_tender_usage(org_id: str, tender_id: str) -> OrgTenderUsage:
    usage, _ = OrgTenderUsage.objects.get_or_create(org_id=org_id, tender_id=tender_id)
    return usage


def get_trial_usage(org_id: str) -> OrgTrialUsage:
    usage, _ = OrgTrialUsage.objects.get_or_create(
        org_id=org_id, defaults={'brief_credits': TRIAL_BRIEF_CREDITS},
    )
    return usage


def get_monthly_usage(org_id: str) -> MonthlyUsage:
    usage, _ = MonthlyUsage.objects.get_or_create(org_id=org_id, period_start=month_start())
    return usage


def _deny(org_id: str, feature: str, code: str, message: str) -> PlanError:
    logger.info(f"Plan denied {feature} for org {org_id}: {code}")
    return PlanError(code, message)


def check_access(org_id: str, feature: str, tender_id: str) -> AccessResult:
    """
    Decide whether `feature` is allowed for `org_id` on `tender_id`.

    Raises:
        PlanError: With the code of the limit that blocks the request
    """
    plan = OrganizationPlan.objects.filter(org_id=org_id).first()
    if plan is None:
        raise _deny(org_id, feature, PlanError.UPGRADE_REQUIRED, "No plan for organization")

    tier = plan.tier
    expired = tier == PlanTier.FREE and plan.expires_at is not None and plan.expires_at < timezone.now()
    if tier == PlanTier.FREE_EXPIRED or expired:
        raise _deny(org_id, feature, PlanError.TRIAL_EXPIRED, "Trial ended. Upgrade to continue.")

    if not enforcement_enabled():
        return AccessResult(plan=tier)

    spec = get_plan_spec(tier)

    if feature == FEATURE_CHAT:
        if tier == PlanTier.FREE:
            usage = get_tender_usage(org_id, tender_id)
            if usage.used_chats >= (spec.chat_per_tender or 0):
                raise _deny(org_id, feature, PlanError.TRIAL_LIMIT, "Trial chat limit reached for this tender.")
            return AccessResult(plan=tier, actions=UsageActions(tender_chats=True))

        if spec.ai_monthly_limit is not None and get_monthly_usage(org_id).used_chats >= spec.ai_monthly_limit:
            raise _deny(org_id, feature, PlanError.PLAN_LIMIT_REACHED, "Monthly chat limit reached.")
        return AccessResult(plan=tier, actions=UsageActions(monthly_chats=True))

    if feature == FEATURE_BRIEF:
        if tier == PlanTier.FREE:
            tender_usage = get_tender_usage(org_id, tender_id)
            if tender_usage.used_briefs >= (spec.brief_per_tender or 0):
                raise _deny(
                    org_id, feature, PlanError.TENDER_BRIEF_LIMIT,
                    "Only one trial brief is available per tender.",
                )

            trial_usage = get_trial_usage(org_id)
            if (spec.briefs_per_trial or 0) <= 0 or trial_usage.brief_credits <= 0:
                raise _deny(org_id, feature, PlanError.TRIAL_LIMIT, "No trial brief credits remaining.")

            return AccessResult(plan=tier, actions=UsageActions(tender_briefs=True, trial_brief_credit=True))

        if spec.ai_monthly_limit is not None and get_monthly_usage(org_id).used_briefs >= spec.ai_monthly_limit:
            raise _deny(org_id, feature, PlanError.PLAN_LIMIT_REACHED, "Monthly brief limit reached.")
        return AccessResult(plan=tier, actions=UsageActions(tender_briefs=True, monthly_briefs=True))

    raise ValueError(f"Unknown metered feature: {feature}")


def apply_actions(org_id: str, tender_id: str, actions: UsageActions, refund: bool = False) -> None:
    """Apply (or with refund=True, reverse) the counter changes in `actions`."""
    step = -1 if refund else 1

    tender_updates = {}
    if actions.tender_chats:
        tender_updates['used_chats'] = F('used_chats') + step
    if actions.tender_briefs:
        tender_updates['used_briefs'] = F('used_briefs') + step
    if tender_updates:
        get_tender_usage(org_id, tender_id)
        OrgTenderUsage.objects.filter(org_id=org_id, tender_id=tender_id).update(**tender_updates)

    if actions.trial_brief_credit:
        get_trial_usage(org_id)
        # Spending a credit lowers the balance
        OrgTrialUsage.objects.filter(org_id=org_id).update(brief_credits=F('brief_credits') - step)

    monthly_updates = {}
    if actions.monthly_chats:
        monthly_updates['used_chats'] = F('used_chats') + step
    if actions.monthly_briefs:
        monthly_updates['used_briefs'] = F('used_briefs') + step
    if monthly_updates:
        usage = get_monthly_usage(org_id)
        MonthlyUsage.objects.filter(pk=usage.pk).update(**monthly_updates)


@contextmanager
def metered(org_id: str, feature: str, tender_id: str, locks: LockManager) -> Iterator[AccessResult]:
    """
    Debit usage for one generation call; refund it if the body raises.

    Usage:
        with metered(org_id, FEATURE_BRIEF, tender_id, runtime.locks):
            result = compose_brief(...)

    Raises:
        UsageBusyError: If the organization's usage mutex is held
        PlanError: If the plan does not allow the call
    """
    ttl = lock_ttl('USAGE_LOCK_TTL_MS', USAGE_LOCK_TTL_MS)
    with locks.hold(usage_lock_key(org_id), ttl) as lease:
        if lease is None:
            raise UsageBusyError(f"Usage update already in progress for org {org_id}")

        with transaction.atomic():
            result = check_access(org_id, feature, tender_id)
            apply_actions(org_id, tender_id, result.actions)

        try:
            yield result
        except Exception:
            if not result.actions.empty:
                logger.warning(f"Refunding {feature} usage for org {org_id} after failure")
                with transaction.atomic():
                    apply_actions(org_id, tender_id, result.actions, refund=True)
            raise
