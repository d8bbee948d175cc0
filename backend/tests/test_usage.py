"""
Tests for plan enforcement and metered usage.
"""
from datetime import timedelta

import pytest
from django.utils import timezone

from apps.indexing.locks import LockManager, usage_lock_key
from apps.usage.enforce import (
    FEATURE_BRIEF,
    FEATURE_CHAT,
    PlanError,
    UsageBusyError,
    check_access,
    get_monthly_usage,
    get_tender_usage,
    get_trial_usage,
    metered,
)
from apps.usage.models import MonthlyUsage, OrganizationPlan, OrgTenderUsage, OrgTrialUsage, PlanTier
from apps.usage.plans import get_plan_spec


def make_plan(tier: str, org_id: str = 'org-1', expires_at=None) -> OrganizationPlan:
    return OrganizationPlan.objects.create(org_id=org_id, tier=tier, expires_at=expires_at)


def denial_code(org_id: str, feature: str, tender_id: str = 'tender-1') -> str:
    with pytest.raises(PlanError) as exc_info:
        check_access(org_id, feature, tender_id)
    return exc_info.value.code


@pytest.fixture
def locks(redis_client):
    return LockManager(redis_client)


# ============================================================================
# Plan specs
# ============================================================================

class TestPlanSpecs:

    def test_free_limits(self):
        spec = get_plan_spec(PlanTier.FREE)

        assert (spec.chat_per_tender, spec.brief_per_tender, spec.briefs_per_trial) == (2, 1, 3)

    def test_unknown_tier_gets_nothing(self):
        assert get_plan_spec('GOLD').ai_monthly_limit == 0


# ============================================================================
# check_access
# ============================================================================

@pytest.mark.django_db
class TestCheckAccess:
    """Tests for the access decision and the counters it selects."""

    def test_no_plan_requires_upgrade(self):
        assert denial_code('org-1', FEATURE_CHAT) == PlanError.UPGRADE_REQUIRED

    def test_expired_trial(self):
        make_plan(PlanTier.FREE, expires_at=timezone.now() - timedelta(days=1))

        assert denial_code('org-1', FEATURE_CHAT) == PlanError.TRIAL_EXPIRED

    def test_expired_tier(self):
        make_plan(PlanTier.FREE_EXPIRED)

        assert denial_code('org-1', FEATURE_BRIEF) == PlanError.TRIAL_EXPIRED

    def test_expired_trial_denied_even_without_enforcement(self, settings):
        settings.PLAN_ENFORCEMENT_ENABLED = False
        make_plan(PlanTier.FREE_EXPIRED)

        assert denial_code('org-1', FEATURE_CHAT) == PlanError.TRIAL_EXPIRED

    def test_free_chat_consumes_tender_counter(self):
        make_plan(PlanTier.FREE, expires_at=timezone.now() + timedelta(days=7))

        result = check_access('org-1', FEATURE_CHAT, 'tender-1')

        assert result.plan == PlanTier.FREE
        assert result.actions.tender_chats is True
        assert result.actions.monthly_chats is False

    def test_free_chat_limit_is_per_tender(self):
        make_plan(PlanTier.FREE)
        OrgTenderUsage.objects.create(org_id='org-1', tender_id='tender-1', used_chats=2)

        assert denial_code('org-1', FEATURE_CHAT, 'tender-1') == PlanError.TRIAL_LIMIT
        assert check_access('org-1', FEATURE_CHAT, 'tender-2').actions.tender_chats

    def test_free_brief_once_per_tender(self):
        make_plan(PlanTier.FREE)
        OrgTenderUsage.objects.create(org_id='org-1', tender_id='tender-1', used_briefs=1)

        assert denial_code('org-1', FEATURE_BRIEF) == PlanError.TENDER_BRIEF_LIMIT

    def test_free_brief_needs_trial_credit(self):
        make_plan(PlanTier.FREE)
        OrgTrialUsage.objects.create(org_id='org-1', brief_credits=0)

        assert denial_code('org-1', FEATURE_BRIEF) == PlanError.TRIAL_LIMIT

    def test_free_brief_actions(self):
        make_plan(PlanTier.FREE)

        actions = check_access('org-1', FEATURE_BRIEF, 'tender-1').actions

        assert actions.tender_briefs and actions.trial_brief_credit
        assert not actions.monthly_briefs

    def test_standard_monthly_limit(self):
        make_plan(PlanTier.STANDARD)
        usage = get_monthly_usage('org-1')
        MonthlyUsage.objects.filter(pk=usage.pk).update(used_chats=119)

        assert check_access('org-1', FEATURE_CHAT, 'tender-1').actions.monthly_chats

        MonthlyUsage.objects.filter(pk=usage.pk).update(used_chats=120)
        assert denial_code('org-1', FEATURE_CHAT) == PlanError.PLAN_LIMIT_REACHED

    def test_paid_brief_counts_per_tender_and_month(self):
        make_plan(PlanTier.PREMIUM)

        actions = check_access('org-1', FEATURE_BRIEF, 'tender-1').actions

        assert actions.tender_briefs and actions.monthly_briefs
        assert not actions.trial_brief_credit

    def test_enterprise_is_unlimited(self):
        make_plan(PlanTier.ENTERPRISE)
        usage = get_monthly_usage('org-1')
        MonthlyUsage.objects.filter(pk=usage.pk).update(used_chats=10_000)

        assert check_access('org-1', FEATURE_CHAT, 'tender-1').actions.monthly_chats

    def test_enforcement_disabled_consumes_nothing(self, settings):
        settings.PLAN_ENFORCEMENT_ENABLED = False
        make_plan(PlanTier.FREE)
        OrgTenderUsage.objects.create(org_id='org-1', tender_id='tender-1', used_chats=2)

        assert check_access('org-1', FEATURE_CHAT, 'tender-1').actions.empty

    def test_unknown_feature(self):
        make_plan(PlanTier.STANDARD)

        with pytest.raises(ValueError):
            check_access('org-1', 'translate', 'tender-1')


# ============================================================================
# metered
# ============================================================================

@pytest.mark.django_db
class TestMetered:

    def test_debits_on_success(self, locks):
        make_plan(PlanTier.FREE)

        with metered('org-1', FEATURE_BRIEF, 'tender-1', locks) as result:
            assert result.plan == PlanTier.FREE

        assert get_tender_usage('org-1', 'tender-1').used_briefs == 1
        assert get_trial_usage('org-1').brief_credits == 2

    def test_refunds_when_body_raises(self, locks):
        make_plan(PlanTier.STANDARD)

        with pytest.raises(RuntimeError):
            with metered('org-1', FEATURE_CHAT, 'tender-1', locks):
                assert get_monthly_usage('org-1').used_chats == 1
                raise RuntimeError("LLM unavailable")

        assert get_monthly_usage('org-1').used_chats == 0

    def test_denied_call_changes_nothing(self, locks):
        make_plan(PlanTier.FREE)
        OrgTenderUsage.objects.create(org_id='org-1', tender_id='tender-1', used_chats=2)

        with pytest.raises(PlanError):
            with metered('org-1', FEATURE_CHAT, 'tender-1', locks):
                pass

        assert get_tender_usage('org-1', 'tender-1').used_chats == 2

    def test_busy_when_usage_lock_held(self, locks):
        make_plan(PlanTier.ENTERPRISE)
        locks.acquire(usage_lock_key('org-1'), 60_000)

        with pytest.raises(UsageBusyError):
            with metered('org-1', FEATURE_CHAT, 'tender-1', locks):
                pass

        assert not MonthlyUsage.objects.filter(org_id='org-1', used_chats__gt=0).exists()

    def test_lock_released_after_call(self, locks, redis_client):
        make_plan(PlanTier.ENTERPRISE)

        with metered('org-1', FEATURE_CHAT, 'tender-1', locks):
            assert redis_client.exists(usage_lock_key('org-1'))

        assert not redis_client.exists(usage_lock_key('org-1'))
