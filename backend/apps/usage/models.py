"""
Plan and usage counter models.
"""
from django.db import models


class PlanTier(models.TextChoices):
    FREE = 'FREE', 'Free trial'
    FREE_EXPIRED = 'FREE_EXPIRED', 'Expired trial'
    STANDARD = 'STANDARD', 'Standard'
    PREMIUM = 'PREMIUM', 'Premium'
    ENTERPRISE = 'ENTERPRISE', 'Enterprise'


class OrganizationPlan(models.Model):
    """Plan tier of an organization. Administered elsewhere; read here."""

    org_id = models.CharField(max_length=64, primary_key=True)
    tier = models.CharField(max_length=20, choices=PlanTier.choices, default=PlanTier.FREE)
    expires_at = models.DateTimeField(null=True, blank=True, help_text="End of the trial for FREE plans")
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = 'organization_plans'

    def __str__(self):
        return f"{self.org_id}: {self.tier}"


class OrgTrialUsage(models.Model):
    """Trial brief credits, shared across all tenders of an organization."""

    org_id = models.CharField(max_length=64, primary_key=True)
    brief_credits = models.IntegerField(default=3)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = 'org_trial_usage'


class OrgTenderUsage(models.Model):
    """Per-tender chat and brief counters."""

    org_id = models.CharField(max_length=64)
    tender_id = models.CharField(max_length=64)
    used_chats = models.PositiveIntegerField(default=0)
    used_briefs = models.PositiveIntegerField(default=0)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = 'org_tender_usage'
        constraints = [
            models.UniqueConstraint(fields=['org_id', 'tender_id'], name='uniq_org_tender_usage'),
        ]

    def to_dict(self) -> dict:
        return {
            'tenderId': self.tender_id,
            'usedChats': self.used_chats,
            'usedBriefs': self.used_briefs,
        }


class MonthlyUsage(models.Model):
    """AI usage per organization per calendar month."""

    org_id = models.CharField(max_length=64)
    period_start = models.DateField(help_text="First day of the month")
    used_chats = models.PositiveIntegerField(default=0)
    used_briefs = models.PositiveIntegerField(default=0)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = 'monthly_usage'
        constraints = [
            models.UniqueConstraint(fields=['org_id', 'period_start'], name='uniq_org_month_usage'),
        ]
