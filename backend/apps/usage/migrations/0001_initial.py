from django.db import migrations, models


class Migration(migrations.Migration):

    initial = True

    dependencies = []

    operations = [
        migrations.CreateModel(
            name='OrganizationPlan',
            fields=[
                ('org_id', models.CharField(max_length=64, primary_key=True, serialize=False)),
                ('tier', models.CharField(
                    choices=[
                        ('FREE', 'Free trial'),
                        ('FREE_EXPIRED', 'Expired trial'),
                        ('STANDARD', 'Standard'),
                        ('PREMIUM', 'Premium'),
                        ('ENTERPRISE', 'Enterprise'),
                    ],
                    default='FREE',
                    max_length=20,
                )),
                ('expires_at', models.DateTimeField(blank=True, help_text='End of the trial for FREE plans', null=True)),
                ('updated_at', models.DateTimeField(auto_now=True)),
            ],
            options={
                'db_table': 'organization_plans',
            },
        ),
        migrations.CreateModel(
            name='OrgTrialUsage',
            fields=[
                ('org_id', models.CharField(max_length=64, primary_key=True, serialize=False)),
                ('brief_credits', models.IntegerField(default=3)),
                ('updated_at', models.DateTimeField(auto_now=True)),
            ],
            options={
                'db_table': 'org_trial_usage',
            },
        ),
        migrations.CreateModel(
            name='OrgTenderUsage',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('org_id', models.CharField(max_length=64)),
                ('tender_id', models.CharField(max_length=64)),
                ('used_chats', models.PositiveIntegerField(default=0)),
                ('used_briefs', models.PositiveIntegerField(default=0)),
                ('updated_at', models.DateTimeField(auto_now=True)),
            ],
            options={
                'db_table': 'org_tender_usage',
            },
        ),
        migrations.CreateModel(
            name='MonthlyUsage',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('org_id', models.CharField(max_length=64)),
                ('period_start', models.DateField(help_text='First day of the month')),
                ('used_chats', models.PositiveIntegerField(default=0)),
                ('used_briefs', models.PositiveIntegerField(default=0)),
                ('updated_at', models.DateTimeField(auto_now=True)),
            ],
            options={
                'db_table': 'monthly_usage',
            },
        ),
        migrations.AddConstraint(
            model_name='orgtenderusage',
            constraint=models.UniqueConstraint(fields=('org_id', 'tender_id'), name='uniq_org_tender_usage'),
        ),
        migrations.AddConstraint(
            model_name='monthlyusage',
            constraint=models.UniqueConstraint(fields=('org_id', 'period_start'), name='uniq_org_month_usage'),
        ),
    ]
