import django.db.models.deletion
import uuid
from django.conf import settings
from django.db import migrations, models


PLAN_CHOICES = [('FREE', 'Free'), ('BASIC', 'Basic'), ('PREMIUM', 'Premium'), ('ULTIMATE', 'Ultimate')]


class Migration(migrations.Migration):

    initial = True

    dependencies = [
        migrations.swappable_dependency(settings.AUTH_USER_MODEL),
    ]

    operations = [
        migrations.CreateModel(
            name='Subscription',
            fields=[
                ('id', models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                ('plan_id', models.CharField(choices=PLAN_CHOICES, default='FREE', max_length=20)),
                ('status', models.CharField(choices=[('ACTIVE', 'Active'), ('CANCELED', 'Canceled'), ('PAST_DUE', 'Past due'), ('TRIAL', 'Trial'), ('PENDING', 'Pending'), ('INACTIVE', 'Inactive')], default='INACTIVE', max_length=20)),
                ('current_period_start', models.DateTimeField(blank=True, null=True)),
                ('current_period_end', models.DateTimeField(blank=True, null=True)),
                ('cancel_at_period_end', models.BooleanField(default=False)),
                ('trial_end', models.DateTimeField(blank=True, null=True)),
                ('provider_customer_id', models.CharField(blank=True, default='', help_text='Opaque customer reference at the payment provider', max_length=255)),
                ('provider_subscription_id', models.CharField(blank=True, default='', help_text='Opaque subscription reference at the payment provider', max_length=255)),
                ('created_at', models.DateTimeField(auto_now_add=True)),
                ('updated_at', models.DateTimeField(auto_now=True)),
                ('user', models.OneToOneField(on_delete=django.db.models.deletion.CASCADE, related_name='subscription', to=settings.AUTH_USER_MODEL)),
            ],
            options={
                'verbose_name': 'Subscription',
                'verbose_name_plural': 'Subscriptions',
                'db_table': 'billing_subscription',
                'ordering': ['-updated_at'],
                'indexes': [
                    models.Index(fields=['provider_customer_id'], name='billing_sub_customer_idx'),
                    models.Index(fields=['provider_subscription_id'], name='billing_sub_provider_idx'),
                    models.Index(fields=['status', 'current_period_end'], name='billing_sub_status_end_idx'),
                ],
            },
        ),
        migrations.CreateModel(
            name='TokenTransaction',
            fields=[
                ('id', models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                ('credits', models.IntegerField(help_text='Signed credit amount; positive for grants, negative for usage')),
                ('type', models.CharField(choices=[('SUBSCRIPTION', 'Subscription'), ('TRIAL', 'Trial'), ('FREE_SIGNUP', 'Free signup'), ('REFERRAL', 'Referral'), ('USAGE', 'Usage'), ('PURCHASE', 'Purchase')], max_length=20)),
                ('description', models.TextField(blank=True)),
                ('idempotency_key', models.CharField(blank=True, help_text='Unique key to guarantee a grant is written at most once', max_length=255, null=True)),
                ('created_at', models.DateTimeField(auto_now_add=True)),
                ('user', models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name='token_transactions', to=settings.AUTH_USER_MODEL)),
            ],
            options={
                'verbose_name': 'Token transaction',
                'verbose_name_plural': 'Token transactions',
                'db_table': 'billing_token_transaction',
                'ordering': ['-created_at'],
                'indexes': [models.Index(fields=['user', 'type'], name='billing_token_user_type_idx')],
                'constraints': [
                    models.CheckConstraint(condition=models.Q(('credits', 0), _negated=True) | models.Q(('type', 'SUBSCRIPTION')), name='token_transaction_non_zero'),
                    models.UniqueConstraint(condition=models.Q(('idempotency_key__isnull', False)), fields=('idempotency_key',), name='unique_token_transaction_idempotency_key'),
                ],
            },
        ),
        migrations.CreateModel(
            name='Referral',
            fields=[
                ('id', models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                ('referral_code', models.CharField(max_length=32, unique=True)),
                ('created_at', models.DateTimeField(auto_now_add=True)),
                ('user', models.OneToOneField(on_delete=django.db.models.deletion.CASCADE, related_name='referral', to=settings.AUTH_USER_MODEL)),
            ],
            options={
                'verbose_name': 'Referral',
                'verbose_name_plural': 'Referrals',
                'db_table': 'billing_referral',
                'ordering': ['-created_at'],
            },
        ),
        migrations.CreateModel(
            name='ReferralUse',
            fields=[
                ('id', models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                ('status', models.CharField(choices=[('PENDING', 'Pending'), ('COMPLETED', 'Completed')], default='PENDING', max_length=20)),
                ('plan_id', models.CharField(blank=True, choices=PLAN_CHOICES, default='', max_length=20)),
                ('created_at', models.DateTimeField(auto_now_add=True)),
                ('completed_at', models.DateTimeField(blank=True, null=True)),
                ('referral', models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name='uses', to='billing.referral')),
                ('referred', models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name='referral_uses', to=settings.AUTH_USER_MODEL)),
                ('referrer', models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name='referrals_made', to=settings.AUTH_USER_MODEL)),
            ],
            options={
                'verbose_name': 'Referral use',
                'verbose_name_plural': 'Referral uses',
                'db_table': 'billing_referral_use',
                'ordering': ['-created_at'],
                'constraints': [
                    models.UniqueConstraint(condition=models.Q(('status', 'COMPLETED')), fields=('referred',), name='unique_completed_referral_per_referred_user'),
                ],
            },
        ),
        migrations.CreateModel(
            name='SubscriptionEvent',
            fields=[
                ('id', models.BigAutoField(primary_key=True, serialize=False)),
                ('previous_status', models.CharField(blank=True, max_length=20)),
                ('new_status', models.CharField(blank=True, max_length=20)),
                ('previous_plan_id', models.CharField(blank=True, max_length=20)),
                ('new_plan_id', models.CharField(blank=True, max_length=20)),
                ('reason', models.CharField(blank=True, max_length=255)),
                ('source', models.CharField(choices=[('API', 'API'), ('WEBHOOK', 'Webhook'), ('CONSISTENCY', 'Consistency repair'), ('TASK', 'Scheduled task')], default='API', max_length=20)),
                ('event_id', models.CharField(blank=True, help_text='Provider event identifier when the change came from a webhook', max_length=255)),
                ('metadata', models.JSONField(blank=True, null=True)),
                ('created_at', models.DateTimeField(auto_now_add=True)),
                ('subscription', models.ForeignKey(blank=True, null=True, on_delete=django.db.models.deletion.SET_NULL, related_name='events', to='billing.subscription')),
                ('user', models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name='subscription_events', to=settings.AUTH_USER_MODEL)),
            ],
            options={
                'verbose_name': 'Subscription event',
                'verbose_name_plural': 'Subscription events',
                'db_table': 'billing_subscription_event',
                'ordering': ['-created_at', '-id'],
                'indexes': [
                    models.Index(fields=['user', 'created_at'], name='billing_sub_event_user_idx'),
                    models.Index(fields=['event_id'], name='billing_sub_event_event_idx'),
                ],
            },
        ),
    ]
