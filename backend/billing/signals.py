"""Signal receivers wiring new users into the referral programme."""
from __future__ import annotations

import logging

from django.conf import settings
from django.db import transaction
from django.db.models.signals import post_save
from django.dispatch import receiver

from billing.services.referrals import get_or_create_referral_code

logger = logging.getLogger(__name__)


@receiver(post_save, sender=settings.AUTH_USER_MODEL)
def allocate_referral_code(sender, instance, created, **kwargs):
    if not created or kwargs.get("raw"):
        return
    transaction.on_commit(lambda: get_or_create_referral_code(instance))
