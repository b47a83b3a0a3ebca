"""Payment provider webhook endpoint."""
from __future__ import annotations

import logging

from django.utils.decorators import method_decorator
from django.views.decorators.csrf import csrf_exempt
from rest_framework.response import Response
from rest_framework.views import APIView

from billing.services.webhook_pipeline import process_webhook

logger = logging.getLogger(__name__)

SIGNATURE_HEADERS = {
    "stripe": "Stripe-Signature",
}


@method_decorator(csrf_exempt, name="dispatch")
class WebhookView(APIView):
    """Receive provider webhooks and process them synchronously.

    200 acknowledges the delivery (including duplicates and ignored types),
    400 rejects it permanently and 500 asks the provider to redeliver.
    """

    authentication_classes = []
    permission_classes = []
    http_method_names = ["post"]

    def post(self, request, provider: str, *args, **kwargs):  # noqa: D401 - DRF signature
        provider = provider.lower()
        signature = request.headers.get(SIGNATURE_HEADERS.get(provider, "Webhook-Signature"))

        result = process_webhook(provider, request.body, signature, dict(request.headers))

        if result.success:
            status_code = 200
        elif result.should_retry:
            status_code = 500
        else:
            status_code = 400

        if status_code != 200:
            logger.warning(
                "Webhook %s (%s) answered %s: %s",
                result.event_id or "unknown",
                provider,
                status_code,
                result.error or result.message,
            )
        return Response(result.to_dict(), status=status_code)
