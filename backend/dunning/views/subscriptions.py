"""Customer-facing dunning endpoints scoped to a subscription."""
from __future__ import annotations

from rest_framework.permissions import IsAuthenticated
from rest_framework.views import APIView

from dunning.models import Subscription
from dunning.services.errors import DunningError
from dunning.views.base import DunningAPIMixin


class SubscriptionAccessMixin(DunningAPIMixin):
    def check_subscription_access(self, request, subscription_id):
        """Return an error response when the user may not see the subscription, else ``None``."""

        subscription = Subscription.objects.filter(pk=subscription_id).only("id", "owner_id").first()
        if subscription is None:
            return self._error_response(status=404, code="not_found", message="Subscription not found.")
        if not request.user.is_staff and subscription.owner_id != request.user.pk:
            return self._error_response(
                status=403,
                code="forbidden",
                message="You are not allowed to access this subscription.",
            )
        return None


class DunningHistoryView(SubscriptionAccessMixin, APIView):
    permission_classes = [IsAuthenticated]
    endpoint_label = "subscriptions.dunning_history"

    def get(self, request, subscription_id):
        denied = self.check_subscription_access(request, subscription_id)
        if denied is not None:
            return denied
        try:
            history = self.get_orchestrator().get_dunning_history(subscription_id)
        except DunningError as exc:
            return self._dunning_error_response(exc)
        return self._success_response(history.to_dict())


class ResetDunningView(SubscriptionAccessMixin, APIView):
    """Return a past-due subscription to active, e.g. after the card was updated."""

    permission_classes = [IsAuthenticated]
    endpoint_label = "subscriptions.reset_dunning"

    def post(self, request, subscription_id):
        denied = self.check_subscription_access(request, subscription_id)
        if denied is not None:
            return denied
        try:
            subscription = self.get_orchestrator().reset_dunning_state(subscription_id, actor=self._actor())
        except DunningError as exc:
            return self._dunning_error_response(exc)
        return self._success_response(
            subscription.to_dict(),
            message="dunning.subscription.reset",
            subscription_id=subscription_id,
        )
