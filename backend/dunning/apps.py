import logging

from django.apps import AppConfig

logger = logging.getLogger(__name__)


class DunningConfig(AppConfig):
    default_auto_field = 'django.db.models.BigAutoField'
    name = 'dunning'
    verbose_name = 'Dunning'

    def ready(self):
        # Raises ImproperlyConfigured for an invalid policy.
        from dunning.services.policy import load_policy_registry

        registry = load_policy_registry()
        logger.debug(
            "Dunning policy loaded: default=%s gateways=%s",
            registry.default,
            sorted(registry.overrides),
        )
