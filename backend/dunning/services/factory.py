"""Build dunning services from ``settings.DUNNING``."""
from __future__ import annotations

from typing import Any, Dict, Optional

from django.utils.module_loading import import_string

from dunning.services.orchestrator import DunningOrchestrator
from dunning.services.notifications import NotificationTrigger
from dunning.services.policy import get_dunning_settings, load_policy_registry
from dunning.services.runner import DunningBatchRunner

DEFAULTS: Dict[str, Any] = {
    "ENABLED": True,
    "CHARGE_GATEWAY": None,
    "NOTIFIER": "dunning.services.notifications.DjangoMailNotifier",
    "REPOSITORY": "dunning.services.orm_repository.DjangoDunningRepository",
    "CHARGE_TIMEOUT_SECONDS": 30,
    "NOTIFY_TIMEOUT_SECONDS": 10,
    "BATCH_MAX_WORKERS": 1,
    "BATCH_LOCK_TIMEOUT_SECONDS": 1800,
    "JOB_INTERVAL_MINUTES": 60,
}


def dunning_setting(key: str) -> Any:
    return get_dunning_settings().get(key, DEFAULTS.get(key))


def _instantiate(path: Optional[str]):
    if not path:
        return None
    return import_string(path)()


def build_orchestrator(**overrides) -> DunningOrchestrator:
    repository = overrides.pop("repository", None) or _instantiate(dunning_setting("REPOSITORY"))
    gateway = overrides.pop("gateway", None) or _instantiate(dunning_setting("CHARGE_GATEWAY"))
    notifier = overrides.pop("notifier", None) or _instantiate(dunning_setting("NOTIFIER"))
    notifications = NotificationTrigger(
        repository,
        notifier,
        timeout=dunning_setting("NOTIFY_TIMEOUT_SECONDS"),
    )
    return DunningOrchestrator(
        repository,
        overrides.pop("policies", None) or load_policy_registry(),
        gateway=gateway,
        notifications=notifications,
        charge_timeout=dunning_setting("CHARGE_TIMEOUT_SECONDS"),
        **overrides,
    )


def build_batch_runner(orchestrator: Optional[DunningOrchestrator] = None) -> DunningBatchRunner:
    orchestrator = orchestrator or build_orchestrator()
    return DunningBatchRunner(
        orchestrator,
        max_workers=dunning_setting("BATCH_MAX_WORKERS"),
        enabled=bool(dunning_setting("ENABLED")),
        job_interval_minutes=dunning_setting("JOB_INTERVAL_MINUTES"),
    )
