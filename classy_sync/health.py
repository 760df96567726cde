"""Health of an organization's synced data, aggregated across repositories."""

from typing import Dict, Iterable

from classy_sync.repository import EntityRepository


HEALTHY = "healthy"
DEGRADED = "degraded"
ERROR = "error"


def aggregate_status(statuses: Iterable[str]) -> str:
    """error if any component errored, degraded if any is degraded, else healthy."""
    statuses = list(statuses)
    if ERROR in statuses:
        return ERROR
    if DEGRADED in statuses:
        return DEGRADED
    return HEALTHY


def organization_health(
    organization_id: int,
    repositories: Dict[str, EntityRepository],
    tracker=None,
    plugins: Iterable = (),
) -> dict:
    """Collect per-repository health checks into one status object.

    Args:
        organization_id: Internal organization id.
        repositories: Entity repositories keyed by entity type.
        tracker: Optional SyncStateTracker; adds the pending skip count.
        plugins: Optional loaded plugins whose health_check() is included.

    Returns:
        Dict with the aggregate status and each component's report.
    """
    components = {
        entity_type: repository.health_check(organization_id)
        for entity_type, repository in repositories.items()
    }
    for plugin in plugins:
        components[plugin.name] = plugin.health_check()

    last_sync_times = [
        component["last_sync_time"]
        for component in components.values()
        if component.get("last_sync_time") is not None
    ]
    report = {
        "organization_id": organization_id,
        "status": aggregate_status(component["status"] for component in components.values()),
        "last_sync_time": max(last_sync_times) if last_sync_times else None,
        "record_count": sum(component.get("record_count") or 0 for component in components.values()),
        "components": components,
    }
    if tracker is not None:
        report["pending_skips"] = len(tracker.pending_skips(organization_id))
    return report

