"""Sync every active organization once: ``python -m classy_sync``.

Configuration comes from the environment (see SyncConfig).
"""

import sys

from fivetran_connector_sdk import Logging as log

from classy_sync.config import SyncConfig, configure_logging
from classy_sync.organizations import OrganizationManager
from classy_sync.plugins import load_plugins
from classy_sync.schema import create_store


def main() -> int:
    config = SyncConfig.from_environment()
    configure_logging(config.log_level)
    config.require_encryption_key()

    engine = create_store(config.database_url)
    plugins = load_plugins(config)
    manager = OrganizationManager(engine, config, plugins=plugins)
    try:
        outcomes = manager.sync_all_active()
    finally:
        manager.shutdown()
        engine.dispose()

    failed = [organization_id for organization_id, outcome in outcomes.items() if not outcome.success]
    if failed:
        log.warning(f"Sync failed for organization(s): {', '.join(str(i) for i in failed)}")
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
