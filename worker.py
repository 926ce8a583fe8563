"""ARQ worker for background document queries.

Usage:
    python worker.py

The worker runs the jobs queued by DocumentQueryQueue using the settings
defined in hie_sync.services.document_queue.WorkerSettings.

Environment:
    Requires the variables read by hie_sync.core.config.Settings, including:
    - POSTGRES_USER, POSTGRES_PASSWORD, POSTGRES_DB
    - REDIS_HOST, REDIS_PORT, REDIS_PASSWORD
    - NETWORK_API_URL, NETWORK_API_TOKEN
"""

from arq import run_worker
from hie_sync.core.logging import get_logger
from hie_sync.services.document_queue import WorkerSettings

logger = get_logger(__name__)


def main():
    """Run the ARQ worker."""
    logger.info(
        "document_worker_starting",
        redis_host=WorkerSettings.redis_settings.host,
        redis_port=WorkerSettings.redis_settings.port,
        max_jobs=WorkerSettings.max_jobs,
    )
    run_worker(WorkerSettings)


if __name__ == "__main__":
    main()
