#!/usr/bin/env python3
"""Start the ARQ worker (jobs + cron).

USAGE:
    python -m feedpipe.workers.start_arq_worker

    Or directly:
    arq feedpipe.workers.arq_worker.WorkerSettings
"""

import logging
import sys

from arq import run_worker

from feedpipe.deps import get_settings

# Configure logging
logging.basicConfig(
    level=get_settings().LOG_LEVEL.upper(),
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    handlers=[logging.StreamHandler(sys.stdout)],
)

logger = logging.getLogger(__name__)


def main():
    """Start the ARQ worker."""
    from feedpipe.workers.arq_worker import WorkerSettings

    logger.info("[ARQ] Starting worker...")
    run_worker(WorkerSettings)


if __name__ == "__main__":
    main()
