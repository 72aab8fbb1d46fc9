#!/usr/bin/env python3
"""Entry point for the staging sync worker.

    python -m codsync.workers.start_arq_worker

Equivalent to `arq codsync.workers.arq_worker.WorkerSettings`, but loads
backend/.env first and refuses to start without a database or Redis URL.
"""

import logging
import sys

logger = logging.getLogger("codsync.worker")


def main() -> None:
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        stream=sys.stdout,
    )

    from codsync.utils.env import load_env_file, require_env

    load_env_file()
    for name in ("DATABASE_URL", "REDIS_URL"):
        require_env(name)

    # Settings and the engine read the environment at import time
    from arq import run_worker

    from codsync.workers.arq_worker import WorkerSettings

    logger.info("Starting staging sync worker on queue %s", WorkerSettings.queue_name)
    run_worker(WorkerSettings)


if __name__ == "__main__":
    main()
