"""Worker process entrypoint.

Starts ``settings.worker_count`` dispatcher threads that share one store
handle and one HTTP client. Each thread has its own worker id, recorded on
the jobs it claims. SIGINT and SIGTERM stop the threads after their
current job.

Example:
    $ WORKER_COUNT=4 python -m geolayers.worker
"""

from __future__ import annotations

import logging
import os
import signal
import socket
import threading

import httpx

from geolayers.core import config, log
from geolayers.db import database
from geolayers.worker import dispatcher

logger = logging.getLogger(__name__)


def main() -> None:
    settings = config.get_settings()
    log.configure_logging(settings.log_level)
    repositories = database.get_repositories(settings)
    stop = threading.Event()

    def request_stop(signum: int, _frame: object) -> None:
        logger.info("Received signal %s, stopping workers", signum)
        stop.set()

    signal.signal(signal.SIGINT, request_stop)
    signal.signal(signal.SIGTERM, request_stop)

    prefix = f"{socket.gethostname()}-{os.getpid()}"
    with httpx.Client(follow_redirects=False) as client:
        threads = [
            threading.Thread(
                target=dispatcher.Dispatcher(
                    repositories,
                    settings,
                    client,
                    worker_id=f"{prefix}-{index}",
                ).run_forever,
                args=(stop,),
                name=f"dispatcher-{index}",
            )
            for index in range(max(settings.worker_count, 1))
        ]
        for thread in threads:
            thread.start()
        logger.info("Started %d dispatcher thread(s)", len(threads))
        for thread in threads:
            thread.join()


if __name__ == "__main__":
    main()
