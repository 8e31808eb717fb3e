"""Standalone build worker: ``python -m app.worker``.

Runs the build queue without the HTTP API, for deployments where the API
replicas only record build requests.
"""

import logging
import signal
import threading

from app.config import settings
from app.logging import configure_logging
from app.services.build_queue import BuildQueue

logger = logging.getLogger(__name__)


def main() -> None:
    configure_logging()
    stop = threading.Event()

    def _handle(signum, frame):
        logger.info("Received signal %s, stopping build worker", signum)
        stop.set()

    signal.signal(signal.SIGTERM, _handle)
    signal.signal(signal.SIGINT, _handle)

    queue = BuildQueue(poll_interval=settings.build_queue_poll_seconds)
    queue.start()
    try:
        while not stop.wait(timeout=1.0):
            if not queue.running:
                logger.error("Build queue worker thread exited; shutting down")
                break
    finally:
        queue.stop()


if __name__ == "__main__":
    main()
