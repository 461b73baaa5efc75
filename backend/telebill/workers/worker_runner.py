from __future__ import annotations

import logging
import threading

from telebill.core.config import settings
from telebill.core.logging import setup_logging
from telebill.workers import notifications_email_worker
from telebill.workers.subscription_scheduler import build_scheduler, install_signal_handlers

logger = logging.getLogger("worker_runner")


def main() -> None:
    setup_logging(settings.LOG_LEVEL)
    logger.info("worker_runner starting (scheduler + email)")

    stop_event = threading.Event()
    install_signal_handlers(stop_event)

    scheduler = build_scheduler(stop_event)

    t1 = threading.Thread(target=scheduler.run_forever, name="subscription-scheduler", daemon=True)
    t2 = threading.Thread(
        target=notifications_email_worker.main,
        kwargs={"once": False, "stop_event": stop_event},
        name="email-worker",
        daemon=True,
    )

    t1.start()
    t2.start()

    # Keep the main process alive until a signal arrives
    while not stop_event.wait(timeout=60):
        pass

    # Let an in-flight charge finish and be recorded
    t1.join()
    t2.join(timeout=30)
    logger.info("worker_runner stopped")


if __name__ == "__main__":
    main()
