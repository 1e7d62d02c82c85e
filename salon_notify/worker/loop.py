"""Polling worker: delivery passes every poll interval, maintenance on its own cadence."""
import logging
import signal
import time

from salon_notify.backend.config import get_settings
from salon_notify.backend.services.delivery import process_due_notifications
from salon_notify.backend.services.maintenance import run_maintenance_cycle
from salon_notify.backend.services.senders import get_sender

logger = logging.getLogger(__name__)


class WorkerLoop:
    def __init__(self, settings=None, sender=None, clock=time.monotonic, sleep=time.sleep):
        self.s = settings or get_settings()
        self.sender = sender or get_sender(self.s)
        self.clock = clock
        self.sleep = sleep
        self.running = False
        self._next_maintenance = 0.0

    def stop(self, *_args) -> None:
        logger.info("worker_stop_requested")
        self.running = False

    def tick(self) -> dict:
        """One iteration; errors are logged and the loop keeps going."""
        out: dict = {}
        try:
            out["delivery"] = process_due_notifications(sender=self.sender)
        except Exception:
            logger.exception("worker_delivery_pass_failed")
            out["delivery"] = {"error": "delivery_failed"}
        now = self.clock()
        if now >= self._next_maintenance:
            out["maintenance"] = run_maintenance_cycle()
            self._next_maintenance = now + max(30, int(self.s.maintenance_interval_seconds or 300))
        return out

    def run(self, max_iterations: int | None = None) -> None:
        self.running = True
        done = 0
        interval = max(1, int(self.s.worker_poll_interval_seconds or 30))
        logger.info(
            "worker_starting poll_interval=%s max_concurrency=%s sender=%s",
            interval, self.s.worker_max_concurrency, self.s.sender_backend,
        )
        while self.running:
            self.tick()
            done += 1
            if max_iterations is not None and done >= max_iterations:
                break
            self.sleep(interval)
        logger.info("worker_stopped iterations=%s", done)


def main() -> None:
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s %(message)s")
    s = get_settings()
    if not s.worker_enabled:
        logger.warning("worker_disabled")
        return
    loop = WorkerLoop(s)
    signal.signal(signal.SIGINT, loop.stop)
    signal.signal(signal.SIGTERM, loop.stop)
    loop.run()


if __name__ == "__main__":
    main()
