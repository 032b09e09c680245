import argparse
import signal
import threading

from loguru import logger

from app.core.config import get_settings
from app.db import init_db
from pipelines.fanout import RefreshOutcomeChancesWorker


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Drain the outcome chance refresh queue")
    parser.add_argument("--max-workers", type=int, default=None, help="Override thread pool size")
    parser.add_argument("--batch-size", type=int, default=None, help="Work items claimed per run")
    parser.add_argument(
        "--all-active",
        action="store_true",
        default=None,
        help="Also refresh every ACTIVE market with position ids, queued or not",
    )
    parser.add_argument(
        "--loop",
        action="store_true",
        help="Keep draining the queue, sleeping INDEXER_SLEEP_SECONDS between runs",
    )
    return parser.parse_args()


def main() -> None:
    args = parse_args()
    settings = get_settings()
    init_db()

    worker = RefreshOutcomeChancesWorker(
        settings=settings,
        max_workers=args.max_workers,
        batch_size=args.batch_size,
        refresh_all_active=args.all_active,
    )
    if not args.loop:
        worker.run()
        return

    stop_event = threading.Event()

    def _request_stop(signum, _frame) -> None:
        logger.info("Received signal {}; stopping fan-out worker", signum)
        stop_event.set()

    signal.signal(signal.SIGINT, _request_stop)
    signal.signal(signal.SIGTERM, _request_stop)

    while not stop_event.is_set():
        try:
            worker.run()
        except Exception:  # noqa: BLE001
            logger.exception("Fan-out run failed")
        stop_event.wait(settings.indexer_sleep_seconds)


if __name__ == "__main__":
    main()
