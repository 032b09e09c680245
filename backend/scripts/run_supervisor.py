import argparse
import signal
import threading

from loguru import logger

from app.core.config import get_settings
from app.db import init_db
from pipelines.supervisor import Supervisor


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Keep one indexer process running per market that needs indexing"
    )
    parser.add_argument(
        "--once",
        action="store_true",
        help="Run a single planning cycle, then stop every started indexer and exit",
    )
    return parser.parse_args()


def main() -> None:
    args = parse_args()
    settings = get_settings()
    init_db()

    stop_event = threading.Event()

    def _request_stop(signum, _frame) -> None:
        logger.info("Received signal {}; shutting down supervisor", signum)
        stop_event.set()

    signal.signal(signal.SIGINT, _request_stop)
    signal.signal(signal.SIGTERM, _request_stop)

    supervisor = Supervisor(settings=settings)
    if args.once:
        result = supervisor.plan_cycle()
        logger.info("Planning cycle result: {}", result)
        supervisor.shutdown()
        return

    supervisor.run_forever(stop_event)


if __name__ == "__main__":
    main()
