import argparse
import signal
import sys
import threading

from loguru import logger

from app.db import init_db
from pipelines.indexer import run_indexer_process


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Index a single market in the foreground")
    parser.add_argument("market_id", type=int, help="Market whose chain cursor should be advanced")
    return parser.parse_args()


def main() -> None:
    args = parse_args()
    init_db()

    stop_event = threading.Event()

    def _request_stop(signum, _frame) -> None:
        logger.info("Received signal {}; stopping after the current cycle", signum)
        stop_event.set()

    signal.signal(signal.SIGINT, _request_stop)
    signal.signal(signal.SIGTERM, _request_stop)

    sys.exit(run_indexer_process(args.market_id, stop_event))


if __name__ == "__main__":
    main()
