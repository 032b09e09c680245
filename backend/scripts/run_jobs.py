import argparse
import signal
import sys
import threading

from loguru import logger

from app.core.config import get_settings
from app.db import init_db
from pipelines.jobs import JOB_CLASSES, JobResultStatus, JobScheduler


def parse_args() -> argparse.Namespace:
    available = ", ".join(job_cls.name for job_cls in JOB_CLASSES)
    parser = argparse.ArgumentParser(description="Run singleton jobs guarded by their job row")
    parser.add_argument("--job", default=None, help=f"Run only this job once ({available})")
    parser.add_argument(
        "--loop",
        action="store_true",
        help="Keep polling for due jobs instead of running the due set once",
    )
    return parser.parse_args()


def main() -> None:
    args = parse_args()
    settings = get_settings()
    init_db()

    jobs = [job_cls(settings=settings) for job_cls in JOB_CLASSES]

    if args.job:
        selected = [job for job in jobs if job.name == args.job]
        if not selected:
            logger.error("Unknown job {!r}", args.job)
            sys.exit(2)
        result = selected[0]()
        sys.exit(0 if result.status != JobResultStatus.FAILED else 1)

    scheduler = JobScheduler(jobs, settings=settings)
    if not args.loop:
        results = scheduler.run_due()
        logger.info("Ran {} due jobs", sum(1 for result in results if result.ran))
        return

    stop_event = threading.Event()

    def _request_stop(signum, _frame) -> None:
        logger.info("Received signal {}; stopping job scheduler", signum)
        stop_event.set()

    signal.signal(signal.SIGINT, _request_stop)
    signal.signal(signal.SIGTERM, _request_stop)
    scheduler.run_forever(stop_event)


if __name__ == "__main__":
    main()
