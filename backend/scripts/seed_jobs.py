import argparse

from loguru import logger

from app.core.config import get_settings
from app.db import init_db, session_scope
from app.repositories import ContractRepository, JobRepository
from pipelines.jobs import CONDITIONAL_TOKENS_CONTRACT, JOB_CLASSES


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Provision job rows and the conditional tokens contract cursor"
    )
    parser.add_argument(
        "--start-block",
        type=int,
        default=0,
        help="Last processed block recorded for a newly created contract cursor",
    )
    parser.add_argument(
        "--confirmation-lag",
        type=int,
        default=None,
        help="Blocks withheld from the chain head when parsing claims",
    )
    return parser.parse_args()


def main() -> None:
    args = parse_args()
    settings = get_settings()
    init_db()

    with session_scope() as session:
        jobs = JobRepository(session)
        for job_cls in JOB_CLASSES:
            _, created = jobs.ensure_job(
                name=job_cls.name,
                interval_seconds=job_cls.default_interval_seconds,
                timeout_seconds=settings.job_default_timeout_seconds,
            )
            logger.info("Job {} {}", job_cls.name, "created" if created else "already exists")

        if settings.conditional_tokens_address:
            _, created = ContractRepository(session).ensure_contract(
                name=CONDITIONAL_TOKENS_CONTRACT,
                contract_address=settings.conditional_tokens_address,
                start_block=args.start_block,
                window_size=settings.indexer_default_window_size,
                confirmation_lag=(
                    settings.indexer_confirmation_lag
                    if args.confirmation_lag is None
                    else args.confirmation_lag
                ),
            )
            logger.info(
                "Contract cursor {} {}",
                CONDITIONAL_TOKENS_CONTRACT,
                "created" if created else "already exists",
            )
        else:
            logger.warning(
                "CONDITIONAL_TOKENS_ADDRESS is not set; skipping the claims contract cursor"
            )


if __name__ == "__main__":
    main()
