from batch_engine.repositories.jobs import (
    InMemoryJobsRepository,
    PostgresJobsRepository,
    SqliteJobsRepository,
    create_jobs_repository_from_env,
)

__all__ = [
    "InMemoryJobsRepository",
    "PostgresJobsRepository",
    "SqliteJobsRepository",
    "create_jobs_repository_from_env",
]
