from globalsched.db.repo.retry_repo import RetryRepo, RunsRepo
from globalsched.db.repo.schedules_repo import SchedulesRepo

__all__ = ["SchedulesRepo", "RetryRepo", "RunsRepo"]
