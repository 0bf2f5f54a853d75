from globalsched.db.models.scheduling import (
    BusinessScheduleMapping,
    CollectionRun,
    CustomIntervalOverride,
    GlobalSchedule,
    RetryEntry,
)

__all__ = [
    "GlobalSchedule",
    "BusinessScheduleMapping",
    "CustomIntervalOverride",
    "RetryEntry",
    "CollectionRun",
]
