from dataclasses import dataclass


@dataclass(frozen=True)
class ErrorCode:
    code: str
    message: str


SCHED_001_VALIDATION = ErrorCode(
    "SCHED_001_VALIDATION",
    "Request failed validation.",
)
SCHED_002_NOT_FOUND = ErrorCode(
    "SCHED_002_NOT_FOUND",
    "Requested schedule or business was not found.",
)
SCHED_003_EXTERNAL_PROVIDER = ErrorCode(
    "SCHED_003_EXTERNAL_PROVIDER",
    "External scheduler or runner call failed.",
)
SCHED_004_ATTRIBUTION = ErrorCode(
    "SCHED_004_ATTRIBUTION",
    "Callback could not be attributed to a known run or mapping.",
)
SCHED_005_CAPACITY = ErrorCode(
    "SCHED_005_CAPACITY",
    "Schedule batch exceeds its capacity.",
)
SCHED_006_BUSINESS_FAILURE = ErrorCode(
    "SCHED_006_BUSINESS_FAILURE",
    "Collection failed for a single business.",
)
SCHED_007_CALLBACK_AUTH = ErrorCode(
    "SCHED_007_CALLBACK_AUTH",
    "Callback token is missing or invalid.",
)


class SchedulingError(RuntimeError):
    err: ErrorCode = SCHED_001_VALIDATION

    def __init__(self, detail: str = "", *, err: ErrorCode | None = None) -> None:
        if err is not None:
            self.err = err
        suffix = f" detail={detail}" if detail else ""
        super().__init__(f"{self.err.code}: {self.err.message}{suffix}")
        self.detail = detail

    @property
    def code(self) -> str:
        return self.err.code


class ValidationError(SchedulingError):
    err = SCHED_001_VALIDATION


class NotFoundError(SchedulingError):
    err = SCHED_002_NOT_FOUND


class ExternalProviderError(SchedulingError):
    err = SCHED_003_EXTERNAL_PROVIDER

    def __init__(self, detail: str = "", *, op: str = "", attempts: int = 0) -> None:
        super().__init__(detail)
        self.op = op
        self.attempts = attempts


class AttributionError(SchedulingError):
    err = SCHED_004_ATTRIBUTION


class CapacityExceededError(SchedulingError):
    err = SCHED_005_CAPACITY

    def __init__(self, schedule_id: str, count: int, capacity: int) -> None:
        super().__init__(f"schedule_id={schedule_id} count={count} capacity={capacity}")
        self.schedule_id = schedule_id
        self.count = count
        self.capacity = capacity


class BusinessScrapeFailure(SchedulingError):
    err = SCHED_006_BUSINESS_FAILURE

    def __init__(self, business_id: str, platform: str, error: str) -> None:
        super().__init__(f"business_id={business_id} platform={platform} error={error}")
        self.business_id = business_id
        self.platform = platform
        self.error = error


class CallbackAuthError(SchedulingError):
    err = SCHED_007_CALLBACK_AUTH

    def __init__(self, detail: str = "", *, configured: bool = True) -> None:
        super().__init__(detail)
        self.configured = configured


HTTP_STATUS_BY_CODE = {
    SCHED_001_VALIDATION.code: 400,
    SCHED_002_NOT_FOUND.code: 404,
    SCHED_003_EXTERNAL_PROVIDER.code: 502,
    SCHED_004_ATTRIBUTION.code: 200,
    SCHED_005_CAPACITY.code: 409,
    SCHED_006_BUSINESS_FAILURE.code: 200,
    SCHED_007_CALLBACK_AUTH.code: 403,
}
