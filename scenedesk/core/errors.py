"""Domain exceptions shared by the orchestrator, processors and the HTTP layer."""


class JobNotFoundError(Exception):
    """Raised when a job id does not exist in the record store."""

    def __init__(self, job_id: str) -> None:
        super().__init__(f"Job not found: {job_id}")
        self.job_id = job_id


class VideoNotFoundError(Exception):
    """Raised when a video id does not exist in the record store."""

    def __init__(self, video_id: str) -> None:
        super().__init__(f"Video not found: {video_id}")
        self.video_id = video_id


class InvalidJobStateError(Exception):
    """Raised when an operation is not allowed in the job's current status."""

    def __init__(self, job_id: str, status: str, operation: str) -> None:
        super().__init__(f"Cannot {operation} job {job_id} with status: {status}")
        self.job_id = job_id
        self.status = status
        self.operation = operation


class UnknownJobTypeError(Exception):
    """Raised when no processor is registered for a job type."""


class ProcessingError(Exception):
    """Exception raised when a worker processor fails."""
    pass


class JobCancelledError(Exception):
    """Raised inside a worker processor once its run has been cancelled."""
    pass


class ObjectNotFoundError(Exception):
    """Raised when a stored object does not exist in the bucket."""

    def __init__(self, key: str) -> None:
        super().__init__(f"Object not found: {key}")
        self.key = key


class RangeNotSatisfiableError(Exception):
    """Raised when a byte range lies outside the stored object."""

    def __init__(self, key: str, object_size: int | None = None) -> None:
        super().__init__(f"Requested range not satisfiable: {key}")
        self.key = key
        self.object_size = object_size
