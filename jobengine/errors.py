class JobEngineError(Exception):
    """Base class for every error raised by the job engine."""


class StorageError(JobEngineError, RuntimeError):
    """The job store could not be read or written. Safe to retry later."""


class JobNotFoundError(JobEngineError, LookupError):
    def __init__(self, job_id):
        super().__init__(f"Job {job_id} not found.")
        self.job_id = job_id


class JobNotRetryableError(JobEngineError):
    pass


class RegistryError(JobEngineError):
    pass


class ExecutorNotFoundError(RegistryError, LookupError):
    def __init__(self, job_type: str):
        super().__init__(f"No executor registered for job type {job_type!r}.")
        self.job_type = job_type


class ExecutionError(JobEngineError):
    """Raised by an executor to report that the job did not succeed."""


class ConfigError(JobEngineError, ValueError):
    pass
