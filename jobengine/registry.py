import logging
import threading
from typing import Callable, Dict, List, Protocol, Union, runtime_checkable

from .errors import ExecutorNotFoundError, RegistryError

logger = logging.getLogger(__name__)


@runtime_checkable
class JobExecutor(Protocol):
    """Handler for one job type.

    ``execute`` returns normally on success. Raising (``ExecutionError`` or
    anything else) marks the attempt as failed.
    """

    def execute(self, payload: str) -> None:
        ...


ExecutorLike = Union[JobExecutor, Callable[[str], None]]


class _FunctionExecutor:
    def __init__(self, fn: Callable[[str], None]):
        self._fn = fn

    def execute(self, payload: str) -> None:
        self._fn(payload)

    def __repr__(self):
        return f"<executor {getattr(self._fn, '__name__', self._fn)!r}>"


class ExecutorRegistry:
    """Maps a job type tag to its executor. Filled at startup, then frozen."""

    def __init__(self):
        self._executors: Dict[str, JobExecutor] = {}
        self._frozen = False
        self._lock = threading.Lock()

    def register(self, job_type: str, executor: ExecutorLike) -> None:
        if not job_type or not job_type.strip():
            raise RegistryError("Job type cannot be empty.")
        if isinstance(executor, JobExecutor):
            wrapped = executor
        elif callable(executor):
            wrapped = _FunctionExecutor(executor)
        else:
            raise RegistryError(f"Executor for {job_type!r} has no execute() and is not callable.")

        with self._lock:
            if self._frozen:
                raise RegistryError("Registry is frozen; register executors at startup.")
            if job_type in self._executors:
                raise RegistryError(f"An executor is already registered for {job_type!r}.")
            self._executors[job_type] = wrapped
        logger.debug("Registered executor for %s: %r", job_type, wrapped)

    def executor(self, job_type: str):
        """Decorator form of :meth:`register` for plain functions."""
        def decorator(fn):
            self.register(job_type, fn)
            return fn
        return decorator

    def resolve(self, job_type: str) -> JobExecutor:
        try:
            return self._executors[job_type]
        except KeyError:
            raise ExecutorNotFoundError(job_type) from None

    def freeze(self) -> None:
        with self._lock:
            self._frozen = True

    @property
    def frozen(self) -> bool:
        return self._frozen

    def job_types(self) -> List[str]:
        return sorted(self._executors)

    def __contains__(self, job_type) -> bool:
        return job_type in self._executors

    def __len__(self) -> int:
        return len(self._executors)
