import threading
from typing import Dict
from contextlib import contextmanager
import logging

logger = logging.getLogger(__name__)


class JobLockManager:
    """
    Per-import-job locks for this process.

    Materialization resumes from the job's processed-row counter, so two runs
    of the same job must not interleave; the second waits for the first and
    then continues from the updated counter.
    """
    _locks: Dict[str, threading.Lock] = {}
    _global_lock = threading.Lock()

    @classmethod
    def get_lock(cls, job_id: str) -> threading.Lock:
        with cls._global_lock:
            if job_id not in cls._locks:
                cls._locks[job_id] = threading.Lock()
            return cls._locks[job_id]

    @classmethod
    def discard(cls, job_id: str) -> None:
        with cls._global_lock:
            cls._locks.pop(job_id, None)

    @classmethod
    @contextmanager
    def acquire(cls, job_id: str):
        lock = cls.get_lock(job_id)
        if not lock.acquire(blocking=False):
            logger.info(f"Waiting for lock on import job '{job_id}'")
            lock.acquire()
        try:
            yield
        finally:
            lock.release()
