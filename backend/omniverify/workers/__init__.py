from .handlers import JobHandlers
from .worker import QueueWorker, JobRateLimiter

__all__ = ["JobHandlers", "QueueWorker", "JobRateLimiter"]
