from .backend import RedisJobQueue
from .jobs import Job, Priority, QueueSpec, queue_specs

__all__ = ["RedisJobQueue", "Job", "Priority", "QueueSpec", "queue_specs"]
