from .health_db import WorkerHealthDB
from .models import WorkerHealthRow

__all__ = [
    "WorkerHealthRow",
    "WorkerHealthDB",
]
