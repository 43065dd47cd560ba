from tacklebox.tasks.base import ItemResult, ScrapeTask, TaskContext, register_task, registered_tasks

# importing the modules registers their tasks
from tacklebox.tasks import fish_tales, shop_reel, site_scout  # noqa: F401

__all__ = [
    "ItemResult",
    "ScrapeTask",
    "TaskContext",
    "register_task",
    "registered_tasks",
]
