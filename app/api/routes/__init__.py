from . import credits, enhancements, tasks

__all__ = ["credits", "enhancements", "tasks"]
