from . import agent, tasks

__all__ = ["agent", "tasks"]
