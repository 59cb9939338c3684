from specloop.store.client import CliTaskStore, TaskStore, TaskStoreError

__all__ = ["CliTaskStore", "TaskStore", "TaskStoreError"]
