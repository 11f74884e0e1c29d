from workloads.tpcc.database import Database, new_database
from workloads.tpcc.executor import Executor

__all__ = ["Database", "Executor", "new_database"]
