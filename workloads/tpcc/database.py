"""Storage adapter contract for the TPC-C executor.

Every backend implements :class:`Database` on its own; the executor only
ever talks to this interface. Each call must look atomic to the caller even
when the backend has no multi-statement transactions, which is why the
district counter and the NewOrder claim are single adapter calls rather than
a read followed by a write issued from the executor.

Outside a ``start_trx``/``commit_trx`` bracket every call is applied in its
own backend transaction. Bracketing state is per thread, so one adapter
instance can be shared by several workers.
"""
import abc
from datetime import datetime
from typing import List, Optional

from workloads.tpcc.models import Customer, District, History, Item, NewOrder, Order, OrderLine, Stock, Warehouse


class Database(abc.ABC):

    def __init__(self, transactions: bool = False, atomic_claim: bool = False):
        self.transactions = transactions
        self.atomic_claim = atomic_claim

    # ---------------------- transaction bracketing ----------------------
    @abc.abstractmethod
    def start_trx(self):
        pass

    @abc.abstractmethod
    def commit_trx(self):
        pass

    @abc.abstractmethod
    def rollback_trx(self):
        pass

    # ---------------------- bootstrap ----------------------
    @abc.abstractmethod
    def create_schema(self):
        pass

    @abc.abstractmethod
    def create_indexes(self):
        pass

    # ---------------------- inserts ----------------------
    @abc.abstractmethod
    def insert_one(self, table: str, row):
        pass

    @abc.abstractmethod
    def insert_batch(self, table: str, rows: list):
        pass

    # ---------------------- new order ----------------------
    @abc.abstractmethod
    def increment_district_order_id(self, w_id: int, d_id: int) -> int:
        """Atomically bump ``d_next_o_id`` and return the value before the bump."""

    @abc.abstractmethod
    def get_customer_by_id(self, c_id: int, w_id: int, d_id: int) -> Customer:
        pass

    @abc.abstractmethod
    def get_items(self, i_ids: List[int]) -> List[Item]:
        """Items found for ``i_ids`` in request order; unknown ids are left out."""

    @abc.abstractmethod
    def get_stock_info(self, d_id: int, i_ids: List[int], i_w_ids: List[int]) -> List[Stock]:
        pass

    @abc.abstractmethod
    def update_stocks(self, stocks: List[Stock]):
        pass

    @abc.abstractmethod
    def create_order(self, order: Order):
        """Insert the order, its lines and its NewOrder entry as one unit."""

    # ---------------------- delivery ----------------------
    @abc.abstractmethod
    def get_new_order(self, w_id: int, d_id: int) -> Optional[NewOrder]:
        """Oldest undelivered order of the district, or None.

        With ``atomic_claim`` the entry is removed in the same atomic step so
        that two concurrent deliveries can never receive the same order.
        """

    @abc.abstractmethod
    def check_new_order(self, w_id: int, d_id: int) -> Optional[NewOrder]:
        pass

    @abc.abstractmethod
    def delete_new_order(self, o_id: int, w_id: int, d_id: int):
        pass

    @abc.abstractmethod
    def get_customer_id_order(self, o_id: int, w_id: int, d_id: int) -> int:
        pass

    @abc.abstractmethod
    def update_orders(self, o_id: int, w_id: int, d_id: int, carrier_id: int, delivery_d: datetime):
        pass

    @abc.abstractmethod
    def sum_ol_amount(self, o_id: int, w_id: int, d_id: int) -> float:
        pass

    @abc.abstractmethod
    def update_customer(self, c_id: int, w_id: int, d_id: int, amount: float):
        pass

    # ---------------------- stock level ----------------------
    @abc.abstractmethod
    def get_next_order_id(self, w_id: int, d_id: int) -> int:
        pass

    @abc.abstractmethod
    def get_stock_count(self, o_id_lt: int, o_id_ge: int, threshold: int, w_id: int, d_id: int) -> int:
        pass

    # ---------------------- order status ----------------------
    @abc.abstractmethod
    def get_customer_by_name(self, c_last: str, w_id: int, d_id: int) -> Customer:
        pass

    @abc.abstractmethod
    def get_last_order(self, c_id: int, w_id: int, d_id: int) -> Order:
        pass

    @abc.abstractmethod
    def get_order_lines(self, o_id: int, w_id: int, d_id: int) -> List[OrderLine]:
        pass

    # ---------------------- payment ----------------------
    @abc.abstractmethod
    def get_warehouse(self, w_id: int) -> Warehouse:
        pass

    @abc.abstractmethod
    def update_warehouse_balance(self, w_id: int, amount: float):
        pass

    @abc.abstractmethod
    def get_district(self, w_id: int, d_id: int) -> District:
        pass

    @abc.abstractmethod
    def update_district_balance(self, w_id: int, d_id: int, amount: float):
        pass

    @abc.abstractmethod
    def insert_history(self, history: History):
        pass

    @abc.abstractmethod
    def update_credit(self, c_id: int, w_id: int, d_id: int, amount: float, data: str):
        """Apply a payment to the customer; ``data`` replaces c_data unless empty."""

    def close(self):
        pass


def new_database(driver: str, uri: str, dbname: str, transactions: bool = False, atomic_claim: bool = False) -> Database:
    if driver == "dgraph":
        from workloads.tpcc.dgraph_impl import DgraphDatabase
        return DgraphDatabase(uri or "localhost:9080", transactions, atomic_claim)
    if driver == "sqlite":
        from workloads.tpcc.sqlite_impl import SQLiteDatabase
        return SQLiteDatabase(uri or "%s.db" % dbname, transactions, atomic_claim)
    if driver == "memory":
        from workloads.tpcc.memory_impl import MemoryDatabase
        return MemoryDatabase(transactions, atomic_claim)
    raise ValueError("Unknown database driver: %s" % driver)
