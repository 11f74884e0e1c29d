from datetime import datetime

import pytest

from workloads.tpcc.constants import TPCCConstants
from workloads.tpcc.executor import Executor
from workloads.tpcc.memory_impl import MemoryDatabase
from workloads.tpcc.models import Customer, District, Item, NewOrder, Order, OrderLine, Stock, Warehouse
from workloads.tpcc.sqlite_impl import SQLiteDatabase

ENTRY_D = datetime(2024, 1, 1, 12, 0, 0)
DELIVERY_D = datetime(2024, 1, 2, 8, 30, 0)


def make_order(o_id, d_id, c_id, lines, delivered=False):
    """lines is a list of (i_id, amount) pairs."""
    order_lines = [
        OrderLine(o_id, d_id, 1, n, i_id, 1, 5, amount, "info-%d" % n, ENTRY_D if delivered else None)
        for n, (i_id, amount) in enumerate(lines, start=1)
    ]
    return Order(o_id, d_id, 1, c_id, ENTRY_D, 3 if delivered else None, len(order_lines), 1, order_lines)


def seed(db):
    """Two warehouses, two districts in warehouse 1, next order id 21 everywhere.

    District 1 holds orders 18 (customer 4), 19 and 20 (customer 1); only 20
    is undelivered. District 2 holds undelivered orders 18, 19 and 20 of
    customer 2.
    """
    db.create_schema()
    db.insert_batch(TPCCConstants.TBL_Item, [Item(i, i, "item-%d" % i, float(i), "data") for i in range(1, 11)])
    db.insert_batch(TPCCConstants.TBL_Warehouse, [
        Warehouse(1, "W1", w_ytd=300000.0),
        Warehouse(2, "W2", w_ytd=300000.0),
    ])
    db.insert_batch(TPCCConstants.TBL_District, [
        District(1, 1, "D1", d_ytd=30000.0, d_next_o_id=21),
        District(2, 1, "D2", d_ytd=30000.0, d_next_o_id=21),
    ])
    stocks = []
    for w_id in (1, 2):
        for i_id in range(1, 11):
            stocks.append(Stock(i_id, w_id, s_quantity=5 if i_id == 2 else 20,
                                s_dist=["dist-%02d" % d for d in range(1, 11)]))
    db.insert_batch(TPCCConstants.TBL_Stock, stocks)

    firsts = ["Alice", "Bob", "Carol", "Dave", "Eve"]
    customers = []
    for d_id in (1, 2):
        for c_id in range(1, 6):
            customers.append(Customer(
                c_id, d_id, 1,
                c_first=firsts[c_id - 1],
                c_last="BARBARBAR" if c_id <= 3 else "OUGHTOUGHTOUGHT",
                c_since=ENTRY_D,
                c_credit=TPCCConstants.BAD_CREDIT if c_id == 5 else TPCCConstants.GOOD_CREDIT,
                c_balance=-10.0,
                c_ytd_payment=10.0,
                c_payment_cnt=1,
                c_data="x" * 500,
            ))
    db.insert_batch(TPCCConstants.TBL_Customer, customers)

    db.insert_batch(TPCCConstants.TBL_Order, [
        make_order(18, 1, 4, [(4, 1.0)], delivered=True),
        make_order(19, 1, 1, [(1, 10.0), (2, 5.0)], delivered=True),
        make_order(20, 1, 1, [(2, 2.5), (3, 7.5)]),
        make_order(18, 2, 2, [(5, 1.0)]),
        make_order(19, 2, 2, [(5, 2.0)]),
        make_order(20, 2, 2, [(5, 3.0)]),
    ])
    db.insert_batch(TPCCConstants.TBL_NewOrder, [
        NewOrder(20, 1, 1),
        NewOrder(18, 2, 1),
        NewOrder(19, 2, 1),
        NewOrder(20, 2, 1),
    ])
    db.create_indexes()
    return db


def build_database(kind, tmp_path, atomic_claim=False):
    if kind == "memory":
        return MemoryDatabase(atomic_claim=atomic_claim)
    return SQLiteDatabase(str(tmp_path / "tpcc.db"), transactions=kind == "sqlite-trx", atomic_claim=atomic_claim)


@pytest.fixture(params=["memory", "sqlite", "sqlite-trx"])
def db(request, tmp_path):
    database = seed(build_database(request.param, tmp_path))
    yield database
    database.close()


@pytest.fixture(params=["memory", "sqlite", "sqlite-trx"])
def claiming_db(request, tmp_path):
    database = seed(build_database(request.param, tmp_path, atomic_claim=True))
    yield database
    database.close()


@pytest.fixture
def executor(db):
    return Executor(db, retries=3, transaction=db.transactions)
