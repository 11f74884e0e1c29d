"""The five profiles end to end on the memory and SQLite backends."""
import threading

import pytest

from conftest import DELIVERY_D, ENTRY_D, seed
from workloads.tpcc.database import new_database
from workloads.tpcc.errors import InvalidItemError, NotFoundError
from workloads.tpcc.executor import Executor


class TestNewOrder:

    def test_takes_next_order_id(self, db, executor):
        order = executor.do_new_order_trx(1, 1, 1, ENTRY_D, [1, 2], [1, 1], [3, 3])

        assert order.o_id == 21
        assert db.get_next_order_id(1, 1) == 22
        assert order.o_all_local == 1
        assert order.o_carrier_id is None
        assert [line.ol_amount for line in order.order_lines] == [3.0, 6.0]
        assert [line.ol_dist_info for line in order.order_lines] == ["dist-01", "dist-01"]

    def test_restock_rule(self, db, executor):
        executor.do_new_order_trx(1, 1, 1, ENTRY_D, [1, 2], [1, 1], [3, 3])

        stock_1, stock_2 = db.get_stock_info(1, [1, 2], [1, 1])
        assert stock_1.s_quantity == 17
        assert stock_2.s_quantity == 93
        assert stock_1.s_ytd == 3
        assert stock_1.s_order_cnt == 1
        assert stock_1.s_remote_cnt == 0

    def test_order_is_persisted_and_queued(self, db, executor):
        executor.do_new_order_trx(1, 2, 3, ENTRY_D, [4, 5, 6], [1, 1, 1], [1, 2, 3])

        last = db.get_last_order(3, 1, 2)
        assert last.o_id == 21
        assert last.o_ol_cnt == 3
        assert last.o_carrier_id is None
        lines = db.get_order_lines(21, 1, 2)
        assert [line.ol_i_id for line in lines] == [4, 5, 6]
        assert all(line.ol_delivery_d is None for line in lines)
        # FIFO head of district 2 is still the oldest loaded order
        assert db.check_new_order(1, 2).no_o_id == 18

    def test_remote_supplier(self, db, executor):
        order = executor.do_new_order_trx(1, 1, 1, ENTRY_D, [1, 3], [1, 2], [1, 1])

        assert order.o_all_local == 0
        (remote,) = db.get_stock_info(1, [3], [2])
        assert remote.s_remote_cnt == 1
        (local,) = db.get_stock_info(1, [3], [1])
        assert local.s_quantity == 20

    def test_consecutive_orders(self, db, executor):
        ids = [executor.do_new_order_trx(1, 1, 2, ENTRY_D, [7], [1], [1]).o_id for _ in range(3)]
        assert ids == [21, 22, 23]
        assert db.get_next_order_id(1, 1) == 24

    def test_unknown_customer(self, executor):
        with pytest.raises(NotFoundError):
            executor.do_new_order_trx(1, 1, 99, ENTRY_D, [1], [1], [1])


class TestInvalidItem:

    @pytest.mark.parametrize("db", ["sqlite-trx"], indirect=True)
    def test_rolled_back_with_transactions(self, db, executor):
        with pytest.raises(InvalidItemError):
            executor.do_new_order_trx(1, 1, 1, ENTRY_D, [1, 11], [1, 1], [1, 1])

        assert db.get_next_order_id(1, 1) == 21
        assert db.get_last_order(1, 1, 1).o_id == 20
        (stock,) = db.get_stock_info(1, [1], [1])
        assert stock.s_quantity == 20

    @pytest.mark.parametrize("db", ["memory", "sqlite"], indirect=True)
    def test_counter_consumed_without_transactions(self, db, executor):
        with pytest.raises(InvalidItemError):
            executor.do_new_order_trx(1, 1, 1, ENTRY_D, [1, 11], [1, 1], [1, 1])

        assert db.get_next_order_id(1, 1) == 22
        assert db.get_last_order(1, 1, 1).o_id == 20

    def test_memory_backend_built_like_the_runner(self):
        db = seed(new_database("memory", "", "tpcc", transactions=True))
        executor = Executor(db, retries=10, transaction=True)

        with pytest.raises(InvalidItemError):
            executor.do_new_order_trx(1, 1, 1, ENTRY_D, [1, 11], [1, 1], [1, 1])
        assert db.get_next_order_id(1, 1) == 22


class TestPayment:

    def test_by_id(self, db, executor):
        customer = executor.do_payment_trx(1, 1, 100.0, c_id=1, h_date=ENTRY_D)

        assert customer.c_id == 1
        assert customer.c_balance == -110.0
        assert db.get_warehouse(1).w_ytd == 300100.0
        assert db.get_district(1, 1).d_ytd == 30100.0
        stored = db.get_customer_by_id(1, 1, 1)
        assert stored.c_balance == -110.0
        assert stored.c_ytd_payment == 110.0
        assert stored.c_payment_cnt == 2
        assert stored.c_data == "x" * 500

    def test_by_last_name_picks_median(self, db, executor):
        customer = executor.do_payment_trx(1, 1, 5.0, c_last="BARBARBAR")

        assert customer.c_id == 2
        assert db.get_customer_by_id(2, 1, 1).c_payment_cnt == 2

    def test_bad_credit_note(self, db, executor):
        customer = executor.do_payment_trx(1, 1, 100.0, c_id=5)

        assert customer.c_data.startswith("5 1 1 1 1 100.0|xxx")
        assert len(customer.c_data) == 500
        assert db.get_customer_by_id(5, 1, 1).c_data == customer.c_data

    def test_customer_of_other_district(self, db, executor):
        executor.do_payment_trx(1, 1, 50.0, c_w_id=1, c_d_id=2, c_id=3)

        assert db.get_customer_by_id(3, 1, 2).c_balance == -60.0
        assert db.get_customer_by_id(3, 1, 1).c_balance == -10.0
        assert db.get_district(1, 1).d_ytd == 30050.0

    def test_unknown_customer(self, executor):
        with pytest.raises(NotFoundError):
            executor.do_payment_trx(1, 1, 5.0, c_last="NOSUCHNAME")


class TestOrderStatus:

    def test_by_id(self, executor):
        customer, order, lines = executor.do_order_status_trx(1, 1, c_id=1)

        assert customer.c_first == "Alice"
        assert order.o_id == 20
        assert order.o_entry_d == ENTRY_D
        assert [line.ol_number for line in lines] == [1, 2]
        assert [line.ol_i_id for line in lines] == [2, 3]

    def test_by_last_name_even_count(self, executor):
        customer, order, lines = executor.do_order_status_trx(1, 1, c_last="OUGHTOUGHTOUGHT")

        assert customer.c_id == 4
        assert order.o_id == 18
        assert order.o_carrier_id == 3
        assert lines[0].ol_delivery_d == ENTRY_D

    def test_customer_without_orders(self, executor):
        with pytest.raises(NotFoundError):
            executor.do_order_status_trx(1, 1, c_id=5)


class TestDelivery:

    def test_delivers_oldest_per_district(self, db, executor):
        delivered = executor.do_delivery_trx(1, 7, DELIVERY_D, districts=2)

        assert delivered == [(1, 20), (2, 18)]
        order = db.get_last_order(1, 1, 1)
        assert order.o_carrier_id == 7
        assert all(line.ol_delivery_d == DELIVERY_D for line in db.get_order_lines(20, 1, 1))
        customer = db.get_customer_by_id(1, 1, 1)
        assert customer.c_balance == 0.0
        assert customer.c_delivery_cnt == 1
        assert db.check_new_order(1, 1) is None
        assert db.check_new_order(1, 2).no_o_id == 19

    def test_empty_district_is_skipped(self, executor):
        assert executor.do_delivery_trx(1, 7, DELIVERY_D, districts=3) == [(1, 20), (2, 18)]
        assert executor.do_delivery_trx(1, 7, DELIVERY_D, districts=1) == []

    def test_queue_is_fifo(self, executor):
        order_ids = []
        for _ in range(4):
            order_ids.extend(o_id for d_id, o_id in executor.do_delivery_trx(1, 1, DELIVERY_D, districts=2)
                             if d_id == 2)
        assert order_ids == [18, 19, 20]

    def test_atomic_claim(self, claiming_db):
        executor = Executor(claiming_db)

        assert executor.do_delivery_trx(1, 2, DELIVERY_D, districts=2) == [(1, 20), (2, 18)]
        assert claiming_db.check_new_order(1, 2).no_o_id == 19
        assert claiming_db.get_customer_by_id(2, 1, 2).c_balance == -9.0

    def test_concurrent_claims_are_unique(self, claiming_db):
        claimed = []
        errors = []
        lock = threading.Lock()

        def worker():
            executor = Executor(claiming_db, retries=50, transaction=claiming_db.transactions)
            for _ in range(3):
                try:
                    delivered = executor.do_delivery_trx(1, 5, DELIVERY_D, districts=2)
                except Exception as e:
                    with lock:
                        errors.append(e)
                    continue
                with lock:
                    claimed.extend(delivered)

        threads = [threading.Thread(target=worker) for _ in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert errors == []
        assert len(claimed) == len(set(claimed))
        assert sorted(claimed) == [(1, 20), (2, 18), (2, 19), (2, 20)]
        assert claiming_db.check_new_order(1, 1) is None
        assert claiming_db.check_new_order(1, 2) is None

    def test_new_order_then_delivery(self, db, executor):
        executor.do_new_order_trx(1, 1, 2, ENTRY_D, [1], [1], [2])
        assert executor.do_delivery_trx(1, 4, DELIVERY_D, districts=1) == [(1, 20)]
        assert executor.do_delivery_trx(1, 4, DELIVERY_D, districts=1) == [(1, 21)]
        assert db.get_customer_by_id(2, 1, 1).c_balance == -8.0


class TestStockLevel:

    def test_counts_distinct_low_items(self, executor):
        assert executor.do_stock_level_trx(1, 1, 10) == 1
        assert executor.do_stock_level_trx(1, 1, 21) == 4

    def test_window_follows_next_order_id(self, db, executor):
        executor.do_new_order_trx(1, 1, 1, ENTRY_D, [8], [1], [15])
        # restock took item 8 from 20 to 96
        assert executor.do_stock_level_trx(1, 1, 21) == 4
        assert executor.do_stock_level_trx(1, 1, 100) == 5

    def test_district_without_low_stock(self, executor):
        assert executor.do_stock_level_trx(1, 2, 10) == 0


class TestConcurrentCounter:

    @pytest.mark.parametrize("db", ["memory", "sqlite-trx"], indirect=True)
    def test_order_ids_are_unique(self, db):
        results = []
        lock = threading.Lock()

        def worker():
            executor = Executor(db, retries=50, transaction=db.transactions)
            for _ in range(10):
                try:
                    o_id = executor.do_new_order_trx(1, 1, 1, ENTRY_D, [1], [1], [1]).o_id
                except Exception:
                    continue
                with lock:
                    results.append(o_id)

        threads = [threading.Thread(target=worker) for _ in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert len(results) == len(set(results))
        assert db.get_next_order_id(1, 1) == 21 + len(results)
