"""Initial population at a tiny scale."""
import random

import pytest

from workloads.tpcc.constants import TPCCConstants
from workloads.tpcc.executor import Executor
from workloads.tpcc.load_data import LoadData, Utils
from workloads.tpcc.memory_impl import MemoryDatabase


@pytest.fixture
def loaded():
    db = MemoryDatabase()
    executor = Executor(db, batch_size=7)
    LoadData(executor, 1, items=20, customers_per_district=6, orders_per_district=10, districts=2,
             rng=random.Random(7)).loadAll()
    return db, executor


class TestUtils:

    def test_last_name_syllables(self):
        assert Utils.Lastname(0) == "BARBARBAR"
        assert Utils.Lastname(371) == "PRICALLYOUGHT"
        assert Utils.Lastname(999) == "EINGEINGEING"

    def test_nurand_stays_in_range(self):
        utils = Utils(random.Random(1))
        values = [utils.NURand(1023, 1, 30) for _ in range(500)]
        assert min(values) >= 1
        assert max(values) <= 30

    def test_nurand_rejects_unknown_a(self):
        with pytest.raises(ValueError):
            Utils().NURand(7, 1, 10)

    def test_original_marks_a_tenth(self):
        assert sum(Utils(random.Random(3)).MarkOriginal(50)) == 5


class TestLoadData:

    def test_row_counts(self, loaded):
        db, executor = loaded
        assert len(db.collections[TPCCConstants.TBL_Item]) == 20
        assert len(db.collections[TPCCConstants.TBL_Stock]) == 20
        assert len(db.collections[TPCCConstants.TBL_Warehouse]) == 1
        assert len(db.collections[TPCCConstants.TBL_District]) == 2
        assert len(db.collections[TPCCConstants.TBL_Customer]) == 12
        assert len(db.history) == 12
        assert len(db.collections[TPCCConstants.TBL_Order]) == 20
        assert executor.data == {}

    def test_next_order_id(self, loaded):
        db, _ = loaded
        assert db.get_next_order_id(1, 1) == 11
        assert db.get_next_order_id(1, 2) == 11

    def test_last_thirty_percent_undelivered(self, loaded):
        db, _ = loaded
        queued = sorted(key for key in db.collections[TPCCConstants.TBL_NewOrder])
        assert queued == [(1, 1, 8), (1, 1, 9), (1, 1, 10), (1, 2, 8), (1, 2, 9), (1, 2, 10)]

        for (w_id, d_id, o_id), doc in db.collections[TPCCConstants.TBL_Order].items():
            lines = doc["order_lines"]
            assert TPCCConstants.MIN_OL_CNT <= len(lines) <= TPCCConstants.MAX_OL_CNT
            assert doc["o_ol_cnt"] == len(lines)
            if o_id > 7:
                assert doc["o_carrier_id"] is None
                assert all(line["ol_delivery_d"] is None for line in lines)
                assert all(line["ol_amount"] == 0.0 for line in lines)
            else:
                assert TPCCConstants.MIN_CARRIER_ID <= doc["o_carrier_id"] <= TPCCConstants.MAX_CARRIER_ID
                assert all(line["ol_delivery_d"] == doc["o_entry_d"] for line in lines)

    def test_original_items(self, loaded):
        db, _ = loaded
        items = db.collections[TPCCConstants.TBL_Item].values()
        assert sum(TPCCConstants.ORIGINAL_STRING in item["i_data"] for item in items) == 2

    def test_customers_are_findable_by_name(self, loaded):
        db, _ = loaded
        customer = db.get_customer_by_name("BARBARBAR", 1, 1)
        assert customer.c_id == 1
        assert customer.c_credit in (TPCCConstants.GOOD_CREDIT, TPCCConstants.BAD_CREDIT)

    def test_other_warehouses_share_items(self):
        db = MemoryDatabase()
        executor = Executor(db)
        LoadData(executor, 2, items=10, customers_per_district=3, orders_per_district=3, districts=1).loadAll()
        assert db.collections[TPCCConstants.TBL_Item] == {}
        assert len(db.collections[TPCCConstants.TBL_Stock]) == 10

    def test_loaded_database_runs_new_order(self, loaded):
        db, executor = loaded
        order = executor.do_new_order_trx(1, 1, 1, None, [1, 2], [1, 1], [1, 1])
        assert order.o_id == 11
        assert db.check_new_order(1, 1).no_o_id == 8
