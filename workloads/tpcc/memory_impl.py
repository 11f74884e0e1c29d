import copy
import logging
import threading

from workloads.tpcc.constants import TPCCConstants
from workloads.tpcc.database import Database
from workloads.tpcc.errors import ConflictError, NotFoundError
from workloads.tpcc.models import Customer, District, Item, NewOrder, Order, OrderLine, Stock, Warehouse, \
    median_customer

logger = logging.getLogger(__name__)

# primary key of every collection, in document field names
KEYS = {
    TPCCConstants.TBL_Warehouse: ("w_id",),
    TPCCConstants.TBL_District: ("d_w_id", "d_id"),
    TPCCConstants.TBL_Customer: ("c_w_id", "c_d_id", "c_id"),
    TPCCConstants.TBL_NewOrder: ("no_w_id", "no_d_id", "no_o_id"),
    TPCCConstants.TBL_Order: ("o_w_id", "o_d_id", "o_id"),
    TPCCConstants.TBL_Item: ("i_id",),
    TPCCConstants.TBL_Stock: ("s_w_id", "s_i_id"),
}


class MemoryDatabase(Database):
    """Document store kept in process memory.

    There are no multi-document transactions: ``start_trx`` and friends do
    nothing and every adapter call is atomic on its own. Documents carry a
    version number and the district counter is advanced with a
    compare-and-swap on it, the way a document database would do it. Orders
    embed their order lines.
    """

    def __init__(self, transactions: bool = False, atomic_claim: bool = False):
        if transactions:
            logger.warning("memory backend has no transactions, running every call on its own")
        super().__init__(False, atomic_claim)
        self._lock = threading.RLock()
        self.collections = {table: {} for table in KEYS}
        self.versions = {}
        self.history = []

    # ---------------------- transaction bracketing ----------------------
    def start_trx(self):
        pass

    def commit_trx(self):
        pass

    def rollback_trx(self):
        pass

    # ---------------------- bootstrap ----------------------
    def create_schema(self):
        with self._lock:
            for table in KEYS:
                self.collections.setdefault(table, {})

    def create_indexes(self):
        pass

    # ---------------------- helpers ----------------------
    def _find(self, table, key):
        doc = self.collections[table].get(key)
        if doc is None:
            raise NotFoundError("%s %s" % (table, "/".join(str(k) for k in key)))
        return doc

    def _read(self, table, key):
        with self._lock:
            doc = self._find(table, key)
            return copy.deepcopy(doc), self.versions.get((table, key), 0)

    def _compare_and_swap(self, table, key, version, doc):
        with self._lock:
            if self.versions.get((table, key), 0) != version:
                raise ConflictError("%s %s changed concurrently" % (table, key))
            self.collections[table][key] = doc
            self.versions[(table, key)] = version + 1

    def _update(self, table, key, fn):
        with self._lock:
            doc = self._find(table, key)
            fn(doc)
            self.versions[(table, key)] = self.versions.get((table, key), 0) + 1

    # ---------------------- inserts ----------------------
    def _insert(self, table, row):
        doc = row.to_doc()
        if table == TPCCConstants.TBL_History:
            self.history.append(doc)
            return
        if table == TPCCConstants.TBL_OrderLine:
            # lines live inside their order document
            order = self._find(TPCCConstants.TBL_Order, (doc["ol_w_id"], doc["ol_d_id"], doc["ol_o_id"]))
            order["order_lines"].append(doc)
            order["order_lines"].sort(key=lambda line: line["ol_number"])
            return
        key = tuple(doc[k] for k in KEYS[table])
        if key in self.collections[table]:
            raise ConflictError("duplicate key %s in %s" % (key, table))
        self.collections[table][key] = doc

    def insert_one(self, table, row):
        with self._lock:
            self._insert(table, row)

    def _check_batch(self, table, rows):
        if table == TPCCConstants.TBL_OrderLine:
            missing = sorted({(r.ol_w_id, r.ol_d_id, r.ol_o_id) for r in rows} -
                             set(self.collections[TPCCConstants.TBL_Order]))
            if missing:
                raise NotFoundError("no order for lines %s" % missing)
            return
        if table not in KEYS:
            return
        seen = set()
        duplicates = []
        for row in rows:
            key = tuple(getattr(row, k) for k in KEYS[table])
            if key in seen or key in self.collections[table]:
                duplicates.append(key)
            seen.add(key)
        if duplicates:
            raise ConflictError("duplicate keys %s in %s" % (duplicates, table))

    def insert_batch(self, table, rows):
        # all or nothing: every key is checked before the first row is stored
        with self._lock:
            self._check_batch(table, rows)
            for row in rows:
                self._insert(table, row)
        logger.debug("Loaded %d tuples for tableName %s", len(rows), table)

    # ---------------------- new order ----------------------
    def increment_district_order_id(self, w_id, d_id):
        key = (w_id, d_id)
        doc, version = self._read(TPCCConstants.TBL_District, key)
        o_id = doc["d_next_o_id"]
        doc["d_next_o_id"] = o_id + 1
        self._compare_and_swap(TPCCConstants.TBL_District, key, version, doc)
        return o_id

    def get_customer_by_id(self, c_id, w_id, d_id):
        doc, _ = self._read(TPCCConstants.TBL_Customer, (w_id, d_id, c_id))
        return Customer.from_doc(doc)

    def get_items(self, i_ids):
        items = []
        with self._lock:
            for i_id in i_ids:
                doc = self.collections[TPCCConstants.TBL_Item].get((i_id,))
                if doc is not None:
                    items.append(Item.from_doc(doc))
        return items

    def get_stock_info(self, d_id, i_ids, i_w_ids):
        stocks = []
        with self._lock:
            for i_id, i_w_id in zip(i_ids, i_w_ids):
                doc = self.collections[TPCCConstants.TBL_Stock].get((i_w_id, i_id))
                if doc is not None:
                    stocks.append(Stock.from_doc(copy.deepcopy(doc)))
        return stocks

    def update_stocks(self, stocks):
        with self._lock:
            for s in stocks:
                def apply(doc, s=s):
                    doc["s_quantity"] = s.s_quantity
                    doc["s_ytd"] = s.s_ytd
                    doc["s_order_cnt"] = s.s_order_cnt
                    doc["s_remote_cnt"] = s.s_remote_cnt
                self._update(TPCCConstants.TBL_Stock, (s.s_w_id, s.s_i_id), apply)

    def create_order(self, order):
        with self._lock:
            self._insert(TPCCConstants.TBL_Order, order)
            self._insert(TPCCConstants.TBL_NewOrder, NewOrder(order.o_id, order.o_d_id, order.o_w_id))

    # ---------------------- delivery ----------------------
    def _oldest_new_order(self, w_id, d_id):
        keys = [k for k in self.collections[TPCCConstants.TBL_NewOrder] if k[0] == w_id and k[1] == d_id]
        return min(keys, key=lambda k: k[2]) if keys else None

    def get_new_order(self, w_id, d_id):
        with self._lock:
            key = self._oldest_new_order(w_id, d_id)
            if key is None:
                return None
            if self.atomic_claim:
                doc = self.collections[TPCCConstants.TBL_NewOrder].pop(key)
            else:
                doc = self.collections[TPCCConstants.TBL_NewOrder][key]
            return NewOrder.from_doc(doc)

    def check_new_order(self, w_id, d_id):
        with self._lock:
            key = self._oldest_new_order(w_id, d_id)
            if key is None:
                return None
            return NewOrder.from_doc(self.collections[TPCCConstants.TBL_NewOrder][key])

    def delete_new_order(self, o_id, w_id, d_id):
        if self.atomic_claim:
            return
        with self._lock:
            if self.collections[TPCCConstants.TBL_NewOrder].pop((w_id, d_id, o_id), None) is None:
                raise NotFoundError("new order %d/%d/%d" % (w_id, d_id, o_id))

    def get_customer_id_order(self, o_id, w_id, d_id):
        with self._lock:
            return self._find(TPCCConstants.TBL_Order, (w_id, d_id, o_id))["o_c_id"]

    def update_orders(self, o_id, w_id, d_id, carrier_id, delivery_d):
        def apply(doc):
            doc["o_carrier_id"] = carrier_id
            for line in doc["order_lines"]:
                line["ol_delivery_d"] = delivery_d
        self._update(TPCCConstants.TBL_Order, (w_id, d_id, o_id), apply)

    def sum_ol_amount(self, o_id, w_id, d_id):
        with self._lock:
            doc = self._find(TPCCConstants.TBL_Order, (w_id, d_id, o_id))
            if not doc["order_lines"]:
                raise NotFoundError("order lines of %d/%d/%d" % (w_id, d_id, o_id))
            return sum(line["ol_amount"] for line in doc["order_lines"])

    def update_customer(self, c_id, w_id, d_id, amount):
        def apply(doc):
            doc["c_balance"] += amount
            doc["c_delivery_cnt"] += 1
        self._update(TPCCConstants.TBL_Customer, (w_id, d_id, c_id), apply)

    # ---------------------- stock level ----------------------
    def get_next_order_id(self, w_id, d_id):
        with self._lock:
            return self._find(TPCCConstants.TBL_District, (w_id, d_id))["d_next_o_id"]

    def get_stock_count(self, o_id_lt, o_id_ge, threshold, w_id, d_id):
        with self._lock:
            i_ids = set()
            for (o_w_id, o_d_id, o_id), doc in self.collections[TPCCConstants.TBL_Order].items():
                if o_w_id == w_id and o_d_id == d_id and o_id_ge <= o_id < o_id_lt:
                    i_ids.update(line["ol_i_id"] for line in doc["order_lines"])
            stocks = self.collections[TPCCConstants.TBL_Stock]
            return sum(1 for i_id in i_ids
                       if (w_id, i_id) in stocks and stocks[(w_id, i_id)]["s_quantity"] < threshold)

    # ---------------------- order status ----------------------
    def get_customer_by_name(self, c_last, w_id, d_id):
        with self._lock:
            customers = [Customer.from_doc(copy.deepcopy(doc))
                         for (c_w_id, c_d_id, _), doc in self.collections[TPCCConstants.TBL_Customer].items()
                         if c_w_id == w_id and c_d_id == d_id and doc["c_last"] == c_last]
        return median_customer(customers)

    def get_last_order(self, c_id, w_id, d_id):
        with self._lock:
            orders = [doc for (o_w_id, o_d_id, _), doc in self.collections[TPCCConstants.TBL_Order].items()
                      if o_w_id == w_id and o_d_id == d_id and doc["o_c_id"] == c_id]
            if not orders:
                raise NotFoundError("no order for customer %d/%d/%d" % (w_id, d_id, c_id))
            return Order.from_doc(copy.deepcopy(max(orders, key=lambda doc: doc["o_id"])))

    def get_order_lines(self, o_id, w_id, d_id):
        with self._lock:
            doc = self.collections[TPCCConstants.TBL_Order].get((w_id, d_id, o_id))
            if doc is None:
                return []
            return [OrderLine.from_doc(line) for line in copy.deepcopy(doc["order_lines"])]

    # ---------------------- payment ----------------------
    def get_warehouse(self, w_id):
        doc, _ = self._read(TPCCConstants.TBL_Warehouse, (w_id,))
        return Warehouse.from_doc(doc)

    def update_warehouse_balance(self, w_id, amount):
        def apply(doc):
            doc["w_ytd"] += amount
        self._update(TPCCConstants.TBL_Warehouse, (w_id,), apply)

    def get_district(self, w_id, d_id):
        doc, _ = self._read(TPCCConstants.TBL_District, (w_id, d_id))
        return District.from_doc(doc)

    def update_district_balance(self, w_id, d_id, amount):
        def apply(doc):
            doc["d_ytd"] += amount
        self._update(TPCCConstants.TBL_District, (w_id, d_id), apply)

    def insert_history(self, history):
        self.insert_one(TPCCConstants.TBL_History, history)

    def update_credit(self, c_id, w_id, d_id, amount, data):
        def apply(doc):
            doc["c_balance"] -= amount
            doc["c_ytd_payment"] += amount
            doc["c_payment_cnt"] += 1
            if data:
                doc["c_data"] = data
        self._update(TPCCConstants.TBL_Customer, (w_id, d_id, c_id), apply)
