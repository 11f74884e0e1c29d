import logging
import sqlite3
import threading
from contextlib import contextmanager
from datetime import datetime

from workloads.tpcc.constants import TPCCConstants
from workloads.tpcc.database import Database
from workloads.tpcc.errors import ConflictError, NotFoundError, TransportError
from workloads.tpcc.models import Customer, District, Item, NewOrder, Order, OrderLine, Stock, Warehouse, \
    median_customer

logger = logging.getLogger(__name__)

SCHEMA = '''
    CREATE TABLE IF NOT EXISTS WAREHOUSE (
        w_id INTEGER NOT NULL,
        w_name TEXT,
        w_street_1 TEXT,
        w_street_2 TEXT,
        w_city TEXT,
        w_state TEXT,
        w_zip TEXT,
        w_tax REAL,
        w_ytd REAL,
        PRIMARY KEY (w_id)
    );

    CREATE TABLE IF NOT EXISTS DISTRICT (
        d_id INTEGER NOT NULL,
        d_w_id INTEGER NOT NULL,
        d_name TEXT,
        d_street_1 TEXT,
        d_street_2 TEXT,
        d_city TEXT,
        d_state TEXT,
        d_zip TEXT,
        d_tax REAL,
        d_ytd REAL,
        d_next_o_id INTEGER,
        PRIMARY KEY (d_w_id, d_id)
    );

    CREATE TABLE IF NOT EXISTS ITEM (
        i_id INTEGER NOT NULL,
        i_im_id INTEGER,
        i_name TEXT,
        i_price REAL,
        i_data TEXT,
        PRIMARY KEY (i_id)
    );

    CREATE TABLE IF NOT EXISTS CUSTOMER (
        c_id INTEGER NOT NULL,
        c_d_id INTEGER NOT NULL,
        c_w_id INTEGER NOT NULL,
        c_first TEXT,
        c_middle TEXT,
        c_last TEXT,
        c_street_1 TEXT,
        c_street_2 TEXT,
        c_city TEXT,
        c_state TEXT,
        c_zip TEXT,
        c_phone TEXT,
        c_since TEXT,
        c_credit TEXT,
        c_credit_lim REAL,
        c_discount REAL,
        c_balance REAL,
        c_ytd_payment REAL,
        c_payment_cnt INTEGER,
        c_delivery_cnt INTEGER,
        c_data TEXT,
        PRIMARY KEY (c_w_id, c_d_id, c_id)
    );

    CREATE TABLE IF NOT EXISTS HISTORY (
        h_c_id INTEGER,
        h_c_d_id INTEGER,
        h_c_w_id INTEGER,
        h_d_id INTEGER,
        h_w_id INTEGER NOT NULL,
        h_date TEXT,
        h_amount REAL,
        h_data TEXT
    );

    CREATE TABLE IF NOT EXISTS STOCK (
        s_i_id INTEGER NOT NULL,
        s_w_id INTEGER NOT NULL,
        s_quantity INTEGER NOT NULL,
        s_dist_01 TEXT,
        s_dist_02 TEXT,
        s_dist_03 TEXT,
        s_dist_04 TEXT,
        s_dist_05 TEXT,
        s_dist_06 TEXT,
        s_dist_07 TEXT,
        s_dist_08 TEXT,
        s_dist_09 TEXT,
        s_dist_10 TEXT,
        s_ytd INTEGER,
        s_order_cnt INTEGER,
        s_remote_cnt INTEGER,
        s_data TEXT,
        PRIMARY KEY (s_w_id, s_i_id)
    );

    CREATE TABLE IF NOT EXISTS ORDERS (
        o_id INTEGER NOT NULL,
        o_c_id INTEGER,
        o_d_id INTEGER NOT NULL,
        o_w_id INTEGER NOT NULL,
        o_entry_d TEXT,
        o_carrier_id INTEGER,
        o_ol_cnt INTEGER,
        o_all_local INTEGER,
        PRIMARY KEY (o_w_id, o_d_id, o_id)
    );

    CREATE TABLE IF NOT EXISTS NEW_ORDER (
        no_o_id INTEGER NOT NULL,
        no_d_id INTEGER NOT NULL,
        no_w_id INTEGER NOT NULL,
        PRIMARY KEY (no_w_id, no_d_id, no_o_id)
    );

    CREATE TABLE IF NOT EXISTS ORDER_LINE (
        ol_o_id INTEGER NOT NULL,
        ol_d_id INTEGER NOT NULL,
        ol_w_id INTEGER NOT NULL,
        ol_number INTEGER NOT NULL,
        ol_i_id INTEGER,
        ol_supply_w_id INTEGER,
        ol_delivery_d TEXT,
        ol_quantity INTEGER,
        ol_amount REAL,
        ol_dist_info TEXT,
        PRIMARY KEY (ol_w_id, ol_d_id, ol_o_id, ol_number)
    );
'''

INDEXES = '''
    CREATE INDEX IF NOT EXISTS IDX_CUSTOMER ON CUSTOMER (c_w_id, c_d_id, c_last);
    CREATE INDEX IF NOT EXISTS IDX_ORDERS ON ORDERS (o_w_id, o_d_id, o_c_id);
'''

TXN_QUERIES = {
    "DELIVERY": {
        "getNewOrder": "SELECT no_o_id, no_d_id, no_w_id FROM NEW_ORDER WHERE no_d_id = ? AND no_w_id = ? ORDER BY no_o_id LIMIT 1",  # d_id, w_id
        "deleteNewOrder": "DELETE FROM NEW_ORDER WHERE no_d_id = ? AND no_w_id = ? AND no_o_id = ?",  # d_id, w_id, no_o_id
        "getCId": "SELECT o_c_id FROM ORDERS WHERE o_id = ? AND o_d_id = ? AND o_w_id = ?",  # no_o_id, d_id, w_id
        "updateOrders": "UPDATE ORDERS SET o_carrier_id = ? WHERE o_id = ? AND o_d_id = ? AND o_w_id = ?",  # o_carrier_id, no_o_id, d_id, w_id
        "updateOrderLine": "UPDATE ORDER_LINE SET ol_delivery_d = ? WHERE ol_o_id = ? AND ol_d_id = ? AND ol_w_id = ?",  # ol_delivery_d, no_o_id, d_id, w_id
        "sumOLAmount": "SELECT SUM(ol_amount) FROM ORDER_LINE WHERE ol_o_id = ? AND ol_d_id = ? AND ol_w_id = ?",  # no_o_id, d_id, w_id
        "updateCustomer": "UPDATE CUSTOMER SET c_balance = c_balance + ?, c_delivery_cnt = c_delivery_cnt + 1 WHERE c_id = ? AND c_d_id = ? AND c_w_id = ?",  # ol_total, c_id, d_id, w_id
    },
    "NEW_ORDER": {
        "getDistrictNextOId": "SELECT d_next_o_id FROM DISTRICT WHERE d_id = ? AND d_w_id = ?",  # d_id, w_id
        "incrementNextOrderId": "UPDATE DISTRICT SET d_next_o_id = d_next_o_id + 1 WHERE d_id = ? AND d_w_id = ?",  # d_id, w_id
        "getStockInfo": "SELECT * FROM STOCK WHERE s_i_id = ? AND s_w_id = ?",  # ol_i_id, ol_supply_w_id
        "updateStock": "UPDATE STOCK SET s_quantity = ?, s_ytd = ?, s_order_cnt = ?, s_remote_cnt = ? WHERE s_i_id = ? AND s_w_id = ?",  # s_quantity, s_ytd, s_order_cnt, s_remote_cnt, ol_i_id, ol_supply_w_id
    },
    "ORDER_STATUS": {
        "getCustomerByCustomerId": "SELECT * FROM CUSTOMER WHERE c_w_id = ? AND c_d_id = ? AND c_id = ?",  # w_id, d_id, c_id
        "getCustomersByLastName": "SELECT * FROM CUSTOMER WHERE c_w_id = ? AND c_d_id = ? AND c_last = ? ORDER BY c_first",  # w_id, d_id, c_last
        "getLastOrder": "SELECT * FROM ORDERS WHERE o_w_id = ? AND o_d_id = ? AND o_c_id = ? ORDER BY o_id DESC LIMIT 1",  # w_id, d_id, c_id
        "getOrderLines": "SELECT * FROM ORDER_LINE WHERE ol_w_id = ? AND ol_d_id = ? AND ol_o_id = ? ORDER BY ol_number",  # w_id, d_id, o_id
    },
    "PAYMENT": {
        "getWarehouse": "SELECT * FROM WAREHOUSE WHERE w_id = ?",  # w_id
        "updateWarehouseBalance": "UPDATE WAREHOUSE SET w_ytd = w_ytd + ? WHERE w_id = ?",  # h_amount, w_id
        "getDistrict": "SELECT * FROM DISTRICT WHERE d_w_id = ? AND d_id = ?",  # w_id, d_id
        "updateDistrictBalance": "UPDATE DISTRICT SET d_ytd = d_ytd + ? WHERE d_w_id = ? AND d_id = ?",  # h_amount, d_w_id, d_id
        "updateBCCustomer": "UPDATE CUSTOMER SET c_balance = c_balance - ?, c_ytd_payment = c_ytd_payment + ?, c_payment_cnt = c_payment_cnt + 1, c_data = ? WHERE c_w_id = ? AND c_d_id = ? AND c_id = ?",  # h_amount, h_amount, c_data, c_w_id, c_d_id, c_id
        "updateGCCustomer": "UPDATE CUSTOMER SET c_balance = c_balance - ?, c_ytd_payment = c_ytd_payment + ?, c_payment_cnt = c_payment_cnt + 1 WHERE c_w_id = ? AND c_d_id = ? AND c_id = ?",  # h_amount, h_amount, c_w_id, c_d_id, c_id
    },
    "STOCK_LEVEL": {
        "getOId": "SELECT d_next_o_id FROM DISTRICT WHERE d_w_id = ? AND d_id = ?",
        "getStockCount": """
            SELECT COUNT(DISTINCT(ol_i_id)) FROM ORDER_LINE, STOCK
            WHERE ol_w_id = ?
              AND ol_d_id = ?
              AND ol_o_id < ?
              AND ol_o_id >= ?
              AND s_w_id = ?
              AND s_i_id = ol_i_id
              AND s_quantity < ?
        """,
    },
}

DATE_COLUMNS = {"c_since", "h_date", "o_entry_d", "ol_delivery_d"}


def encode(value):
    if isinstance(value, datetime):
        return value.isoformat()
    return value


def decode_row(row):
    doc = dict(row)
    for column in DATE_COLUMNS.intersection(doc):
        if doc[column] is not None:
            doc[column] = datetime.fromisoformat(doc[column])
    return doc


def translate(err: sqlite3.Error) -> Exception:
    message = str(err).lower()
    if isinstance(err, sqlite3.IntegrityError) or "locked" in message or "busy" in message:
        return ConflictError(str(err))
    return TransportError(str(err))


class SQLiteDatabase(Database):
    """Relational backend on SQLite.

    Every worker thread gets its own connection to the database file. Each
    unit of work runs under ``BEGIN IMMEDIATE`` so that the district counter
    read and its increment, or the NewOrder read and its delete, are never
    interleaved with another writer.
    """

    def __init__(self, path: str, transactions: bool = False, atomic_claim: bool = False, timeout: float = 5.0):
        super().__init__(transactions, atomic_claim)
        self.path = path
        self.timeout = timeout
        self._local = threading.local()
        self._connections = []
        self._lock = threading.Lock()

    def _connection(self) -> sqlite3.Connection:
        conn = getattr(self._local, "conn", None)
        if conn is None:
            try:
                conn = sqlite3.connect(self.path, timeout=self.timeout, isolation_level=None,
                                       check_same_thread=False)
            except sqlite3.Error as err:
                raise TransportError(str(err)) from err
            conn.row_factory = sqlite3.Row
            self._local.conn = conn
            self._local.bracketed = False
            with self._lock:
                self._connections.append(conn)
        return conn

    @contextmanager
    def _cursor(self):
        conn = self._connection()
        bracketed = self._local.bracketed
        try:
            if not bracketed:
                conn.execute("BEGIN IMMEDIATE")
            yield conn.cursor()
            if not bracketed:
                conn.execute("COMMIT")
        except sqlite3.Error as err:
            if not bracketed and conn.in_transaction:
                conn.execute("ROLLBACK")
            logger.debug("sqlite error: %s", err)
            raise translate(err) from err
        except BaseException:
            if not bracketed and conn.in_transaction:
                conn.execute("ROLLBACK")
            raise

    # ---------------------- transaction bracketing ----------------------
    def start_trx(self):
        conn = self._connection()
        try:
            conn.execute("BEGIN IMMEDIATE")
        except sqlite3.Error as err:
            raise translate(err) from err
        self._local.bracketed = True

    def commit_trx(self):
        conn = self._connection()
        self._local.bracketed = False
        try:
            conn.execute("COMMIT")
        except sqlite3.Error as err:
            raise translate(err) from err

    def rollback_trx(self):
        conn = self._connection()
        self._local.bracketed = False
        if conn.in_transaction:
            try:
                conn.execute("ROLLBACK")
            except sqlite3.Error as err:
                raise translate(err) from err

    # ---------------------- bootstrap ----------------------
    def create_schema(self):
        try:
            self._connection().executescript(SCHEMA)
        except sqlite3.Error as err:
            raise translate(err) from err

    def create_indexes(self):
        try:
            self._connection().executescript(INDEXES)
        except sqlite3.Error as err:
            raise translate(err) from err

    # ---------------------- inserts ----------------------
    def _insert(self, cur, table, row):
        doc = row.to_doc()
        doc.pop("order_lines", None)
        columns = list(doc)
        sql = "INSERT INTO %s (%s) VALUES (%s)" % (table, ",".join(columns), ",".join("?" * len(columns)))
        cur.execute(sql, [encode(doc[c]) for c in columns])
        if table == TPCCConstants.TBL_Order:
            for line in row.order_lines:
                self._insert(cur, TPCCConstants.TBL_OrderLine, line)

    def insert_one(self, table, row):
        with self._cursor() as cur:
            self._insert(cur, table, row)

    def insert_batch(self, table, rows):
        with self._cursor() as cur:
            for row in rows:
                self._insert(cur, table, row)
        logger.debug("Loaded %d tuples for tableName %s", len(rows), table)

    # ---------------------- new order ----------------------
    def increment_district_order_id(self, w_id, d_id):
        q = TXN_QUERIES["NEW_ORDER"]
        with self._cursor() as cur:
            cur.execute(q["getDistrictNextOId"], [d_id, w_id])
            row = cur.fetchone()
            if row is None:
                raise NotFoundError("district %d/%d" % (w_id, d_id))
            cur.execute(q["incrementNextOrderId"], [d_id, w_id])
            return row[0]

    def get_customer_by_id(self, c_id, w_id, d_id):
        with self._cursor() as cur:
            cur.execute(TXN_QUERIES["ORDER_STATUS"]["getCustomerByCustomerId"], [w_id, d_id, c_id])
            row = cur.fetchone()
        if row is None:
            raise NotFoundError("customer %d/%d/%d" % (w_id, d_id, c_id))
        return Customer.from_doc(decode_row(row))

    def get_items(self, i_ids):
        if not i_ids:
            return []
        sql = "SELECT * FROM ITEM WHERE i_id IN (%s)" % ",".join("?" * len(i_ids))
        with self._cursor() as cur:
            cur.execute(sql, list(i_ids))
            by_id = {row["i_id"]: Item.from_doc(dict(row)) for row in cur.fetchall()}
        return [by_id[i_id] for i_id in i_ids if i_id in by_id]

    def get_stock_info(self, d_id, i_ids, i_w_ids):
        stocks = []
        with self._cursor() as cur:
            for i_id, i_w_id in zip(i_ids, i_w_ids):
                cur.execute(TXN_QUERIES["NEW_ORDER"]["getStockInfo"], [i_id, i_w_id])
                row = cur.fetchone()
                if row is None:
                    logger.debug("No STOCK record for (ol_i_id=%d, ol_supply_w_id=%d)", i_id, i_w_id)
                    continue
                stocks.append(Stock.from_doc(dict(row)))
        return stocks

    def update_stocks(self, stocks):
        with self._cursor() as cur:
            for s in stocks:
                cur.execute(TXN_QUERIES["NEW_ORDER"]["updateStock"],
                            [s.s_quantity, s.s_ytd, s.s_order_cnt, s.s_remote_cnt, s.s_i_id, s.s_w_id])
                if cur.rowcount == 0:
                    raise NotFoundError("stock %d/%d" % (s.s_w_id, s.s_i_id))

    def create_order(self, order):
        with self._cursor() as cur:
            self._insert(cur, TPCCConstants.TBL_Order, order)
            self._insert(cur, TPCCConstants.TBL_NewOrder, NewOrder(order.o_id, order.o_d_id, order.o_w_id))

    # ---------------------- delivery ----------------------
    def get_new_order(self, w_id, d_id):
        q = TXN_QUERIES["DELIVERY"]
        with self._cursor() as cur:
            cur.execute(q["getNewOrder"], [d_id, w_id])
            row = cur.fetchone()
            if row is None:
                return None
            if self.atomic_claim:
                cur.execute(q["deleteNewOrder"], [d_id, w_id, row["no_o_id"]])
        return NewOrder.from_doc(dict(row))

    def check_new_order(self, w_id, d_id):
        with self._cursor() as cur:
            cur.execute(TXN_QUERIES["DELIVERY"]["getNewOrder"], [d_id, w_id])
            row = cur.fetchone()
        return None if row is None else NewOrder.from_doc(dict(row))

    def delete_new_order(self, o_id, w_id, d_id):
        if self.atomic_claim:
            return
        with self._cursor() as cur:
            cur.execute(TXN_QUERIES["DELIVERY"]["deleteNewOrder"], [d_id, w_id, o_id])
            if cur.rowcount == 0:
                raise NotFoundError("new order %d/%d/%d" % (w_id, d_id, o_id))

    def get_customer_id_order(self, o_id, w_id, d_id):
        with self._cursor() as cur:
            cur.execute(TXN_QUERIES["DELIVERY"]["getCId"], [o_id, d_id, w_id])
            row = cur.fetchone()
        if row is None:
            raise NotFoundError("order %d/%d/%d" % (w_id, d_id, o_id))
        return row[0]

    def update_orders(self, o_id, w_id, d_id, carrier_id, delivery_d):
        q = TXN_QUERIES["DELIVERY"]
        with self._cursor() as cur:
            cur.execute(q["updateOrders"], [carrier_id, o_id, d_id, w_id])
            if cur.rowcount == 0:
                raise NotFoundError("order %d/%d/%d" % (w_id, d_id, o_id))
            cur.execute(q["updateOrderLine"], [encode(delivery_d), o_id, d_id, w_id])

    def sum_ol_amount(self, o_id, w_id, d_id):
        with self._cursor() as cur:
            cur.execute(TXN_QUERIES["DELIVERY"]["sumOLAmount"], [o_id, d_id, w_id])
            total = cur.fetchone()[0]
        # SUM over no rows is NULL
        if total is None:
            raise NotFoundError("order lines of %d/%d/%d" % (w_id, d_id, o_id))
        return total

    def update_customer(self, c_id, w_id, d_id, amount):
        with self._cursor() as cur:
            cur.execute(TXN_QUERIES["DELIVERY"]["updateCustomer"], [amount, c_id, d_id, w_id])
            if cur.rowcount == 0:
                raise NotFoundError("customer %d/%d/%d" % (w_id, d_id, c_id))

    # ---------------------- stock level ----------------------
    def get_next_order_id(self, w_id, d_id):
        with self._cursor() as cur:
            cur.execute(TXN_QUERIES["STOCK_LEVEL"]["getOId"], [w_id, d_id])
            row = cur.fetchone()
        if row is None:
            raise NotFoundError("district %d/%d" % (w_id, d_id))
        return row[0]

    def get_stock_count(self, o_id_lt, o_id_ge, threshold, w_id, d_id):
        with self._cursor() as cur:
            cur.execute(TXN_QUERIES["STOCK_LEVEL"]["getStockCount"], [w_id, d_id, o_id_lt, o_id_ge, w_id, threshold])
            return int(cur.fetchone()[0])

    # ---------------------- order status ----------------------
    def get_customer_by_name(self, c_last, w_id, d_id):
        with self._cursor() as cur:
            cur.execute(TXN_QUERIES["ORDER_STATUS"]["getCustomersByLastName"], [w_id, d_id, c_last])
            customers = [Customer.from_doc(decode_row(row)) for row in cur.fetchall()]
        return median_customer(customers)

    def get_last_order(self, c_id, w_id, d_id):
        with self._cursor() as cur:
            cur.execute(TXN_QUERIES["ORDER_STATUS"]["getLastOrder"], [w_id, d_id, c_id])
            row = cur.fetchone()
        if row is None:
            raise NotFoundError("no order for customer %d/%d/%d" % (w_id, d_id, c_id))
        return Order.from_doc(decode_row(row))

    def get_order_lines(self, o_id, w_id, d_id):
        with self._cursor() as cur:
            cur.execute(TXN_QUERIES["ORDER_STATUS"]["getOrderLines"], [w_id, d_id, o_id])
            return [OrderLine.from_doc(decode_row(row)) for row in cur.fetchall()]

    # ---------------------- payment ----------------------
    def get_warehouse(self, w_id):
        with self._cursor() as cur:
            cur.execute(TXN_QUERIES["PAYMENT"]["getWarehouse"], [w_id])
            row = cur.fetchone()
        if row is None:
            raise NotFoundError("warehouse %d" % w_id)
        return Warehouse.from_doc(dict(row))

    def update_warehouse_balance(self, w_id, amount):
        with self._cursor() as cur:
            cur.execute(TXN_QUERIES["PAYMENT"]["updateWarehouseBalance"], [amount, w_id])
            if cur.rowcount == 0:
                raise NotFoundError("warehouse %d" % w_id)

    def get_district(self, w_id, d_id):
        with self._cursor() as cur:
            cur.execute(TXN_QUERIES["PAYMENT"]["getDistrict"], [w_id, d_id])
            row = cur.fetchone()
        if row is None:
            raise NotFoundError("district %d/%d" % (w_id, d_id))
        return District.from_doc(dict(row))

    def update_district_balance(self, w_id, d_id, amount):
        with self._cursor() as cur:
            cur.execute(TXN_QUERIES["PAYMENT"]["updateDistrictBalance"], [amount, w_id, d_id])
            if cur.rowcount == 0:
                raise NotFoundError("district %d/%d" % (w_id, d_id))

    def insert_history(self, history):
        self.insert_one(TPCCConstants.TBL_History, history)

    def update_credit(self, c_id, w_id, d_id, amount, data):
        q = TXN_QUERIES["PAYMENT"]
        with self._cursor() as cur:
            if data:
                cur.execute(q["updateBCCustomer"], [amount, amount, data, w_id, d_id, c_id])
            else:
                cur.execute(q["updateGCCustomer"], [amount, amount, w_id, d_id, c_id])
            if cur.rowcount == 0:
                raise NotFoundError("customer %d/%d/%d" % (w_id, d_id, c_id))

    def close(self):
        with self._lock:
            for conn in self._connections:
                conn.close()
            self._connections = []
        self._local = threading.local()
