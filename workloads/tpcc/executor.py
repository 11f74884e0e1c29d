import functools
import logging
from datetime import datetime
from typing import List, Optional

from workloads.tpcc.constants import TPCCConstants
from workloads.tpcc.database import Database
from workloads.tpcc.errors import (CancelledError, ConflictError, InvalidItemError, NotFoundError, TPCCError,
                                   TransportError)
from workloads.tpcc.models import History, Order, OrderLine, payment_note, restock_quantity

logger = logging.getLogger(__name__)

DEFAULT_RETRIES = 10
DEFAULT_BATCH_SIZE = 512

RETRYABLE = (ConflictError, TransportError, InvalidItemError)


class CancelGuard:
    """Adapter proxy that refuses to issue another backend call once ``cancel`` is set."""

    def __init__(self, db: Database, cancel=None):
        self.db = db
        self.cancel = cancel

    def __getattr__(self, name):
        attr = getattr(self.db, name)
        if not callable(attr) or self.cancel is None:
            return attr

        @functools.wraps(attr)
        def call(*args, **kwargs):
            if self.cancel.is_set():
                raise CancelledError("cancelled before %s" % name)
            return attr(*args, **kwargs)

        return call


class Executor:
    """Runs the five TPC-C profiles against one storage adapter.

    An executor holds per-worker state (the insert buffers and the retry
    settings) and must not be shared between threads; run one executor per
    worker against a shared adapter instead.
    """

    def __init__(self, db: Database, batch_size: int = DEFAULT_BATCH_SIZE, retries: int = DEFAULT_RETRIES,
                 transaction: bool = False):
        self.batch_size = batch_size
        self.data = {}
        self.db = db
        self.retries = retries
        # retries need a backend that can roll back
        self.transaction = bool(transaction and db.transactions)

    def change_batch_size(self, batch_size: int):
        self.batch_size = batch_size

    def change_retries(self, retries: int):
        self.retries = retries

    # ---------------------- batch buffer ----------------------
    def save_batch(self, table: str, row):
        rows = self.data.setdefault(table, [])
        rows.append(row)
        if len(rows) % self.batch_size == 0:
            self.db.insert_batch(table, rows)
            del self.data[table]

    def flush(self, table: str):
        rows = self.data.pop(table, None)
        if rows:
            self.db.insert_batch(table, rows)

    def flush_all(self):
        for table in list(self.data):
            self.flush(table)

    def save(self, table: str, row):
        self.db.insert_one(table, row)

    # ---------------------- retry loop ----------------------
    def do_trx_retries(self, fn, retry_on=RETRYABLE, cancel=None):
        """Run ``fn(db)`` as one logical transaction and return its result.

        Without transactions the body runs exactly once: a partially applied
        body cannot be undone, so running it again would apply its writes
        twice. With transactions every attempt is bracketed by start/commit
        and a failed attempt is rolled back; the loop stops at the first
        success and otherwise raises the last error.
        """
        db = CancelGuard(self.db, cancel)
        if not self.transaction:
            return fn(db)

        attempt = 0
        while True:
            attempt += 1
            try:
                db.start_trx()
                result = fn(db)
                self.db.commit_trx()
            except TPCCError as err:
                self.db.rollback_trx()
                if isinstance(err, CancelledError) or not isinstance(err, retry_on):
                    raise
                if cancel is not None and cancel.is_set():
                    raise CancelledError("cancelled after attempt %d" % attempt) from err
                if attempt >= self.retries:
                    logger.warning("giving up after %d attempts: %s", attempt, err)
                    raise
                if isinstance(err, InvalidItemError):
                    logger.debug("invalid item rollback, attempt %d/%d", attempt, self.retries)
                else:
                    logger.info("retrying transaction (attempt %d/%d): %s", attempt, self.retries, err)
                continue
            except Exception:
                self.db.rollback_trx()
                raise
            return result

    # ---------------------- new order ----------------------
    def do_new_order_trx(self, w_id: int, d_id: int, c_id: int, o_entry_d: datetime, i_ids: List[int],
                         i_w_ids: List[int], i_qtys: List[int], cancel=None) -> Order:
        body = functools.partial(self.do_new_order, w_id=w_id, d_id=d_id, c_id=c_id, o_entry_d=o_entry_d,
                                 i_ids=i_ids, i_w_ids=i_w_ids, i_qtys=i_qtys)
        return self.do_trx_retries(body, cancel=cancel)

    def do_new_order(self, db, w_id, d_id, c_id, o_entry_d, i_ids, i_w_ids, i_qtys) -> Order:
        if not (len(i_ids) == len(i_w_ids) == len(i_qtys)):
            raise ValueError("item ids, supplying warehouses and quantities differ in length")

        db.get_warehouse(w_id)
        db.get_district(w_id, d_id)
        o_id = db.increment_district_order_id(w_id, d_id)
        db.get_customer_by_id(c_id, w_id, d_id)

        all_local = int(all(i_w_id == w_id for i_w_id in i_w_ids))

        items = db.get_items(i_ids)
        if len(items) != len(i_ids):
            raise InvalidItemError(
                "TPCC defines 1% of neworder gives a wrong itemid, causing rollback. This happens on purpose")

        stocks = db.get_stock_info(d_id, i_ids, i_w_ids)
        if len(stocks) != len(i_ids):
            raise NotFoundError("stock missing for order %d in district %d/%d" % (o_id, w_id, d_id))

        order_lines = []
        for idx, (item, stock) in enumerate(zip(items, stocks)):
            ol_quantity = i_qtys[idx]
            stock.s_quantity = restock_quantity(stock.s_quantity, ol_quantity)
            stock.s_ytd += ol_quantity
            stock.s_order_cnt += 1
            if i_w_ids[idx] != w_id:
                stock.s_remote_cnt += 1

            order_lines.append(OrderLine(
                ol_o_id=o_id,
                ol_d_id=d_id,
                ol_w_id=w_id,
                ol_number=idx + 1,
                ol_i_id=i_ids[idx],
                ol_supply_w_id=i_w_ids[idx],
                ol_quantity=ol_quantity,
                ol_amount=item.i_price * ol_quantity,
                ol_dist_info=stock.dist_info(d_id),
            ))

        db.update_stocks(stocks)

        order = Order(
            o_id=o_id,
            o_d_id=d_id,
            o_w_id=w_id,
            o_c_id=c_id,
            o_entry_d=o_entry_d,
            o_carrier_id=None,
            o_ol_cnt=len(order_lines),
            o_all_local=all_local,
            order_lines=order_lines,
        )
        db.create_order(order)
        return order

    # ---------------------- payment ----------------------
    def do_payment_trx(self, w_id: int, d_id: int, amount: float, c_w_id: Optional[int] = None,
                       c_d_id: Optional[int] = None, c_id: Optional[int] = None, c_last: Optional[str] = None,
                       h_date: Optional[datetime] = None, bad_credit: str = TPCCConstants.BAD_CREDIT,
                       c_data_len: int = TPCCConstants.MAX_C_DATA, cancel=None):
        body = functools.partial(self.do_payment, w_id=w_id, d_id=d_id, amount=amount,
                                 c_w_id=w_id if c_w_id is None else c_w_id,
                                 c_d_id=d_id if c_d_id is None else c_d_id,
                                 c_id=c_id, c_last=c_last, h_date=h_date or datetime.now(),
                                 bad_credit=bad_credit, c_data_len=c_data_len)
        return self.do_trx_retries(body, cancel=cancel)

    def do_payment(self, db, w_id, d_id, amount, c_w_id, c_d_id, c_id, c_last, h_date, bad_credit, c_data_len):
        warehouse = db.get_warehouse(w_id)
        db.update_warehouse_balance(w_id, amount)

        district = db.get_district(w_id, d_id)
        db.update_district_balance(w_id, d_id, amount)

        if c_id:
            customer = db.get_customer_by_id(c_id, c_w_id, c_d_id)
        else:
            customer = db.get_customer_by_name(c_last, c_w_id, c_d_id)

        data = ""
        if customer.c_credit == bad_credit:
            data = payment_note(customer.c_id, c_d_id, c_w_id, d_id, w_id, amount, customer.c_data, c_data_len)
        db.update_credit(customer.c_id, c_w_id, c_d_id, amount, data)

        customer.c_balance -= amount
        customer.c_ytd_payment += amount
        customer.c_payment_cnt += 1
        if data:
            customer.c_data = data

        db.insert_history(History(
            h_c_id=customer.c_id,
            h_c_d_id=c_d_id,
            h_c_w_id=c_w_id,
            h_d_id=d_id,
            h_w_id=w_id,
            h_date=h_date,
            h_amount=amount,
            h_data="%s    %s" % (warehouse.w_name, district.d_name),
        ))
        return customer

    # ---------------------- order status ----------------------
    def do_order_status_trx(self, w_id: int, d_id: int, c_id: Optional[int] = None, c_last: Optional[str] = None,
                            cancel=None):
        body = functools.partial(self.do_order_status, w_id=w_id, d_id=d_id, c_id=c_id, c_last=c_last)
        return self.do_trx_retries(body, retry_on=(TransportError,), cancel=cancel)

    def do_order_status(self, db, w_id, d_id, c_id, c_last):
        if c_id:
            customer = db.get_customer_by_id(c_id, w_id, d_id)
        else:
            customer = db.get_customer_by_name(c_last, w_id, d_id)

        order = db.get_last_order(customer.c_id, w_id, d_id)
        order_lines = db.get_order_lines(order.o_id, w_id, d_id)
        return customer, order, order_lines

    # ---------------------- delivery ----------------------
    def do_delivery_trx(self, w_id: int, o_carrier_id: int, ol_delivery_d: Optional[datetime] = None,
                        districts: int = TPCCConstants.DIST_PER_WARE, cancel=None):
        """Deliver the oldest outstanding order of each district.

        Every district is its own retried transaction. A district that keeps
        failing does not stop the others; the last such error is raised once
        all districts were attempted.
        """
        ol_delivery_d = ol_delivery_d or datetime.now()
        delivered = []
        last_err = None
        for d_id in range(1, districts + 1):
            body = functools.partial(self.do_delivery, w_id=w_id, o_carrier_id=o_carrier_id,
                                     ol_delivery_d=ol_delivery_d, d_id=d_id)
            try:
                o_id = self.do_trx_retries(body, cancel=cancel)
            except CancelledError:
                raise
            except TPCCError as err:
                logger.warning("delivery failed for district %d/%d: %s", w_id, d_id, err)
                last_err = err
                continue
            if o_id is not None:
                delivered.append((d_id, o_id))

        if last_err is not None:
            raise last_err
        return delivered

    def do_delivery(self, db, w_id, o_carrier_id, ol_delivery_d, d_id):
        new_order = db.get_new_order(w_id, d_id)
        if new_order is None:
            # No orders for this district: skip it
            return None
        o_id = new_order.no_o_id

        c_id = db.get_customer_id_order(o_id, w_id, d_id)
        ol_total = db.sum_ol_amount(o_id, w_id, d_id)
        db.delete_new_order(o_id, w_id, d_id)
        db.update_orders(o_id, w_id, d_id, o_carrier_id, ol_delivery_d)
        db.update_customer(c_id, w_id, d_id, ol_total)
        return o_id

    # ---------------------- stock level ----------------------
    def do_stock_level_trx(self, w_id: int, d_id: int, threshold: int, cancel=None) -> int:
        # Stock-Level never requires a transaction
        db = CancelGuard(self.db, cancel)
        next_o_id = db.get_next_order_id(w_id, d_id)
        return db.get_stock_count(next_o_id, next_o_id - TPCCConstants.STOCK_LEVEL_ORDERS, threshold, w_id, d_id)

    # ---------------------- bootstrap ----------------------
    def create_schema(self):
        return self.db.create_schema()

    def create_indexes(self):
        return self.db.create_indexes()
