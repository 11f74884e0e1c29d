import argparse
import logging
import random
import threading
from datetime import datetime

from workloads.tpcc import settings
from workloads.tpcc.constants import TPCCConstants
from workloads.tpcc.database import new_database
from workloads.tpcc.errors import TPCCError
from workloads.tpcc.executor import Executor
from workloads.tpcc.load_data import LoadData, Utils
from workloads.tpcc.logger import setup_logger

logger = logging.getLogger(__name__)

REMOTE_FRACTION = 0.15
BY_NAME_FRACTION = 0.6
INVALID_ITEM_FRACTION = 0.01

PROFILES = {
    'TXN_NEWORDER': 'do_new_order_trx',
    'TXN_PAYMENT': 'do_payment_trx',
    'TXN_ORDERSTATUS': 'do_order_status_trx',
    'TXN_DELIVERY': 'do_delivery_trx',
    'TXN_STOCKLEVEL': 'do_stock_level_trx',
}


class TransactionGenerator:
    """Draws the next profile and its input for one home warehouse."""

    def __init__(self, w_id, warehouses=1, rng=None, items=TPCCConstants.MAXITEMS,
                 customers=TPCCConstants.CUST_PER_DIST, districts=TPCCConstants.DIST_PER_WARE):
        self.w_id = w_id
        self.warehouses = warehouses
        self.r = rng or random.Random()
        self.utils = Utils(self.r)
        self.items = items
        self.customers = customers
        self.districts = districts

    def next_txn(self):
        rand_num = self.r.random()
        if rand_num < 0.45:
            return 'TXN_NEWORDER', self.new_order_params()
        elif rand_num < 0.88:
            return 'TXN_PAYMENT', self.payment_params()
        elif rand_num < 0.92:
            return 'TXN_ORDERSTATUS', self.order_status_params()
        elif rand_num < 0.96:
            return 'TXN_DELIVERY', self.delivery_params()
        else:
            return 'TXN_STOCKLEVEL', self.stock_level_params()

    def _district(self):
        return self.utils.RandomNumber(1, self.districts)

    def _customer_id(self):
        return self.utils.NURand(1023, 1, self.customers)

    def _last_name(self):
        return Utils.Lastname(self.utils.NURand(255, 0, min(999, self.customers - 1)))

    def _other_warehouse(self):
        w_id = self.w_id
        while w_id == self.w_id:
            w_id = self.utils.RandomNumber(1, self.warehouses)
        return w_id

    def new_order_params(self):
        ol_cnt = min(self.utils.RandomNumber(TPCCConstants.MIN_OL_CNT, TPCCConstants.MAX_OL_CNT), self.items)
        i_ids = []
        while len(i_ids) < ol_cnt:
            i_id = self.utils.NURand(8191, 1, self.items)
            if i_id not in i_ids:
                i_ids.append(i_id)
        if self.r.random() < INVALID_ITEM_FRACTION:
            # an id nobody loaded forces the rollback
            i_ids[-1] = self.items + 1

        i_w_ids = []
        for _ in i_ids:
            if self.warehouses > 1 and self.r.random() < REMOTE_FRACTION:
                i_w_ids.append(self._other_warehouse())
            else:
                i_w_ids.append(self.w_id)

        return {
            'w_id': self.w_id,
            'd_id': self._district(),
            'c_id': self._customer_id(),
            'o_entry_d': datetime.now(),
            'i_ids': i_ids,
            'i_w_ids': i_w_ids,
            'i_qtys': [self.utils.RandomNumber(1, TPCCConstants.MAX_OL_QUANTITY) for _ in i_ids],
        }

    def payment_params(self):
        d_id = self._district()
        c_w_id, c_d_id = self.w_id, d_id
        if self.warehouses > 1 and self.r.random() < REMOTE_FRACTION:
            c_w_id, c_d_id = self._other_warehouse(), self._district()

        params = {
            'w_id': self.w_id,
            'd_id': d_id,
            'amount': round(self.r.uniform(TPCCConstants.MIN_PAYMENT, TPCCConstants.MAX_PAYMENT), 2),
            'c_w_id': c_w_id,
            'c_d_id': c_d_id,
            'h_date': datetime.now(),
        }
        if self.r.random() < BY_NAME_FRACTION:
            params['c_last'] = self._last_name()
        else:
            params['c_id'] = self._customer_id()
        return params

    def order_status_params(self):
        params = {'w_id': self.w_id, 'd_id': self._district()}
        if self.r.random() < BY_NAME_FRACTION:
            params['c_last'] = self._last_name()
        else:
            params['c_id'] = self._customer_id()
        return params

    def delivery_params(self):
        return {
            'w_id': self.w_id,
            'o_carrier_id': self.utils.RandomNumber(TPCCConstants.MIN_CARRIER_ID, TPCCConstants.MAX_CARRIER_ID),
            'ol_delivery_d': datetime.now(),
            'districts': self.districts,
        }

    def stock_level_params(self):
        return {
            'w_id': self.w_id,
            'd_id': self._district(),
            'threshold': self.utils.RandomNumber(TPCCConstants.MIN_STOCK_LEVEL_THRESHOLD,
                                                 TPCCConstants.MAX_STOCK_LEVEL_THRESHOLD),
        }


def run_worker(executor, generator, count, cancel=None):
    """Run count generated transactions; returns {profile: [committed, failed]}."""
    tally = {name: [0, 0] for name in PROFILES}
    for _ in range(count):
        if cancel is not None and cancel.is_set():
            break
        name, params = generator.next_txn()
        try:
            getattr(executor, PROFILES[name])(cancel=cancel, **params)
        except TPCCError as e:
            logger.debug("%s failed: %s", name, e)
            tally[name][1] += 1
        else:
            tally[name][0] += 1
    return tally


class TPCCTask(threading.Thread):
    def __init__(self, sid, executor, generator, count, cancel=None):
        threading.Thread.__init__(self, name="tpcc-%d" % sid)
        self.sid = sid
        self.executor = executor
        self.generator = generator
        self.count = count
        self.cancel = cancel
        self.tally = {}

    def run(self):
        self.tally = run_worker(self.executor, self.generator, self.count, self.cancel)
        committed = sum(ok for ok, _ in self.tally.values())
        aborted = sum(failed for _, failed in self.tally.values())
        logger.info("Thread %d: Committed %d, Aborted %d", self.sid, committed, aborted)


def load(db, warehouses, batch_size):
    executor = Executor(db, batch_size=batch_size)
    executor.create_schema()
    for w_id in range(1, warehouses + 1):
        LoadData(executor, w_id).loadAll()
    executor.create_indexes()


def parse_args(argv=None):
    parser = argparse.ArgumentParser(description="Run the TPC-C workload against a storage backend.")
    parser.add_argument("--load", action="store_true", help="create the schema and load the initial database")
    parser.add_argument("--driver", default=settings.DRIVER, help="dgraph, sqlite or memory")
    parser.add_argument("--uri", default=settings.URI)
    parser.add_argument("--warehouses", type=int, default=settings.WAREHOUSES)
    parser.add_argument("--threads", type=int, default=settings.THREADS)
    parser.add_argument("--txn-num", type=int, default=settings.TXN_NUM, help="transactions per thread")
    return parser.parse_args(argv)


def main(argv=None):
    args = parse_args(argv)
    setup_logger(settings.LOG_LEVEL, settings.LOG_FILE)

    db = new_database(args.driver, args.uri, settings.DBNAME, settings.TRANSACTIONS, settings.ATOMIC_CLAIM)
    try:
        if args.load:
            logger.info("Loading %d warehouse(s) into %s", args.warehouses, args.driver)
            load(db, args.warehouses, settings.BATCH_SIZE)

        tasks = []
        for i in range(args.threads):
            executor = Executor(db, batch_size=settings.BATCH_SIZE, retries=settings.RETRIES,
                                transaction=settings.TRANSACTIONS)
            generator = TransactionGenerator(i % args.warehouses + 1, args.warehouses)
            tasks.append(TPCCTask(i + 1, executor, generator, args.txn_num))
        start = datetime.now()
        for task in tasks:
            task.start()
        for task in tasks:
            task.join()

        totals = {name: [0, 0] for name in PROFILES}
        for task in tasks:
            for name, (ok, failed) in task.tally.items():
                totals[name][0] += ok
                totals[name][1] += failed
        for name, (ok, failed) in totals.items():
            logger.info("%-16s committed %6d  failed %6d", name, ok, failed)
        logger.info("Elapsed %s", datetime.now() - start)
    finally:
        db.close()
    return 0


if __name__ == '__main__':
    raise SystemExit(main())
