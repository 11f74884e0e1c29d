import logging
import random
import string
from datetime import datetime

from workloads.tpcc.constants import TPCCConstants
from workloads.tpcc.models import Customer, District, History, Item, NewOrder, Order, OrderLine, Stock, Warehouse

logger = logging.getLogger(__name__)


class Utils:
    alphanum = string.digits + string.ascii_uppercase + string.ascii_lowercase
    numeric = string.digits
    syllables = ["BAR", "OUGHT", "ABLE", "PRI", "PRES", "ESE", "ANTI", "CALLY", "ATION", "EING"]

    def __init__(self, r=None):
        self.r = r or random.Random()
        self.random_C_C_LAST = self.r.randint(0, 255)
        self.random_C_C_ID = self.r.randint(0, 1023)
        self.random_C_OL_I_ID = self.r.randint(0, 8191)

    def RandomNumber(self, x, y):
        assert x <= y
        return self.r.randint(x, y)

    def NURand(self, A, x, y):
        if A == 255:
            C = self.random_C_C_LAST
        elif A == 1023:
            C = self.random_C_C_ID
        elif A == 8191:
            C = self.random_C_OL_I_ID
        else:
            raise ValueError("wrong A[%d] in NURand" % A)
        return (((self.RandomNumber(0, A) | self.RandomNumber(x, y)) + C) % (y - x + 1)) + x

    @staticmethod
    def Lastname(num):
        names = Utils.syllables
        ret = names[(num % 1000) // 100]
        ret += names[(num // 10) % 10]
        ret += names[num % 10]
        return ret

    def MakeAlphaString(self, x, y):
        len_str = self.RandomNumber(x, y)
        return ''.join(self.r.choice(Utils.alphanum) for _ in range(len_str))

    def MakeNumberString(self, x, y):
        len_str = self.RandomNumber(x, y)
        return ''.join(self.r.choice(Utils.numeric) for _ in range(len_str))

    def MakeAddress(self):
        a = [
            self.MakeAlphaString(10, 20),  # Street 1
            self.MakeAlphaString(10, 20),  # Street 2
            self.MakeAlphaString(10, 20),  # City
            self.MakeAlphaString(2, 2),    # State
            self.MakeNumberString(9, 9)    # Zip
        ]
        return a

    @staticmethod
    def MakeTimeStamp():
        return datetime.now()

    def MarkOriginal(self, n):
        """Flags for n rows, a tenth of them chosen to carry "ORIGINAL"."""
        orig = [False] * n
        for pos in self.r.sample(range(n), n // 10):
            orig[pos] = True
        return orig

    def MakeData(self, original):
        data = self.MakeAlphaString(26, 50)
        if original:
            pos = self.r.randint(0, len(data) - 8)
            data = data[:pos] + TPCCConstants.ORIGINAL_STRING + data[pos + 8:]
        return data


class LoadData:
    """Populates one warehouse through the executor's batch buffer."""

    def __init__(self, executor, w_id, items=TPCCConstants.MAXITEMS,
                 customers_per_district=TPCCConstants.CUST_PER_DIST,
                 orders_per_district=TPCCConstants.ORD_PER_DIST,
                 districts=TPCCConstants.DIST_PER_WARE, rng=None):
        self.executor = executor
        self.w_id = w_id
        self.items = items
        self.customers = customers_per_district
        self.orders = orders_per_district
        self.districts = districts
        self.utils = Utils(rng)
        self.lastname2customer = {}

    def loadItems(self):
        if self.w_id != 1:
            # all warehouses share a same item table
            return
        logger.info("Loading item...")

        orig = self.utils.MarkOriginal(self.items)
        for i_id in range(1, self.items + 1):
            self.executor.save_batch(TPCCConstants.TBL_Item, Item(
                i_id=i_id,
                i_im_id=self.utils.RandomNumber(1, 10000),
                i_name=self.utils.MakeAlphaString(14, 24),
                i_price=self.utils.RandomNumber(100, 10000) / 100.0,
                i_data=self.utils.MakeData(orig[i_id - 1]),
            ))

        logger.info("Item done")

    def loadWare(self, w_id):
        address = self.utils.MakeAddress()
        self.executor.save_batch(TPCCConstants.TBL_Warehouse, Warehouse(
            w_id, self.utils.MakeAlphaString(6, 10), *address,
            w_tax=self.utils.RandomNumber(0, 2000) / 10000.0,
            w_ytd=300000.0,
        ))

        self.Stock(w_id)
        self.District(w_id)

    def loadCust(self, w_id):
        logger.info("Loading customer for wid: %d ...", w_id)
        for d_id in range(1, self.districts + 1):
            self.Customer(d_id, w_id)

    def Customer(self, d_id, w_id):
        self.lastname2customer = {}
        for c_id in range(1, self.customers + 1):
            c_last = Utils.Lastname(c_id - 1) if c_id <= 1000 else Utils.Lastname(self.utils.NURand(255, 0, 999))
            c_since = Utils.MakeTimeStamp()
            address = self.utils.MakeAddress()
            self.executor.save_batch(TPCCConstants.TBL_Customer, Customer(
                c_id, d_id, w_id,
                c_first=self.utils.MakeAlphaString(8, 16),
                c_middle="OE",
                c_last=c_last,
                c_street_1=address[0],
                c_street_2=address[1],
                c_city=address[2],
                c_state=address[3],
                c_zip=address[4],
                c_phone=self.utils.MakeNumberString(16, 16),
                c_since=c_since,
                c_credit=TPCCConstants.BAD_CREDIT if self.utils.RandomNumber(1, 10) == 1 else TPCCConstants.GOOD_CREDIT,
                c_credit_lim=50000.0,
                c_discount=self.utils.RandomNumber(0, 5000) / 10000.0,
                c_balance=-10.0,
                c_ytd_payment=10.0,
                c_payment_cnt=1,
                c_delivery_cnt=0,
                c_data=self.utils.MakeAlphaString(300, 500),
            ))
            self.executor.save_batch(TPCCConstants.TBL_History, History(
                c_id, d_id, w_id, d_id, w_id,
                h_date=c_since,
                h_amount=10.0,
                h_data=self.utils.MakeAlphaString(12, 24),
            ))
            # last names handed to Payment and Order-Status by name
            self.lastname2customer.setdefault(c_last, []).append(c_id)

    def loadOrd(self, w_id):
        logger.info("Loading Orders for W=%d", w_id)
        for d_id in range(1, self.districts + 1):
            self.Orders(d_id, w_id)

    def Orders(self, d_id, w_id):
        cids = list(range(1, self.customers + 1))
        self.utils.r.shuffle(cids)
        # o_id past this bound is still undelivered
        delivered_up_to = int(self.orders * TPCCConstants.NEW_ORDER_FRACTION)
        for o_id in range(1, self.orders + 1):
            o_entry_d = Utils.MakeTimeStamp()
            undelivered = o_id > delivered_up_to
            o_ol_cnt = self.utils.RandomNumber(TPCCConstants.MIN_OL_CNT, TPCCConstants.MAX_OL_CNT)

            # generate order line data
            order_lines = []
            for ol in range(1, o_ol_cnt + 1):
                order_lines.append(OrderLine(
                    ol_o_id=o_id,
                    ol_d_id=d_id,
                    ol_w_id=w_id,
                    ol_number=ol,
                    ol_i_id=self.utils.RandomNumber(1, self.items),
                    ol_supply_w_id=w_id,
                    ol_quantity=5,
                    ol_amount=0.0 if undelivered else self.utils.RandomNumber(1, 999999) / 100.0,
                    ol_dist_info=self.utils.MakeAlphaString(24, 24),
                    ol_delivery_d=None if undelivered else o_entry_d,
                ))

            self.executor.save_batch(TPCCConstants.TBL_Order, Order(
                o_id=o_id,
                o_d_id=d_id,
                o_w_id=w_id,
                o_c_id=cids[(o_id - 1) % len(cids)],
                o_entry_d=o_entry_d,
                o_carrier_id=None if undelivered else self.utils.RandomNumber(
                    TPCCConstants.MIN_CARRIER_ID, TPCCConstants.MAX_CARRIER_ID),
                o_ol_cnt=o_ol_cnt,
                o_all_local=1,
                order_lines=order_lines,
            ))
            if undelivered:
                self.executor.save_batch(TPCCConstants.TBL_NewOrder, NewOrder(o_id, d_id, w_id))

    def Stock(self, w_id):
        logger.info("Loading stock for w_id: %d", w_id)
        orig = self.utils.MarkOriginal(self.items)
        for s_i_id in range(1, self.items + 1):
            self.executor.save_batch(TPCCConstants.TBL_Stock, Stock(
                s_i_id=s_i_id,
                s_w_id=w_id,
                s_quantity=self.utils.RandomNumber(10, 100),
                s_dist=[self.utils.MakeAlphaString(24, 24) for _ in range(TPCCConstants.DIST_PER_WARE)],
                s_ytd=0,
                s_order_cnt=0,
                s_remote_cnt=0,
                s_data=self.utils.MakeData(orig[s_i_id - 1]),
            ))

    def District(self, w_id):
        logger.info("Loading District for w_id: %d", w_id)
        for d_id in range(1, self.districts + 1):
            address = self.utils.MakeAddress()
            self.executor.save_batch(TPCCConstants.TBL_District, District(
                d_id, w_id, self.utils.MakeAlphaString(6, 10), *address,
                d_tax=self.utils.RandomNumber(0, 2000) / 10000.0,
                d_ytd=30000.0,
                d_next_o_id=self.orders + 1,
            ))

    def loadAll(self):
        self.loadItems()
        self.loadWare(self.w_id)
        self.loadCust(self.w_id)
        self.loadOrd(self.w_id)
        self.executor.flush_all()
        logger.info("Warehouse %d loaded", self.w_id)
