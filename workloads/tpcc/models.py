from dataclasses import asdict, dataclass, field, fields
from datetime import datetime
from typing import List, Optional

from workloads.tpcc.constants import TPCCConstants
from workloads.tpcc.errors import NotFoundError


class Model:
    """Row helpers shared by the entity dataclasses.

    Documents are plain dicts keyed by the lowercase TPC-C column names, the
    shape every backend stores (Dgraph predicates, SQLite columns, memory
    documents).
    """

    def to_doc(self) -> dict:
        return asdict(self)

    @classmethod
    def from_doc(cls, doc: dict):
        names = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in doc.items() if k in names})


@dataclass
class Warehouse(Model):
    w_id: int
    w_name: str = ""
    w_street_1: str = ""
    w_street_2: str = ""
    w_city: str = ""
    w_state: str = ""
    w_zip: str = ""
    w_tax: float = 0.0
    w_ytd: float = 0.0


@dataclass
class District(Model):
    d_id: int
    d_w_id: int
    d_name: str = ""
    d_street_1: str = ""
    d_street_2: str = ""
    d_city: str = ""
    d_state: str = ""
    d_zip: str = ""
    d_tax: float = 0.0
    d_ytd: float = 0.0
    d_next_o_id: int = 1


@dataclass
class Customer(Model):
    c_id: int
    c_d_id: int
    c_w_id: int
    c_first: str = ""
    c_middle: str = ""
    c_last: str = ""
    c_street_1: str = ""
    c_street_2: str = ""
    c_city: str = ""
    c_state: str = ""
    c_zip: str = ""
    c_phone: str = ""
    c_since: Optional[datetime] = None
    c_credit: str = TPCCConstants.GOOD_CREDIT
    c_credit_lim: float = 0.0
    c_discount: float = 0.0
    c_balance: float = 0.0
    c_ytd_payment: float = 0.0
    c_payment_cnt: int = 0
    c_delivery_cnt: int = 0
    c_data: str = ""


@dataclass
class OrderLine(Model):
    ol_o_id: int
    ol_d_id: int
    ol_w_id: int
    ol_number: int
    ol_i_id: int
    ol_supply_w_id: int
    ol_quantity: int
    ol_amount: float
    ol_dist_info: str = ""
    ol_delivery_d: Optional[datetime] = None


@dataclass
class Order(Model):
    o_id: int
    o_d_id: int
    o_w_id: int
    o_c_id: int
    o_entry_d: Optional[datetime] = None
    o_carrier_id: Optional[int] = None
    o_ol_cnt: int = 0
    o_all_local: int = 1
    order_lines: List[OrderLine] = field(default_factory=list)

    def to_doc(self) -> dict:
        doc = asdict(self)
        doc["order_lines"] = [line.to_doc() for line in self.order_lines]
        return doc

    @classmethod
    def from_doc(cls, doc: dict):
        order = super().from_doc(doc)
        order.order_lines = sorted(
            (OrderLine.from_doc(line) if isinstance(line, dict) else line for line in doc.get("order_lines", [])),
            key=lambda line: line.ol_number)
        return order


@dataclass
class NewOrder(Model):
    no_o_id: int
    no_d_id: int
    no_w_id: int


@dataclass
class Item(Model):
    i_id: int
    i_im_id: int = 0
    i_name: str = ""
    i_price: float = 0.0
    i_data: str = ""


@dataclass
class Stock(Model):
    s_i_id: int
    s_w_id: int
    s_quantity: int = 0
    s_dist: List[str] = field(default_factory=lambda: [""] * TPCCConstants.DIST_PER_WARE)
    s_ytd: int = 0
    s_order_cnt: int = 0
    s_remote_cnt: int = 0
    s_data: str = ""

    def dist_info(self, d_id: int) -> str:
        if not 1 <= d_id <= len(self.s_dist):
            raise ValueError("no district info for district %d" % d_id)
        return self.s_dist[d_id - 1]

    def to_doc(self) -> dict:
        doc = asdict(self)
        del doc["s_dist"]
        for i, info in enumerate(self.s_dist):
            doc["s_dist_%02d" % (i + 1)] = info
        return doc

    @classmethod
    def from_doc(cls, doc: dict):
        stock = super().from_doc(doc)
        if "s_dist" not in doc:
            stock.s_dist = [doc.get("s_dist_%02d" % (i + 1), "") for i in range(TPCCConstants.DIST_PER_WARE)]
        return stock


@dataclass
class History(Model):
    h_c_id: int
    h_c_d_id: int
    h_c_w_id: int
    h_d_id: int
    h_w_id: int
    h_date: Optional[datetime] = None
    h_amount: float = 0.0
    h_data: str = ""


def restock_quantity(s_quantity: int, ol_quantity: int) -> int:
    if s_quantity >= ol_quantity + TPCCConstants.RESTOCK_MARGIN:
        return s_quantity - ol_quantity
    return s_quantity + TPCCConstants.RESTOCK_AMOUNT - ol_quantity


def median_customer(customers: List[Customer]) -> Customer:
    """Pick the customer at position (n - 1) // 2 after sorting by first name.

    Ties on the first name fall back to the customer id so that every backend
    resolves the same candidate set to the same customer.
    """
    if not customers:
        raise NotFoundError("no customer with that last name")
    ordered = sorted(customers, key=lambda c: (c.c_first, c.c_id))
    return ordered[(len(ordered) - 1) // 2]


def payment_note(c_id, c_d_id, c_w_id, d_id, w_id, amount, c_data, length=TPCCConstants.MAX_C_DATA) -> str:
    note = "%s %s %s %s %s %s|%s" % (c_id, c_d_id, c_w_id, d_id, w_id, amount, c_data)
    return note[:length]
