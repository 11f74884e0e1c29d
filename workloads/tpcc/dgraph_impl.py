import json
import logging
import threading
from contextlib import contextmanager
from datetime import datetime

import grpc
import pydgraph
from pydgraph.errors import AbortedError, ConnectionError, RetriableError

from workloads.tpcc.constants import TPCCConstants
from workloads.tpcc.database import Database
from workloads.tpcc.errors import ConflictError, NotFoundError, TransportError
from workloads.tpcc.models import Customer, District, Item, NewOrder, Order, OrderLine, Stock, Warehouse, \
    median_customer

logger = logging.getLogger(__name__)

DGRAPH_TYPES = {
    TPCCConstants.TBL_Warehouse: 'Warehouse',
    TPCCConstants.TBL_District: 'District',
    TPCCConstants.TBL_Customer: 'Customer',
    TPCCConstants.TBL_History: 'History',
    TPCCConstants.TBL_NewOrder: 'NewOrder',
    TPCCConstants.TBL_Order: 'Order',
    TPCCConstants.TBL_OrderLine: 'OrderLine',
    TPCCConstants.TBL_Item: 'Item',
    TPCCConstants.TBL_Stock: 'Stock',
}

DATE_PREDICATES = ('c_since', 'h_date', 'o_entry_d', 'ol_delivery_d')

SCHEMA = '''
    w_id: int @index(int) .
    w_name: string .
    w_street_1: string .
    w_street_2: string .
    w_city: string .
    w_state: string .
    w_zip: string .
    w_tax: float .
    w_ytd: float .
    type Warehouse {
        w_id
        w_name
        w_street_1
        w_street_2
        w_city
        w_state
        w_zip
        w_tax
        w_ytd
    }

    d_id: int @index(int) .
    d_name: string .
    d_street_1: string .
    d_street_2: string .
    d_city: string .
    d_state: string .
    d_zip: string .
    d_tax: float .
    d_ytd: float .
    d_next_o_id: int @upsert .
    d_w_id: int @index(int) .
    type District {
        d_id
        d_name
        d_street_1
        d_street_2
        d_city
        d_state
        d_zip
        d_tax
        d_ytd
        d_next_o_id
        d_w_id
    }

    c_id: int @index(int) .
    c_first: string .
    c_middle: string .
    c_last: string .
    c_street_1: string .
    c_street_2: string .
    c_city: string .
    c_state: string .
    c_zip: string .
    c_phone: string .
    c_since: datetime .
    c_credit: string .
    c_credit_lim: float .
    c_discount: float .
    c_balance: float .
    c_ytd_payment: float .
    c_payment_cnt: int .
    c_delivery_cnt: int .
    c_data: string .
    c_d_id: int @index(int) .
    c_w_id: int @index(int) .
    type Customer {
        c_id
        c_first
        c_middle
        c_last
        c_street_1
        c_street_2
        c_city
        c_state
        c_zip
        c_phone
        c_since
        c_credit
        c_credit_lim
        c_discount
        c_balance
        c_ytd_payment
        c_payment_cnt
        c_delivery_cnt
        c_data
        c_d_id
        c_w_id
    }

    o_id: int @index(int) .
    o_entry_d: datetime .
    o_carrier_id: int .
    o_ol_cnt: int .
    o_all_local: int .
    o_c_id: int .
    o_d_id: int @index(int) .
    o_w_id: int @index(int) .
    type Order {
        o_id
        o_entry_d
        o_carrier_id
        o_ol_cnt
        o_all_local
        o_c_id
        o_d_id
        o_w_id
    }

    ol_number: int .
    ol_i_id: int .
    ol_supply_w_id: int .
    ol_delivery_d: datetime .
    ol_quantity: int .
    ol_amount: float .
    ol_dist_info: string .
    ol_o_id: int @index(int) .
    ol_d_id: int @index(int) .
    ol_w_id: int @index(int) .
    type OrderLine {
        ol_number
        ol_i_id
        ol_supply_w_id
        ol_delivery_d
        ol_quantity
        ol_amount
        ol_dist_info
        ol_o_id
        ol_d_id
        ol_w_id
    }

    no_o_id: int @index(int) @upsert .
    no_d_id: int @index(int) .
    no_w_id: int @index(int) .
    type NewOrder {
        no_o_id
        no_d_id
        no_w_id
    }

    i_id: int @index(int) .
    i_name: string .
    i_price: float .
    i_im_id: int .
    i_data: string .
    type Item {
        i_id
        i_name
        i_price
        i_im_id
        i_data
    }

    s_quantity: int @index(int) .
    s_ytd: int .
    s_order_cnt: int .
    s_remote_cnt: int .
    s_data: string .
    s_dist_01: string .
    s_dist_02: string .
    s_dist_03: string .
    s_dist_04: string .
    s_dist_05: string .
    s_dist_06: string .
    s_dist_07: string .
    s_dist_08: string .
    s_dist_09: string .
    s_dist_10: string .
    s_i_id: int @index(int) .
    s_w_id: int @index(int) .
    type Stock {
        s_quantity
        s_ytd
        s_order_cnt
        s_remote_cnt
        s_data
        s_dist_01
        s_dist_02
        s_dist_03
        s_dist_04
        s_dist_05
        s_dist_06
        s_dist_07
        s_dist_08
        s_dist_09
        s_dist_10
        s_i_id
        s_w_id
    }

    h_date: datetime .
    h_amount: float .
    h_data: string .
    h_c_id: int .
    h_c_d_id: int .
    h_c_w_id: int .
    h_d_id: int .
    h_w_id: int @index(int) .
    type History {
        h_date
        h_amount
        h_data
        h_c_id
        h_c_d_id
        h_c_w_id
        h_d_id
        h_w_id
    }
'''

INDEXES = '''
    c_last: string @index(hash) .
    o_c_id: int @index(int) .
'''

QUERIES = {
    'warehouse': '''
        query q($w_id: int) {
            node(func: eq(w_id, $w_id)) @filter(type(Warehouse)) {
                uid
                expand(_all_)
            }
        }
    ''',
    'district': '''
        query q($w_id: int, $d_id: int) {
            node(func: eq(d_id, $d_id)) @filter(eq(d_w_id, $w_id)) {
                uid
                expand(_all_)
            }
        }
    ''',
    'customer': '''
        query q($w_id: int, $d_id: int, $c_id: int) {
            node(func: eq(c_id, $c_id)) @filter(eq(c_w_id, $w_id) AND eq(c_d_id, $d_id)) {
                uid
                expand(_all_)
            }
        }
    ''',
    'customer_by_name': '''
        query q($w_id: int, $d_id: int, $c_last: string) {
            node(func: eq(c_last, $c_last)) @filter(eq(c_w_id, $w_id) AND eq(c_d_id, $d_id)) {
                uid
                expand(_all_)
            }
        }
    ''',
    'order': '''
        query q($w_id: int, $d_id: int, $o_id: int) {
            node(func: eq(o_id, $o_id)) @filter(eq(o_w_id, $w_id) AND eq(o_d_id, $d_id)) {
                uid
                expand(_all_)
            }
        }
    ''',
    'last_order': '''
        query q($w_id: int, $d_id: int, $c_id: int) {
            node(func: eq(o_c_id, $c_id), orderdesc: o_id, first: 1) @filter(eq(o_w_id, $w_id) AND eq(o_d_id, $d_id)) {
                uid
                expand(_all_)
            }
        }
    ''',
    'order_lines': '''
        query q($w_id: int, $d_id: int, $o_id: int) {
            node(func: eq(ol_o_id, $o_id), orderasc: ol_number) @filter(eq(ol_w_id, $w_id) AND eq(ol_d_id, $d_id)) {
                uid
                expand(_all_)
            }
        }
    ''',
    'oldest_new_order': '''
        query q($w_id: int, $d_id: int) {
            node(func: eq(no_w_id, $w_id), orderasc: no_o_id, first: 1) @filter(eq(no_d_id, $d_id)) {
                uid
                expand(_all_)
            }
        }
    ''',
    'new_order': '''
        query q($w_id: int, $d_id: int, $o_id: int) {
            node(func: eq(no_o_id, $o_id)) @filter(eq(no_w_id, $w_id) AND eq(no_d_id, $d_id)) {
                uid
            }
        }
    ''',
    'recent_items': '''
        query q($w_id: int, $d_id: int, $o_id_ge: int, $o_id_lt: int) {
            node(func: ge(ol_o_id, $o_id_ge)) @filter(lt(ol_o_id, $o_id_lt) AND eq(ol_w_id, $w_id) AND eq(ol_d_id, $d_id)) {
                ol_i_id
            }
        }
    ''',
}


def create_client_stub(uri="localhost:9080"):
    return pydgraph.DgraphClientStub(uri)


def create_client(client_stub):
    return pydgraph.DgraphClient(client_stub)


def to_mutation(table, row):
    """JSON objects for one row; an order expands to itself plus its lines."""
    doc = row.to_doc()
    lines = doc.pop('order_lines', [])
    objs = [dict(encode(doc), **{'dgraph.type': DGRAPH_TYPES[table]})]
    for line in lines:
        objs.append(dict(encode(line), **{'dgraph.type': DGRAPH_TYPES[TPCCConstants.TBL_OrderLine]}))
    return objs


def encode(doc):
    # unset predicates are left out of the mutation
    return {k: (v.isoformat() if isinstance(v, datetime) else v) for k, v in doc.items() if v is not None}


def decode(doc):
    for predicate in DATE_PREDICATES:
        value = doc.get(predicate)
        if isinstance(value, str):
            doc[predicate] = datetime.fromisoformat(value.replace('Z', '+00:00'))
    return doc


@contextmanager
def translated():
    """Re-raise pydgraph and gRPC failures as TPC-C errors."""
    try:
        yield
    except AbortedError as e:
        logger.debug('dgraph aborted: %s', e)
        raise ConflictError(str(e)) from e
    except (RetriableError, ConnectionError, grpc.RpcError) as e:
        logger.debug('dgraph transport failure: %s', e)
        raise TransportError(str(e)) from e


class DgraphDatabase(Database):
    """Graph backend on Dgraph, talking gRPC through pydgraph.

    Every entity is a node typed after its table and keyed by its TPC-C ids.
    Read-modify-write steps (the district counter, balances, the NewOrder
    claim) run inside one Dgraph transaction; Dgraph aborts the loser of two
    overlapping writers at commit, which surfaces as ``ConflictError``.
    """

    def __init__(self, uri="localhost:9080", transactions=False, atomic_claim=False, client=None):
        super().__init__(transactions, atomic_claim)
        self.client_stub = None
        if client is None:
            self.client_stub = create_client_stub(uri)
            client = create_client(self.client_stub)
        self.client = client
        self._local = threading.local()

    @contextmanager
    def _txn(self, read_only=False):
        bracketed = getattr(self._local, 'txn', None)
        if bracketed is not None:
            with translated():
                yield bracketed
            return

        txn = self.client.txn(read_only=read_only)
        try:
            with translated():
                yield txn
                if not read_only:
                    txn.commit()
        finally:
            txn.discard()

    @staticmethod
    def _query(txn, name, **variables):
        res = txn.query(QUERIES[name], variables={'$' + k: str(v) for k, v in variables.items()})
        return json.loads(res.json)['node']

    def _one(self, txn, name, **variables):
        nodes = self._query(txn, name, **variables)
        if not nodes:
            raise NotFoundError('%s %s' % (name, variables))
        return decode(nodes[0])

    # ---------------------- transaction bracketing ----------------------
    def start_trx(self):
        self._local.txn = self.client.txn()

    def commit_trx(self):
        txn = getattr(self._local, 'txn', None)
        self._local.txn = None
        if txn is None:
            return
        try:
            with translated():
                txn.commit()
        finally:
            txn.discard()

    def rollback_trx(self):
        txn = getattr(self._local, 'txn', None)
        self._local.txn = None
        if txn is not None:
            txn.discard()

    # ---------------------- bootstrap ----------------------
    def create_schema(self):
        with translated():
            return self.client.alter(pydgraph.Operation(schema=SCHEMA))

    def create_indexes(self):
        with translated():
            return self.client.alter(pydgraph.Operation(schema=INDEXES))

    # ---------------------- inserts ----------------------
    def insert_one(self, table, row):
        with self._txn() as txn:
            txn.mutate(set_obj=to_mutation(table, row))

    def insert_batch(self, table, rows):
        objs = []
        for row in rows:
            objs.extend(to_mutation(table, row))
        with self._txn() as txn:
            txn.mutate(set_obj=objs)
        logger.debug('Loaded %d tuples for tableName %s', len(rows), table)

    # ---------------------- new order ----------------------
    def increment_district_order_id(self, w_id, d_id):
        with self._txn() as txn:
            district = self._one(txn, 'district', w_id=w_id, d_id=d_id)
            d_next_o_id = district['d_next_o_id']
            txn.mutate(set_obj={
                'uid': district['uid'],
                'd_next_o_id': d_next_o_id + 1
            })
        return d_next_o_id

    def get_customer_by_id(self, c_id, w_id, d_id):
        with self._txn(read_only=True) as txn:
            return Customer.from_doc(self._one(txn, 'customer', w_id=w_id, d_id=d_id, c_id=c_id))

    def get_items(self, i_ids):
        if not i_ids:
            return []
        query = '''
        {
            node(func: eq(i_id, [%s])) @filter(type(Item)) {
                expand(_all_)
            }
        }
        ''' % ', '.join(str(int(i_id)) for i_id in i_ids)
        with self._txn(read_only=True) as txn:
            nodes = json.loads(txn.query(query).json)['node']
        by_id = {node['i_id']: Item.from_doc(node) for node in nodes}
        return [by_id[i_id] for i_id in i_ids if i_id in by_id]

    def get_stock_info(self, d_id, i_ids, i_w_ids):
        if not i_ids:
            return []
        blocks = []
        for idx, (i_id, i_w_id) in enumerate(zip(i_ids, i_w_ids)):
            blocks.append('''
            s%d(func: eq(s_i_id, %d)) @filter(eq(s_w_id, %d)) {
                expand(_all_)
            }''' % (idx, int(i_id), int(i_w_id)))
        query = '{%s\n}' % ''.join(blocks)
        with self._txn(read_only=True) as txn:
            data = json.loads(txn.query(query).json)
        stocks = []
        for idx in range(len(blocks)):
            nodes = data.get('s%d' % idx)
            if nodes:
                stocks.append(Stock.from_doc(nodes[0]))
        return stocks

    def update_stocks(self, stocks):
        with self._txn() as txn:
            for s in stocks:
                node = self._one_stock(txn, s.s_i_id, s.s_w_id)
                txn.mutate(set_obj={
                    'uid': node['uid'],
                    's_quantity': s.s_quantity,
                    's_ytd': s.s_ytd,
                    's_order_cnt': s.s_order_cnt,
                    's_remote_cnt': s.s_remote_cnt
                })

    def _one_stock(self, txn, i_id, w_id):
        query = '''
        {
            node(func: eq(s_i_id, %d)) @filter(eq(s_w_id, %d)) {
                uid
            }
        }
        ''' % (int(i_id), int(w_id))
        nodes = json.loads(txn.query(query).json)['node']
        if not nodes:
            raise NotFoundError('stock %d/%d' % (w_id, i_id))
        return nodes[0]

    def create_order(self, order):
        objs = to_mutation(TPCCConstants.TBL_Order, order)
        objs.extend(to_mutation(TPCCConstants.TBL_NewOrder, NewOrder(order.o_id, order.o_d_id, order.o_w_id)))
        with self._txn() as txn:
            txn.mutate(set_obj=objs)

    # ---------------------- delivery ----------------------
    def get_new_order(self, w_id, d_id):
        with self._txn(read_only=not self.atomic_claim) as txn:
            nodes = self._query(txn, 'oldest_new_order', w_id=w_id, d_id=d_id)
            if not nodes:
                return None
            if self.atomic_claim:
                # two claimers deleting the same node conflict at commit
                txn.mutate(del_obj={'uid': nodes[0]['uid']})
        return NewOrder.from_doc(nodes[0])

    def check_new_order(self, w_id, d_id):
        with self._txn(read_only=True) as txn:
            nodes = self._query(txn, 'oldest_new_order', w_id=w_id, d_id=d_id)
        return NewOrder.from_doc(nodes[0]) if nodes else None

    def delete_new_order(self, o_id, w_id, d_id):
        if self.atomic_claim:
            return
        with self._txn() as txn:
            node = self._one(txn, 'new_order', w_id=w_id, d_id=d_id, o_id=o_id)
            txn.mutate(del_obj={'uid': node['uid']})

    def get_customer_id_order(self, o_id, w_id, d_id):
        with self._txn(read_only=True) as txn:
            return self._one(txn, 'order', w_id=w_id, d_id=d_id, o_id=o_id)['o_c_id']

    def update_orders(self, o_id, w_id, d_id, carrier_id, delivery_d):
        with self._txn() as txn:
            order = self._one(txn, 'order', w_id=w_id, d_id=d_id, o_id=o_id)
            lines = self._query(txn, 'order_lines', w_id=w_id, d_id=d_id, o_id=o_id)
            objs = [{'uid': order['uid'], 'o_carrier_id': carrier_id}]
            for line in lines:
                objs.append({'uid': line['uid'], 'ol_delivery_d': delivery_d.isoformat()})
            txn.mutate(set_obj=objs)

    def sum_ol_amount(self, o_id, w_id, d_id):
        with self._txn(read_only=True) as txn:
            lines = self._query(txn, 'order_lines', w_id=w_id, d_id=d_id, o_id=o_id)
        if not lines:
            raise NotFoundError('order lines of %d/%d/%d' % (w_id, d_id, o_id))
        return sum(line['ol_amount'] for line in lines)

    def update_customer(self, c_id, w_id, d_id, amount):
        with self._txn() as txn:
            customer = self._one(txn, 'customer', w_id=w_id, d_id=d_id, c_id=c_id)
            txn.mutate(set_obj={
                'uid': customer['uid'],
                'c_balance': customer['c_balance'] + amount,
                'c_delivery_cnt': customer['c_delivery_cnt'] + 1
            })

    # ---------------------- stock level ----------------------
    def get_next_order_id(self, w_id, d_id):
        with self._txn(read_only=True) as txn:
            return self._one(txn, 'district', w_id=w_id, d_id=d_id)['d_next_o_id']

    def get_stock_count(self, o_id_lt, o_id_ge, threshold, w_id, d_id):
        with self._txn(read_only=True) as txn:
            lines = self._query(txn, 'recent_items', w_id=w_id, d_id=d_id, o_id_ge=o_id_ge, o_id_lt=o_id_lt)
            i_ids = sorted({line['ol_i_id'] for line in lines})
            if not i_ids:
                return 0
            query = '''
            {
                node(func: eq(s_i_id, [%s])) @filter(eq(s_w_id, %d) AND lt(s_quantity, %d)) {
                    s_i_id
                }
            }
            ''' % (', '.join(str(i_id) for i_id in i_ids), int(w_id), int(threshold))
            stocks = json.loads(txn.query(query).json)['node']
        return len({s['s_i_id'] for s in stocks})

    # ---------------------- order status ----------------------
    def get_customer_by_name(self, c_last, w_id, d_id):
        with self._txn(read_only=True) as txn:
            nodes = self._query(txn, 'customer_by_name', w_id=w_id, d_id=d_id, c_last=c_last)
        return median_customer([Customer.from_doc(decode(node)) for node in nodes])

    def get_last_order(self, c_id, w_id, d_id):
        with self._txn(read_only=True) as txn:
            nodes = self._query(txn, 'last_order', w_id=w_id, d_id=d_id, c_id=c_id)
        if not nodes:
            raise NotFoundError('no order for customer %d/%d/%d' % (w_id, d_id, c_id))
        return Order.from_doc(decode(nodes[0]))

    def get_order_lines(self, o_id, w_id, d_id):
        with self._txn(read_only=True) as txn:
            lines = self._query(txn, 'order_lines', w_id=w_id, d_id=d_id, o_id=o_id)
        return [OrderLine.from_doc(decode(line)) for line in lines]

    # ---------------------- payment ----------------------
    def get_warehouse(self, w_id):
        with self._txn(read_only=True) as txn:
            return Warehouse.from_doc(self._one(txn, 'warehouse', w_id=w_id))

    def update_warehouse_balance(self, w_id, amount):
        with self._txn() as txn:
            warehouse = self._one(txn, 'warehouse', w_id=w_id)
            txn.mutate(set_obj={
                'uid': warehouse['uid'],
                'w_ytd': warehouse['w_ytd'] + amount
            })

    def get_district(self, w_id, d_id):
        with self._txn(read_only=True) as txn:
            return District.from_doc(self._one(txn, 'district', w_id=w_id, d_id=d_id))

    def update_district_balance(self, w_id, d_id, amount):
        with self._txn() as txn:
            district = self._one(txn, 'district', w_id=w_id, d_id=d_id)
            txn.mutate(set_obj={
                'uid': district['uid'],
                'd_ytd': district['d_ytd'] + amount
            })

    def insert_history(self, history):
        self.insert_one(TPCCConstants.TBL_History, history)

    def update_credit(self, c_id, w_id, d_id, amount, data):
        with self._txn() as txn:
            customer = self._one(txn, 'customer', w_id=w_id, d_id=d_id, c_id=c_id)
            update = {
                'uid': customer['uid'],
                'c_balance': customer['c_balance'] - amount,
                'c_ytd_payment': customer['c_ytd_payment'] + amount,
                'c_payment_cnt': customer['c_payment_cnt'] + 1
            }
            if data:
                update['c_data'] = data
            txn.mutate(set_obj=update)

    def close(self):
        if self.client_stub is not None:
            self.client_stub.close()
