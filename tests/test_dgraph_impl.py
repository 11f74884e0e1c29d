"""Dgraph adapter against a mocked pydgraph client."""
import json
from datetime import datetime
from unittest.mock import MagicMock

import grpc
import pytest
from pydgraph.errors import AbortedError

from workloads.tpcc.dgraph_impl import DgraphDatabase, to_mutation
from workloads.tpcc.constants import TPCCConstants
from workloads.tpcc.errors import ConflictError, NotFoundError, TransportError
from workloads.tpcc.models import Order, OrderLine, Stock


def response(payload):
    res = MagicMock()
    res.json = json.dumps(payload)
    return res


@pytest.fixture
def txn():
    return MagicMock()


@pytest.fixture
def client(txn):
    client = MagicMock()
    client.txn.return_value = txn
    return client


class TestMutations:

    def test_order_expands_to_lines(self):
        order = Order(21, 1, 1, 3, datetime(2024, 1, 1), None, 1, 1,
                      [OrderLine(21, 1, 1, 1, 5, 1, 2, 4.0, "info")])
        order_obj, line_obj = to_mutation(TPCCConstants.TBL_Order, order)

        assert order_obj['dgraph.type'] == 'Order'
        assert order_obj['o_entry_d'] == '2024-01-01T00:00:00'
        assert 'o_carrier_id' not in order_obj
        assert 'order_lines' not in order_obj
        assert line_obj['dgraph.type'] == 'OrderLine'
        assert 'ol_delivery_d' not in line_obj

    def test_stock_district_predicates(self):
        (obj,) = to_mutation(TPCCConstants.TBL_Stock, Stock(1, 2, s_dist=["x"] * 10))
        assert obj['s_dist_07'] == 'x'
        assert obj['dgraph.type'] == 'Stock'


class TestDgraphDatabase:

    def test_increment_commits_own_transaction(self, client, txn):
        txn.query.return_value = response({'node': [{'uid': '0x1', 'd_next_o_id': 21}]})
        db = DgraphDatabase(client=client)

        assert db.increment_district_order_id(1, 2) == 21
        txn.mutate.assert_called_once_with(set_obj={'uid': '0x1', 'd_next_o_id': 22})
        txn.commit.assert_called_once_with()
        txn.discard.assert_called_once_with()
        variables = txn.query.call_args[1]['variables']
        assert variables == {'$w_id': '1', '$d_id': '2'}

    def test_aborted_commit_is_conflict(self, client, txn):
        txn.query.return_value = response({'node': [{'uid': '0x1', 'd_next_o_id': 21}]})
        txn.commit.side_effect = AbortedError
        db = DgraphDatabase(client=client)

        with pytest.raises(ConflictError):
            db.increment_district_order_id(1, 2)
        txn.discard.assert_called_once_with()

    def test_rpc_failure_is_transport_error(self, client, txn):
        txn.query.side_effect = grpc.RpcError()
        db = DgraphDatabase(client=client)

        with pytest.raises(TransportError):
            db.get_warehouse(1)

    def test_reads_use_read_only_transactions(self, client, txn):
        txn.query.return_value = response({'node': [{'uid': '0x5', 'w_id': 1, 'w_name': 'W1', 'w_ytd': 10.0}]})
        db = DgraphDatabase(client=client)

        warehouse = db.get_warehouse(1)
        assert warehouse.w_name == 'W1'
        client.txn.assert_called_once_with(read_only=True)
        txn.commit.assert_not_called()

    def test_missing_customer(self, client, txn):
        txn.query.return_value = response({'node': []})
        db = DgraphDatabase(client=client)

        with pytest.raises(NotFoundError):
            db.get_customer_by_id(1, 1, 1)

    def test_customer_dates_are_parsed(self, client, txn):
        txn.query.return_value = response({'node': [
            {'uid': '0x9', 'c_id': 1, 'c_d_id': 1, 'c_w_id': 1, 'c_since': '2024-01-01T00:00:00Z'}]})
        db = DgraphDatabase(client=client)

        customer = db.get_customer_by_id(1, 1, 1)
        assert customer.c_since.year == 2024

    def test_bracketed_calls_share_transaction(self, client, txn):
        txn.query.return_value = response({'node': [{'uid': '0x1', 'd_next_o_id': 21, 'd_ytd': 5.0}]})
        db = DgraphDatabase(client=client, transactions=True)

        db.start_trx()
        db.increment_district_order_id(1, 1)
        db.update_district_balance(1, 1, 2.5)
        txn.commit.assert_not_called()
        db.commit_trx()

        assert client.txn.call_count == 1
        txn.commit.assert_called_once_with()
        txn.mutate.assert_called_with(set_obj={'uid': '0x1', 'd_ytd': 7.5})

    def test_rollback_discards(self, client, txn):
        db = DgraphDatabase(client=client, transactions=True)
        db.start_trx()
        db.rollback_trx()
        txn.discard.assert_called_once_with()
        txn.commit.assert_not_called()
        # nothing left to roll back
        db.rollback_trx()

    def test_atomic_claim_deletes_node(self, client, txn):
        txn.query.return_value = response({'node': [{'uid': '0x7', 'no_o_id': 2101, 'no_d_id': 3, 'no_w_id': 1}]})
        db = DgraphDatabase(client=client, atomic_claim=True)

        new_order = db.get_new_order(1, 3)
        assert new_order.no_o_id == 2101
        txn.mutate.assert_called_once_with(del_obj={'uid': '0x7'})
        txn.commit.assert_called_once_with()

    def test_empty_queue(self, client, txn):
        txn.query.return_value = response({'node': []})
        db = DgraphDatabase(client=client)
        assert db.get_new_order(1, 3) is None

    def test_get_items_keeps_request_order(self, client, txn):
        txn.query.return_value = response({'node': [{'i_id': 3, 'i_price': 1.5}, {'i_id': 7, 'i_price': 2.0}]})
        db = DgraphDatabase(client=client)

        items = db.get_items([7, 100001, 3])
        assert [item.i_id for item in items] == [7, 3]
        assert 'eq(i_id, [7, 100001, 3])' in txn.query.call_args[0][0]

    def test_stock_count(self, client, txn):
        txn.query.side_effect = [
            response({'node': [{'ol_i_id': 4}, {'ol_i_id': 9}, {'ol_i_id': 4}]}),
            response({'node': [{'s_i_id': 9}]}),
        ]
        db = DgraphDatabase(client=client)

        assert db.get_stock_count(21, 1, 15, 1, 2) == 1
        assert 'eq(s_i_id, [4, 9])' in txn.query.call_args[0][0]

    def test_last_order_with_lines(self, client, txn):
        txn.query.side_effect = [
            response({'node': [{'uid': '0x2', 'o_id': 20, 'o_d_id': 1, 'o_w_id': 1, 'o_c_id': 4}]}),
            response({'node': [{'uid': '0x3', 'ol_o_id': 20, 'ol_d_id': 1, 'ol_w_id': 1, 'ol_number': 1,
                                'ol_i_id': 5, 'ol_supply_w_id': 1, 'ol_quantity': 5, 'ol_amount': 3.0}]}),
        ]
        db = DgraphDatabase(client=client)

        order = db.get_last_order(4, 1, 1)
        assert order.o_id == 20
        assert order.o_carrier_id is None
        lines = db.get_order_lines(20, 1, 1)
        assert lines[0].ol_amount == 3.0
        assert lines[0].ol_delivery_d is None

    def test_update_credit_with_note(self, client, txn):
        txn.query.return_value = response({'node': [
            {'uid': '0x4', 'c_balance': -10.0, 'c_ytd_payment': 10.0, 'c_payment_cnt': 1}]})
        db = DgraphDatabase(client=client)

        db.update_credit(1, 1, 1, 5.0, "note")
        txn.mutate.assert_called_once_with(set_obj={
            'uid': '0x4', 'c_balance': -15.0, 'c_ytd_payment': 15.0, 'c_payment_cnt': 2, 'c_data': 'note'})

    def test_create_order_single_mutation(self, client, txn):
        db = DgraphDatabase(client=client)
        order = Order(21, 1, 1, 3, None, None, 1, 1, [OrderLine(21, 1, 1, 1, 5, 1, 2, 4.0)])

        db.create_order(order)
        objs = txn.mutate.call_args[1]['set_obj']
        assert [obj['dgraph.type'] for obj in objs] == ['Order', 'OrderLine', 'NewOrder']
        txn.commit.assert_called_once_with()

    def test_schema(self, client):
        db = DgraphDatabase(client=client)
        db.create_schema()
        db.create_indexes()
        assert client.alter.call_count == 2
