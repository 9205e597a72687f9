# Overview: Pytest coverage for the JSON API routes.

from datetime import timedelta

from boutique.services import payment_groups, stock_ledger
from boutique.time_utils import utcnow


class TestSystemRoutes:
    def test_health(self, client, db_session):
        response = client.get('/api/system/health')
        assert response.status_code == 200
        assert response.json['status'] == 'healthy'
        assert response.json['timestamp'].endswith('Z')
        assert response.json['checks']['checkout_queue']['details']['pending'] == 0


class TestBatchRoutes:
    def test_create_and_read_batch(self, client, db_session):
        response = client.post('/api/batches', json={
            'id': 'batch_1',
            'products': [{'id': 'P1', 'stock': 3, 'name': 'Tote'}],
        })
        assert response.status_code == 201

        response = client.get('/api/batches/batch_1')
        assert response.status_code == 200
        assert response.json['products'][0]['name'] == 'Tote'

        listed = client.get('/api/batches').json['batches']
        assert listed[0]['product_count'] == 1

    def test_duplicate_product_conflicts(self, client, stocked_batch):
        response = client.post('/api/batches', json={'id': 'batch_2', 'products': [{'id': 'P1'}]})
        assert response.status_code == 409

    def test_invalid_batch_payload(self, client, db_session):
        assert client.post('/api/batches', json={'products': []}).status_code == 400
        assert client.post('/api/batches', json={'id': 'b', 'products': {}}).status_code == 400

    def test_missing_batch(self, client, db_session):
        assert client.get('/api/batches/batch_404').status_code == 404

    def test_stock_query(self, client, stocked_batch):
        response = client.get('/api/batches/products/V1/stock?size=M&color=Black')
        assert response.status_code == 200
        assert response.json['batch_id'] == 'batch_1'
        assert response.json['stock'] == 6
        assert response.json['available'] == 2

        assert client.get('/api/batches/products/P404/stock').status_code == 404
        assert client.get('/api/batches/products/V1/stock?size=M').status_code == 400

    def test_adjust_and_movements(self, client, stocked_batch):
        response = client.post('/api/batches/batch_1/products/P1/adjust', json={'delta': -2, 'note': 'damaged'})
        assert response.status_code == 200
        assert response.json['stock'] == 3

        too_much = client.post('/api/batches/batch_1/products/P1/adjust', json={'delta': -4})
        assert too_much.status_code == 400

        movements = client.get('/api/batches/products/P1/movements').json['movements']
        assert [m['reason'] for m in movements] == ['adjustment']
        assert movements[0]['note'] == 'damaged'

    def test_adjust_validation(self, client, stocked_batch):
        assert client.post('/api/batches/batch_1/products/P1/adjust', json={}).status_code == 400
        assert client.post('/api/batches/batch_1/products/P1/adjust', json={'delta': 1.5}).status_code == 400
        assert client.post('/api/batches/batch_1/products/P404/adjust', json={'delta': 1}).status_code == 404


class TestCheckoutRoutes:
    def test_enqueue_then_drain(self, client, stocked_batch):
        response = client.post('/api/checkout/items', json={
            'order_id': 'ORD-1',
            'user_id': 'u-1',
            'product_id': 'V1',
            'quantity': 2,
            'variant': {'size': 'M', 'color': 'Black'},
        })
        assert response.status_code == 202
        item_id = response.json['item_id']

        drained = client.post('/api/checkout/drain', json={})
        assert drained.status_code == 200
        assert drained.json['completed'] == [item_id]

        item = client.get(f'/api/checkout/items/{item_id}').json
        assert item['status'] == 'completed'
        assert item['variant'] == {'size': 'M', 'color': 'Black'}

        report = client.get('/api/checkout/orders/ORD-1').json
        assert report['status'] == 'completed'

    def test_enqueue_validation(self, client, db_session):
        base = {'order_id': 'ORD-1', 'user_id': 'u-1', 'product_id': 'P1'}
        assert client.post('/api/checkout/items', json=base).status_code == 400
        assert client.post('/api/checkout/items', json=dict(base, quantity=0)).status_code == 400
        assert client.post('/api/checkout/items', json=dict(base, quantity='2.5')).status_code == 400
        assert client.post('/api/checkout/items', json=dict(base, quantity=1, status='completed')).status_code == 400
        assert client.post('/api/checkout/items', json=dict(base, quantity=1, variant={'size': 'M'})).status_code == 400

    def test_failed_item_retry(self, client, stocked_batch):
        item_id = client.post('/api/checkout/items', json={
            'order_id': 'ORD-1', 'user_id': 'u-1', 'product_id': 'P1', 'quantity': '9',
        }).json['item_id']
        client.post('/api/checkout/drain', json={'limit': 10})

        item = client.get(f'/api/checkout/items/{item_id}').json
        assert item['status'] == 'failed'
        assert 'Insufficient stock' in item['error']

        retried = client.post(f'/api/checkout/items/{item_id}/retry')
        assert retried.status_code == 200
        assert retried.json['status'] == 'pending'
        assert client.post(f'/api/checkout/items/{item_id}/retry').status_code == 409
        assert client.post('/api/checkout/items/999/retry').status_code == 404

    def test_stats_and_listing(self, client, stocked_batch):
        client.post('/api/checkout/items', json={
            'order_id': 'ORD-1', 'user_id': 'u-1', 'product_id': 'P1', 'quantity': 1,
        })
        stats = client.get('/api/checkout/stats').json
        assert stats['counts']['pending'] == 1
        assert stats['draining'] is False
        assert len(client.get('/api/checkout/items?status=pending').json['items']) == 1
        assert client.get('/api/checkout/items?status=bogus').status_code == 400
        assert client.get('/api/checkout/items/12345').status_code == 404


class TestOrderRoutes:
    def test_create_enqueue_and_cancel(self, client, stocked_batch):
        response = client.post('/api/orders', json={
            'id': 'ORD-1',
            'user_id': 'u-1',
            'final_total': 500000,
            'enqueue': True,
            'lines': [{'product_id': 'P1', 'quantity': 2}],
        })
        assert response.status_code == 201
        assert len(response.json['queue_item_ids']) == 1
        assert response.json['order']['expires_at'].endswith('Z')

        client.post('/api/checkout/drain', json={})
        assert stock_ledger.get_stock('P1') == 3

        cancelled = client.post('/api/orders/ORD-1/cancel', json={'reason': 'customer request'})
        assert cancelled.status_code == 200
        assert cancelled.json['complete'] is True
        assert cancelled.json['order']['status'] == 'cancelled'
        assert stock_ledger.get_stock('P1') == 5

        again = client.post('/api/orders/ORD-1/cancel', json={})
        assert again.json['already_cancelled'] is True
        assert stock_ledger.get_stock('P1') == 5

    def test_status_transitions(self, client, order_factory):
        order_factory('ORD-1')
        assert client.post('/api/orders/ORD-1/status', json={'status': 'shipped'}).status_code == 409
        assert client.post('/api/orders/ORD-1/status', json={'status': 'paid'}).status_code == 200
        assert client.post('/api/orders/ORD-1/status', json={'status': 'bogus'}).status_code == 400
        assert client.post('/api/orders/ORD-404/status', json={'status': 'paid'}).status_code == 404
        assert client.get('/api/orders/ORD-1').json['status'] == 'paid'
        assert [o['id'] for o in client.get('/api/orders?status=paid').json['orders']] == ['ORD-1']

    def test_create_validation(self, client, db_session):
        assert client.post('/api/orders', json={'user_id': 'u-1', 'lines': []}).status_code == 400
        assert client.post('/api/orders', json={
            'user_id': 'u-1', 'lines': [{'product_id': 'P1', 'quantity': 1}], 'customer_role': 'vip',
        }).status_code == 400

    def test_check_expiry(self, client, order_factory):
        order_factory('ORD-1', expires_at=utcnow() - timedelta(minutes=5))
        response = client.post('/api/orders/check-expiry', json={})
        assert response.json['cancelled'] == ['ORD-1']


class TestPaymentGroupRoutes:
    def test_group_flow(self, client, order_factory, monkeypatch):
        order_factory('ORD-1', final_total=100000)
        order_factory('ORD-2', final_total=50000)
        monkeypatch.setattr(payment_groups, 'generate_unique_payment_code', lambda exclude=frozenset(): 47)

        created = client.post('/api/payment-groups', json={
            'user_id': 'u-1', 'order_ids': ['ORD-1', 'ORD-2'], 'verification_mode': 'auto',
        })
        assert created.status_code == 201
        group_id = created.json['id']
        assert created.json['exact_payment_amount'] == 150047
        assert created.json['amount_display']['code'] == '47'

        reused = client.post('/api/payment-groups', json={'user_id': 'u-1', 'order_ids': ['ORD-2', 'ORD-1']})
        assert reused.status_code == 200
        assert reused.json['id'] == group_id

        assert client.post('/api/payment-groups/match', json={'amount': 150047}).json['id'] == group_id
        assert client.post('/api/payment-groups/transfers', json={'amount': 150000}).status_code == 404

        paid = client.post('/api/payment-groups/transfers', json={'amount': 150047})
        assert paid.status_code == 200
        assert paid.json['paid_order_ids'] == ['ORD-1', 'ORD-2']
        assert client.get('/api/orders/ORD-1').json['status'] == 'paid'

    def test_transfer_review_and_manual_mode(self, client, order_factory, monkeypatch):
        order_factory('ORD-1', final_total=100000)
        order_factory('ORD-2', user_id='u-2', final_total=100000)
        codes = iter([47, 48])
        monkeypatch.setattr(payment_groups, 'generate_unique_payment_code', lambda exclude=frozenset(): next(codes))

        auto = client.post('/api/payment-groups', json={
            'user_id': 'u-1', 'order_ids': ['ORD-1'], 'verification_mode': 'auto', 'user_name': 'Rina Putri',
        }).json
        client.post('/api/payment-groups', json={
            'user_id': 'u-2', 'order_ids': ['ORD-2'], 'verification_mode': 'manual',
        })

        review = client.post('/api/payment-groups/transfers', json={'amount': 100047, 'sender_name': 'Budi Santoso'})
        assert review.status_code == 202
        assert review.json['settled'] is False
        assert client.get(f"/api/payment-groups/{auto['id']}").json['status'] == 'pending'

        assert client.post('/api/payment-groups/transfers', json={'amount': 100048}).status_code == 404
        assert client.post('/api/payment-groups/match', json={'amount': 100048}).status_code == 200
        assert client.post('/api/payment-groups/transfers', json={'amount': 100047, 'sender_name': 7}).status_code == 400

    def test_mismatch_and_cancel(self, client, order_factory):
        order_factory('ORD-1', final_total=100000)
        order_factory('ORD-2', final_total=50000)
        group_id = client.post('/api/payment-groups', json={'user_id': 'u-1', 'order_ids': ['ORD-1']}).json['id']

        mismatch = client.post('/api/payment-groups', json={'user_id': 'u-1', 'order_ids': ['ORD-1', 'ORD-2']})
        assert mismatch.status_code == 409
        assert mismatch.json['group']['id'] == group_id

        switched = client.patch(f'/api/payment-groups/{group_id}', json={'verification_mode': 'manual'})
        assert switched.json['status'] == 'pending'

        cancelled = client.post(f'/api/payment-groups/{group_id}/cancel')
        assert cancelled.json['status'] == 'cancelled'
        assert client.get('/api/orders/ORD-1').json['payment_group_id'] is None
        assert client.post(f'/api/payment-groups/{group_id}/cancel').status_code == 400
        assert client.post('/api/payment-groups/PG404/cancel').status_code == 404

    def test_confirm_and_listing(self, client, order_factory):
        order_factory('ORD-1', final_total=100000)
        group_id = client.post('/api/payment-groups', json={
            'user_id': 'u-1', 'order_ids': ['ORD-1'], 'verification_mode': 'manual',
        }).json['id']

        assert [g['id'] for g in client.get('/api/payment-groups?user_id=u-1').json['groups']] == [group_id]
        assert client.get('/api/payment-groups').status_code == 400

        confirmed = client.post(f'/api/payment-groups/{group_id}/confirm')
        assert confirmed.status_code == 200
        assert confirmed.json['group']['status'] == 'paid'
        assert client.get(f'/api/payment-groups/{group_id}').json['status'] == 'paid'
        assert client.get('/api/payment-groups/PG404').status_code == 404

    def test_create_validation(self, client, order_factory):
        assert client.post('/api/payment-groups', json={'order_ids': ['ORD-1']}).status_code == 400
        assert client.post('/api/payment-groups', json={'user_id': 'u-1', 'order_ids': []}).status_code == 400
        assert client.post('/api/payment-groups', json={'user_id': 'u-1', 'order_ids': ['ORD-404']}).status_code == 404
        assert client.post('/api/payment-groups/transfers', json={'amount': 'abc'}).status_code == 400

    def test_expire(self, client, order_factory):
        order_factory('ORD-1', final_total=100000)
        stale = payment_groups.create_group(user_id='u-1', order_ids=['ORD-1'], now=utcnow() - timedelta(days=3))
        response = client.post('/api/payment-groups/expire')
        assert response.json['expired'] == [stale.id]
