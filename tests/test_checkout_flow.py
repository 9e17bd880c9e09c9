from __future__ import annotations

import unittest

from _testutil import ApiTestCase


class TestValidateStock(ApiTestCase):
    def setUp(self) -> None:
        super().setUp()
        self.buyer = self.make_user()

    def _validate(self, items):
        return self.client.post("/orders/validate-stock", json={"cart_items": items}, headers=self.auth(self.buyer))

    def test_available_items_pass(self) -> None:
        pid = self.make_product(stock=3)
        resp = self._validate([{"product_id": pid, "name": "Widget", "quantity": 3}])
        self.assertEqual(resp.status_code, 200)
        self.assertTrue(resp.json()["success"])
        self.assertEqual(self.stock_of(pid), 3)

    def test_insufficient_stock_reports_requested_and_available(self) -> None:
        pid = self.make_product(stock=2, name="Lamp")
        resp = self._validate([{"product_id": pid, "name": "Lamp", "quantity": 5}])
        self.assertEqual(resp.status_code, 400)
        body = resp.json()
        self.assertFalse(body["success"])
        self.assertEqual(
            body["stock_issues"],
            [{"product_id": pid, "product_name": "Lamp", "requested": 5, "available": 2, "issue": "Insufficient stock"}],
        )

    def test_zero_stock_is_out_of_stock(self) -> None:
        pid = self.make_product(stock=0)
        resp = self._validate([{"product_id": pid, "name": "Widget", "quantity": 1}])
        self.assertEqual(resp.status_code, 400)
        self.assertEqual(resp.json()["stock_issues"][0]["issue"], "Out of stock")

    def test_missing_products_do_not_short_circuit(self) -> None:
        short = self.make_product(stock=1, name="Short")
        resp = self._validate(
            [
                {"product_id": "65f000000000000000000000", "name": "Ghost", "quantity": 1},
                {"product_id": "not-an-object-id", "name": "Garbage", "quantity": 1},
                {"product_id": short, "name": "Short", "quantity": 2},
            ]
        )
        self.assertEqual(resp.status_code, 400)
        issues = resp.json()["stock_issues"]
        self.assertEqual([i["issue"] for i in issues], ["Product not found", "Product not found", "Insufficient stock"])
        self.assertEqual(issues[0]["product_name"], "Ghost")

    def test_quantity_below_one_is_a_validation_error(self) -> None:
        pid = self.make_product(stock=3)
        resp = self._validate([{"product_id": pid, "name": "Widget", "quantity": 0}])
        self.assertEqual(resp.status_code, 400)
        self.assertFalse(resp.json()["success"])

    def test_requires_credentials(self) -> None:
        pid = self.make_product(stock=3)
        resp = self.client.post("/orders/validate-stock", json={"cart_items": [{"product_id": pid, "quantity": 1}]})
        self.assertEqual(resp.status_code, 401)


class TestCreateOrder(ApiTestCase):
    def setUp(self) -> None:
        super().setUp()
        self.buyer = self.make_user()

    def _create(self, payload):
        return self.client.post("/orders/create", json=payload, headers=self.auth(self.buyer))

    def test_empty_items_rejected_without_writing(self) -> None:
        payload = self.order_payload([])
        resp = self._create(payload)
        self.assertEqual(resp.status_code, 400)
        self.assertEqual(resp.json()["message"], "No order items provided")
        self.assertEqual(self.db["order"].count_documents({}), 0)

    def test_insufficient_stock_rejected(self) -> None:
        pid = self.make_product(stock=2, name="Lamp")
        resp = self._create(self.order_payload([(pid, 5, 100.0)]))
        self.assertEqual(resp.status_code, 400)
        issue = resp.json()["stock_issues"][0]
        self.assertEqual((issue["product_name"], issue["requested"], issue["available"], issue["issue"]), ("Lamp", 5, 2, "Insufficient stock"))
        self.assertEqual(self.db["order"].count_documents({}), 0)

    def test_order_is_a_pending_snapshot(self) -> None:
        pid = self.make_product(stock=3, price=100.0)
        resp = self._create(self.order_payload([(pid, 2, 100.0)]))
        self.assertEqual(resp.status_code, 201)
        order = resp.json()["order"]
        self.assertEqual(order["order_status"], "Processing")
        self.assertEqual(order["payment_method"], "UPI")
        self.assertEqual(order["payment_details"]["payment_status"], "Pending")
        self.assertEqual(order["user_id"], self.buyer["id"])
        self.assertEqual(self.stock_of(pid), 3)

    def test_item_snapshot_survives_product_edits(self) -> None:
        admin = self.make_user(role="admin")
        pid = self.make_product(stock=3, price=100.0)
        order = self._create(self.order_payload([(pid, 1, 100.0)])).json()["order"]

        self.client.put(f"/products/{pid}", json={"price": 999.0, "name": "Renamed"}, headers=self.auth(admin))

        stored = self.client.get(f"/orders/{order['id']}", headers=self.auth(self.buyer)).json()["order"]
        self.assertEqual(stored["order_items"][0]["price"], 100.0)
        self.assertNotEqual(stored["order_items"][0]["name"], "Renamed")

    def test_client_prices_are_kept_verbatim_by_default(self) -> None:
        pid = self.make_product(stock=3, price=100.0)
        prices = {"items_price": 1.0, "tax_price": 0.0, "shipping_price": 0.0, "total_price": 1.0}
        resp = self._create(self.order_payload([(pid, 2, 100.0)], prices=prices))
        self.assertEqual(resp.status_code, 201)
        self.assertEqual(resp.json()["order"]["total_price"], 1.0)

    def test_server_pricing_rejects_mismatch_when_enabled(self) -> None:
        from unittest import mock

        pid = self.make_product(stock=3, price=100.0)
        prices = {"items_price": 1.0, "tax_price": 0.0, "shipping_price": 0.0, "total_price": 1.0}
        with mock.patch("config.ENFORCE_SERVER_PRICING", True):
            bad = self._create(self.order_payload([(pid, 2, 100.0)], prices=prices))
            good = self._create(self.order_payload([(pid, 2, 100.0)]))
        self.assertEqual(bad.status_code, 400)
        self.assertEqual(bad.json()["expected"]["total_price"], 236.0)
        self.assertEqual(good.status_code, 201)


class TestVerifyPayment(ApiTestCase):
    def setUp(self) -> None:
        super().setUp()
        self.buyer = self.make_user()

    def _order(self, lines, user=None) -> str:
        user = user or self.buyer
        resp = self.client.post("/orders/create", json=self.order_payload(lines), headers=self.auth(user))
        self.assertEqual(resp.status_code, 201, resp.text)
        return resp.json()["order"]["id"]

    def _verify(self, order_id, transaction_id, user=None):
        user = user or self.buyer
        return self.client.put(
            f"/orders/verify-payment/{order_id}",
            json={"transaction_id": transaction_id, "upi_id": "buyer@upi"},
            headers=self.auth(user),
        )

    def test_short_transaction_id_cancels_order(self) -> None:
        pid = self.make_product(stock=3)
        for txn in (None, "", "ABCDEFGHIJ"):
            with self.subTest(txn=txn):
                order_id = self._order([(pid, 1, 100.0)])
                resp = self._verify(order_id, txn)
                self.assertEqual(resp.status_code, 400)
                self.assertEqual(resp.json()["message"], "Payment verification failed")
                order = self.client.get(f"/orders/{order_id}", headers=self.auth(self.buyer)).json()["order"]
                self.assertEqual(order["order_status"], "Cancelled")
                self.assertEqual(order["payment_details"]["payment_status"], "Failed")
                self.assertEqual(self.stock_of(pid), 3)

    def test_only_owner_may_verify(self) -> None:
        admin = self.make_user(role="admin")
        pid = self.make_product(stock=3)
        order_id = self._order([(pid, 1, 100.0)])
        resp = self._verify(order_id, "ABCDEFGHIJKL", user=admin)
        self.assertEqual(resp.status_code, 403)
        self.assertEqual(self.stock_of(pid), 3)

    def test_unknown_order_is_404(self) -> None:
        self.assertEqual(self._verify("65f000000000000000000000", "ABCDEFGHIJKL").status_code, 404)
        self.assertEqual(self._verify("nope", "ABCDEFGHIJKL").status_code, 404)

    def test_second_verification_is_rejected(self) -> None:
        pid = self.make_product(stock=5)
        order_id = self._order([(pid, 2, 100.0)])
        self.assertEqual(self._verify(order_id, "ABCDEFGHIJKL").status_code, 200)
        again = self._verify(order_id, "ABCDEFGHIJKL")
        self.assertEqual(again.status_code, 400)
        self.assertEqual(again.json()["message"], "Order has already been processed")
        self.assertEqual(self.stock_of(pid), 3)

    def test_cancelled_order_cannot_be_paid_later(self) -> None:
        pid = self.make_product(stock=5)
        order_id = self._order([(pid, 2, 100.0)])
        self._verify(order_id, "short")
        self.assertEqual(self._verify(order_id, "ABCDEFGHIJKL").status_code, 400)
        self.assertEqual(self.stock_of(pid), 5)

    def test_competing_orders_cannot_oversell(self) -> None:
        pid = self.make_product(stock=3)
        other = self.make_user()
        first = self._order([(pid, 2, 100.0)])
        second = self._order([(pid, 2, 100.0)], user=other)

        self.assertEqual(self._verify(first, "TXN-000000001").status_code, 200)
        resp = self._verify(second, "TXN-000000002", user=other)

        self.assertEqual(resp.status_code, 400)
        self.assertEqual(resp.json()["stock_issues"][0]["available"], 1)
        self.assertEqual(self.stock_of(pid), 1)
        order = self.client.get(f"/orders/{second}", headers=self.auth(other)).json()["order"]
        self.assertEqual(order["order_status"], "Processing")
        self.assertEqual(order["payment_details"]["payment_status"], "Pending")

    def test_failed_line_leaves_earlier_lines_untouched(self) -> None:
        plenty = self.make_product(stock=10, name="Plenty")
        scarce = self.make_product(stock=1, name="Scarce")
        order_id = self._order([(plenty, 4, 50.0), (scarce, 1, 20.0)])
        self.db["product"].update_one({"name": "Scarce"}, {"$set": {"stock": 0}})

        resp = self._verify(order_id, "ABCDEFGHIJKL")

        self.assertEqual(resp.status_code, 400)
        self.assertEqual(resp.json()["stock_issues"][0]["issue"], "Out of stock")
        self.assertEqual(self.stock_of(plenty), 10)
        self.assertEqual(self.stock_of(scarce), 0)

    def test_deleted_product_aborts_verification(self) -> None:
        admin = self.make_user(role="admin")
        pid = self.make_product(stock=3)
        order_id = self._order([(pid, 1, 100.0)])
        self.client.delete(f"/products/{pid}", headers=self.auth(admin))

        resp = self._verify(order_id, "ABCDEFGHIJKL")
        self.assertEqual(resp.status_code, 400)
        self.assertEqual(resp.json()["stock_issues"][0]["issue"], "Product not found")

    def test_end_to_end_checkout(self) -> None:
        pid = self.make_product(stock=3, price=100.0, name="P")
        headers = self.auth(self.buyer)

        resp = self.client.post(
            "/orders/validate-stock",
            json={"cart_items": [{"product_id": pid, "name": "P", "quantity": 2}]},
            headers=headers,
        )
        self.assertEqual(resp.status_code, 200)

        prices = {"items_price": 200.0, "tax_price": 36.0, "shipping_price": 0.0, "total_price": 236.0}
        resp = self.client.post("/orders/create", json=self.order_payload([(pid, 2, 100.0)], prices=prices), headers=headers)
        self.assertEqual(resp.status_code, 201)
        order = resp.json()["order"]
        self.assertEqual(order["order_status"], "Processing")
        self.assertEqual(self.stock_of(pid), 3)

        resp = self._verify(order["id"], "ABCDEFGHIJKL")
        self.assertEqual(resp.status_code, 200)
        confirmed = resp.json()["order"]
        self.assertEqual(confirmed["order_status"], "Confirmed")
        self.assertEqual(confirmed["payment_details"]["payment_status"], "Success")
        self.assertEqual(confirmed["payment_details"]["transaction_id"], "ABCDEFGHIJKL")
        self.assertEqual(confirmed["payment_details"]["upi_id"], "buyer@upi")
        self.assertIsNotNone(confirmed["payment_details"]["paid_at"])
        self.assertNotIn("verifying", confirmed)
        self.assertEqual(self.stock_of(pid), 1)


class TestOrderQueries(ApiTestCase):
    def setUp(self) -> None:
        super().setUp()
        self.buyer = self.make_user()
        self.other = self.make_user()
        self.admin = self.make_user(role="admin")
        self.pid = self.make_product(stock=50, price=10.0)

    def _order(self, user, qty) -> dict:
        resp = self.client.post("/orders/create", json=self.order_payload([(self.pid, qty, 10.0)]), headers=self.auth(user))
        return resp.json()["order"]

    def test_my_orders_lists_only_callers_orders(self) -> None:
        mine = [self._order(self.buyer, 1), self._order(self.buyer, 2)]
        self._order(self.other, 1)
        body = self.client.get("/orders/my-orders", headers=self.auth(self.buyer)).json()
        self.assertEqual(body["count"], 2)
        self.assertEqual({o["id"] for o in body["orders"]}, {o["id"] for o in mine})

    def test_order_detail_for_owner_and_admin_only(self) -> None:
        order = self._order(self.buyer, 1)
        self.assertEqual(self.client.get(f"/orders/{order['id']}", headers=self.auth(self.buyer)).status_code, 200)
        self.assertEqual(self.client.get(f"/orders/{order['id']}", headers=self.auth(self.other)).status_code, 403)
        resp = self.client.get(f"/orders/{order['id']}", headers=self.auth(self.admin))
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json()["order"]["user"]["email"], self.buyer["email"])

    def test_admin_report_totals_all_orders(self) -> None:
        self._order(self.buyer, 1)
        self._order(self.other, 2)
        self.assertEqual(self.client.get("/orders/admin/all", headers=self.auth(self.buyer)).status_code, 403)
        body = self.client.get("/orders/admin/all", headers=self.auth(self.admin)).json()
        self.assertEqual(body["count"], 2)
        self.assertAlmostEqual(body["total_amount"], 11.8 + 23.6, places=2)


if __name__ == "__main__":
    unittest.main()
