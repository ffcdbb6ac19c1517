"""Tests for the shipping, health and order query endpoints."""

import pytest

from storefront import main


class TestHealthCheck:
    def test_health(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        assert response.json() == {"status": "ok", "service": "storefront-payments"}


class TestRunCommand:
    def test_serves_app_on_configured_address(self, monkeypatch):
        calls = []
        monkeypatch.setattr(main.uvicorn, "run", lambda app, **kwargs: calls.append((app, kwargs)))
        monkeypatch.setenv("HOST", "127.0.0.1")
        monkeypatch.setenv("PORT", "9090")
        monkeypatch.setenv("LOG_LEVEL", "DEBUG")

        main.run()

        assert calls == [
            ("storefront.main:app", {"host": "127.0.0.1", "port": 9090, "log_level": "debug"}),
        ]


class TestCalculateShipping:
    def test_quote_for_catalog_items(self, client):
        response = client.post("/shipping/calculate", json={
            "destination_postal_code": "01310-100",
            "items": [{"product_id": "p-camiseta", "quantity": 2}],
        })
        assert response.status_code == 200
        data = response.json()
        assert data["destination_postal_code"] == "01310100"
        assert data["free_shipping"] is False
        assert data["free_shipping_threshold"] == 130.0

        options = {opt["service"]: opt for opt in data["options"]}
        # 0.6kg real, 20 x 30 x 6 cubic = 0.6kg, CEP region 0
        assert options["PAC"]["price"] == pytest.approx(18.00)
        assert options["PAC"]["deadline"] == "9 dias úteis"
        assert options["SEDEX"]["price"] == pytest.approx(32.80)

    def test_unknown_products_are_skipped(self, client):
        response = client.post("/shipping/calculate", json={
            "destination_postal_code": "30130010",
            "items": [{"product_id": "does-not-exist", "quantity": 3}],
        })
        assert response.status_code == 200
        options = {opt["service"]: opt for opt in response.json()["options"]}
        assert options["PAC"]["price"] == pytest.approx(17.40)

    def test_free_by_subtotal(self, client):
        response = client.post("/shipping/calculate", json={
            "destination_postal_code": "30130010",
            "items": [{"product_id": "p-camiseta"}],
            "subtotal": 150,
        })
        data = response.json()
        assert data["free_shipping"] is True
        assert data["free_reason"] == "value"
        assert all(opt["price"] == 0 for opt in data["options"])

    def test_free_by_city(self, client):
        response = client.post("/shipping/calculate", json={
            "destination_postal_code": "35660-000",
            "items": [{"product_id": "p-bone"}],
            "destination_city": "Pará de Minas",
            "destination_state": "MG",
        })
        assert response.json()["free_reason"] == "city"

    def test_destination_field_names(self, client):
        response = client.post("/shipping/calculate", json={
            "destination_postal_code": "30130-000",
            "items": [{"product_id": "p-camiseta", "quantity": 1}],
            "subtotal": 150,
        })
        assert response.status_code == 200
        data = response.json()
        assert data["destination_postal_code"] == "30130000"
        assert "cep_destino" not in data
        assert data["free_shipping"] is True
        assert data["free_reason"] == "value"
        assert [opt["price"] for opt in data["options"]] == [0, 0]

    def test_legacy_field_names(self, client):
        response = client.post("/shipping/calculate", json={
            "cep_destino": "35660-000",
            "items": [{"product_id": "p-bone"}],
            "city": "Pará de Minas",
            "state": "MG",
        })
        assert response.status_code == 200
        data = response.json()
        assert data["destination_postal_code"] == "35660000"
        assert data["free_reason"] == "city"

    def test_invalid_cep(self, client):
        response = client.post("/shipping/calculate", json={
            "destination_postal_code": "123",
            "items": [{"product_id": "p-camiseta"}],
        })
        assert response.status_code == 400
        assert "Invalid CEP" in response.json()["error"]

    def test_missing_cep(self, client):
        response = client.post("/shipping/calculate", json={"items": [{"product_id": "p-bone"}]})
        assert response.status_code == 400

    def test_missing_items(self, client):
        response = client.post("/shipping/calculate", json={"destination_postal_code": "30130010", "items": []})
        assert response.status_code == 400
        assert "At least one item" in response.json()["error"]

    def test_malformed_body(self, client):
        response = client.post("/shipping/calculate", json={"destination_postal_code": "30130010", "items": "x"})
        assert response.status_code == 400
        assert response.json()["error"] == "Invalid request"


class TestOrderQueries:
    def test_requires_auth(self, client):
        assert client.get("/queries/orders").status_code == 401

    def test_rejected_token(self, client):
        response = client.get("/queries/orders", headers={"Authorization": "Bearer nope"})
        assert response.status_code == 401
        assert response.json() == {"error": "Unauthorized"}

    def test_list_only_own_orders(self, client, database, auth_headers):
        own = database.insert_order(user_id="user-ana")
        database.insert_order(user_id="user-bruno")

        response = client.get("/queries/orders", headers=auth_headers)
        assert response.status_code == 200
        orders = response.json()
        assert [o["id"] for o in orders] == [own]
        assert orders[0]["items"][0]["product_name"] == "Camiseta Básica"

    def test_get_order_with_items(self, client, database, auth_headers):
        order_id = database.insert_order(
            items=(("p-camiseta", "M", 1, 59.90), ("p-bone", "U", 2, 25.00)),
        )
        response = client.get(f"/queries/orders/{order_id}", headers=auth_headers)
        assert response.status_code == 200
        order = response.json()
        assert order["status"] == "criado"
        assert order["subtotal"] == pytest.approx(109.90)
        assert order["total"] == pytest.approx(139.90)
        assert order["address_snapshot"]["city"] == "Belo Horizonte"
        assert len(order["items"]) == 2

    def test_other_users_order_is_not_found(self, client, database, other_auth_headers):
        order_id = database.insert_order(user_id="user-ana")
        response = client.get(f"/queries/orders/{order_id}", headers=other_auth_headers)
        assert response.status_code == 404

    def test_invalid_order_id(self, client, auth_headers):
        response = client.get("/queries/orders/not-a-uuid", headers=auth_headers)
        assert response.status_code == 400
