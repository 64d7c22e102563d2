"""Tests for the derivation HTTP endpoints."""

from decimal import Decimal

from sqlalchemy.exc import OperationalError

from docflow.models import Invoice, SalesOrder, SalesOrderItem
from docflow.services.document_writer import DocumentWriter

URL = "/api/v1/derivations/"


def invoice_request(*order_ids, **extra):
    return {
        "source_refs": [{"kind": "sales_order", "id": order_id} for order_id in order_ids],
        "target_type": "invoice",
        **extra,
    }


class TestDeriveEndpoint:
    """Test POST /derivations/."""

    def test_derive_invoice(self, client, test_sales_order, test_customer):
        response = client.post(URL, json=invoice_request(test_sales_order.id))

        assert response.status_code == 201
        data = response.json()
        assert len(data["documents"]) == 1
        document = data["documents"][0]
        assert document["number"].startswith("INV-")
        assert document["target_type"] == "invoice"
        assert document["invoice_type"] == "Final"
        assert document["customer_id"] == test_customer.id
        assert Decimal(document["grand_total"]) == Decimal("945.00")
        assert document["source_references"] == [
            {"type": "sales_order", "id": test_sales_order.id, "number": "SO-0001"}
        ]
        line = document["lines"][0]
        assert Decimal(line["quantity"]) == Decimal("10")
        assert Decimal(line["discount_amount"]) == Decimal("100.00")
        assert line["pricing_sources"]["discount_percent"] == "quote_line"
        assert data["warnings"] == []

    def test_derive_proforma(self, client, test_sales_order):
        response = client.post(URL, json=invoice_request(test_sales_order.id, invoice_type="Proforma"))
        assert response.status_code == 201
        assert response.json()["documents"][0]["number"].startswith("PFINV-")

    def test_warnings_reported(self, client, db_session, test_customer):
        order = SalesOrder(order_number="SO-4001", customer_id=test_customer.id)
        order.items.append(SalesOrderItem(
            line_number=1, description="Custom bracket", quantity=Decimal("2"), unit_price=Decimal("5"),
        ))
        db_session.add(order)
        db_session.commit()

        response = client.post(URL, json=invoice_request(order.id))

        assert response.status_code == 201
        warnings = response.json()["warnings"]
        assert [w["kind"] for w in warnings] == ["placeholder_item"]
        assert warnings[0]["line_ref"] == f"sales_order_item:{order.items[0].id}"

    def test_unknown_source_is_404(self, client):
        response = client.post(URL, json=invoice_request(12345))
        assert response.status_code == 404

    def test_nothing_to_derive_is_422(self, client, db_session, test_sales_order):
        assert client.post(URL, json=invoice_request(test_sales_order.id)).status_code == 201

        response = client.post(URL, json=invoice_request(test_sales_order.id))
        assert response.status_code == 422
        assert "nothing to derive" in response.json()["detail"]
        assert db_session.query(Invoice).count() == 1

    def test_empty_source_refs_rejected(self, client):
        response = client.post(URL, json={"source_refs": [], "target_type": "invoice"})
        assert response.status_code == 422

    def test_proforma_purchase_order_rejected(self, client, test_sales_order):
        response = client.post(URL, json={
            "source_refs": [{"kind": "sales_order", "id": test_sales_order.id}],
            "target_type": "purchase_order",
            "invoice_type": "Proforma",
        })
        assert response.status_code == 422

    def test_unknown_source_kind_rejected(self, client):
        response = client.post(URL, json={
            "source_refs": [{"kind": "credit_note", "id": 1}],
            "target_type": "invoice",
        })
        assert response.status_code == 422

    def test_unavailable_database_is_503(self, client, db_session, test_sales_order, monkeypatch):
        def locked(*args, **kwargs):
            raise OperationalError("INSERT INTO invoices ...", {}, Exception("database is locked"))

        monkeypatch.setattr(DocumentWriter, "_build_invoice", locked)

        response = client.post(URL, json=invoice_request(test_sales_order.id))

        assert response.status_code == 503
        assert db_session.query(Invoice).count() == 0

    def test_derive_purchase_order(self, client, test_sales_order, test_supplier):
        response = client.post(URL, json={
            "source_refs": [{"kind": "sales_order", "id": test_sales_order.id}],
            "target_type": "purchase_order",
        })
        assert response.status_code == 201
        document = response.json()["documents"][0]
        assert document["number"].startswith("LPO-")
        assert document["supplier_id"] == test_supplier.id


class TestLedgerEndpoints:
    """Test ledger balance lookups."""

    def test_sales_order_item_balance(self, client, test_sales_order, make_delivery):
        make_delivery(test_sales_order, 4)
        item_id = test_sales_order.items[0].id

        response = client.get(f"/api/v1/derivations/ledger/sales-order-items/{item_id}")

        assert response.status_code == 200
        data = response.json()
        assert data["source_line"] == f"sales_order_item:{item_id}"
        assert Decimal(data["delivered"]) == Decimal("4")
        assert Decimal(data["remaining"]) == Decimal("6")
        assert Decimal(data["remaining_to_invoice"]) == Decimal("10")
        assert data["over_fulfilled"] is False

    def test_sales_order_balances(self, client, test_sales_order):
        response = client.get(f"/api/v1/derivations/ledger/sales-orders/{test_sales_order.id}")
        assert response.status_code == 200
        assert len(response.json()) == 1

    def test_unknown_item_is_404(self, client):
        assert client.get("/api/v1/derivations/ledger/sales-order-items/999").status_code == 404

    def test_unknown_order_is_404(self, client):
        assert client.get("/api/v1/derivations/ledger/sales-orders/999").status_code == 404

    def test_lpo_actual_quantities(self, client, test_sales_order, make_delivery):
        created = client.post(URL, json={
            "source_refs": [{"kind": "sales_order", "id": test_sales_order.id}],
            "target_type": "purchase_order",
        })
        lpo_id = created.json()["documents"][0]["id"]
        make_delivery(test_sales_order, 4)

        response = client.get(f"/api/v1/derivations/ledger/lpos/{lpo_id}/actual-quantities")

        assert response.status_code == 200
        [line] = response.json()
        assert Decimal(line["lpo_quantity"]) == Decimal("10")
        assert Decimal(line["actual_quantity"]) == Decimal("4")
        assert line["source"] == "delivery"
        assert line["references"] == ["DN-0001"]

    def test_unknown_lpo_is_404(self, client):
        assert client.get("/api/v1/derivations/ledger/lpos/999/actual-quantities").status_code == 404


def test_health_check(client):
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json()["status"] == "healthy"
