"""Reconciliation API router tests.

Endpoints:
- POST /reconciliation/batches - Import a statement period
- GET /reconciliation/batches - List batches
- GET /reconciliation/batches/{id} - Batch with lines
- GET /reconciliation/batches/{id}/stats - Line counts and match rate
- POST /reconciliation/batches/{id}/match - Run a matching strategy
- PATCH /reconciliation/batches/{id}/lines/{line_number} - Manual override
- POST /reconciliation/batches/{id}/lines/{line_number}/reset - Reset a line
- POST /reconciliation/batches/{id}/validate - Write back and close
- DELETE /reconciliation/batches/{id} - Delete with cascade
- GET /reconciliation/batches/{id}/export - CSV export
"""

import csv
from dataclasses import replace
from io import StringIO
from uuid import uuid4

import pytest
from fastapi import status
from httpx import AsyncClient
from sqlalchemy.exc import OperationalError

from bankrec.deps import get_engine_config
from bankrec.main import app
from bankrec.services import persistence
from bankrec.services.engine_config import DEFAULT_CONFIG
from tests.factories import InvoiceFactory, SubscriptionFactory

INVOICE_LINE = "RL-20240115-AAAAA-0001"
SUBSCRIPTION_LINE = "RL-20240120-BBBBB-0002"
UNMATCHED_LINE = "RL-20240122-CCCCC-0003"

BATCH_PAYLOAD = {
    "date_start": "2024-01-01",
    "date_end": "2024-01-31",
    "transactions": [
        {
            "transaction_date": "2024-01-15",
            "label": "VIR SEPA ACME CONSULTING",
            "credit": "1000.00",
            "line_number": INVOICE_LINE,
        },
        {
            "transaction_date": "2024-01-20",
            "label": "PRLV OVH SAS",
            "debit": "49.90",
            "line_number": SUBSCRIPTION_LINE,
        },
        {
            "transaction_date": "2024-01-22",
            "label": "CB BOULANGERIE",
            "debit": "7.40",
            "line_number": UNMATCHED_LINE,
        },
    ],
}


async def _seed_candidates(db):
    invoice = await InvoiceFactory.create_async(db)
    subscription = await SubscriptionFactory.create_async(db, name="OVH Cloud", keywords="OVH")
    await db.commit()
    return invoice, subscription


async def _create_batch(client: AsyncClient) -> dict:
    response = await client.post("/reconciliation/batches", json=BATCH_PAYLOAD)
    assert response.status_code == status.HTTP_201_CREATED
    return response.json()


def _line(batch: dict, line_number: str) -> dict:
    return next(line for line in batch["lines"] if line["line_number"] == line_number)


class TestBatchImport:
    async def test_create_batch(self, client: AsyncClient):
        # WHEN importing a statement period
        batch = await _create_batch(client)

        # THEN every line starts unmatched, in import order
        assert batch["number"] == "RAP-2401-01"
        assert batch["status"] == "in_progress"
        assert batch["total_lines"] == 3
        assert [line["line_number"] for line in batch["lines"]] == [INVOICE_LINE, SUBSCRIPTION_LINE, UNMATCHED_LINE]
        assert {line["status"] for line in batch["lines"]} == {"unmatched"}
        assert _line(batch, SUBSCRIPTION_LINE)["amount"] == "-49.90"

    async def test_generated_line_numbers(self, client: AsyncClient):
        payload = {
            "date_start": "2024-03-01",
            "date_end": "2024-03-31",
            "transactions": [{"transaction_date": "2024-03-04", "label": "FRAIS", "debit": "2.00"}],
        }
        response = await client.post("/reconciliation/batches", json=payload)
        assert response.status_code == status.HTTP_201_CREATED
        assert response.json()["lines"][0]["line_number"].startswith("RL-20240304-")

    @pytest.mark.parametrize(
        "payload",
        [
            {**BATCH_PAYLOAD, "date_start": "2024-02-01"},
            {**BATCH_PAYLOAD, "transactions": []},
            {
                **BATCH_PAYLOAD,
                "transactions": [{"transaction_date": "2024-01-02", "label": "X", "debit": "1.00", "credit": "1.00"}],
            },
            {
                **BATCH_PAYLOAD,
                "transactions": [{"transaction_date": "2024-01-02", "label": "   ", "debit": "1.00"}],
            },
            {**BATCH_PAYLOAD, "transactions": BATCH_PAYLOAD["transactions"][:1] * 2},
        ],
    )
    async def test_invalid_import_is_rejected(self, client: AsyncClient, payload):
        response = await client.post("/reconciliation/batches", json=payload)
        assert response.status_code == status.HTTP_422_UNPROCESSABLE_ENTITY

    async def test_list_and_get(self, client: AsyncClient):
        batch = await _create_batch(client)

        response = await client.get("/reconciliation/batches")
        assert response.status_code == status.HTTP_200_OK
        assert response.json()["total"] == 1
        assert response.json()["items"][0]["id"] == batch["id"]

        response = await client.get(f"/reconciliation/batches/{uuid4()}")
        assert response.status_code == status.HTTP_404_NOT_FOUND
        assert "Reconciliation batch" in response.json()["detail"]

    async def test_line_number_used_by_another_batch(self, client: AsyncClient):
        first = await _create_batch(client)

        # WHEN a second statement reuses a line number of the first
        payload = {
            "date_start": "2024-02-01",
            "date_end": "2024-02-29",
            "transactions": [
                {"transaction_date": "2024-02-03", "label": "FRAIS", "debit": "2.00", "line_number": INVOICE_LINE}
            ],
        }
        response = await client.post("/reconciliation/batches", json=payload)

        # THEN the import is refused and the first batch keeps its lines
        assert response.status_code == status.HTTP_409_CONFLICT
        assert INVOICE_LINE in response.json()["detail"]
        listing = (await client.get("/reconciliation/batches")).json()
        assert [item["id"] for item in listing["items"]] == [first["id"]]
        assert len((await client.get(f"/reconciliation/batches/{first['id']}")).json()["lines"]) == 3


class TestMatching:
    async def test_run_all_strategies(self, client: AsyncClient, db):
        # GIVEN an open invoice and a subscription
        invoice, subscription = await _seed_candidates(db)
        batch = await _create_batch(client)

        # WHEN running every strategy
        response = await client.post(f"/reconciliation/batches/{batch['id']}/match", json={"strategy": "all"})

        # THEN the invoice and subscription lines are matched and saved
        assert response.status_code == status.HTTP_200_OK
        data = response.json()
        assert data["matched"] == 2
        assert data["unmatched"] == 1
        assert data["touched_lines"] == [INVOICE_LINE, SUBSCRIPTION_LINE]
        assert data["saved"] == 3
        assert data["failures"] == []

        detail = (await client.get(f"/reconciliation/batches/{batch['id']}")).json()
        assert _line(detail, INVOICE_LINE)["invoice_ids"] == [str(invoice.id)]
        assert _line(detail, SUBSCRIPTION_LINE)["subscription_id"] == str(subscription.id)
        assert _line(detail, SUBSCRIPTION_LINE)["total_ht"] == "41.58"
        assert detail["matched_lines"] == 2

        stats = (await client.get(f"/reconciliation/batches/{batch['id']}/stats")).json()
        assert stats == {"total": 3, "matched": 2, "uncertain": 0, "unmatched": 1, "match_rate": 66.67}

    async def test_second_run_changes_nothing(self, client: AsyncClient, db):
        await _seed_candidates(db)
        batch = await _create_batch(client)
        await client.post(f"/reconciliation/batches/{batch['id']}/match", json={})

        response = await client.post(f"/reconciliation/batches/{batch['id']}/match", json={"strategy": "all"})
        assert response.json()["mutations"] == 0
        assert response.json()["saved"] == 0

    async def test_engine_config_dependency_drives_threshold(self, client: AsyncClient, db):
        # GIVEN a threshold no invoice score can reach
        await _seed_candidates(db)
        batch = await _create_batch(client)
        strict = replace(DEFAULT_CONFIG, matched_threshold=1000)
        app.dependency_overrides[get_engine_config] = lambda: strict
        try:
            response = await client.post(f"/reconciliation/batches/{batch['id']}/match", json={"strategy": "invoices"})
        finally:
            app.dependency_overrides.pop(get_engine_config, None)

        # THEN the invoice is only suggested
        assert response.status_code == status.HTTP_200_OK
        assert response.json()["uncertain"] == 1
        detail = (await client.get(f"/reconciliation/batches/{batch['id']}")).json()
        assert _line(detail, INVOICE_LINE)["invoice_ids"] == []
        assert _line(detail, INVOICE_LINE)["suggested_invoice_id"] is not None

    async def test_unknown_strategy(self, client: AsyncClient):
        batch = await _create_batch(client)
        response = await client.post(f"/reconciliation/batches/{batch['id']}/match", json={"strategy": "magic"})
        assert response.status_code == status.HTTP_422_UNPROCESSABLE_ENTITY

    async def test_missing_batch(self, client: AsyncClient):
        response = await client.post(f"/reconciliation/batches/{uuid4()}/match", json={})
        assert response.status_code == status.HTTP_404_NOT_FOUND


class TestOverrides:
    async def test_link_invoice_manually(self, client: AsyncClient, db):
        invoice, _ = await _seed_candidates(db)
        batch = await _create_batch(client)

        response = await client.patch(
            f"/reconciliation/batches/{batch['id']}/lines/{UNMATCHED_LINE}",
            json={"invoice_ids": [str(invoice.id)], "notes": "paid by card"},
        )

        assert response.status_code == status.HTTP_200_OK
        line = response.json()
        assert line["status"] == "matched"
        assert line["score"] == 100
        assert line["notes"] == "paid by card"

        # The same invoice cannot be linked to a second line
        response = await client.patch(
            f"/reconciliation/batches/{batch['id']}/lines/{INVOICE_LINE}",
            json={"invoice_ids": [str(invoice.id)]},
        )
        assert response.status_code == status.HTTP_409_CONFLICT

    async def test_detach_with_null(self, client: AsyncClient, db):
        _, subscription = await _seed_candidates(db)
        batch = await _create_batch(client)
        url = f"/reconciliation/batches/{batch['id']}/lines/{SUBSCRIPTION_LINE}"

        assert (await client.patch(url, json={"subscription_id": str(subscription.id)})).json()["status"] == "matched"
        line = (await client.patch(url, json={"subscription_id": None})).json()
        assert line["status"] == "unmatched"
        assert line["subscription_id"] is None

    async def test_override_errors(self, client: AsyncClient):
        batch = await _create_batch(client)
        base = f"/reconciliation/batches/{batch['id']}/lines"

        response = await client.patch(f"{base}/{INVOICE_LINE}", json={"invoice_ids": [str(uuid4())]})
        assert response.status_code == status.HTTP_400_BAD_REQUEST

        response = await client.patch(f"{base}/RL-NOPE", json={"notes": "x"})
        assert response.status_code == status.HTTP_404_NOT_FOUND

        response = await client.patch(f"{base}/{INVOICE_LINE}", json={})
        assert response.status_code == status.HTTP_422_UNPROCESSABLE_ENTITY


class TestValidation:
    async def test_validate_then_read_only(self, client: AsyncClient, db):
        invoice, _ = await _seed_candidates(db)
        batch = await _create_batch(client)
        await client.post(f"/reconciliation/batches/{batch['id']}/match", json={})

        response = await client.post(f"/reconciliation/batches/{batch['id']}/validate")
        assert response.status_code == status.HTTP_200_OK
        report = response.json()
        assert report["validated"] is True
        assert report["invoices_linked"] == 1
        assert report["payments_created"] == 1

        await db.refresh(invoice)
        assert invoice.reconciliation_number == batch["number"]

        response = await client.post(f"/reconciliation/batches/{batch['id']}/validate")
        assert response.status_code == status.HTTP_409_CONFLICT

        response = await client.post(f"/reconciliation/batches/{batch['id']}/match", json={})
        assert response.status_code == status.HTTP_409_CONFLICT

        response = await client.patch(
            f"/reconciliation/batches/{batch['id']}/lines/{UNMATCHED_LINE}", json={"notes": "late"}
        )
        assert response.status_code == status.HTTP_409_CONFLICT

    async def test_overlapping_period(self, client: AsyncClient):
        first = await _create_batch(client)
        assert (await client.post(f"/reconciliation/batches/{first['id']}/validate")).status_code == 200

        payload = {
            "date_start": "2024-01-20",
            "date_end": "2024-02-10",
            "transactions": [{"transaction_date": "2024-02-01", "label": "FRAIS", "debit": "2.00"}],
        }
        second = (await client.post("/reconciliation/batches", json=payload)).json()

        response = await client.post(f"/reconciliation/batches/{second['id']}/validate")
        assert response.status_code == status.HTTP_409_CONFLICT
        assert first["number"] in response.json()["detail"]

    async def test_reset_after_validation(self, client: AsyncClient, db):
        invoice, _ = await _seed_candidates(db)
        batch = await _create_batch(client)
        await client.post(f"/reconciliation/batches/{batch['id']}/match", json={})
        await client.post(f"/reconciliation/batches/{batch['id']}/validate")

        response = await client.post(f"/reconciliation/batches/{batch['id']}/lines/{INVOICE_LINE}/reset")

        assert response.status_code == status.HTTP_200_OK
        data = response.json()
        assert data["reversed_record"] is True
        assert data["line"]["status"] == "unmatched"
        assert data["line"]["invoice_ids"] == []
        await db.refresh(invoice)
        assert invoice.reconciliation_number is None

    async def test_reset_cascade_failure(self, client: AsyncClient, db, monkeypatch):
        await _seed_candidates(db)
        batch = await _create_batch(client)
        await client.post(f"/reconciliation/batches/{batch['id']}/match", json={})
        await client.post(f"/reconciliation/batches/{batch['id']}/validate")

        async def locked(_db, _record_id):
            raise OperationalError("DELETE FROM subscription_payments", {}, Exception("database is locked"))

        monkeypatch.setattr(persistence, "delete_payments", locked)
        response = await client.post(f"/reconciliation/batches/{batch['id']}/lines/{SUBSCRIPTION_LINE}/reset")

        assert response.status_code == status.HTTP_500_INTERNAL_SERVER_ERROR
        assert "payment-delete" in response.json()["detail"]


class TestDeleteAndExport:
    async def test_delete_batch(self, client: AsyncClient, db):
        invoice, _ = await _seed_candidates(db)
        batch = await _create_batch(client)
        await client.post(f"/reconciliation/batches/{batch['id']}/match", json={})
        await client.post(f"/reconciliation/batches/{batch['id']}/validate")

        response = await client.delete(f"/reconciliation/batches/{batch['id']}")
        assert response.status_code == status.HTTP_204_NO_CONTENT

        assert (await client.get(f"/reconciliation/batches/{batch['id']}")).status_code == 404
        await db.refresh(invoice)
        assert invoice.reconciliation_number is None

        response = await client.delete(f"/reconciliation/batches/{batch['id']}")
        assert response.status_code == status.HTTP_404_NOT_FOUND

    async def test_export_csv(self, client: AsyncClient, db):
        invoice, subscription = await _seed_candidates(db)
        batch = await _create_batch(client)
        await client.post(f"/reconciliation/batches/{batch['id']}/match", json={})

        response = await client.get(f"/reconciliation/batches/{batch['id']}/export")

        assert response.status_code == status.HTTP_200_OK
        assert response.headers["content-type"].startswith("text/csv")
        assert batch["number"] in response.headers["content-disposition"]
        rows = list(csv.DictReader(StringIO(response.text)))
        assert [row["line_number"] for row in rows] == [INVOICE_LINE, SUBSCRIPTION_LINE, UNMATCHED_LINE]
        assert rows[0]["matched_record_ref"] == invoice.number
        assert rows[0]["matched_record_type"] == "invoice"
        assert rows[1]["matched_record_ref"] == subscription.name
        assert rows[1]["matched_record_type"] == "subscription"
        assert rows[2]["status"] == "unmatched"
        assert rows[2]["matched_amount"] == ""
