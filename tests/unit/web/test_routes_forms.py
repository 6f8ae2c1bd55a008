"""Tests for fieldservice.routes.forms - form CRUD, trash, restore and signatories."""
import uuid

import pytest

from fieldservice.models.models import AuditLog


@pytest.fixture
def writer(make_user):
    return make_user("User", address="Branch A")


@pytest.fixture
def super_admin(make_user):
    return make_user("Super Admin", address="Branch A")


class TestCreateAndRead:
    def test_create_job_order(self, client, writer, auth_headers):
        response = client.post(
            "/forms/job-order-request",
            json={"full_customer_name": "ACME", "estimated_repair_days": "4", "status": "in progress"},
            headers=auth_headers(writer),
        )
        assert response.status_code == 201
        data = response.json()["data"]
        assert data["shop_field_jo_number"] == "JO-0001"
        assert data["status"] == "In-Progress"
        assert data["approval_status"] == "pending_level_1"
        assert data["estimated_repair_days"] == 4

    def test_create_requires_write(self, client, make_user, auth_headers):
        response = client.post("/forms/deutz-service", json={"customer": "ACME"},
                               headers=auth_headers(make_user(None)))
        assert response.status_code == 403

    def test_unknown_form_type(self, client, writer, auth_headers):
        response = client.get("/forms/pizza-order", headers=auth_headers(writer))
        assert response.status_code == 404

    def test_list_and_detail(self, client, writer, auth_headers, make_record):
        record = make_record("deutz-service", writer, customer="ACME", job_order="JO-0009")

        listing = client.get("/forms/deutz-service", headers=auth_headers(writer))
        assert [row["id"] for row in listing.json()["data"]] == [str(record.id)]

        detail = client.get(f"/forms/deutz-service/{record.id}", headers=auth_headers(writer))
        assert detail.status_code == 200
        data = detail.json()["data"]
        assert data["customer"] == "ACME"
        assert data["attachments"] == []
        assert data["approval"]["approval_status"] == "pending_level_1"

    def test_detail_of_missing_record(self, client, writer, auth_headers):
        response = client.get(f"/forms/deutz-service/{uuid.uuid4()}", headers=auth_headers(writer))
        assert response.status_code == 404

    def test_update(self, client, writer, auth_headers, make_record):
        record = make_record("daily-time-sheet", writer, job_number="J-1")
        response = client.patch(
            f"/forms/daily-time-sheet/{record.id}",
            json={"total_manhours": "7.5", "remarks": "overtime"},
            headers=auth_headers(writer),
        )
        assert response.status_code == 200
        assert response.json()["data"]["total_manhours"] == 7.5

    def test_update_with_bad_value(self, client, writer, auth_headers, make_record):
        record = make_record("daily-time-sheet", writer)
        response = client.patch(
            f"/forms/daily-time-sheet/{record.id}",
            json={"work_date": "not-a-date"},
            headers=auth_headers(writer),
        )
        assert response.status_code == 400

    def test_counts(self, client, writer, auth_headers, make_record):
        make_record("engine-teardown", writer)
        counts = client.get("/forms/counts", headers=auth_headers(writer)).json()
        assert counts["engine-teardown"] == 1
        assert counts["deutz-service"] == 0

    def test_next_number_preview(self, client, writer, auth_headers, make_record):
        make_record("job-order-request", writer)
        body = client.get("/forms/job-order-request/next-number", headers=auth_headers(writer)).json()
        assert body == {"next_number": 2, "formatted": "JO-0002"}


class TestDeleteAndRestore:
    def test_delete_then_restore(self, client, db, super_admin, auth_headers, make_record):
        record = make_record("deutz-service", super_admin)
        headers = auth_headers(super_admin)

        assert client.delete(f"/forms/deutz-service/{record.id}", headers=headers).status_code == 200
        assert client.get(f"/forms/deutz-service/{record.id}", headers=headers).status_code == 404

        again = client.delete(f"/forms/deutz-service/{record.id}", headers=headers)
        assert again.status_code == 400
        assert again.json()["detail"] == "Record is already deleted"

        trash = client.get("/forms/trash", headers=headers).json()["data"]
        assert [item["id"] for item in trash] == [str(record.id)]

        restored = client.patch("/forms/restore", json={"formType": "deutz-service", "id": str(record.id)},
                                headers=headers)
        assert restored.status_code == 200
        assert client.get(f"/forms/deutz-service/{record.id}", headers=headers).status_code == 200

        actions = [e.action for e in db.query(AuditLog).filter(AuditLog.record_id == record.id).all()]
        assert sorted(actions) == ["CREATE", "DELETE", "RESTORE"]

    def test_restore_active_record(self, client, super_admin, auth_headers, make_record):
        record = make_record("deutz-service", super_admin)
        response = client.patch("/forms/restore", json={"formType": "deutz-service", "id": str(record.id)},
                                headers=auth_headers(super_admin))
        assert response.status_code == 400
        assert response.json()["detail"] == "Record is not deleted"

    def test_restore_requires_fields(self, client, super_admin, auth_headers):
        response = client.patch("/forms/restore", json={}, headers=auth_headers(super_admin))
        assert response.status_code == 400

    def test_delete_without_permission(self, client, writer, auth_headers, make_record):
        record = make_record("deutz-service", writer)
        response = client.delete(f"/forms/deutz-service/{record.id}", headers=auth_headers(writer))
        assert response.status_code == 403

    def test_trash_without_permission(self, client, writer, auth_headers):
        assert client.get("/forms/trash", headers=auth_headers(writer)).status_code == 403


class TestSignatoryApproval:
    def test_only_designated_user(self, client, make_user, writer, super_admin, auth_headers, make_record):
        signatory = make_user("User")
        record = make_record("engine-teardown", writer, noted_by_user_id=str(signatory.id))
        payload = {"table": "engine_teardown_reports", "recordId": str(record.id),
                   "field": "noted_by", "checked": True}

        denied = client.patch("/forms/signatory-approval", json=payload, headers=auth_headers(super_admin))
        assert denied.status_code == 403

        allowed = client.patch("/forms/signatory-approval", json=payload, headers=auth_headers(signatory))
        assert allowed.status_code == 200
        assert allowed.json()["checked"] is True

    def test_checked_must_be_boolean(self, client, make_user, writer, auth_headers, make_record):
        signatory = make_user("User")
        record = make_record("engine-teardown", writer, noted_by_user_id=str(signatory.id))
        response = client.patch(
            "/forms/signatory-approval",
            json={"table": "engine_teardown_reports", "recordId": str(record.id),
                  "field": "noted_by", "checked": "yes"},
            headers=auth_headers(signatory),
        )
        assert response.status_code == 400

    def test_invalid_table(self, client, writer, auth_headers):
        response = client.patch(
            "/forms/signatory-approval",
            json={"table": "users", "recordId": str(uuid.uuid4()), "field": "noted_by", "checked": True},
            headers=auth_headers(writer),
        )
        assert response.status_code == 400
        assert response.json()["detail"] == "Invalid table name"


class TestAttachments:
    def test_upload(self, client, writer, auth_headers, make_record):
        record = make_record("submersible-pump-teardown", writer)
        response = client.post(
            f"/forms/submersible-pump-teardown/{record.id}/attachments",
            files=[
                ("files", ("impeller.jpg", b"jpeg-bytes", "image/jpeg")),
                ("files", ("notes.txt", b"text", "text/plain")),
            ],
            data={"titles": ["Impeller wear", "Notes"]},
            headers=auth_headers(writer),
        )
        assert response.status_code == 200
        body = response.json()
        assert body["success"] is True
        assert [a["description"] for a in body["saved"]] == ["Impeller wear", "Notes"]

        detail = client.get(f"/forms/submersible-pump-teardown/{record.id}", headers=auth_headers(writer))
        assert len(detail.json()["data"]["attachments"]) == 2


class TestRequestShape:
    def test_malformed_restore_id(self, client, super_admin, auth_headers):
        response = client.patch("/forms/restore", json={"formType": "deutz-service", "id": "not-a-uuid"},
                                headers=auth_headers(super_admin))
        assert response.status_code == 400
        assert response.json() == {"detail": "Invalid value for id"}

    def test_signatory_without_record_id(self, client, writer, auth_headers):
        response = client.patch(
            "/forms/signatory-approval",
            json={"table": "engine_teardown_reports", "field": "noted_by", "checked": True},
            headers=auth_headers(writer),
        )
        assert response.status_code == 400
        assert response.json()["detail"] == "Missing required fields: recordId"

    def test_malformed_path_id(self, client, super_admin, auth_headers):
        response = client.patch("/forms/daily-time-sheet/xyz/status", json={"status": "Close"},
                                headers=auth_headers(super_admin))
        assert response.status_code == 400
        assert response.json()["detail"] == "Invalid value for record_id"

    def test_invalid_json(self, client, writer, auth_headers):
        response = client.post(
            "/forms/deutz-service",
            content=b"{not json",
            headers={**auth_headers(writer), "Content-Type": "application/json"},
        )
        assert response.status_code == 400
        assert response.json()["detail"] == "Invalid JSON body"


class TestAvailableJobOrders:
    def test_excludes_numbers_used_by_forms(self, client, writer, super_admin, auth_headers, make_record):
        used = make_record("job-order-request", writer, full_customer_name="ACME")
        free = make_record("job-order-request", writer, full_customer_name="Globex")
        released = make_record("job-order-request", writer)
        make_record("deutz-service", writer, job_order=used.shop_field_jo_number)
        gone = make_record("daily-time-sheet", writer, job_number=released.shop_field_jo_number)
        client.delete(f"/forms/daily-time-sheet/{gone.id}", headers=auth_headers(super_admin))

        body = client.get("/forms/job-order-request/approved", headers=auth_headers(writer)).json()

        numbers = [row["shop_field_jo_number"] for row in body["data"]]
        assert numbers == [released.shop_field_jo_number, free.shop_field_jo_number]
        assert body["data"][1]["full_customer_name"] == "Globex"

    def test_requires_read(self, client, make_user, auth_headers):
        response = client.get("/forms/job-order-request/approved", headers=auth_headers(make_user(None)))
        assert response.status_code == 403
