"""Tests for fieldservice.services.approvals - two-level approval, status and JO numbering."""
import uuid

import pytest
from sqlalchemy.exc import OperationalError

from fieldservice.errors import ValidationError, AuthorizationError, NotFoundError
from fieldservice.forms import FORM_TYPES
from fieldservice.models.models import Approval, AuditLog, Permission, Position, PositionPermission
from fieldservice.services import approvals
from fieldservice.services.approvals import (
    normalize_status,
    next_state,
    decide_on_form,
    decide_on_report,
    update_status,
    pending_for,
    pending_reports_for,
    format_jo_number,
    peek_next_jo_number,
    PENDING_LEVEL_1,
    PENDING_LEVEL_2,
    APPROVED,
    REJECTED,
)


JO = FORM_TYPES["job-order-request"]
DTS = FORM_TYPES["daily-time-sheet"]

BRANCH_A = "Branch A"
BRANCH_B = "Branch B"


class TestNormalizeStatus:
    @pytest.mark.parametrize("raw,expected", [
        ("in-progress", "In-Progress"),
        ("IN PROGRESS", "In-Progress"),
        ("in_progress", "In-Progress"),
        ("pending", "Pending"),
        (" Close ", "Close"),
        ("cancelled", "Cancelled"),
        ("foo", "foo"),
        (None, None),
    ])
    def test_normalize(self, raw, expected):
        assert normalize_status(raw) == expected


class TestStateMachine:
    def test_approve_advances_one_level(self):
        assert next_state(PENDING_LEVEL_1, "approve") == PENDING_LEVEL_2
        assert next_state(PENDING_LEVEL_2, "approve") == APPROVED

    def test_reject_from_any_pending_level(self):
        assert next_state(PENDING_LEVEL_1, "reject") == REJECTED
        assert next_state(PENDING_LEVEL_2, "reject") == REJECTED

    @pytest.mark.parametrize("terminal", [APPROVED, REJECTED])
    def test_terminal_states_reject_decisions(self, terminal):
        with pytest.raises(ValidationError):
            next_state(terminal, "approve")


class TestDecideOnForm:
    def test_full_approval_chain(self, db, make_user, make_record):
        requester = make_user("User", address=BRANCH_A)
        branch_admin = make_user("Admin 2", address=BRANCH_A)
        regional_admin = make_user("Admin 1", address=BRANCH_B)
        record = make_record("job-order-request", requester, full_customer_name="ACME")

        record = decide_on_form(db, JO, record.id, branch_admin, "approve", "looks fine")
        assert record.approval_status == PENDING_LEVEL_2
        assert record.level_1_approved_by == branch_admin.id
        assert record.level_1_notes == "looks fine"

        record = decide_on_form(db, JO, record.id, regional_admin, "approve")
        assert record.approval_status == APPROVED
        assert record.level_2_approved_by == regional_admin.id

        with pytest.raises(ValidationError) as exc:
            decide_on_form(db, JO, record.id, make_user("Super Admin"), "approve")
        assert "not pending approval" in exc.value.detail

    def test_decision_writes_status_change_audit(self, db, make_user, make_record):
        requester = make_user("User", address=BRANCH_A)
        branch_admin = make_user("Admin 2", address=BRANCH_A)
        record = make_record("daily-time-sheet", requester)

        decide_on_form(db, DTS, record.id, branch_admin, "reject", "missing hours")

        entries = (
            db.query(AuditLog)
            .filter(AuditLog.record_id == record.id, AuditLog.action == "STATUS_CHANGE")
            .all()
        )
        assert len(entries) == 1
        assert entries[0].old_data == {"approval_status": PENDING_LEVEL_1}
        assert entries[0].new_data["approval_status"] == REJECTED
        assert entries[0].new_data["level_1_notes"] == "missing hours"
        assert entries[0].context == {"decision": "reject", "level": 1}

    def test_wrong_level(self, db, make_user, make_record):
        record = make_record("job-order-request", make_user("User"))
        with pytest.raises(AuthorizationError) as exc:
            decide_on_form(db, JO, record.id, make_user("Admin 1"), "approve")
        assert exc.value.detail == "You cannot approve at this level"

    def test_branch_admin_limited_to_own_branch(self, db, make_user, make_record):
        record = make_record("job-order-request", make_user("User", address=BRANCH_B))
        with pytest.raises(AuthorizationError) as exc:
            decide_on_form(db, JO, record.id, make_user("Admin 2", address=BRANCH_A), "approve")
        assert exc.value.detail == "You can only approve records from your branch"

    def test_non_approver(self, db, make_user, make_record):
        record = make_record("job-order-request", make_user("User"))
        with pytest.raises(AuthorizationError) as exc:
            decide_on_form(db, JO, record.id, make_user("Super User"), "approve")
        assert exc.value.detail == "You do not have approval permissions"

    def test_super_admin_acts_on_any_level(self, db, make_user, make_record):
        record = make_record("job-order-request", make_user("User", address=BRANCH_B))
        super_admin = make_user("Super Admin", address=BRANCH_A)

        record = decide_on_form(db, JO, record.id, super_admin, "approve")
        record = decide_on_form(db, JO, record.id, super_admin, "approve")
        assert record.approval_status == APPROVED

    def test_invalid_decision(self, db, make_user, make_record):
        record = make_record("job-order-request", make_user("User"))
        with pytest.raises(ValidationError):
            decide_on_form(db, JO, record.id, make_user("Admin 1"), "maybe")

    def test_deleted_record_is_404(self, db, make_user):
        with pytest.raises(NotFoundError):
            decide_on_form(db, JO, uuid.uuid4(), make_user("Admin 1"), "approve")


class TestDecideOnReport:
    def test_report_gets_approval_row_and_advances(self, db, make_user, make_record):
        requester = make_user("User", address=BRANCH_A)
        record = make_record("deutz-service", requester)
        approval = db.query(Approval).filter(Approval.report_id == record.id).one()
        assert approval.report_table == "deutz_service_report"
        assert approval.approval_status == PENDING_LEVEL_1

        approval = decide_on_report(db, approval.id, make_user("Admin 2", address=BRANCH_A), "approve")
        assert approval.approval_status == PENDING_LEVEL_2

    def test_unknown_approval(self, db, make_user):
        with pytest.raises(NotFoundError):
            decide_on_report(db, uuid.uuid4(), make_user("Admin 1"), "approve")


class TestUpdateStatus:
    def test_normalizes_and_audits(self, db, make_user, make_record):
        requester = make_user("User", address=BRANCH_A)
        record = make_record("job-order-request", requester)

        record = update_status(db, JO, record.id, "in progress", make_user("Admin 1"))

        assert record.status == "In-Progress"
        entry = (
            db.query(AuditLog)
            .filter(AuditLog.record_id == record.id, AuditLog.action == "STATUS_CHANGE")
            .one()
        )
        assert entry.old_data == {"status": "Pending"}
        assert entry.new_data == {"status": "In-Progress"}

    def test_invalid_status(self, db, make_user, make_record):
        record = make_record("job-order-request", make_user("User"))
        with pytest.raises(ValidationError):
            update_status(db, JO, record.id, "foo", make_user("Admin 1"))

    def test_requires_approvals_edit(self, db, make_user, make_record):
        record = make_record("job-order-request", make_user("User"))
        with pytest.raises(AuthorizationError):
            update_status(db, JO, record.id, "Close", make_user("Super User"))

    def test_branch_scope(self, db, make_user, make_record):
        branch_admin = make_user("Admin 2", address=BRANCH_A)
        own = make_record("daily-time-sheet", make_user("User", address=BRANCH_A))
        other = make_record("daily-time-sheet", make_user("User", address=BRANCH_B))

        assert update_status(db, DTS, own.id, "Close", branch_admin).status == "Close"
        with pytest.raises(AuthorizationError) as exc:
            update_status(db, DTS, other.id, "Close", branch_admin)
        assert exc.value.detail == "You can only update records from your branch"

    def test_reports_have_no_status_workflow(self, db, make_user, make_record):
        record = make_record("deutz-service", make_user("User"))
        with pytest.raises(ValidationError):
            update_status(db, FORM_TYPES["deutz-service"], record.id, "Close", make_user("Admin 1"))


class TestPendingVisibility:
    def test_requester_sees_only_own(self, db, make_user, make_record):
        me = make_user("User")
        mine = make_record("job-order-request", me)
        make_record("job-order-request", make_user("User"))

        result = pending_for(db, me, JO)
        assert [row["id"] for row in result["data"]] == [str(mine.id)]
        assert result["meta"]["is_requester"] is True

    def test_branch_admin_sees_own_branch_level_one(self, db, make_user, make_record):
        ours = make_record("job-order-request", make_user("User", address=BRANCH_A))
        make_record("job-order-request", make_user("User", address=BRANCH_B))

        result = pending_for(db, make_user("Admin 2", address=BRANCH_A), JO)
        assert [row["id"] for row in result["data"]] == [str(ours.id)]
        assert result["data"][0]["requester_address"] == BRANCH_A
        assert result["meta"]["approval_level"] == 1

    def test_regional_admin_sees_level_two(self, db, make_user, make_record):
        requester = make_user("User", address=BRANCH_A)
        advanced = make_record("job-order-request", requester)
        make_record("job-order-request", requester)
        decide_on_form(db, JO, advanced.id, make_user("Admin 2", address=BRANCH_A), "approve")

        result = pending_for(db, make_user("Admin 1"), JO)
        assert [row["id"] for row in result["data"]] == [str(advanced.id)]
        assert result["data"][0]["level_1_approved_by_name"] is not None

    def test_report_queue(self, db, make_user, make_record):
        make_record("deutz-service", make_user("User", address=BRANCH_A), job_order="JO-0001")
        make_record("engine-teardown", make_user("User", address=BRANCH_B))

        result = pending_reports_for(db, make_user("Admin 2", address=BRANCH_A))
        assert len(result["data"]) == 1
        assert result["data"][0]["form_type"] == "deutz-service"
        assert result["data"][0]["job_order"] == "JO-0001"

    def test_queue_needs_approvals_view(self, db, make_user, make_record):
        view = db.query(Permission).filter(Permission.module == "approvals", Permission.action == "view").one()
        admin2 = db.query(Position).filter(Position.name == "Admin 2").one()
        db.query(PositionPermission).filter(
            PositionPermission.position_id == admin2.id, PositionPermission.permission_id == view.id,
        ).delete()
        db.commit()
        me = make_user("Admin 2", address=BRANCH_A)
        mine = make_record("job-order-request", me)
        make_record("job-order-request", make_user("User", address=BRANCH_A))

        result = pending_for(db, me, JO)
        assert [row["id"] for row in result["data"]] == [str(mine.id)]
        assert result["meta"]["is_requester"] is True
        assert pending_reports_for(db, me)["meta"]["is_requester"] is True


class TestJobOrderNumbering:
    def test_format(self):
        assert format_jo_number(1) == "JO-0001"
        assert format_jo_number(12345) == "JO-12345"

    def test_peek_on_empty_table(self, db):
        assert peek_next_jo_number(db) == 1

    def test_sequential_numbers(self, db, make_user, make_record):
        user = make_user("User")
        first = make_record("job-order-request", user)
        second = make_record("job-order-request", user)

        assert first.shop_field_jo_number == "JO-0001"
        assert second.shop_field_jo_number == "JO-0002"
        assert peek_next_jo_number(db) == 3

    def test_peek_does_not_consume(self, db, make_user, make_record):
        peek_next_jo_number(db)
        peek_next_jo_number(db)
        record = make_record("job-order-request", make_user("User"))
        assert record.jo_number == 1

    def test_prefers_database_function(self, db, monkeypatch):
        monkeypatch.setattr(approvals, "_peek_via_function", lambda db: 42)
        assert peek_next_jo_number(db) == 42

    def test_falls_back_to_sequence(self, db, monkeypatch):
        def _missing(db):
            raise OperationalError("SELECT get_next_jo_number()", {}, Exception("no such function"))

        monkeypatch.setattr(approvals, "_peek_via_function", _missing)
        monkeypatch.setattr(approvals, "_peek_via_sequence", lambda db: 7)
        assert peek_next_jo_number(db) == 7
