"""End-to-end borrowing workflow through the HTTP API."""

from datetime import datetime, timedelta

import pytest

from labflow.db.models import (
    ApprovalMatrix,
    BorrowingTransaction,
    BorrowingTransactionItem,
    SecurityAuditLog,
    ToolAsset,
)

from tests.factories import (
    assign_user,
    create_consumable,
    create_lab,
    create_tool,
    create_transaction,
    create_user,
)


@pytest.fixture
def inventory(db_session, lab_setup):
    tool = create_tool(db_session, lab=lab_setup.lab)
    gloves = create_consumable(db_session, lab=lab_setup.lab, stock_qty=10)
    db_session.commit()
    return tool, gloves


class TestBorrowingLifecycle:

    def test_request_to_return(self, client, db_session, auth_headers, lab_setup, inventory):
        tool, gloves = inventory

        response = client.post(
            "/api/borrowings",
            json={
                "labId": str(lab_setup.lab.id),
                "purpose": "Circuit practicum",
                "toolAssetIds": [str(tool.id)],
                "consumables": [{"consumableItemId": str(gloves.id), "qty": 2}],
            },
            headers=auth_headers(lab_setup.requester),
        )
        assert response.status_code == 201
        created = response.json()
        assert created["ok"] is True
        assert created["code"].startswith("BRW-")
        tx_id = created["transactionId"]

        response = client.post(
            f"/api/borrowings/{tx_id}/approve", json={}, headers=auth_headers(lab_setup.instructor),
        )
        assert response.status_code == 200
        assert response.json()["status"] == "pending_approval"

        response = client.post(
            f"/api/borrowings/{tx_id}/approve", json={}, headers=auth_headers(lab_setup.instructor),
        )
        assert response.status_code == 409
        assert response.json() == {
            "ok": False,
            "message": "The same user cannot decide twice on one transaction.",
        }

        response = client.post(
            f"/api/borrowings/{tx_id}/approve", json={"note": "ok"}, headers=auth_headers(lab_setup.staff),
        )
        assert response.json()["status"] == "approved_waiting_handover"

        due = (datetime.utcnow() + timedelta(days=7)).strftime("%Y-%m-%d")
        response = client.post(
            f"/api/borrowings/{tx_id}/handover", json={"dueDate": due}, headers=auth_headers(lab_setup.staff),
        )
        assert response.status_code == 200
        assert response.json()["status"] == "active"

        line = db_session.query(BorrowingTransactionItem).filter(
            BorrowingTransactionItem.item_type == "tool_asset",
        ).one()
        response = client.post(
            f"/api/borrowings/{tx_id}/returns",
            json={"items": [{"transactionItemId": str(line.id), "returnCondition": "good"}]},
            headers=auth_headers(lab_setup.staff),
        )
        assert response.status_code == 200
        assert response.json()["status"] == "returned"

        db_session.expire_all()
        assert db_session.query(ToolAsset).filter(ToolAsset.id == tool.id).one().status == "available"
        actions = {row.action for row in db_session.query(SecurityAuditLog).all()}
        assert {"create_request", "approve", "handover", "return"} <= actions

    def test_rejection(self, client, db_session, auth_headers, lab_setup):
        tx = create_transaction(
            db_session, lab=lab_setup.lab, requester=lab_setup.requester, matrix=lab_setup.matrix,
        )
        db_session.commit()

        response = client.post(
            f"/api/borrowings/{tx.id}/reject",
            json={"note": "Not this week"},
            headers=auth_headers(lab_setup.instructor),
        )
        assert response.status_code == 200
        assert response.json() == {"ok": True, "message": "Borrowing request rejected.", "status": "rejected"}

        db_session.expire_all()
        assert db_session.query(BorrowingTransaction).filter(
            BorrowingTransaction.id == tx.id
        ).one().rejection_reason == "Not this week"

    def test_wrong_approver(self, client, db_session, auth_headers, lab_setup):
        tx = create_transaction(
            db_session, lab=lab_setup.lab, requester=lab_setup.requester, matrix=lab_setup.matrix,
        )
        db_session.commit()
        response = client.post(
            f"/api/borrowings/{tx.id}/approve", json={}, headers=auth_headers(lab_setup.staff),
        )
        assert response.status_code == 403
        assert response.json()["ok"] is False

    def test_requester_cannot_approve(self, client, db_session, auth_headers, lab_setup):
        tx = create_transaction(
            db_session, lab=lab_setup.lab, requester=lab_setup.requester, matrix=lab_setup.matrix,
        )
        db_session.commit()
        response = client.post(
            f"/api/borrowings/{tx.id}/approve", json={}, headers=auth_headers(lab_setup.requester),
        )
        assert response.status_code == 403
        assert response.json() == {"ok": False, "message": "Access denied."}

    def test_unknown_transaction(self, client, auth_headers, lab_setup):
        response = client.post(
            "/api/borrowings/00000000-0000-0000-0000-000000000000/approve",
            json={},
            headers=auth_headers(lab_setup.instructor),
        )
        assert response.status_code == 404

    def test_requires_token(self, client, lab_setup):
        response = client.post(f"/api/borrowings/{lab_setup.lab.id}/approve", json={})
        assert response.status_code == 401
        assert response.json()["ok"] is False


class TestErrorEnvelope:
    """Framework-level failures use the same {ok, message} body as workflow errors."""

    @pytest.fixture
    def tx(self, db_session, lab_setup):
        row = create_transaction(
            db_session, lab=lab_setup.lab, requester=lab_setup.requester, matrix=lab_setup.matrix,
        )
        db_session.commit()
        return row

    def test_out_of_range_step(self, client, auth_headers, lab_setup, tx):
        response = client.post(
            f"/api/borrowings/{tx.id}/approve", json={"step": 3}, headers=auth_headers(lab_setup.instructor),
        )
        assert response.status_code == 400
        body = response.json()
        assert body["ok"] is False
        assert body["message"].startswith("step:")
        assert "detail" not in body

    def test_missing_body(self, client, auth_headers, lab_setup, tx):
        response = client.post(f"/api/borrowings/{tx.id}/approve", headers=auth_headers(lab_setup.instructor))
        assert response.status_code == 400
        body = response.json()
        assert body["ok"] is False
        assert body["message"]

    def test_bad_due_date_is_not_echoed(self, client, auth_headers, lab_setup, tx):
        response = client.post(
            f"/api/borrowings/{tx.id}/handover",
            json={"dueDate": "next-tuesday"},
            headers=auth_headers(lab_setup.staff),
        )
        assert response.status_code == 400
        assert "next-tuesday" not in response.json()["message"]

    def test_missing_token(self, client):
        response = client.get("/api/notifications/summary")
        assert response.status_code == 401
        assert response.json() == {"ok": False, "message": "Could not validate credentials"}
        assert response.headers["WWW-Authenticate"] == "Bearer"


class TestOverdueEndpoint:

    def test_scoped_by_role(self, client, db_session, auth_headers, lab_setup):
        past = datetime.utcnow() - timedelta(days=3)
        mine = create_transaction(
            db_session, lab=lab_setup.lab, requester=lab_setup.requester, status="active", due_date=past,
        )
        other_lab = create_lab(db_session)
        create_transaction(db_session, lab=other_lab, requester=lab_setup.requester, status="active", due_date=past)
        db_session.commit()

        admin_view = client.get("/api/borrowings/overdue", headers=auth_headers(lab_setup.admin)).json()
        assert len(admin_view) == 2
        assert admin_view[0]["daysOverdue"] == 3

        staff_view = client.get("/api/borrowings/overdue", headers=auth_headers(lab_setup.staff)).json()
        assert [row["transactionId"] for row in staff_view] == [str(mine.id)]


class TestApprovalMatrixEndpoints:

    def test_admin_saves_and_reads(self, client, db_session, auth_headers, lab_setup):
        lab = create_lab(db_session)
        instructor = create_user(db_session, role="instructor")
        staff = create_user(db_session, role="lab-staff")
        assign_user(db_session, instructor, lab)
        assign_user(db_session, staff, lab)
        db_session.commit()

        response = client.put(
            f"/api/approval-matrix/{lab.id}",
            json={
                "isActive": True,
                "step1ApproverUserId": str(instructor.id),
                "step2ApproverUserId": str(staff.id),
            },
            headers=auth_headers(lab_setup.admin),
        )
        assert response.status_code == 200
        assert response.json() == {"ok": True, "message": "Approval matrix saved."}

        body = client.get(f"/api/approval-matrix/{lab.id}", headers=auth_headers(lab_setup.admin)).json()
        assert body["isActive"] is True
        assert body["step1ApproverUserId"] == str(instructor.id)

    def test_missing_approver(self, client, db_session, auth_headers, lab_setup):
        response = client.put(
            f"/api/approval-matrix/{lab_setup.lab.id}",
            json={"isActive": True, "step1ApproverUserId": str(lab_setup.instructor.id)},
            headers=auth_headers(lab_setup.admin),
        )
        assert response.status_code == 400
        assert response.json()["ok"] is False

        db_session.expire_all()
        failures = db_session.query(SecurityAuditLog).filter(SecurityAuditLog.outcome == "failure").all()
        assert [row.action for row in failures] == ["save_matrix"]

    def test_non_admin_forbidden(self, client, db_session, auth_headers, lab_setup):
        response = client.put(
            f"/api/approval-matrix/{lab_setup.lab.id}",
            json={
                "isActive": False,
                "step1ApproverUserId": str(lab_setup.instructor.id),
                "step2ApproverUserId": str(lab_setup.staff.id),
            },
            headers=auth_headers(lab_setup.staff),
        )
        assert response.status_code == 403

        db_session.expire_all()
        matrix = db_session.query(ApprovalMatrix).filter(ApprovalMatrix.lab_id == lab_setup.lab.id).one()
        assert matrix.is_active is True


class TestNotificationEndpoints:

    def test_summary_and_mark_read(self, client, db_session, auth_headers, lab_setup):
        create_transaction(db_session, lab=lab_setup.lab, requester=lab_setup.requester, matrix=lab_setup.matrix)
        db_session.commit()

        response = client.get("/api/notifications/summary", headers=auth_headers(lab_setup.instructor))
        assert response.status_code == 200
        body = response.json()
        assert body["totalUnread"] == 1
        assert body["items"][0]["id"] == "borrowing-approve-step1"
        assert body["items"][0]["href"] == "/dashboard/borrowing?scope=waiting_me&status=pending"
        assert "generatedAt" in body

        response = client.post("/api/notifications/mark-read", headers=auth_headers(lab_setup.instructor))
        assert response.status_code == 200
        assert response.json()["ok"] is True

        again = client.get("/api/notifications/summary", headers=auth_headers(lab_setup.instructor)).json()
        assert again["totalUnread"] == 1

    def test_requires_token(self, client):
        assert client.get("/api/notifications/summary").status_code == 401


def test_health(client):
    assert client.get("/health").json()["status"] == "healthy"
    ready = client.get("/health/ready")
    assert ready.status_code == 200
    assert ready.json()["checks"]["redis"]["status"] == "skipped"
