"""
Concurrency tests: stale status checks, optimistic version column,
retry helper, per-day transfer numbering and two writers racing on the
same transfer.

SQLite has no real row locks. Single-session tests simulate the other
writer with raw SQL; the race tests run it through the services in a
second app context against a file-backed database.
"""

import re
from datetime import date
from types import SimpleNamespace

import pytest
from sqlalchemy import text
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm.exc import StaleDataError

from stockroute import create_app
from stockroute.errors import InvalidTransitionError
from stockroute.extensions import db
from stockroute.models import Location, RoleAssignment, StatusLogEntry, Transfer, User
from stockroute.services import role_service, transfer_service
from stockroute.services.concurrency import run_with_retry
from stockroute.services.document_service import next_transfer_number


class TestStaleStatus:

    def test_expected_status_mismatch(self, db_session, world, make_transfer):
        transfer = make_transfer("requested")
        transfer_service.approve(transfer.id, world.store_manager)
        db_session.commit()

        # A second manager acting on the same page they loaded earlier
        with pytest.raises(InvalidTransitionError):
            transfer_service.reject(
                transfer.id, world.store_manager, "Too late", expected_status="requested",
            )
        db_session.rollback()

        db_session.refresh(transfer)
        assert transfer.transfer_status == "store_approved"
        rejected = db_session.query(StatusLogEntry).filter_by(transfer_id=transfer.id, to_status="rejected")
        assert rejected.count() == 0

    def test_double_approval_only_logs_once(self, db_session, world, make_transfer):
        transfer = make_transfer("requested")
        transfer_service.approve(transfer.id, world.store_manager, expected_status="requested")
        db_session.commit()

        with pytest.raises(InvalidTransitionError):
            transfer_service.approve(transfer.id, world.store_manager, expected_status="requested")
        db_session.rollback()

        approvals = db_session.query(StatusLogEntry).filter_by(
            transfer_id=transfer.id, to_status="store_approved",
        )
        assert approvals.count() == 1

    def test_change_by_another_writer_is_seen(self, db_session, world, make_transfer):
        transfer = make_transfer("requested")
        assert transfer.transfer_status == "requested"

        db_session.execute(
            text(
                "UPDATE transfers SET transfer_status = 'cancelled', version_id = version_id + 1 "
                "WHERE id = :id"
            ),
            {"id": transfer.id},
        )
        db_session.commit()

        # The locked re-read replaces the stale identity-map copy
        with pytest.raises(InvalidTransitionError):
            transfer_service.approve(transfer.id, world.store_manager)
        db_session.rollback()

    def test_version_column_detects_lost_update(self, db_session, world, make_transfer):
        transfer = make_transfer("requested")
        version = transfer.version_id

        db_session.execute(
            text("UPDATE transfers SET version_id = version_id + 1 WHERE id = :id"),
            {"id": transfer.id},
        )
        transfer.request_notes = "Edited from a stale copy"
        with pytest.raises(StaleDataError):
            db_session.flush()
        db_session.rollback()

        db_session.refresh(transfer)
        assert transfer.version_id == version
        assert transfer.request_notes is None


class TestRunWithRetry:

    def test_retries_stale_data_then_raises(self, db_session):
        calls = []

        def _op():
            calls.append(1)
            raise StaleDataError("row changed")

        with pytest.raises(StaleDataError):
            run_with_retry(_op, attempts=3, backoff_base=0)
        assert len(calls) == 3

    def test_recovers_after_operational_error(self, db_session):
        calls = []

        def _op():
            calls.append(1)
            if len(calls) == 1:
                raise OperationalError("UPDATE transfers", {}, Exception("database is locked"))
            return "ok"

        assert run_with_retry(_op, backoff_base=0) == "ok"
        assert len(calls) == 2

    def test_nested_call_runs_once_per_outer_attempt(self, db_session):
        inner_calls = []

        def _inner():
            inner_calls.append(1)
            raise StaleDataError("row changed")

        with pytest.raises(StaleDataError):
            run_with_retry(lambda: run_with_retry(_inner, attempts=3, backoff_base=0), attempts=2, backoff_base=0)
        assert len(inner_calls) == 2

    def test_other_errors_are_not_retried(self, db_session):
        calls = []

        def _op():
            calls.append(1)
            raise InvalidTransitionError("no")

        with pytest.raises(InvalidTransitionError):
            run_with_retry(_op, backoff_base=0)
        assert len(calls) == 1


class TestTransferNumbers:

    def test_sequential_per_day(self, db_session):
        day = date(2026, 3, 5)
        first = next_transfer_number(on_date=day)
        second = next_transfer_number(on_date=day)
        db_session.commit()

        assert first == "TRF-20260305-0001"
        assert second == "TRF-20260305-0002"

    def test_new_day_restarts(self, db_session):
        next_transfer_number(on_date=date(2026, 3, 5))
        assert next_transfer_number(on_date=date(2026, 3, 6)) == "TRF-20260306-0001"

    def test_prefix_and_padding(self, db_session):
        assert next_transfer_number(prefix="XFR", on_date=date(2026, 1, 2), pad=6) == "XFR-20260102-000001"

    def test_transfers_get_unique_numbers(self, db_session, world, make_transfer):
        numbers = [make_transfer("requested").transfer_number for _ in range(3)]
        assert len(set(numbers)) == 3
        for number in numbers:
            assert re.fullmatch(r"TRF-\d{8}-\d{4}", number)
        assert [int(n.rsplit("-", 1)[1]) for n in numbers] == [1, 2, 3]


# =============================================================================
# TWO WRITERS
# =============================================================================


@pytest.fixture
def race(tmp_path):
    """
    A second app on a file-backed database, so a rival app context gets its
    own session and connection and its commits are visible to ours.
    """
    app = create_app({
        'TESTING': True,
        'SQLALCHEMY_DATABASE_URI': f"sqlite:///{tmp_path / 'race.sqlite3'}",
        'SQLALCHEMY_TRACK_MODIFICATIONS': False,
    })
    with app.app_context():
        db.create_all()
        store = Location(location_name="Store A", location_code="STR-A", location_type="store", is_active=True)
        warehouse = Location(location_name="Warehouse 1", location_code="WH-1", location_type="warehouse", is_active=True)
        users = {
            role: User(full_name=role.replace("_", " ").title(), email=f"{role}@race.test", is_active=True)
            for role in ("lineman", "store_manager", "warehouse_manager")
        }
        db.session.add_all([store, warehouse, *users.values()])
        db.session.flush()
        db.session.add_all([
            RoleAssignment(user_id=users["lineman"].id, location_id=store.id, role="lineman", is_active=True),
            RoleAssignment(user_id=users["store_manager"].id, location_id=store.id, role="store_manager", is_active=True),
            RoleAssignment(
                user_id=users["warehouse_manager"].id, location_id=warehouse.id, role="warehouse_manager", is_active=True,
            ),
        ])
        db.session.commit()

        yield SimpleNamespace(
            app=app,
            store_id=store.id,
            warehouse_id=warehouse.id,
            **{role: user.id for role, user in users.items()},
        )

        db.session.remove()
        db.drop_all()
        db.engine.dispose()


def _request(race, *, source_id=None, destination_id=None):
    transfer = transfer_service.request_transfer(
        source_location_id=source_id or race.store_id,
        destination_location_id=destination_id or race.warehouse_id,
        items=[{"product_name": "Widget", "quantity_requested": 10, "unit": "pcs"}],
        requester=race.lineman,
    )
    db.session.commit()
    return transfer.id


def _rival_goes_first(race, monkeypatch, action):
    """
    Run `action` in its own app context, and commit it, the moment our call
    consults the role gate: after our read, before our write.
    """
    real = role_service.authorize_transition
    fired = []

    def _authorize(actor, transfer, from_status, to_status):
        if not fired:
            fired.append((from_status, to_status))
            with race.app.app_context():
                action()
                db.session.commit()
        return real(actor, transfer, from_status, to_status)

    monkeypatch.setattr(role_service, "authorize_transition", _authorize)
    return fired


def _history(transfer_id):
    return [
        (entry.from_status, entry.to_status)
        for entry in db.session.query(StatusLogEntry).filter_by(transfer_id=transfer_id).order_by(StatusLogEntry.id)
    ]


class TestConcurrentStatusChanges:

    def test_reject_loses_to_store_approval(self, race, monkeypatch):
        transfer_id = _request(race)
        fired = _rival_goes_first(
            race, monkeypatch, lambda: transfer_service.approve(transfer_id, race.store_manager),
        )

        # The destination warehouse manager may reject requested and
        # store_approved alike; losing the race must not turn into a reject
        # of the newer status.
        with pytest.raises(InvalidTransitionError):
            transfer_service.reject(transfer_id, race.warehouse_manager, "Not needed")
        db.session.rollback()

        assert fired == [("requested", "rejected")]
        transfer = db.session.get(Transfer, transfer_id)
        assert transfer.transfer_status == "store_approved"
        assert transfer.rejection_reason is None
        assert transfer.rejected_by is None
        assert _history(transfer_id) == [(None, "requested"), ("requested", "store_approved")]

    def test_approval_loses_to_rejection(self, race, monkeypatch):
        transfer_id = _request(race)
        _rival_goes_first(
            race, monkeypatch, lambda: transfer_service.reject(transfer_id, race.warehouse_manager, "Not needed"),
        )

        with pytest.raises(InvalidTransitionError):
            transfer_service.approve(transfer_id, race.store_manager)
        db.session.rollback()

        transfer = db.session.get(Transfer, transfer_id)
        assert transfer.transfer_status == "rejected"
        assert transfer.store_approved_by is None
        assert _history(transfer_id) == [(None, "requested"), ("requested", "rejected")]

    def test_second_store_approval_loses(self, race, monkeypatch):
        transfer_id = _request(race)
        _rival_goes_first(
            race, monkeypatch, lambda: transfer_service.approve(transfer_id, race.store_manager),
        )

        with pytest.raises(InvalidTransitionError):
            transfer_service.approve(transfer_id, race.store_manager)
        db.session.rollback()

        transfer = db.session.get(Transfer, transfer_id)
        assert transfer.transfer_status == "store_approved"
        assert _history(transfer_id) == [(None, "requested"), ("requested", "store_approved")]

    def test_approval_does_not_skip_ahead_after_losing(self, race, monkeypatch):
        # Warehouse-sourced: the warehouse manager may take both approval steps,
        # so a lost first approval must not become the second one.
        transfer_id = _request(race, source_id=race.warehouse_id, destination_id=race.store_id)

        # The rival uses the plain status endpoint, which takes one step only.
        _rival_goes_first(
            race, monkeypatch,
            lambda: transfer_service.change_status(transfer_id, "store_approved", race.warehouse_manager),
        )

        with pytest.raises(InvalidTransitionError):
            transfer_service.approve(transfer_id, race.warehouse_manager)
        db.session.rollback()

        transfer = db.session.get(Transfer, transfer_id)
        assert transfer.transfer_status == "store_approved"
        assert transfer.warehouse_approved_by is None
        assert _history(transfer_id) == [(None, "requested"), ("requested", "store_approved")]

    def test_retry_after_lock_error_keeps_the_status_it_saw(self, race, monkeypatch):
        transfer_id = _request(race)
        real = role_service.authorize_transition
        calls = []

        def _authorize(actor, transfer, from_status, to_status):
            calls.append((from_status, to_status))
            if len(calls) == 1:
                with race.app.app_context():
                    transfer_service.approve(transfer_id, race.store_manager)
                    db.session.commit()
                raise OperationalError("UPDATE transfers", {}, Exception("database is locked"))
            return real(actor, transfer, from_status, to_status)

        monkeypatch.setattr(role_service, "authorize_transition", _authorize)

        with pytest.raises(InvalidTransitionError):
            transfer_service.reject(transfer_id, race.warehouse_manager, "Not needed")
        db.session.rollback()

        # First attempt plus the rival's own gate check; the retry stops at
        # the status comparison and never reaches the gate.
        assert calls == [("requested", "rejected"), ("requested", "store_approved")]
        assert db.session.get(Transfer, transfer_id).transfer_status == "store_approved"

    def test_uncontested_change_still_commits(self, race):
        transfer_id = _request(race)
        transfer_service.approve(transfer_id, race.store_manager)
        db.session.commit()

        with race.app.app_context():
            transfer_service.approve(transfer_id, race.warehouse_manager, expected_status="store_approved")
            db.session.commit()

        db.session.expire_all()
        assert db.session.get(Transfer, transfer_id).transfer_status == "warehouse_approved"
        assert [to for _, to in _history(transfer_id)] == ["requested", "store_approved", "warehouse_approved"]
