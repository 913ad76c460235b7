"""
Pytest fixtures for StockRoute backend tests.

Provides an in-memory database, a test client, and factories for users,
locations, role grants and transfers advanced to a given workflow stage.
"""

from types import SimpleNamespace

import pytest

from stockroute import create_app
from stockroute.extensions import db
from stockroute.models import Location, RoleAssignment, User
from stockroute.services import delivery_service, packing_service, transfer_service


@pytest.fixture(scope='session')
def app():
    """Create application for testing."""
    app = create_app({
        'TESTING': True,
        'SQLALCHEMY_DATABASE_URI': 'sqlite:///:memory:',
        'SQLALCHEMY_TRACK_MODIFICATIONS': False,
        'LOG_LEVEL': 'DEBUG',
    })

    with app.app_context():
        db.create_all()
        yield app
        db.drop_all()


@pytest.fixture(scope='function')
def client(app):
    """Create test client."""
    return app.test_client()


@pytest.fixture(scope='function')
def db_session(app):
    """Create fresh database for each test."""
    with app.app_context():
        # Clear all data but keep schema
        meta = db.metadata
        for table in reversed(meta.sorted_tables):
            db.session.execute(table.delete())
        db.session.commit()

        yield db.session

        # Cleanup after test
        db.session.rollback()


@pytest.fixture(scope='function')
def make_user(db_session):
    counter = {"n": 0}

    def _make(full_name=None, *, is_active=True):
        counter["n"] += 1
        user = User(
            full_name=full_name or f"User {counter['n']}",
            email=f"user{counter['n']}@stockroute.test",
            is_active=is_active,
        )
        db_session.add(user)
        db_session.commit()
        return user

    return _make


@pytest.fixture(scope='function')
def make_location(db_session):
    def _make(name, code, location_type="store", *, is_active=True, project_id=None):
        location = Location(
            location_name=name,
            location_code=code,
            location_type=location_type,
            is_active=is_active,
            project_id=project_id,
        )
        db_session.add(location)
        db_session.commit()
        return location

    return _make


@pytest.fixture(scope='function')
def grant(db_session):
    def _grant(user, location, role):
        assignment = RoleAssignment(
            user_id=user.id,
            location_id=location.id,
            role=getattr(role, "value", role),
            is_active=True,
        )
        db_session.add(assignment)
        db_session.commit()
        return assignment

    return _grant


@pytest.fixture(scope='function')
def world(make_user, make_location, grant):
    """
    Store A -> Warehouse 1 setup with one user per workflow role.

    Store B exists for store-to-store transfers; its manager is separate.
    """
    store_a = make_location("Store A", "STR-A", "store")
    store_b = make_location("Store B", "STR-B", "store")
    warehouse = make_location("Warehouse 1", "WH-1", "warehouse")

    lineman = make_user("Lina Lineman")
    store_manager = make_user("Sam Store")
    store_b_manager = make_user("Bea Store")
    warehouse_manager = make_user("Wendy Warehouse")
    packer = make_user("Pat Packer")
    logistics_manager = make_user("Logan Logistics")
    driver = make_user("Drew Driver")
    outsider = make_user("Oscar Outsider")

    grant(lineman, store_a, "lineman")
    grant(store_manager, store_a, "store_manager")
    grant(store_b_manager, store_b, "store_manager")
    grant(warehouse_manager, warehouse, "warehouse_manager")
    grant(packer, warehouse, "packing_team")
    grant(logistics_manager, warehouse, "logistics_manager")
    grant(driver, warehouse, "logistics_team")

    return SimpleNamespace(
        store_a=store_a,
        store_b=store_b,
        warehouse=warehouse,
        lineman=lineman,
        store_manager=store_manager,
        store_b_manager=store_b_manager,
        warehouse_manager=warehouse_manager,
        packer=packer,
        logistics_manager=logistics_manager,
        driver=driver,
        outsider=outsider,
    )


@pytest.fixture(scope='function')
def headers_for():
    """Actor header for a user, as the upstream gateway would send it."""
    def _headers(user) -> dict:
        return {"X-User-Id": str(user.id)}
    return _headers


STAGES = (
    "requested",
    "store_approved",
    "warehouse_approved",
    "packing",
    "packed",
    "dispatched",
    "in_transit",
    "delivered",
)


@pytest.fixture(scope='function')
def make_transfer(db_session, world):
    """
    Create a Store A -> Warehouse 1 transfer and drive it to `stage` through
    the real service calls, committing after each step like a route would.
    """
    def _make(stage="requested", *, items=None, source=None, destination=None, requester=None):
        transfer = transfer_service.request_transfer(
            source_location_id=(source or world.store_a).id,
            destination_location_id=(destination or world.warehouse).id,
            items=items or [
                {"product_name": "Widget", "quantity_requested": 10, "unit": "pcs"},
                {"product_name": "Gadget", "quantity_requested": 4, "unit": "box"},
            ],
            requester=requester or world.lineman,
        )
        db_session.commit()
        target = STAGES.index(stage)

        def reached(name):
            return target >= STAGES.index(name)

        if reached("store_approved"):
            transfer_service.approve(transfer.id, world.store_manager)
            db_session.commit()
        if reached("warehouse_approved"):
            transfer_service.approve(transfer.id, world.warehouse_manager)
            db_session.commit()
        task = None
        if reached("packing"):
            task = packing_service.assign_packing(transfer.id, world.packer.id, world.warehouse_manager)
            db_session.commit()
        if reached("packed"):
            packing_service.update_packing_task(task.id, world.packer, new_status="in_progress")
            packing_service.update_packing_task(task.id, world.packer, new_status="completed")
            db_session.commit()
        assignment = None
        if reached("dispatched"):
            assignment = delivery_service.assign_delivery(transfer.id, world.driver.id, world.logistics_manager)
            delivery_service.update_delivery_status(assignment.id, "picked_up", world.driver)
            db_session.commit()
        if reached("in_transit"):
            delivery_service.update_delivery_status(assignment.id, "in_transit", world.driver)
            db_session.commit()
        if reached("delivered"):
            delivery_service.update_delivery_status(assignment.id, "delivered", world.driver)
            db_session.commit()

        db_session.refresh(transfer)
        return transfer

    return _make
