import mongomock
import pytest
from fastapi.testclient import TestClient

import database
import main


@pytest.fixture
def mongo(monkeypatch):
    test_db = mongomock.MongoClient()["clinic_test"]
    monkeypatch.setattr(database, "db", test_db)
    monkeypatch.setattr(main, "db", test_db)
    return test_db


@pytest.fixture
def client(mongo):
    return TestClient(main.app)


@pytest.fixture
def bill_payload():
    return {
        "client_name": "Jane Doe",
        "assigned_staff": "Anne Smith",
        "services": "Laser hair removal",
        "total_sessions": 6,
        "sessions_completed": 1,
        "cost": 1000,
        "amount_paid": 500,
        "payment_method": "UPI",
        "date": "2026-10-01T10:00:00",
    }
