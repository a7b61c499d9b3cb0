# backend/tests/conftest.py

import sys
from pathlib import Path

import pytest

# Add parent directory (services) and this directory (mock_db, factories) to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))
sys.path.insert(0, str(Path(__file__).parent))

from mock_db import MockDB


@pytest.fixture
def db(monkeypatch):
    monkeypatch.delenv("RESEND_API_KEY", raising=False)
    monkeypatch.delenv("OPS_NOTIFY_EMAILS", raising=False)
    mock = MockDB()
    mock.unique("orders", "orderNo")
    mock.unique("trips", "tripNo")
    mock.unique("customers", "custCd")
    mock.unique("vehicles", "vehicleNo")
    mock.unique("fleets", "vehicleId")
    mock.unique("invoices", "invoiceNo")
    mock.unique("loading_auths", "tripId")
    mock.unique("bowser_inventories", "vehicleNo")
    return mock
