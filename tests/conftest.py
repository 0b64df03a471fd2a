"""
Shared fixtures: a fresh in-memory service and two registered officers.
"""

from datetime import datetime, timedelta, timezone

import pytest

from custody.core import CustodyService, InMemoryKeyCustody
from custody.db import InMemoryCustodyStore
from custody.observability import MetricsCollector
from custody.schemas import EvidenceCreate, EvidenceType


COLLECTED_AT = datetime(2024, 3, 1, 9, 30, tzinfo=timezone.utc)


def evidence_command(**overrides) -> EvidenceCreate:
    """A valid evidence command. Override any field by keyword."""
    fields = {
        "name": "Seized laptop",
        "case_no": "CASE-2024-001",
        "evidence_type": EvidenceType.DIGITAL,
        "description": "Grey laptop, serial KX-2281",
        "collection_date": COLLECTED_AT,
        "collection_location": "14 Mill Lane",
        "storage_location": "Evidence Room A, shelf 2",
        "storage_pointer": "shelf:A-2-01",
    }
    fields.update(overrides)
    return EvidenceCreate(**fields)


@pytest.fixture
def collected_at():
    return COLLECTED_AT


@pytest.fixture
def make_evidence():
    return evidence_command


@pytest.fixture
def metrics():
    return MetricsCollector()


@pytest.fixture
def service(metrics):
    return CustodyService(
        store=InMemoryCustodyStore(),
        keys=InMemoryKeyCustody(),
        metrics=metrics,
    )


@pytest.fixture
def officer(service):
    return service.register_principal("Officer R. Banda")


@pytest.fixture
def analyst(service):
    return service.register_principal("Analyst M. Ito")


@pytest.fixture
def laptop(service, officer):
    return service.create_evidence(evidence_command(), officer.principal_id)


@pytest.fixture
def knife(service, officer):
    return service.create_evidence(
        evidence_command(
            name="Kitchen knife",
            evidence_type=EvidenceType.WEAPON,
            description="Steel blade, 20 cm",
            collection_date=COLLECTED_AT + timedelta(minutes=20),
            storage_pointer="locker:A-7",
        ),
        officer.principal_id,
    )
