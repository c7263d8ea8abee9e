import pytest
from fastapi.testclient import TestClient

from app.certification import CertificationStateMachine
from app.database import InMemoryBatchStore, InMemoryValidationStore
from app.main import create_app
from app.policy import ValidationPolicyEngine
from app.service import ProvenanceService
from utils.notify import Notifier

from tests.helpers import FlakyLedger, ScriptedOracle, auth_headers


@pytest.fixture
def oracle():
    return ScriptedOracle()


@pytest.fixture
def ledger():
    return FlakyLedger()


@pytest.fixture
def batches():
    return InMemoryBatchStore()


@pytest.fixture
def validations():
    return InMemoryValidationStore()


@pytest.fixture
def notifier():
    return Notifier()


@pytest.fixture
def certifier(ledger, batches, notifier):
    return CertificationStateMachine(ledger=ledger, store=batches, notifier=notifier)


@pytest.fixture
def service(oracle, certifier, validations):
    return ProvenanceService(
        policy=ValidationPolicyEngine(oracle),
        certifier=certifier,
        validations=validations,
    )


@pytest.fixture
def client(service):
    return TestClient(create_app(service))


@pytest.fixture
def reviewer_headers():
    return auth_headers()
