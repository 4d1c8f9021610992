import copy
import itertools
from types import SimpleNamespace

import pytest
from fastapi.testclient import TestClient

from dependencies import get_clerk, get_gateway, get_ledger, get_openai, get_reconciler, get_tracker
from errors import AuthLookupError, Unauthorized
from main import app
from services.credit_service import CreditLedger
from services.job_service import JobTracker
from services.payment_service import FASTSPRING, PADDLE, PAYHIP, PaymentReconciler
from services.replicate_service import ModelGateway

WEBHOOK_SECRETS = {
    PAYHIP: "payhip-secret",
    FASTSPRING: "fastspring-secret",
    PADDLE: "paddle-secret",
}


class FakeClerk:
    """In-memory stand-in for ClerkClient; tokens look like ``token-<user id>``."""

    def __init__(self):
        self.users = {}
        self.metadata_updates = []

    def add_user(self, user_id, credits=None, email=None, processed=None):
        public = {} if credits is None else {"credits": credits}
        private = {} if processed is None else {"processedPaymentIds": list(processed)}
        self.users[user_id] = {
            "id": user_id,
            "email_addresses": [{"email_address": email}] if email else [],
            "public_metadata": public,
            "private_metadata": private,
        }
        return self.users[user_id]

    def credits(self, user_id):
        return self.users[user_id]["public_metadata"].get("credits")

    async def verify_token(self, token):
        user_id = token[len("token-"):] if token.startswith("token-") else None
        if not user_id or user_id not in self.users:
            raise Unauthorized("Unauthorized: Please login first.")
        return user_id

    async def get_user(self, user_id):
        if user_id not in self.users:
            raise AuthLookupError(f"User {user_id} not found")
        return copy.deepcopy(self.users[user_id])

    async def find_user_by_email(self, email):
        for user in self.users.values():
            if any(e["email_address"] == email for e in user["email_addresses"]):
                return copy.deepcopy(user)
        return None

    async def update_metadata(self, user_id, public_metadata=None, private_metadata=None):
        if user_id not in self.users:
            raise AuthLookupError(f"User {user_id} not found")
        self.metadata_updates.append((user_id, public_metadata, private_metadata))
        user = self.users[user_id]
        user["public_metadata"].update(public_metadata or {})
        user["private_metadata"].update(private_metadata or {})
        return copy.deepcopy(user)


class RateLimitError(Exception):
    status = 429

    def __init__(self, message="Request was throttled", retry_after=None):
        super().__init__(message)
        if retry_after is not None:
            self.retry_after = retry_after


class FakePredictions:
    def __init__(self):
        self.created = []
        self.canceled = []
        self.store = {}
        self.failures = []
        self.get_failures = []
        self._ids = itertools.count(1)

    def fail_next(self, *errors):
        self.failures.extend(errors)

    async def async_create(self, version=None, input=None, **params):
        if self.failures:
            raise self.failures.pop(0)
        prediction = SimpleNamespace(
            id=f"pred{next(self._ids)}", status="starting", output=None, error=None, version=version, input=input
        )
        self.created.append(prediction)
        self.store[prediction.id] = prediction
        return prediction

    def fail_get(self, *errors):
        self.get_failures.extend(errors)

    async def async_get(self, prediction_id):
        if self.get_failures:
            raise self.get_failures.pop(0)
        if prediction_id not in self.store:
            raise Exception(f"ReplicateError: status: 404 prediction {prediction_id} not found")
        return self.store[prediction_id]

    async def async_cancel(self, prediction_id):
        self.canceled.append(prediction_id)
        if prediction_id in self.store:
            self.store[prediction_id].status = "canceled"
        return self.store.get(prediction_id)

    def set(self, prediction_id, status, output=None, error=None):
        self.store[prediction_id] = SimpleNamespace(id=prediction_id, status=status, output=output, error=error)


class FakeModels:
    def __init__(self):
        self.lookups = []

    async def async_get(self, key):
        self.lookups.append(key)
        return SimpleNamespace(latest_version=SimpleNamespace(id=f"latest-{key}"))


class FakeReplicate:
    def __init__(self):
        self.predictions = FakePredictions()
        self.models = FakeModels()


class FakePayPal:
    def __init__(self):
        self.orders = {}

    async def get_order(self, order_id):
        return self.orders[order_id]

    def add_order(self, order_id, value, status="COMPLETED"):
        self.orders[order_id] = {
            "id": order_id,
            "status": status,
            "purchase_units": [{"payments": {"captures": [{"amount": {"value": value, "currency_code": "USD"}}]}}],
        }


async def no_sleep(seconds):
    no_sleep.calls.append(seconds)


no_sleep.calls = []


@pytest.fixture
def clerk():
    return FakeClerk()


@pytest.fixture
def fake_replicate():
    return FakeReplicate()


@pytest.fixture
def paypal():
    return FakePayPal()


@pytest.fixture
def sleeps():
    no_sleep.calls = []
    return no_sleep.calls


@pytest.fixture
def ledger(clerk):
    return CreditLedger(clerk)


@pytest.fixture
def gateway(fake_replicate, sleeps):
    return ModelGateway(fake_replicate, sleep=no_sleep)


@pytest.fixture
def reconciler(ledger, clerk, paypal):
    return PaymentReconciler(ledger, clerk, secrets=dict(WEBHOOK_SECRETS), credits_per_unit=2.0, paypal=paypal)


@pytest.fixture
def client(clerk, ledger, gateway, fake_replicate, reconciler):
    app.dependency_overrides[get_clerk] = lambda: clerk
    app.dependency_overrides[get_ledger] = lambda: ledger
    app.dependency_overrides[get_gateway] = lambda: gateway
    app.dependency_overrides[get_tracker] = lambda: JobTracker(fake_replicate)
    app.dependency_overrides[get_reconciler] = lambda: reconciler
    app.dependency_overrides[get_openai] = lambda: None
    yield TestClient(app)
    app.dependency_overrides.clear()
