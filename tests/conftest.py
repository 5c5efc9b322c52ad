import datetime as dt
import hashlib
import os
import tempfile

# Settings are read at import time; configure the environment first.
_tmpdir = tempfile.mkdtemp(prefix="resume-builder-tests-")
os.environ["JWT_SECRET"] = "test-jwt-secret"
os.environ["DATABASE_URL"] = "sqlite:///" + os.path.join(_tmpdir, "test.db")
os.environ["R2_ACCOUNT_ID"] = "test-account"
os.environ["R2_ACCESS_KEY_ID"] = "test-access-key"
os.environ["R2_SECRET_ACCESS_KEY"] = "test-secret-key"
os.environ["LLM_PROVIDER"] = "openai"
os.environ["OPENAI_API_KEY"] = "test-openai-key"
os.environ["GOOGLE_CLIENT_ID"] = "test-client-id"

import pytest
from fastapi.testclient import TestClient

import main
from ai_usage import TokenUsage
from auth import create_token
from database import Base, SessionLocal, engine
from llm_client import Completion
from models import Resume, User, UserSubscription
from storage import ObjectHead, StoredObject
from subscription import utcnow


class InMemoryBlobStore:
    """Stand-in for BlobStore that records reads."""

    def __init__(self):
        self.objects = {}
        self.get_calls = []
        self.fail_with = None
        self.fail_put_with = None
        self.fail_delete_with = None

    def get(self, key):
        self.get_calls.append(key)
        if self.fail_with is not None:
            raise self.fail_with
        if key not in self.objects:
            return None
        data, content_type, etag = self.objects[key]
        return StoredObject(body=iter([data]), etag=etag, content_type=content_type, size=len(data))

    def head(self, key):
        if key not in self.objects:
            return None
        data, _, etag = self.objects[key]
        return ObjectHead(size=len(data), etag=etag)

    def put(self, key, data, content_type):
        if self.fail_put_with is not None:
            raise self.fail_put_with
        etag = '"%s"' % hashlib.md5(data).hexdigest()
        self.objects[key] = (data, content_type, etag)

    def delete(self, key):
        if self.fail_delete_with is not None:
            raise self.fail_delete_with
        self.objects.pop(key, None)

    def presigned_upload_url(self, key, content_type, content_length, expires_in=300):
        return f"https://uploads.example.test/{key}?X-Amz-Expires={expires_in}"


class FakeLLM:
    def __init__(self):
        self.text = "Enhanced text"
        self.usage = TokenUsage(input_tokens=10, output_tokens=20, total_tokens=30)
        self.error = None
        self.calls = []

    def complete(self, messages, temperature=0.7, json_mode=False):
        self.calls.append(messages)
        if self.error is not None:
            raise self.error
        return Completion(text=self.text, usage=self.usage, model="fake-model")


@pytest.fixture(autouse=True)
def reset_db():
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    yield


@pytest.fixture
def db():
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def store():
    return InMemoryBlobStore()


@pytest.fixture
def llm():
    return FakeLLM()


@pytest.fixture
def client(store, llm):
    main.app.dependency_overrides[main.get_blob_store] = lambda: store
    main.app.dependency_overrides[main.get_llm] = lambda: llm
    with TestClient(main.app) as c:
        yield c
    main.app.dependency_overrides.clear()


@pytest.fixture
def make_user(db):
    def _make(user_id=None, email=None):
        user = User(email=email or f"{user_id or 'user'}-{os.urandom(4).hex()}@example.com")
        if user_id:
            user.id = user_id
        db.add(user)
        db.commit()
        db.refresh(user)
        return user

    return _make


@pytest.fixture
def add_subscription(db):
    def _add(user_id, period_end=None, cancel=False):
        sub = UserSubscription(
            user_id=user_id,
            stripe_customer_id="cus_test",
            stripe_subscription_id="sub_test",
            stripe_price_id="price_test",
            stripe_current_period_end=period_end or (utcnow() + dt.timedelta(days=30)),
            stripe_cancel_at_period_end=cancel,
        )
        db.add(sub)
        db.commit()
        return sub

    return _add


@pytest.fixture
def add_resumes(db):
    def _add(user_id, count):
        rows = [Resume(user_id=user_id, title=f"Resume {i}") for i in range(count)]
        db.add_all(rows)
        db.commit()
        return rows

    return _add


@pytest.fixture
def auth_headers():
    def _headers(user):
        return {"Authorization": f"Bearer {create_token(user.id)}"}

    return _headers


def _single_page_pdf(text):
    stream = b"BT /F1 24 Tf 72 720 Td (" + text.encode("latin-1") + b") Tj ET"
    objects = [
        b"<< /Type /Catalog /Pages 2 0 R >>",
        b"<< /Type /Pages /Kids [3 0 R] /Count 1 >>",
        b"<< /Type /Page /Parent 2 0 R /MediaBox [0 0 612 792] "
        b"/Contents 4 0 R /Resources << /Font << /F1 5 0 R >> >> >>",
        b"<< /Length %d >>\nstream\n" % len(stream) + stream + b"\nendstream",
        b"<< /Type /Font /Subtype /Type1 /BaseFont /Helvetica >>",
    ]

    out = bytearray(b"%PDF-1.4\n")
    offsets = []
    for number, body in enumerate(objects, start=1):
        offsets.append(len(out))
        out += b"%d 0 obj\n" % number + body + b"\nendobj\n"

    xref_at = len(out)
    out += b"xref\n0 %d\n" % (len(objects) + 1)
    out += b"0000000000 65535 f \n"
    for offset in offsets:
        out += b"%010d 00000 n \n" % offset
    out += b"trailer\n<< /Size %d /Root 1 0 R >>\nstartxref\n%d\n%%%%EOF\n" % (len(objects) + 1, xref_at)
    return bytes(out)


@pytest.fixture
def make_pdf():
    """Builds a one-page PDF whose only content is ``text`` in Helvetica."""
    return _single_page_pdf
