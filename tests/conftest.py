"""Pytest configuration and shared fixtures.

Every test gets its own SQLite file, an in-memory SMS gateway and storage, and
a retry policy that records delays instead of sleeping.
"""

import pytest
import requests

from church_sms.database import Database
from church_sms.retry import RetryPolicy
from church_sms.system import ChurchSMSSystem

MIKE = '+12068001141'
SAM = '+14257729189'
SAMI = '+12065910943'
YAB = '+12064349652'


class FakeGateway:
    """Records outbound SMS; numbers in fail_numbers always fail"""

    def __init__(self):
        self.sent = []
        self.attempts = []
        self.fail_numbers = set()
        self.flaky = {}

    def send(self, to_phone, body):
        self.attempts.append(to_phone)
        if to_phone in self.fail_numbers:
            raise RuntimeError(f"carrier rejected {to_phone}")
        if self.flaky.get(to_phone, 0) > 0:
            self.flaky[to_phone] -= 1
            raise RuntimeError("temporary gateway error")
        self.sent.append((to_phone, body))
        return f"SM{len(self.attempts):06d}"

    def messages_to(self, phone):
        return [body for to_phone, body in self.sent if to_phone == phone]

    def status(self):
        return {"status": "fake"}


class FakeStorage:
    def __init__(self):
        self.objects = {}
        self.fail = False

    def put(self, key, content, content_type, metadata=None):
        if self.fail:
            raise RuntimeError("bucket unavailable")
        self.objects[key] = (content, content_type, metadata)
        return f"https://media.example.org/{key}"

    def status(self):
        return {"status": "fake"}


class FakeResponse:
    def __init__(self, content=b'', content_type='image/jpeg', status_code=200):
        self.content = content
        self.status_code = status_code
        self.headers = {'content-type': content_type} if content_type else {}

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.HTTPError(f"HTTP {self.status_code}")

    def iter_content(self, chunk_size=8192):
        for i in range(0, len(self.content), chunk_size):
            yield self.content[i:i + chunk_size]


class FakeSession:
    """Serves registered URLs; anything else is a connection error"""

    def __init__(self):
        self.responses = {}
        self.requests = []

    def get(self, url, auth=None, timeout=None, stream=False):
        self.requests.append((url, auth))
        if url not in self.responses:
            raise requests.ConnectionError(f"cannot reach {url}")
        return self.responses[url]


@pytest.fixture
def db(tmp_path):
    return Database(str(tmp_path / 'church_test.db'))


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def storage():
    return FakeStorage()


@pytest.fixture
def http_session():
    return FakeSession()


@pytest.fixture
def sleeps():
    return []


@pytest.fixture
def retry_policy(sleeps):
    return RetryPolicy(max_attempts=3, delay=1.0, sleep=sleeps.append)


@pytest.fixture
def congregation(db):
    """Mike, Sami and Yab are regular members; Sam is the admin"""
    db.add_member(MIKE, 'Mike')
    db.add_member(SAM, 'Sam', is_admin=True, group_name='Church Leadership')
    db.add_member(SAMI, 'Sami')
    db.add_member(YAB, 'Yab')
    return {phone: db.get_member_by_phone(phone) for phone in (MIKE, SAM, SAMI, YAB)}


@pytest.fixture
def sms_system(db, gateway, storage, http_session, retry_policy):
    system = ChurchSMSSystem(
        db, gateway, storage,
        media_auth=('ACtest', 'token'),
        retry_policy=retry_policy,
        delivery_workers=4,
        http_session=http_session
    )
    yield system
    system.shutdown()


def add_reaction(db, message_id, member, reaction_type='love', emoji='❤️', created_at=None):
    return db.create_reaction({
        'original_message_id': message_id,
        'original_message_hash': 'hash',
        'reactor_phone': member['phone'],
        'reactor_name': member['name'],
        'reaction_type': reaction_type,
        'reaction_emoji': emoji,
        'reaction_text': f'{emoji} to "..."',
        'device_type': 'generic',
        'match_method': 'exact',
        'confidence': 1.0
    }, created_at=created_at)
