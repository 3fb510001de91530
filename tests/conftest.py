"""Shared test fixtures."""
from datetime import datetime
from unittest.mock import patch, MagicMock

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from app.database import Base


# Every module that opens its own session via get_session()
SESSION_CONSUMERS = (
    'app.pipeline.ingest.get_session',
    'app.pipeline.batches.get_session',
    'app.pipeline.scheduler.get_session',
    'app.pipeline.reconcile.get_session',
    'app.routes.queue.get_session',
)


class FakeRedis:
    """Minimal in-memory Redis fake for circuit breaker tests."""

    def __init__(self):
        self.get_store = {}
        self.hash_store = {}

    def get(self, key):
        return self.get_store.get(key)

    def set(self, key, value):
        self.get_store[key] = value

    def incr(self, key):
        val = int(self.get_store.get(key, 0)) + 1
        self.get_store[key] = str(val)
        return val

    def delete(self, *keys):
        for k in keys:
            self.get_store.pop(k, None)
            self.hash_store.pop(k, None)

    def hset(self, key, field, value):
        self.hash_store.setdefault(key, {})[field] = value

    def hincrby(self, key, field, amount):
        h = self.hash_store.setdefault(key, {})
        h[field] = str(int(h.get(field, 0)) + amount)

    def hgetall(self, key):
        return dict(self.hash_store.get(key, {}))

    def pipeline(self):
        return FakePipeline(self)


class FakePipeline:
    """Fake Redis pipeline that buffers ops until execute()."""

    def __init__(self, redis):
        self._redis = redis
        self._ops = []

    def set(self, key, value):
        self._ops.append(('set', key, value))
        return self

    def delete(self, *keys):
        self._ops.append(('delete', keys))
        return self

    def hincrby(self, key, field, amount):
        self._ops.append(('hincrby', key, field, amount))
        return self

    def hset(self, key, field, value):
        self._ops.append(('hset', key, field, value))
        return self

    def execute(self):
        for op in self._ops:
            if op[0] == 'set':
                self._redis.set(op[1], op[2])
            elif op[0] == 'delete':
                self._redis.delete(*op[1])
            elif op[0] == 'hincrby':
                self._redis.hincrby(op[1], op[2], op[3])
            elif op[0] == 'hset':
                self._redis.hset(op[1], op[2], op[3])
        self._ops = []


class FakeTimer:
    """Stands in for threading.Timer; fires only when a test calls fire()."""

    def __init__(self, interval, function, args=None):
        self.interval = interval
        self.function = function
        self.args = args or ()
        self.daemon = False
        self.started = False
        self.cancelled = False

    def start(self):
        self.started = True

    def cancel(self):
        self.cancelled = True

    def fire(self):
        self.function(*self.args)


class FakeTimerFactory:
    def __init__(self):
        self.timers = []

    def __call__(self, interval, function, args=None):
        timer = FakeTimer(interval, function, args=args)
        self.timers.append(timer)
        return timer

    @property
    def live(self):
        return [t for t in self.timers if t.started and not t.cancelled]


# ── Database ──────────────────────────────────────────────────────────────────

@pytest.fixture
def db_engine():
    """In-memory SQLite engine with schema created."""
    engine = create_engine(
        'sqlite:///:memory:',
        connect_args={'check_same_thread': False},
        poolclass=StaticPool,
    )
    import app.models.brand
    import app.models.lead
    import app.models.task
    import app.models.batch
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def db_session(db_engine):
    """SQLAlchemy session bound to in-memory SQLite. Rolls back after each test."""
    Session = sessionmaker(bind=db_engine, autoflush=False)
    session = Session()
    yield session
    session.rollback()
    session.close()


@pytest.fixture(autouse=True)
def patch_get_session(db_session):
    """Route all get_session() calls to the test session.

    We disable close() so that code calling session.close() in its finally
    blocks doesn't invalidate the shared test session.
    """
    _real_close = db_session.close
    db_session.close = lambda: None
    patchers = [patch(target, return_value=db_session) for target in SESSION_CONSUMERS]
    for p in patchers:
        p.start()
    yield db_session
    for p in patchers:
        p.stop()
    db_session.close = _real_close


# ── Redis / breakers ──────────────────────────────────────────────────────────

@pytest.fixture
def fake_redis():
    return FakeRedis()


@pytest.fixture(autouse=True)
def breakers(fake_redis):
    """Fresh, closed breakers backed by FakeRedis for every test."""
    from app.services.circuit_breaker import init_breakers, _registry
    _registry.clear()
    init_breakers(fake_redis)
    yield fake_redis
    _registry.clear()


@pytest.fixture
def fake_timers():
    return FakeTimerFactory()


@pytest.fixture
def slack_post():
    """Capture Slack posts without a network call."""
    with patch('app.services.notifications.SLACK_WEBHOOK_URL', 'https://hooks.slack.test/x'), \
         patch('app.services.notifications.requests.post') as mock_post:
        yield mock_post


# ── Flask ─────────────────────────────────────────────────────────────────────

@pytest.fixture
def flushed():
    """Records every batch the app's collector hands off."""
    return []


@pytest.fixture
def app(breakers, fake_timers, flushed):
    """Flask test app with a deterministic collector."""
    from app import create_app
    from app.services.circuit_breaker import init_breakers
    from app.services.collector import BatchCollector

    app = create_app(flush_handler=flushed.append)
    app.config['TESTING'] = True
    init_breakers(breakers)
    app.extensions['lead_collector'] = BatchCollector(
        flush_handler=flushed.append, batch_size=3, timeout=30, timer_factory=fake_timers,
    )
    yield app


@pytest.fixture
def client(app):
    """Flask test client."""
    with app.test_client() as c:
        yield c


# ── Row factories ─────────────────────────────────────────────────────────────

@pytest.fixture
def make_brand(db_session):
    from app.models.brand import Brand

    def _make(**overrides):
        defaults = dict(name='Acme', subscription_plan='pro', leads_used_this_month=0, max_leads_per_month=100)
        defaults.update(overrides)
        brand = Brand(**defaults)
        db_session.add(brand)
        db_session.commit()
        return brand
    return _make


@pytest.fixture
def make_account(db_session):
    from app.models.brand import ApiSetting

    def _make(account_id, brand_id, encrypted_api_key='plain-key'):
        setting = ApiSetting(account_id=str(account_id), brand_id=brand_id, encrypted_api_key=encrypted_api_key)
        db_session.add(setting)
        db_session.commit()
        return setting
    return _make


@pytest.fixture
def make_lead(db_session):
    from app.models.lead import LeadRecord

    def _make(**overrides):
        defaults = dict(
            brand_id=1,
            lead_email='lead@example.com',
            conversation=[],
            parsed_conversation=None,
            processed=False,
        )
        defaults.update(overrides)
        lead = LeadRecord(**defaults)
        db_session.add(lead)
        db_session.commit()
        return lead
    return _make


@pytest.fixture
def make_task(db_session):
    from app.models.task import Task, TaskStatus, TaskType

    def _make(**overrides):
        defaults = dict(
            task_type=TaskType.AI_INTENT,
            status=TaskStatus.PENDING,
            priority=1,
            brand_id=1,
            payload={'prompt': 'score this'},
        )
        defaults.update(overrides)
        task = Task(**defaults)
        db_session.add(task)
        db_session.commit()
        return task
    return _make


@pytest.fixture
def make_batch(db_session):
    from app.models.batch import AiBatch

    def _make(batch_handle='msgbatch_01', **overrides):
        defaults = dict(brand_id=1, task_ids=[], lead_ids=[], created_at=datetime.now())
        defaults.update(overrides)
        batch = AiBatch(batch_handle=batch_handle, **defaults)
        db_session.add(batch)
        db_session.commit()
        return batch
    return _make


@pytest.fixture
def sample_history():
    """SmartLead-style email_history for one lead."""
    return [
        {
            'type': 'SENT',
            'time': '2026-03-01T10:00:00Z',
            'from': 'sdr@agency.com',
            'to': 'lead@example.com',
            'subject': 'Quick question',
            'email_body': '<p>Hi Jane,&nbsp;are you free <b>this week</b>?</p>',
            'open_count': 2,
        },
        {
            'type': 'REPLY',
            'time': '2026-03-02T09:30:00Z',
            'from': 'lead@example.com',
            'to': 'sdr@agency.com',
            'subject': 'Re: Quick question',
            'email_body': '<div>Yes — Thursday works.<br>Send a link.</div>',
        },
    ]


@pytest.fixture
def mock_anthropic():
    """Anthropic client stand-in for the batch helpers."""
    mock = MagicMock()
    with patch('app.services.anthropic_batches.client', mock):
        yield mock
