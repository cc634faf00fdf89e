from datetime import datetime, timedelta

from fastapi.testclient import TestClient
from sqlmodel import Session, select

from classmate import models
from classmate.database import engine
from classmate.main import app
from classmate.utils import rate_limit
from classmate.utils.rate_limit import DatabaseRateLimiter, InMemoryRateLimiter, fixed_window


class FakeClock:
    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


def test_fixed_window_is_aligned_to_epoch_multiples():
    start, end = fixed_window(datetime(2024, 3, 5, 10, 7, 30), 15 * 60)
    assert start == datetime(2024, 3, 5, 10, 0)
    assert end == datetime(2024, 3, 5, 10, 15)
    # the boundary itself opens a new window
    start, _ = fixed_window(datetime(2024, 3, 5, 10, 15), 15 * 60)
    assert start == datetime(2024, 3, 5, 10, 15)


def test_fixed_window_rejects_non_positive_length():
    try:
        fixed_window(datetime(2024, 1, 1), 0)
    except ValueError:
        pass
    else:
        raise AssertionError('expected ValueError')


def test_policy_keys():
    assert rate_limit.LOGIN.key('10.0.0.1') == 'login:10.0.0.1'
    assert rate_limit.ASSIGNMENT_SUBMISSION.key(4, 9) == 'assignment_submission:4:9'
    assert rate_limit.PASSWORD_CHANGE.max_requests == 3
    assert rate_limit.PASSWORD_RESET.key(7) == 'password_reset:7'


def test_in_memory_limiter_blocks_then_resets_with_window():
    clock = FakeClock(1000.0)
    limiter = InMemoryRateLimiter(clock=clock)
    assert limiter.allow('k', 2, 60) == (True, 0)
    assert limiter.allow('k', 2, 60) == (True, 0)
    allowed, retry_after = limiter.allow('k', 2, 60)
    assert allowed is False
    # window [960, 1020) ends in 20 seconds
    assert retry_after == 20
    assert limiter.allow('other', 2, 60)[0] is True
    clock.now = 1020.0
    assert limiter.allow('k', 2, 60)[0] is True
    limiter.reset()


def test_in_memory_limiter_drops_ended_windows():
    clock = FakeClock(1000.0)
    limiter = InMemoryRateLimiter(clock=clock)
    for n in range(50):
        limiter.allow(f'ip:{n}', 5, 60)
    assert len(limiter) == 50
    clock.now = 1100.0
    assert limiter.allow('ip:late', 5, 60) == (True, 0)
    assert len(limiter) == 1


def test_database_limiter_counts_per_window():
    now = datetime(2024, 6, 1, 12, 0, 5)
    with Session(engine) as session:
        limiter = DatabaseRateLimiter(session)
        decisions = [limiter.check('unit:db', 3, 60, now=now) for _ in range(4)]
        assert [d.allowed for d in decisions] == [True, True, True, False]
        assert decisions[0].remaining == 2
        assert decisions[3].retry_after == 55
        assert decisions[3].reset_at == datetime(2024, 6, 1, 12, 1)

        later = limiter.check('unit:db', 3, 60, now=now + timedelta(minutes=1))
        assert later.allowed is True
        rows = session.exec(select(models.RateLimit).where(models.RateLimit.key == 'unit:db')).all()
        assert sorted(r.count for r in rows) == [1, 4]


def test_database_limiter_increments_are_not_lost_between_sessions():
    now = datetime(2024, 7, 1, 9, 0, 30)
    with Session(engine, expire_on_commit=False) as first, Session(engine, expire_on_commit=False) as second:
        a = DatabaseRateLimiter(first)
        b = DatabaseRateLimiter(second)
        a.check('unit:shared', 10, 60, now=now)
        b.check('unit:shared', 10, 60, now=now)
        # `first` still holds the row it loaded before `second` counted
        decision = a.check('unit:shared', 10, 60, now=now)
        assert decision.remaining == 7
    with Session(engine) as session:
        row = session.exec(select(models.RateLimit).where(models.RateLimit.key == 'unit:shared')).one()
        assert row.count == 3


def test_database_limiter_cleanup_removes_expired_windows():
    with Session(engine) as session:
        limiter = DatabaseRateLimiter(session)
        limiter.check_policy(rate_limit.PROFILE_UPDATE, 1, now=datetime(2020, 1, 1, 8, 30))
        limiter.check_policy(rate_limit.PROFILE_UPDATE, 1, now=datetime(2020, 1, 1, 10, 30))
        removed = limiter.cleanup_expired(now=datetime(2020, 1, 1, 10, 45))
        assert removed == 1
        remaining = session.exec(select(models.RateLimit)).all()
        assert [r.window_start for r in remaining] == [datetime(2020, 1, 1, 10, 0)]


def test_login_is_rate_limited_per_ip():
    client = TestClient(app)
    body = {'identifier': 'ghost@example.edu', 'password': 'Nothing123'}
    for _ in range(rate_limit.LOGIN.max_requests):
        assert client.post('/auth/login', json=body).status_code == 401
    r = client.post('/auth/login', json=body)
    assert r.status_code == 429
    assert int(r.headers['Retry-After']) >= 1
    with Session(engine) as session:
        hits = session.exec(
            select(models.AuditLog).where(models.AuditLog.action == models.AuditAction.RATE_LIMIT_EXCEEDED)
        ).all()
        assert hits


def test_profile_updates_are_rate_limited(student):
    for n in range(rate_limit.PROFILE_UPDATE.max_requests):
        r = student.client.put('/profile', json={'other_name': f'Name{n}'})
        assert r.status_code == 200
    assert student.client.put('/profile', json={'other_name': 'Again'}).status_code == 429
