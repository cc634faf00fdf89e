from datetime import timedelta

from fastapi.testclient import TestClient
from sqlmodel import Session, select

from classmate import models
from classmate.database import engine
from classmate.main import app
from conftest import PASSWORD, login, new_admin, new_student, student_payload, teacher_payload

client = TestClient(app)


def _fresh_post(path, **kwargs):
    """POST from a throwaway client so no session cookie sticks to `client`."""
    return TestClient(app).post(path, **kwargs)


def test_health_and_request_id():
    r = client.get('/health', headers={'X-Request-ID': 'abc123'})
    assert r.status_code == 200
    assert r.json() == {'status': 'ok'}
    assert r.headers['X-Request-ID'] == 'abc123'


def test_register_login_by_email_and_matric():
    payload = student_payload()
    r = client.post('/auth/register/student', json=payload)
    assert r.status_code == 201
    assert r.json()['role'] == 'STUDENT'

    by_email = _fresh_post('/auth/login', json={'identifier': payload['email'].upper(), 'password': PASSWORD})
    assert by_email.status_code == 200
    body = by_email.json()
    assert body['access_token'] and body['refresh_token']
    assert 'session-token' in by_email.cookies

    by_matric = _fresh_post('/auth/login', json={'identifier': payload['matric_number'].lower(), 'password': PASSWORD})
    assert by_matric.status_code == 200


def test_profile_pii_is_encrypted_at_rest_and_decrypted_for_owner():
    payload = student_payload()
    client.post('/auth/register/student', json=payload)
    me = login(payload['email']).get('/auth/me').json()
    assert me['profile']['email'] == payload['email']
    assert me['profile']['phone'] == payload['phone']
    assert me['profile']['nin'].endswith(payload['nin'][-4:])
    assert me['profile']['nin'].startswith('*')
    with Session(engine) as session:
        row = session.exec(select(models.Student).where(models.Student.user_id == me['id'])).one()
        assert row.email != payload['email']
        assert payload['phone'] not in row.phone
        assert row.nin.count('.') == 2


def test_duplicate_registration_rejected():
    payload = student_payload()
    assert client.post('/auth/register/student', json=payload).status_code == 201
    again = dict(payload, email='other@example.edu')
    r = client.post('/auth/register/student', json=again)
    assert r.status_code == 400
    assert 'error' in r.json()


def test_validation_errors_use_error_body():
    r = client.post('/auth/register/student', json=student_payload(password='short'))
    assert r.status_code == 400
    assert 'password' in r.json()['error']


def test_unauthenticated_requests_rejected():
    r = client.get('/auth/me')
    assert r.status_code == 401
    assert r.json() == {'error': 'not authenticated'}
    r2 = client.get('/auth/me', headers={'Authorization': 'Bearer not-a-jwt'})
    assert r2.status_code == 401


def test_bearer_token_authenticates_without_cookie():
    account = new_student()
    tokens = _fresh_post('/auth/login', json={'identifier': account.email, 'password': PASSWORD}).json()
    bare = TestClient(app)
    r = bare.get('/auth/me', headers={'Authorization': f"Bearer {tokens['access_token']}"})
    assert r.status_code == 200
    assert r.json()['id'] == account.user_id


def test_wrong_password_then_lockout():
    account = new_student()
    for _ in range(4):
        r = _fresh_post('/auth/login', json={'identifier': account.email, 'password': 'Wrong1234'})
        assert r.status_code == 401
    fifth = _fresh_post('/auth/login', json={'identifier': account.email, 'password': 'Wrong1234'})
    assert fifth.status_code == 403
    assert 'locked' in fifth.json()['error']
    # correct password is refused while locked
    r = _fresh_post('/auth/login', json={'identifier': account.email, 'password': PASSWORD})
    assert r.status_code == 403
    with Session(engine) as session:
        failures = session.exec(
            select(models.AuditLog).where(
                models.AuditLog.user_id == account.user_id,
                models.AuditLog.action == models.AuditAction.USER_LOGIN_FAILED,
            )
        ).all()
        assert len(failures) == 5


def test_unknown_account_login_fails():
    r = _fresh_post('/auth/login', json={'identifier': 'nobody@example.edu', 'password': PASSWORD})
    assert r.status_code == 401
    assert r.json()['error'] == 'invalid credentials'


def test_refresh_rotates_tokens():
    account = new_student()
    first = _fresh_post('/auth/login', json={'identifier': account.email, 'password': PASSWORD}).json()
    r = _fresh_post('/auth/refresh', json={'refresh_token': first['refresh_token']})
    assert r.status_code == 200
    assert r.json()['refresh_token'] != first['refresh_token']
    # the old refresh token is no longer valid
    stale = _fresh_post('/auth/refresh', json={'refresh_token': first['refresh_token']})
    assert stale.status_code == 401


def test_logout_revokes_session():
    account = new_student()
    assert account.client.get('/auth/me').status_code == 200
    r = account.client.post('/auth/logout')
    assert r.status_code == 200
    assert account.client.get('/auth/me').status_code == 401


def test_list_and_terminate_sessions():
    account = new_student()
    other = login(account.email)
    sessions = account.client.get('/auth/sessions').json()
    assert len(sessions) == 2
    current = [s for s in sessions if s['is_current']]
    assert len(current) == 1
    victim = [s for s in sessions if not s['is_current']][0]
    r = account.client.delete(f"/auth/sessions/{victim['id']}")
    assert r.status_code == 200
    assert other.get('/auth/me').status_code == 401
    assert account.client.delete(f"/auth/sessions/{victim['id']}").status_code == 404


def test_cannot_terminate_someone_elses_session():
    a = new_student()
    b = new_student()
    b_session = b.client.get('/auth/sessions').json()[0]
    r = a.client.delete(f"/auth/sessions/{b_session['id']}")
    assert r.status_code == 403


def test_password_change_revokes_other_sessions():
    account = new_student()
    other = login(account.email)
    r = account.client.post('/profile/password', json={'current_password': 'Wrong9999', 'new_password': 'Newpass123'})
    assert r.status_code == 400
    r = account.client.post('/profile/password', json={'current_password': PASSWORD, 'new_password': 'Newpass123'})
    assert r.status_code == 200
    assert r.json()['revoked_sessions'] == 1
    assert other.get('/auth/me').status_code == 401
    assert account.client.get('/auth/me').status_code == 200
    assert _fresh_post('/auth/login', json={'identifier': account.email, 'password': 'Newpass123'}).status_code == 200


def test_greeting_is_cached_until_forced():
    account = new_student()
    first = account.client.get('/auth/user/greeting').json()
    assert first['period'] in ('night', 'morning', 'afternoon', 'evening')
    assert account.client.get('/auth/user/greeting').json()['greeting'] == first['greeting']
    forced = account.client.post('/auth/user/greeting')
    assert forced.status_code == 200
    assert forced.json()['next_change'] == first['next_change']


def test_profile_update_and_activity():
    account = new_student()
    r = account.client.put('/profile', json={'other_name': 'Chioma', 'phone': '08099999123'})
    assert r.status_code == 200
    assert r.json()['profile']['other_name'] == 'Chioma'
    assert r.json()['profile']['phone'] == '08099999123'
    forbidden = account.client.put('/profile', json={'title': 'Prof.'})
    assert forbidden.status_code == 400
    actions = [a['action'] for a in account.client.get('/profile/activity').json()]
    assert 'PROFILE_UPDATED' in actions
    assert 'USER_LOGGED_IN' in actions


def test_data_export_contains_account_and_audits():
    account = new_student()
    r = account.client.get('/profile/export')
    assert r.status_code == 200
    data = r.json()
    assert data['account']['id'] == account.user_id
    assert data['enrollments'] == []
    assert any(n['title'] == 'Welcome' for n in data['notifications'])


def _expire_access_window(refresh_token: str):
    """Leave the session refreshable but past its access expiry."""
    with Session(engine) as session:
        row = session.exec(
            select(models.UserSession).where(models.UserSession.refresh_token == refresh_token)
        ).one()
        row.expires_at = models.utcnow() - timedelta(minutes=5)
        session.add(row)
        session.commit()


def test_password_change_revokes_sessions_past_access_expiry():
    account = new_student()
    idle = _fresh_post('/auth/login', json={'identifier': account.email, 'password': PASSWORD}).json()
    _expire_access_window(idle['refresh_token'])
    r = account.client.post('/profile/password', json={'current_password': PASSWORD, 'new_password': 'Newpass123'})
    assert r.status_code == 200
    assert r.json()['revoked_sessions'] == 1
    assert _fresh_post('/auth/refresh', json={'refresh_token': idle['refresh_token']}).status_code == 401


def test_deactivation_revokes_sessions_past_access_expiry():
    account = new_student()
    admin = new_admin()
    idle = _fresh_post('/auth/login', json={'identifier': account.email, 'password': PASSWORD}).json()
    _expire_access_window(idle['refresh_token'])
    assert admin.client.post(f'/admin/users/{account.user_id}/deactivate').status_code == 200
    assert admin.client.post(f'/admin/users/{account.user_id}/activate').status_code == 200
    assert _fresh_post('/auth/refresh', json={'refresh_token': idle['refresh_token']}).status_code == 401
    # the account itself works again after reactivation
    assert _fresh_post('/auth/login', json={'identifier': account.email, 'password': PASSWORD}).status_code == 200


def test_timestamps_round_trip_as_naive_utc():
    account = new_student()
    assert models.utcnow().tzinfo is None
    with Session(engine) as session:
        row = session.exec(select(models.UserSession).where(models.UserSession.user_id == account.user_id)).first()
        assert row.expires_at.tzinfo is None
        assert row.created_at.tzinfo is None
        assert row.expires_at > models.utcnow()


def test_registration_rejects_phone_without_digits():
    r = client.post('/auth/register/student', json=student_payload(phone='phone-number'))
    assert r.status_code == 400
    assert 'phone' in r.json()['error']
    r = client.post('/auth/register/teacher', json=teacher_payload(phone='(+) -- --'))
    assert r.status_code == 400
    assert 'phone' in r.json()['error']


def test_profile_update_rejects_phone_without_digits():
    account = new_student()
    r = account.client.put('/profile', json={'phone': 'call-me-maybe'})
    assert r.status_code == 400
    assert 'phone' in r.json()['error']


def test_profile_update_can_clear_optional_fields():
    account = new_student()
    assert account.client.put('/profile', json={'other_name': 'Chioma'}).json()['profile']['other_name'] == 'Chioma'
    r = account.client.put('/profile', json={'other_name': None})
    assert r.status_code == 200
    assert r.json()['profile']['other_name'] is None
    r = account.client.put('/profile', json={'surname': None})
    assert r.status_code == 400
    assert 'surname' in r.json()['error']
