from fastapi.testclient import TestClient

from classmate.main import app
from conftest import PASSWORD, new_course, new_student

client = TestClient(app)


def test_notification_read_and_delete(student):
    listed = student.client.get('/notifications').json()
    assert listed['unread_count'] == 1
    welcome = listed['items'][0]
    assert welcome['title'] == 'Welcome'

    r = student.client.post(f"/notifications/{welcome['id']}/read")
    assert r.status_code == 200
    assert r.json()['is_read'] is True
    assert student.client.get('/notifications', params={'unread_only': True}).json()['items'] == []

    stats = student.client.get('/notifications/stats').json()
    assert stats == {'total': 1, 'unread': 0, 'by_type': {'SUCCESS': 1}}

    assert student.client.delete(f"/notifications/{welcome['id']}").status_code == 200
    assert student.client.get('/notifications').json()['items'] == []
    assert student.client.delete(f"/notifications/{welcome['id']}").status_code == 404


def test_read_all_notifications(teacher, course, student):
    student.client.post(f"/courses/{course['id']}/enroll")
    teacher.client.post(f"/courses/{course['id']}/lectures", json={'title': 'Week 1'})
    before = student.client.get('/notifications/stats').json()
    assert before['unread'] >= 2
    r = student.client.post('/notifications/read-all')
    assert r.json() == {'updated': before['unread']}
    assert student.client.get('/notifications/stats').json()['unread'] == 0


def test_cannot_touch_someone_elses_notification(student):
    other = new_student()
    theirs = other.client.get('/notifications').json()['items'][0]
    assert student.client.post(f"/notifications/{theirs['id']}/read").status_code == 403
    assert student.client.delete(f"/notifications/{theirs['id']}").status_code == 403


def test_notification_paging_is_validated(student):
    assert student.client.get('/notifications', params={'page': 0}).status_code == 400


def test_student_dashboard(teacher, course, student):
    student.client.post(f"/courses/{course['id']}/enroll")
    data = student.client.get('/dashboard').json()
    assert data['role'] == 'STUDENT'
    assert data['greeting']['greeting']
    assert data['stats']['total_courses'] == 1
    assert data['stats']['current_gpa'] == 0.0
    assert data['recent_notifications']


def test_teacher_dashboard(teacher, course):
    s = new_student()
    s.client.post(f"/courses/{course['id']}/enroll")
    data = teacher.client.get('/dashboard').json()
    assert data['role'] == 'TEACHER'
    assert data['stats']['total_courses'] == 1
    assert data['stats']['total_students'] == 1
    assert data['courses'][0]['enrollment_count'] == 1


def test_admin_dashboard_and_stats(admin):
    new_student()
    data = admin.client.get('/dashboard').json()
    assert data['role'] == 'ADMIN'
    assert data['stats']['total_users'] >= 2
    assert data['recent_activity']
    stats = admin.client.get('/admin/stats').json()
    assert stats['users_by_role']['ADMIN'] >= 1
    assert stats['active_sessions'] >= 1


def test_admin_endpoints_require_admin(student, teacher):
    for account in (student, teacher):
        assert account.client.get('/admin/users').status_code == 403
        assert account.client.get('/admin/audits').status_code == 403
    assert client.get('/admin/stats').status_code == 401


def test_admin_lists_and_creates_users(admin):
    r = admin.client.post('/admin/users', json={
        'staff_id': 'ADM-NEW-1', 'surname': 'Obi', 'first_name': 'Kelechi',
        'email': 'new.admin@example.edu', 'phone': '08071112222', 'password': PASSWORD,
    })
    assert r.status_code == 201
    assert r.json()['role'] == 'ADMIN'
    admins = admin.client.get('/admin/users', params={'role': 'ADMIN'}).json()['items']
    assert 'new.admin@example.edu' in [u['email'] for u in admins]
    assert all(u['role'] == 'ADMIN' for u in admins)


def test_deactivate_and_reactivate_user(admin):
    target = new_student()
    r = admin.client.post(f'/admin/users/{target.user_id}/deactivate')
    assert r.status_code == 200
    assert r.json()['is_active'] is False
    # open sessions are revoked and new logins refused
    assert target.client.get('/auth/me').status_code == 401
    refused = TestClient(app).post('/auth/login', json={'identifier': target.email, 'password': PASSWORD})
    assert refused.status_code == 401
    assert refused.json()['error'] == 'account is deactivated'

    assert admin.client.post(f'/admin/users/{target.user_id}/activate').json()['is_active'] is True
    again = TestClient(app).post('/auth/login', json={'identifier': target.email, 'password': PASSWORD})
    assert again.status_code == 200

    audits = admin.client.get('/admin/audits', params={'action': 'ACCOUNT_DEACTIVATED'}).json()
    assert audits['items'][0]['resource_id'] == str(target.user_id)
    assert audits['items'][0]['security_level'] == 'HIGH'


def test_admin_cannot_deactivate_self(admin):
    r = admin.client.post(f'/admin/users/{admin.user_id}/deactivate')
    assert r.status_code == 400
    assert admin.client.post('/admin/users/999999/deactivate').status_code == 404


def test_audit_search_and_statistics(admin):
    target = new_student()
    TestClient(app).post('/auth/login', json={'identifier': target.email, 'password': 'Wrong1234'})
    page = admin.client.get('/admin/audits', params={'user_id': target.user_id, 'page_size': 2}).json()
    assert page['total'] >= 3
    assert page['pages'] == (page['total'] + 1) // 2
    assert len(page['items']) == 2
    stats = admin.client.get('/admin/audits/stats').json()
    assert stats['by_action']['USER_LOGIN_FAILED'] >= 1
    assert stats['suspicious'] >= 1
    assert stats['total'] == sum(stats['by_action'].values())


def test_rate_limit_cleanup_endpoint(admin):
    r = admin.client.post('/admin/rate-limits/cleanup')
    assert r.status_code == 200
    assert r.json()['removed'] >= 0


def test_course_announcements_reach_enrolled_students(teacher):
    course = new_course(teacher)
    enrolled = new_student()
    bystander = new_student()
    enrolled.client.post(f"/courses/{course['id']}/enroll")
    teacher.client.post(f"/courses/{course['id']}/lectures", json={'title': 'Week 1'})
    titles = [n['title'] for n in enrolled.client.get('/notifications').json()['items']]
    assert any(course['code'] in t for t in titles)
    assert [n['title'] for n in bystander.client.get('/notifications').json()['items']] == ['Welcome']
