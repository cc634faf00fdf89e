from datetime import datetime, timedelta, timezone

from conftest import new_course, new_student, new_teacher

def _due(days: float) -> str:
    return (datetime.now(timezone.utc) + timedelta(days=days)).isoformat()


def _assignment(teacher, course_id, **overrides) -> dict:
    payload = {'title': 'Essay', 'due_date': _due(3), 'max_score': 20, 'publish': True}
    payload.update(overrides)
    r = teacher.client.post(f'/courses/{course_id}/assignments', json=payload)
    assert r.status_code == 201, r.text
    return r.json()


def test_teacher_creates_course_and_student_enrolls(teacher, student):
    course = new_course(teacher, code='intro101', title='Intro to Programming')
    assert course['code'] == 'INTRO101'
    listed = student.client.get('/courses', params={'q': 'intro'}).json()
    assert any(c['id'] == course['id'] and c['is_enrolled'] is False for c in listed)

    r = student.client.post(f"/courses/{course['id']}/enroll")
    assert r.status_code == 201
    assert student.client.post(f"/courses/{course['id']}/enroll").status_code == 400

    mine = student.client.get('/courses', params={'mine': True}).json()
    assert [c['id'] for c in mine] == [course['id']]
    detail = student.client.get(f"/courses/{course['id']}").json()
    assert detail['is_enrolled'] is True
    assert detail['enrollment_count'] == 1
    assert detail['instructor'].startswith('Eze')


def test_duplicate_course_code_rejected(teacher):
    new_course(teacher, code='DUP1')
    r = teacher.client.post('/courses', json={'code': 'dup1', 'title': 'Again'})
    assert r.status_code == 400


def test_students_cannot_create_courses(student):
    r = student.client.post('/courses', json={'code': 'HACK1', 'title': 'Nope'})
    assert r.status_code == 403
    assert r.json()['error'] == 'insufficient permissions'


def test_only_instructor_manages_course(course):
    outsider = new_teacher()
    r = outsider.client.post(f"/courses/{course['id']}/lectures", json={'title': 'Week 1'})
    assert r.status_code == 403


def test_unknown_course_is_404(student):
    assert student.client.get('/courses/999999').status_code == 404
    assert student.client.post('/courses/999999/enroll').status_code == 404


def test_lectures_visible_to_enrolled_students_only(teacher, course, student):
    teacher.client.post(f"/courses/{course['id']}/lectures", json={'title': 'Week 1', 'order_index': 1})
    teacher.client.post(f"/courses/{course['id']}/lectures", json={'title': 'Draft', 'is_published': False})
    assert student.client.get(f"/courses/{course['id']}/lectures").status_code == 403
    student.client.post(f"/courses/{course['id']}/enroll")
    lectures = student.client.get(f"/courses/{course['id']}/lectures").json()
    assert [lec['title'] for lec in lectures] == ['Week 1']
    assert len(teacher.client.get(f"/courses/{course['id']}/lectures").json()) == 2


def test_unpublished_assignment_hidden_until_published(teacher, course, student):
    student.client.post(f"/courses/{course['id']}/enroll")
    draft = _assignment(teacher, course['id'], publish=False)
    assert student.client.get(f"/assignments/{draft['id']}").status_code == 404
    assert student.client.get('/assignments').json() == []

    r = teacher.client.post(f"/assignments/{draft['id']}/publish")
    assert r.status_code == 200
    assert teacher.client.post(f"/assignments/{draft['id']}/publish").status_code == 400
    listed = student.client.get('/assignments').json()
    assert [a['status'] for a in listed] == ['pending']
    notes = student.client.get('/notifications').json()['items']
    assert any(n['type'] == 'REMINDER' for n in notes)


def test_submit_and_grade_assignment(teacher, course, student):
    student.client.post(f"/courses/{course['id']}/enroll")
    assignment = _assignment(teacher, course['id'], allowed_attempts=2)

    assert student.client.post(f"/assignments/{assignment['id']}/submit", json={}).status_code == 400
    first = student.client.post(f"/assignments/{assignment['id']}/submit", json={'content': 'draft one'})
    assert first.status_code == 201
    assert first.json()['attempt_number'] == 1
    assert first.json()['is_late'] is False
    second = student.client.post(f"/assignments/{assignment['id']}/submit", json={'content': 'draft two'})
    assert second.json()['attempt_number'] == 2
    third = student.client.post(f"/assignments/{assignment['id']}/submit", json={'content': 'too many'})
    assert third.status_code == 400
    assert 'attempts' in third.json()['error']

    submissions = teacher.client.get(f"/assignments/{assignment['id']}/submissions").json()
    assert len(submissions) == 2
    assert submissions[0]['matric_number']

    over = teacher.client.post(f"/submissions/{second.json()['id']}/grade", json={'score': 25})
    assert over.status_code == 400
    graded = teacher.client.post(f"/submissions/{second.json()['id']}/grade", json={'score': 15, 'feedback': 'Good'})
    assert graded.status_code == 200
    assert graded.json()['is_graded'] is True

    listed = student.client.get('/assignments', params={'status': 'graded'}).json()
    assert listed[0]['score'] == 15
    grade_notes = [n for n in student.client.get('/notifications').json()['items'] if n['type'] == 'GRADE']
    assert '75.00%' in grade_notes[0]['message']


def test_submission_requires_enrollment(teacher, course, student):
    assignment = _assignment(teacher, course['id'])
    r = student.client.post(f"/assignments/{assignment['id']}/submit", json={'content': 'x'})
    assert r.status_code == 403


def test_late_submission_policy(teacher, course, student):
    student.client.post(f"/courses/{course['id']}/enroll")
    closed = _assignment(teacher, course['id'], due_date=_due(-1))
    r = student.client.post(f"/assignments/{closed['id']}/submit", json={'content': 'late'})
    assert r.status_code == 400
    assert 'deadline' in r.json()['error']
    assert student.client.get('/assignments', params={'status': 'overdue'}).json()[0]['id'] == closed['id']

    lenient = _assignment(teacher, course['id'], due_date=_due(-1), allow_late_submission=True)
    r = student.client.post(f"/assignments/{lenient['id']}/submit", json={'content': 'late but ok'})
    assert r.status_code == 201
    assert r.json()['is_late'] is True


def test_course_progress_tracks_work(teacher, course, student):
    student.client.post(f"/courses/{course['id']}/enroll")
    lecture = teacher.client.post(f"/courses/{course['id']}/lectures", json={'title': 'Week 1'}).json()
    assignment = _assignment(teacher, course['id'])
    teacher.client.post(f"/lectures/{lecture['id']}/attendance",
                        json={'records': [{'student_id': student.profile_id, 'status': 'PRESENT'}]})
    progress = student.client.get(f"/courses/{course['id']}/progress").json()
    assert progress['lectures_attended'] == 1
    assert progress['progress'] == 50.0
    student.client.post(f"/assignments/{assignment['id']}/submit", json={'content': 'done'})
    assert student.client.get(f"/courses/{course['id']}/progress").json()['progress'] == 100.0


def test_unpublished_lecture_attendance_does_not_count(teacher, course, student):
    student.client.post(f"/courses/{course['id']}/enroll")
    url = f"/courses/{course['id']}/lectures"
    published = teacher.client.post(url, json={'title': 'Week 1'}).json()
    draft = teacher.client.post(url, json={'title': 'Week 2', 'is_published': False}).json()
    for lecture in (published, draft):
        r = teacher.client.post(f"/lectures/{lecture['id']}/attendance",
                                json={'records': [{'student_id': student.profile_id, 'status': 'PRESENT'}]})
        assert r.status_code == 200
    progress = student.client.get(f"/courses/{course['id']}/progress").json()
    assert progress['lectures_total'] == 1
    assert progress['lectures_attended'] == 1
    assert progress['progress'] == 100.0


def test_attendance_marking_and_statistics(teacher, course):
    present = new_student()
    absent = new_student()
    for s in (present, absent):
        s.client.post(f"/courses/{course['id']}/enroll")
    lecture = teacher.client.post(f"/courses/{course['id']}/lectures", json={'title': 'Week 1'}).json()
    records = [
        {'student_id': present.profile_id, 'status': 'PRESENT'},
        {'student_id': absent.profile_id, 'status': 'ABSENT'},
    ]
    r = teacher.client.post(f"/lectures/{lecture['id']}/attendance", json={'records': records})
    assert r.json() == {'lecture_id': lecture['id'], 'marked': 2, 'created': 2, 'updated': 0}
    # re-marking updates in place
    records[1]['status'] = 'EXCUSED'
    r = teacher.client.post(f"/lectures/{lecture['id']}/attendance", json={'records': records})
    assert r.json()['updated'] == 2

    stats = teacher.client.get(f"/courses/{course['id']}/attendance/stats").json()
    assert stats['total'] == 2
    assert stats['present'] == 1
    assert stats['excused'] == 1
    assert stats['attendance_rate'] == 50.0
    assert stats['total_sessions'] == 1

    mine = present.client.get(f"/courses/{course['id']}/attendance/students/{present.profile_id}").json()
    assert mine['attendance_rate'] == 100.0
    peek = present.client.get(f"/courses/{course['id']}/attendance/students/{absent.profile_id}")
    assert peek.status_code == 403
    overview = absent.client.get('/attendance/me').json()
    assert overview['courses'][0]['excused'] == 1


def test_attendance_rejects_unenrolled_students(teacher, course, student):
    lecture = teacher.client.post(f"/courses/{course['id']}/lectures", json={'title': 'Week 1'}).json()
    r = teacher.client.post(f"/lectures/{lecture['id']}/attendance",
                            json={'records': [{'student_id': student.profile_id}]})
    assert r.status_code == 400
    assert teacher.client.post('/lectures/999999/attendance', json={'records': []}).status_code == 404


def test_exam_results_published_to_students(teacher, course, student):
    student.client.post(f"/courses/{course['id']}/enroll")
    exam = teacher.client.post(f"/courses/{course['id']}/exams",
                               json={'title': 'Final', 'date': _due(2), 'total_marks': 70}).json()
    too_high = teacher.client.post(f"/exams/{exam['id']}/results", json={'student_id': student.profile_id, 'score': 71})
    assert too_high.status_code == 400
    r = teacher.client.post(f"/exams/{exam['id']}/results", json={'student_id': student.profile_id, 'score': 49})
    assert r.json()['percentage'] == 70.0
    assert r.json()['grade'] == 'A'
    assert r.json()['remark'] == 'EXCELLENT'
    assert student.client.get('/exams/results/me').json() == []

    published = teacher.client.post(f"/exams/{exam['id']}/publish").json()
    assert published['published'] == 1
    results = student.client.get('/exams/results/me').json()
    assert results[0]['exam_title'] == 'Final'
    assert results[0]['course_code'] == course['code']


def test_absent_exam_result(teacher, course, student):
    student.client.post(f"/courses/{course['id']}/enroll")
    exam = teacher.client.post(f"/courses/{course['id']}/exams", json={'title': 'Mid', 'date': _due(1)}).json()
    r = teacher.client.post(f"/exams/{exam['id']}/results", json={'student_id': student.profile_id})
    assert r.json()['remark'] == 'ABSENT'
    assert r.json()['grade'] is None


def test_schedule_lists_week_items(teacher, course, student):
    student.client.post(f"/courses/{course['id']}/enroll")
    soon = _due(1)
    teacher.client.post(f"/courses/{course['id']}/lectures", json={'title': 'Soon', 'scheduled_at': soon, 'duration': 60})
    _assignment(teacher, course['id'], title='Due soon', due_date=_due(2))
    upcoming = student.client.get('/schedule', params={'upcoming_days': 7}).json()['items']
    assert [i['type'] for i in upcoming][:2] == ['lecture', 'assignment']
    week = student.client.get('/schedule').json()
    assert 'week_start' in week
    assert student.client.get('/schedule', params={'upcoming_days': 0}).status_code == 400
