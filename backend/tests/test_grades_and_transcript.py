from conftest import new_course, new_student


def _graded_student(teacher, scores):
    """Enroll a fresh student in one new course per (score, credits, semester) and grade it."""
    student = new_student()
    courses = []
    for score, credits, semester in scores:
        course = new_course(teacher, credits=credits, semester=semester)
        student.client.post(f"/courses/{course['id']}/enroll")
        if score is not None:
            r = teacher.client.post(f"/courses/{course['id']}/grades",
                                    json={'grades': [{'student_id': student.profile_id, 'score': score}]})
            assert r.json()['graded'] == 1, r.text
        courses.append(course)
    return student, courses


def test_bulk_grade_reports_failures(teacher, course):
    enrolled = new_student()
    enrolled.client.post(f"/courses/{course['id']}/enroll")
    stranger = new_student()
    r = teacher.client.post(f"/courses/{course['id']}/grades", json={'grades': [
        {'student_id': enrolled.profile_id, 'score': 64},
        {'student_id': stranger.profile_id, 'score': 80},
    ]})
    assert r.status_code == 200
    body = r.json()
    assert body['graded'] == 1
    assert body['failed'] == 1
    assert body['results'][0]['grade'] == 'B'
    assert 'not enrolled' in body['results'][1]['error']
    notes = enrolled.client.get('/notifications').json()['items']
    assert any('final grade' in n['title'] for n in notes)


def test_grade_out_of_range_is_reported_per_student(teacher, course, student):
    student.client.post(f"/courses/{course['id']}/enroll")
    r = teacher.client.post(f"/courses/{course['id']}/grades",
                            json={'grades': [{'student_id': student.profile_id, 'score': 101}]})
    assert r.status_code == 200
    assert r.json()['failed'] == 1
    assert 'between 0 and 100' in r.json()['results'][0]['error']


def test_summary_counts_only_completed_courses(teacher):
    student, _ = _graded_student(teacher, [(72, 3, 1), (55, 2, 1), (None, 4, 1)])
    summary = student.client.get('/grades/summary').json()
    assert summary['total_courses'] == 3
    assert summary['completed_courses'] == 2
    assert summary['in_progress_courses'] == 1
    assert summary['total_credits'] == 5
    # (5 * 3 + 3 * 2) / 5
    assert summary['cgpa'] == 4.2


def test_statistics_and_progression(teacher):
    student, _ = _graded_student(teacher, [(72, 3, 1), (30, 3, 2)])
    stats = student.client.get('/grades/statistics').json()
    assert stats['graded_courses'] == 2
    assert stats['grade_distribution']['A'] == 1
    assert stats['grade_distribution']['F'] == 1
    assert stats['pass_rate'] == 50.0
    assert stats['highest_score'] == 72
    assert stats['average_score'] == 51.0

    progression = student.client.get('/grades/progression').json()
    assert [p['semester'] for p in progression] == [1, 2]
    assert progression[0]['gpa'] == 5.0
    assert progression[1]['gpa'] == 0.0
    assert progression[1]['cumulative_gpa'] == 2.5


def test_transcript_document(teacher):
    student, courses = _graded_student(teacher, [(65, 3, 1)])
    assignment = teacher.client.post(f"/courses/{courses[0]['id']}/assignments", json={
        'title': 'Lab report', 'due_date': '2999-01-01T00:00:00Z', 'max_score': 10, 'publish': True,
    }).json()
    submission = student.client.post(f"/assignments/{assignment['id']}/submit", json={'content': 'report'}).json()
    teacher.client.post(f"/submissions/{submission['id']}/grade", json={'score': 8})

    doc = student.client.get('/grades/transcript').json()
    assert doc['student']['email'] == student.email
    assert doc['cumulative_gpa'] == 4.0
    assert doc['semesters'][0]['courses'][0]['grade'] == 'B'
    assert doc['graded_assignments'] == 1
    assert doc['assignments'][0]['percentage'] == 80.0
    assert doc['assignments'][0]['grade'] == 'A'


def test_transcript_exports(teacher):
    student, _ = _graded_student(teacher, [(81, 3, 1)])
    pdf = student.client.get('/grades/export', params={'format': 'pdf'})
    assert pdf.status_code == 200
    assert pdf.headers['content-type'] == 'application/pdf'
    assert pdf.content.startswith(b'%PDF')
    assert 'attachment; filename="transcript_' in pdf.headers['content-disposition']

    excel = student.client.get('/grades/export', params={'format': 'EXCEL'})
    assert excel.status_code == 200
    assert excel.content[:2] == b'PK'
    assert excel.headers['content-disposition'].endswith('.xlsx"')

    as_json = student.client.get('/grades/export', params={'format': 'json'})
    assert as_json.json()['cumulative_gpa'] == 5.0

    assert student.client.get('/grades/export', params={'format': 'docx'}).status_code == 400
    actions = [a['action'] for a in student.client.get('/profile/activity').json()]
    assert actions.count('EXPORT_TRANSCRIPT') == 3


def test_grades_are_student_only(teacher):
    assert teacher.client.get('/grades/summary').status_code == 403


def test_gradebook_lists_enrolled_students(teacher, course):
    s = new_student()
    s.client.post(f"/courses/{course['id']}/enroll")
    book = teacher.client.get(f"/courses/{course['id']}/gradebook").json()
    assert book['code'] == course['code']
    assert [row['student_id'] for row in book['students']] == [s.profile_id]
    assert book['students'][0]['attendance_rate'] == 0.0
    assert s.client.get(f"/courses/{course['id']}/gradebook").status_code == 403
