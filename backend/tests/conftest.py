from pathlib import Path
from typing import NamedTuple
import itertools
import os
import tempfile

# Point the app at a throwaway SQLite file before `classmate` is imported.
_DB_DIR = Path(tempfile.mkdtemp(prefix="classmate-tests-"))
os.environ["DATABASE_URL"] = f"sqlite:///{_DB_DIR / 'test.db'}"
os.environ["ENV"] = "dev"

import pytest
from fastapi.testclient import TestClient
from sqlmodel import Session, select

from classmate import models, services
from classmate.database import engine
from classmate.main import app
from classmate.schemas import AdminCreateIn

PASSWORD = "Secret123"
_seq = itertools.count(1)


class Account(NamedTuple):
    client: TestClient
    user_id: int
    profile_id: int
    email: str
    password: str
    identifier: str


def next_id() -> int:
    return next(_seq)


@pytest.fixture(autouse=True)
def clear_rate_limits():
    """Every test starts with empty rate-limit windows."""
    with Session(engine) as session:
        for row in session.exec(select(models.RateLimit)).all():
            session.delete(row)
        session.commit()
    yield


def login(identifier: str, password: str = PASSWORD) -> TestClient:
    """Return a fresh client carrying the session cookie of `identifier`."""
    client = TestClient(app)
    r = client.post('/auth/login', json={'identifier': identifier, 'password': password})
    assert r.status_code == 200, r.text
    return client


def _account(identifier: str, email: str) -> Account:
    client = login(identifier)
    me = client.get('/auth/me').json()
    return Account(client, me['id'], me['profile']['id'], email, PASSWORD, identifier)


def student_payload(**overrides) -> dict:
    n = next_id()
    payload = {
        'matric_number': f'MOUAU/19/{n:05d}',
        'jamb_reg_number': f'JAMB{n:08d}',
        'surname': 'Okafor',
        'first_name': f'Ada{n}',
        'gender': 'FEMALE',
        'email': f'student{n}@example.edu',
        'phone': f'0803{n:07d}',
        'nin': f'{n:011d}',
        'department': 'Computer Science',
        'college': 'College of Physical Sciences',
        'course_of_study': 'Computer Science',
        'admission_year': 2019,
        'password': PASSWORD,
    }
    payload.update(overrides)
    return payload


def teacher_payload(**overrides) -> dict:
    n = next_id()
    payload = {
        'staff_id': f'STF{n:05d}',
        'surname': 'Eze',
        'first_name': f'Chidi{n}',
        'title': 'Dr.',
        'email': f'teacher{n}@example.edu',
        'phone': f'0805{n:07d}',
        'institution': 'MOUAU',
        'department': 'Computer Science',
        'password': PASSWORD,
    }
    payload.update(overrides)
    return payload


def new_student(**overrides) -> Account:
    payload = student_payload(**overrides)
    r = TestClient(app).post('/auth/register/student', json=payload)
    assert r.status_code == 201, r.text
    return _account(payload['email'], payload['email'])


def new_teacher(**overrides) -> Account:
    payload = teacher_payload(**overrides)
    r = TestClient(app).post('/auth/register/teacher', json=payload)
    assert r.status_code == 201, r.text
    return _account(payload['email'], payload['email'])


def new_admin() -> Account:
    n = next_id()
    email = f'admin{n}@example.edu'
    with Session(engine) as session:
        services.AuthService(session).create_admin(AdminCreateIn(
            staff_id=f'ADM{n:04d}', surname='Nwosu', first_name='Ngozi',
            email=email, phone=f'0807{n:07d}', password=PASSWORD,
        ))
    return _account(email, email)


def new_course(teacher: Account, **overrides) -> dict:
    n = next_id()
    payload = {'code': f'CSC{n}', 'title': f'Course {n}', 'credits': 3, 'level': 300, 'semester': 1}
    payload.update(overrides)
    r = teacher.client.post('/courses', json=payload)
    assert r.status_code == 201, r.text
    return r.json()


@pytest.fixture
def student() -> Account:
    return new_student()


@pytest.fixture
def teacher() -> Account:
    return new_teacher()


@pytest.fixture
def admin() -> Account:
    return new_admin()


@pytest.fixture
def course(teacher) -> dict:
    return new_course(teacher)
