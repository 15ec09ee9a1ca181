"""
Fixtures compartidas.

La BD de los tests es un SQLite temporal: DATABASE_URL se fija AQUÍ, antes
de que ningún test importe database.py. Cada test empieza con el esquema
recién creado y los logros sembrados.
"""

import os
import tempfile
from datetime import datetime, timedelta

_TMP_DIR = tempfile.mkdtemp(prefix="volo-tests-")
os.environ["DATABASE_URL"] = f"sqlite:///{os.path.join(_TMP_DIR, 'volo_test.db')}"
os.environ["APP_TIMEZONE"] = "Africa/Monrovia"   # UTC+0 todo el año
os.environ["ENABLE_SCHEDULER"] = "false"
os.environ.pop("MAX_HEARTS", None)
os.environ.pop("HEART_REGENERATION_HOURS", None)

import pytest
from fastapi.testclient import TestClient

from accounting import seed_achievements
from auth import create_access_token
from database import SessionLocal, init_db, drop_db
from main import app, get_now
from models import User, Language, Lesson, Exercise

# Miércoles. La semana (domingo-sábado) empieza el 1 de marzo.
NOW = datetime(2026, 3, 4, 15, 0, 0)


@pytest.fixture
def db():
    drop_db()
    init_db()
    session = SessionLocal()
    seed_achievements(session)
    try:
        yield session
    finally:
        session.close()


def make_user(db, email="learner@volo.lr", name="Learner", **fields):
    fields.setdefault("hearts_updated_at", NOW - timedelta(days=1))
    fields.setdefault("created_at", NOW - timedelta(days=30))
    user = User(email=email, name=name, **fields)
    db.add(user)
    db.commit()
    db.refresh(user)
    return user


@pytest.fixture
def user(db):
    return make_user(db)


@pytest.fixture
def content(db):
    """Un idioma, una lección de 10 XP y cinco ejercicios de 5 XP"""
    kpelle = Language(code="kpelle", name="Kpelle")
    db.add(kpelle)
    db.flush()

    lesson = Lesson(language_id=kpelle.id, title="Greetings", xp_reward=10)
    db.add(lesson)
    db.flush()

    exercises = [
        Exercise(lesson_id=lesson.id, question=f"How do you say hello #{i}?", xp_reward=5)
        for i in range(5)
    ]
    db.add_all(exercises)
    db.commit()

    return {
        "language_id": kpelle.id,
        "lesson_id": lesson.id,
        "exercise_ids": [e.id for e in exercises],
    }


@pytest.fixture
def clock():
    """Hora que ven los endpoints; los tests la mueven con clock['now']"""
    return {"now": NOW}


@pytest.fixture
def client(db, clock):
    app.dependency_overrides[get_now] = lambda: clock["now"]
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()


@pytest.fixture
def auth_headers(user):
    token = create_access_token(user.id, user.email)
    return {"Authorization": f"Bearer {token}"}
