from datetime import date

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from feecycle.database import Base
from feecycle.models import Course, CourseLevel, Student, User, UserRole
from feecycle.services.batch_code_parser import parse_batch_code
from feecycle.services.batch_service import BatchService

# stage → {level: (monthly fee, duration months)}
FEE_TABLE = {
    "beginner": {1: (1000.0, 6), 2: (1200.0, 6), 3: (1400.0, 6)},
    "intermediate": {1: (1200.0, 6), 2: (1500.0, 6), 3: (1800.0, 6)},
    "advanced": {1: (2000.0, 4)},
}


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def db(engine):
    Session = sessionmaker(bind=engine, autocommit=False, autoflush=False)
    session = Session()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def courses(db):
    for order, (stage, levels) in enumerate(FEE_TABLE.items()):
        course = Course(course_name=stage, display_name=stage.title(), is_active=True, display_order=order)
        for number, (fee, months) in levels.items():
            course.levels.append(CourseLevel(level_number=number, fee_amount=fee, duration_months=months))
        db.add(course)
    db.commit()
    return db.query(Course).all()


@pytest.fixture
def admin(db):
    user = User(username="admin", email="admin@example.com", role=UserRole.SUPERADMIN.value, is_active=True)
    db.add(user)
    db.commit()
    return user


@pytest.fixture
def make_batch(db):
    def _make(code="WF:2:30", stage="beginner", level=1, start_date=date(2026, 1, 1), status=None):
        parsed = parse_batch_code(code)
        batch = BatchService(db).build_batch(parsed, parsed.normalized_code, stage, level, start_date)
        if status:
            batch.status = status
        db.add(batch)
        db.commit()
        return batch
    return _make


@pytest.fixture
def make_student(db):
    def _make(name="Asha", email=None, phone=None, stage="beginner", level=1, batch=None,
              enrollment_date=date(2026, 1, 1), fee_cycle_start_date=None):
        student = Student(
            student_name=name,
            email=email,
            phone=phone,
            stage=stage,
            level=level,
            batch=batch,
            enrollment_date=enrollment_date,
            fee_cycle_start_date=fee_cycle_start_date,
            is_active=True,
        )
        db.add(student)
        db.commit()
        return student
    return _make

