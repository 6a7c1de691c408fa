from sqlalchemy import Column, Integer, String, ForeignKey, Boolean, DateTime, Text, Float, Date, UniqueConstraint, Index
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
import enum

from feecycle.database import Base


# --- ENUMS ---
class Stage(str, enum.Enum):
    BEGINNER = "beginner"
    INTERMEDIATE = "intermediate"
    ADVANCED = "advanced"

class BatchStatus(str, enum.Enum):
    DRAFT = "draft"       # no confirmed start date, never anchors billing
    ACTIVE = "active"
    ENDED = "ended"

class UserRole(str, enum.Enum):
    SUPERADMIN = "superadmin"
    ADMIN = "admin"
    STUDENT = "student"

STAGES = [s.value for s in Stage]
LEVELS = [1, 2, 3]


# --- IDENTITY ---
class User(Base):
    """Identity account. Students own one; batch runs act as a superadmin."""
    __tablename__ = "users"
    id = Column(Integer, primary_key=True, index=True)
    username = Column(String(100), unique=True, nullable=False)
    email = Column(String(200), nullable=True)
    phone = Column(String(20), nullable=True, index=True)
    role = Column(String(20), default=UserRole.STUDENT.value)
    is_active = Column(Boolean, default=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())


# --- COURSE FEE TABLE ---
class Course(Base):
    """One course per stage. Fee amounts live on its levels."""
    __tablename__ = "courses"
    id = Column(Integer, primary_key=True, index=True)
    course_name = Column(String(50), unique=True, nullable=False)   # beginner, intermediate, advanced
    display_name = Column(String(100))
    is_active = Column(Boolean, default=True)
    display_order = Column(Integer, default=0)

    levels = relationship("CourseLevel", back_populates="course", cascade="all, delete-orphan",
                          order_by="CourseLevel.level_number")

    def get_level(self, level_number: int):
        for lvl in self.levels:
            if lvl.level_number == level_number:
                return lvl
        return None


class CourseLevel(Base):
    __tablename__ = "course_levels"
    __table_args__ = (
        UniqueConstraint("course_id", "level_number", name="uq_course_level"),
    )
    id = Column(Integer, primary_key=True, index=True)
    course_id = Column(Integer, ForeignKey("courses.id"), nullable=False)
    level_number = Column(Integer, nullable=False)
    fee_amount = Column(Float, nullable=False)          # monthly fee
    duration_months = Column(Integer, nullable=False, default=1)
    approximate_hours = Column(Integer, default=0)

    course = relationship("Course", back_populates="levels")


# --- BATCHES ---
class Batch(Base):
    __tablename__ = "batches"
    __table_args__ = (
        Index("ix_batches_stage_level", "stage", "level"),
    )
    id = Column(Integer, primary_key=True, index=True)
    batch_code = Column(String(50), unique=True, nullable=False)   # "WF:2:30(U)", "WF:2:30-II"
    batch_name = Column(String(100), nullable=False)
    stage = Column(String(20), nullable=False)
    level = Column(Integer, nullable=False)
    status = Column(String(20), default=BatchStatus.DRAFT.value)
    start_date = Column(Date, nullable=True)                       # only binding when status != draft
    end_date = Column(Date, nullable=True)
    max_students = Column(Integer, nullable=True)
    description = Column(String(500), default="")
    created_by = Column(Integer, ForeignKey("users.id"), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    schedule = relationship("BatchScheduleEntry", back_populates="batch", cascade="all, delete-orphan",
                            order_by="BatchScheduleEntry.day_of_week")
    students = relationship("Student", back_populates="batch")

    @property
    def is_draft(self) -> bool:
        return self.status == BatchStatus.DRAFT.value


class BatchScheduleEntry(Base):
    __tablename__ = "batch_schedule_entries"
    __table_args__ = (
        UniqueConstraint("batch_id", "day_of_week", name="uq_batch_schedule_day"),
    )
    id = Column(Integer, primary_key=True, index=True)
    batch_id = Column(Integer, ForeignKey("batches.id", ondelete="CASCADE"), nullable=False)
    day_of_week = Column(Integer, nullable=False)    # 0 = Sunday ... 6 = Saturday
    start_time = Column(String(5), nullable=False)   # "HH:MM" 24h

    batch = relationship("Batch", back_populates="schedule")


# --- STUDENTS ---
class Student(Base):
    __tablename__ = "students"
    id = Column(Integer, primary_key=True, index=True)
    student_name = Column(String(100), nullable=False, index=True)
    email = Column(String(200), nullable=True, index=True)
    phone = Column(String(20), nullable=True)
    parent_name = Column(String(100), nullable=True)

    stage = Column(String(20), nullable=True)
    level = Column(Integer, nullable=True)
    batch_id = Column(Integer, ForeignKey("batches.id", ondelete="SET NULL"), nullable=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=True)

    enrollment_date = Column(Date, nullable=False)
    fee_cycle_start_date = Column(Date, nullable=True)   # None → enrollment_date
    is_active = Column(Boolean, default=True)
    remarks = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    batch = relationship("Batch", back_populates="students")
    user = relationship("User")
    fee_records = relationship("FeeRecord", back_populates="student", cascade="all, delete-orphan")


# Ledger tables (FeeRecord, StudentCredit) must be mapped before the
# Student.fee_records relationship is configured.
from feecycle import models_fee_ledger  # noqa: E402,F401
