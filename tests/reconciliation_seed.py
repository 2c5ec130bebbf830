import tempfile
import unittest
from datetime import date, datetime
from pathlib import Path
from zoneinfo import ZoneInfo

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from attendance_engine.core.class_identity import ClassIdentity
from attendance_engine.core.time_provider import TimeProvider
from attendance_engine.db import Base
from attendance_engine.models import Student, Subject, TimetableSlot
from attendance_engine.services.read_cache import invalidate_missed_session_views


IST = ZoneInfo('Asia/Kolkata')

# 2026-03-10 is a Tuesday; the school week skips Friday.
TODAY = date(2026, 3, 10)
MONDAY = date(2026, 3, 9)
FRIDAY = date(2026, 3, 6)

PU1 = ClassIdentity.build('pu', 1, 'science', 'A')
PP3 = ClassIdentity.build('post-pu', 3, '', 'A')

PU_TIMES = [('09:00', '10:00'), ('10:15', '11:15'), ('11:30', '12:30')]


class FixedTimeProvider(TimeProvider):
    def __init__(self, frozen_dt: datetime):
        self._frozen_dt = frozen_dt

    def now(self) -> datetime:
        return self._frozen_dt


def clock(day: date = TODAY, hour: int = 10, minute: int = 0) -> FixedTimeProvider:
    return FixedTimeProvider(datetime(day.year, day.month, day.day, hour, minute, tzinfo=IST))


class SqliteTestCase(unittest.TestCase):
    db_name = 'reconciliation.db'

    @classmethod
    def setUpClass(cls):
        cls._tmpdir = tempfile.TemporaryDirectory()
        db_path = Path(cls._tmpdir.name) / cls.db_name
        cls._engine = create_engine(f"sqlite:///{db_path}", connect_args={'check_same_thread': False})
        cls._session_factory = sessionmaker(autocommit=False, autoflush=False, bind=cls._engine)
        Base.metadata.create_all(bind=cls._engine)

    @classmethod
    def tearDownClass(cls):
        cls._engine.dispose()
        cls._tmpdir.cleanup()

    def setUp(self):
        db = self._session_factory()
        try:
            for table in reversed(Base.metadata.sorted_tables):
                db.execute(table.delete())
            db.commit()
        finally:
            db.close()
        invalidate_missed_session_views()
        self.db = self._session_factory()
        self.addCleanup(self.db.close)
        self.ids = seed_school(self.db)


def seed_school(db) -> dict:
    subjects = {
        code: Subject(name=name, subject_code=code)
        for name, code in (('Physics', 'PHY'), ('Chemistry', 'CHE'), ('Mathematics', 'MAT'), ('Free', 'free'))
    }
    db.add_all(subjects.values())
    db.commit()

    pu_subjects = [subjects['PHY'], subjects['CHE'], subjects['MAT']]
    for day in ('monday', 'tuesday', 'wednesday', 'thursday', 'saturday', 'sunday'):
        for period, (start, end) in enumerate(PU_TIMES, start=1):
            db.add(
                TimetableSlot(
                    course_type=PU1.course_type,
                    year=PU1.year,
                    stream=PU1.stream,
                    section=PU1.section,
                    day_of_week=day,
                    period_number=period,
                    subject_id=pu_subjects[period - 1].id,
                    start_time=start,
                    end_time=end,
                )
            )
    # Free periods never require attendance.
    db.add(
        TimetableSlot(
            course_type=PU1.course_type,
            year=PU1.year,
            stream=PU1.stream,
            section=PU1.section,
            day_of_week='monday',
            period_number=4,
            subject_id=subjects['free'].id,
            start_time='12:45',
            end_time='13:30',
        )
    )
    # Post-PU slots carry no start times so emergency declarations use the default grid.
    for period, subject in ((1, subjects['PHY']), (2, subjects['MAT'])):
        db.add(
            TimetableSlot(
                course_type=PP3.course_type,
                year=PP3.year,
                stream=PP3.stream,
                section=PP3.section,
                day_of_week='monday',
                period_number=period,
                subject_id=subject.id,
            )
        )

    students = [
        Student(name='Aarav', roll_no='PU1-01', course_type='pu', year=1, stream='science', section='A'),
        Student(name='Diya', roll_no='PU1-02', course_type='pu', year=1, stream='science', section='A'),
        Student(name='Ishaan', roll_no='PP3-01', course_type='post-pu', year=3, stream='', section='A'),
    ]
    db.add_all(students)
    db.commit()
    return {
        'subjects': {code: row.id for code, row in subjects.items()},
        'aarav': students[0].id,
        'diya': students[1].id,
        'ishaan': students[2].id,
    }
