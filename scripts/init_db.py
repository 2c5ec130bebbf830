from pathlib import Path
import sys


# Ensure imports work when running this file directly: `python scripts/init_db.py`.
ROOT_DIR = Path(__file__).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

from attendance_engine.db import Base, SessionLocal, engine
from attendance_engine.models import Student, Subject, TimetableSlot
from attendance_engine.services.schedule_service import WEEKDAYS, is_weekly_holiday


PU_TIMES = [('09:00', '10:00'), ('10:15', '11:15'), ('11:30', '12:30')]
POST_PU_TIMES = [(f'{hour:02d}:00', f'{hour:02d}:50') for hour in range(9, 15)]

SUBJECTS = [
    ('Physics', 'PHY'),
    ('Chemistry', 'CHE'),
    ('Mathematics', 'MAT'),
    ('Arabic', 'ARB'),
    ('Fiqh', 'FIQ'),
    ('Free', 'free'),
]


def _seed_timetable(db, subjects, *, course_type, year, stream, times):
    teaching = [row for row in subjects if row.subject_code != 'free']
    for day_index, day in enumerate(WEEKDAYS):
        if is_weekly_holiday(day):
            continue
        for period_index, (start, end) in enumerate(times, start=1):
            subject = teaching[(day_index + period_index) % len(teaching)]
            db.add(
                TimetableSlot(
                    course_type=course_type,
                    year=year,
                    stream=stream,
                    section='A',
                    day_of_week=day,
                    period_number=period_index,
                    subject_id=subject.id,
                    start_time=start,
                    end_time=end,
                )
            )


Base.metadata.create_all(bind=engine)

db = SessionLocal()
try:
    if not db.query(Subject).first():
        subjects = [Subject(name=name, subject_code=code) for name, code in SUBJECTS]
        db.add_all(subjects)
        db.commit()

        _seed_timetable(db, subjects, course_type='pu', year=1, stream='science', times=PU_TIMES)
        _seed_timetable(db, subjects, course_type='post-pu', year=3, stream='', times=POST_PU_TIMES)

        db.add_all(
            [
                Student(name='Aarav', roll_no='PU1-01', course_type='pu', year=1, stream='science', section='A'),
                Student(name='Diya', roll_no='PU1-02', course_type='pu', year=1, stream='science', section='A'),
                Student(name='Ishaan', roll_no='PP3-01', course_type='post-pu', year=3, stream='', section='A'),
                Student(name='Zara', roll_no='PP3-02', course_type='post-pu', year=3, stream='', section='A'),
            ]
        )
        db.commit()
finally:
    db.close()

print('DB initialized with a demo timetable and students.')
