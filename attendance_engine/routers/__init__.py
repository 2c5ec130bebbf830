from attendance_engine.routers import attendance, emergency_leave, holidays, leaves, locks, missed_sessions

__all__ = [
    'attendance',
    'emergency_leave',
    'holidays',
    'leaves',
    'locks',
    'missed_sessions',
]
