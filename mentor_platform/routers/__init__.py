from mentor_platform.routers import booking, schedule

__all__ = [
    'booking',
    'schedule',
]
