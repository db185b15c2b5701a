from pathlib import Path
import sys


# Ensure imports work when running this file directly: `python scripts/init_db.py`.
ROOT_DIR = Path(__file__).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

from mentor_platform.db import Base, SessionLocal, engine
from mentor_platform.models import Role, User, UserStatus


DEMO_USERS = (
    ('admin@mentor-platform.local', 'Platform Admin', Role.ADMIN.value, 'UTC'),
    ('asha.mentor@mentor-platform.local', 'Asha Rao', Role.MENTOR.value, 'Asia/Kolkata'),
    ('ben.mentor@mentor-platform.local', 'Ben Carter', Role.MENTOR.value, 'Europe/London'),
    ('lina.learner@mentor-platform.local', 'Lina Park', Role.LEARNER.value, 'UTC'),
    ('omar.learner@mentor-platform.local', 'Omar Haddad', Role.LEARNER.value, 'UTC'),
)


Base.metadata.create_all(bind=engine)

db = SessionLocal()
try:
    if not db.query(User).first():
        db.add_all(
            [
                User(email=email, full_name=name, role=role, status=UserStatus.ACTIVE.value, timezone=tz)
                for email, name, role, tz in DEMO_USERS
            ]
        )
        db.commit()
    for user in db.query(User).order_by(User.id.asc()).all():
        print(f'{user.id}\t{user.role}\t{user.email}')
finally:
    db.close()

print('DB initialized with demo users. Send the user id in the X-User-Id header.')
