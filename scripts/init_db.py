import os
import sys
from pathlib import Path

from werkzeug.security import generate_password_hash

# Ensure repo root is on sys.path when running as a script (Windows-friendly).
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from app.desk.models import User  # noqa: E402
from app.desk.modules.complaints.models import Category  # noqa: E402
from app.desk.modules.sla.service import ensure_default_policies  # noqa: E402
from app.desk.rbac import ensure_roles  # noqa: E402
from scripts._db_utils import script_session  # noqa: E402

DEFAULT_CATEGORIES = (
    ("Academic", "Courses, grading, exams and teaching", "#3b82f6"),
    ("Facilities", "Classrooms, labs, library and maintenance", "#10b981"),
    ("Hostel", "Accommodation and mess", "#f59e0b"),
    ("Administration", "Fees, documents and office services", "#8b5cf6"),
    ("IT Services", "Network, accounts and campus systems", "#ef4444"),
    ("Other", None, "#6b7280"),
)


def seed_only(*, database_url: str | None = None) -> None:
    """
    Seed permissions/roles, SLA policies, default categories and the admin user
    in an idempotent way. Does NOT overwrite an existing admin user's password.
    """
    admin_email = (os.environ.get("ADMIN_EMAIL") or "admin@example.edu").strip().lower()
    admin_password = os.environ.get("ADMIN_PASSWORD") or "change-me"

    db_url = (database_url or os.environ.get("DATABASE_URL") or "sqlite:///desk.db").strip()

    # Direct engine/session so this can run in release without importing app.wsgi.
    with script_session(db_url) as s:
        roles = ensure_roles(s)
        ensure_default_policies(s)

        if s.query(Category).count() == 0:
            for name, description, color in DEFAULT_CATEGORIES:
                s.add(Category(name=name, description=description, color=color, is_active=True))

        user = s.query(User).filter(User.email == admin_email).one_or_none()
        if not user:
            user = User(
                email=admin_email,
                password_hash=generate_password_hash(admin_password),
                full_name="Administrator",
                is_active=True,
            )
            s.add(user)
        if roles["admin"] not in user.roles:
            user.roles.append(roles["admin"])

    print("Initialized database (seed_only).")
    print(f"Admin email: {admin_email}")
    print("Admin password: (from ADMIN_PASSWORD)")


def main() -> None:
    seed_only(database_url=None)


if __name__ == "__main__":
    main()
