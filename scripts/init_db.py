import sys
from pathlib import Path
import os

from werkzeug.security import generate_password_hash

# Ensure repo root is on sys.path when running as a script.
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from app.sopdesk.models import Base, Permission, Role, User  # noqa: E402
from app.sopdesk.rbac import PERM_DISCARD_ANY, PERM_DOCS_CREATE  # noqa: E402
from scripts._db_utils import session_scope_for_url  # noqa: E402


def seed_only(*, database_url: str | None = None, create_tables: bool = False) -> None:
    """
    Seed permissions/roles/admin user in an idempotent way.
    Does NOT overwrite an existing admin user's password.
    """
    admin_email = (os.environ.get("ADMIN_EMAIL") or "admin@sopdesk.local").strip().lower()
    admin_password = os.environ.get("ADMIN_PASSWORD") or "change-me"

    db_url = (database_url or os.environ.get("DATABASE_URL") or "sqlite:///sopdesk.db").strip()

    with session_scope_for_url(db_url) as s:
        if create_tables:
            Base.metadata.create_all(bind=s.get_bind())

        def ensure_perm(key: str, name: str) -> Permission:
            p = s.query(Permission).filter(Permission.key == key).one_or_none()
            if not p:
                p = Permission(key=key, name=name)
                s.add(p)
            return p

        p_docs_create = ensure_perm(PERM_DOCS_CREATE, "Docs: publish new documents")
        p_discard_any = ensure_perm(PERM_DISCARD_ANY, "Working copies: discard any rejected copy")

        role_admin = s.query(Role).filter(Role.key == "admin").one_or_none()
        if not role_admin:
            role_admin = Role(key="admin", name="Administrator")
            s.add(role_admin)
        for p in (p_docs_create, p_discard_any):
            if p not in role_admin.permissions:
                role_admin.permissions.append(p)

        user = s.query(User).filter(User.email == admin_email).one_or_none()
        if not user:
            user = User(
                email=admin_email,
                password_hash=generate_password_hash(admin_password),
                first_name="Admin",
                is_active=True,
            )
            s.add(user)
        if role_admin not in user.roles:
            user.roles.append(role_admin)

    print("Initialized database (seed_only).")
    print(f"Admin email: {admin_email}")
    print("Admin password: (from ADMIN_PASSWORD)")


def main() -> None:
    create = "--create-tables" in sys.argv[1:]
    seed_only(database_url=None, create_tables=create)


if __name__ == "__main__":
    main()
