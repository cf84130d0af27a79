import getpass
import sys

from passlib.context import CryptContext

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")


def verify_password(plain_password: str, hashed_password: str) -> bool:
    """Check an admin password attempt; a missing or malformed hash never matches."""
    if not hashed_password:
        return False
    try:
        return pwd_context.verify(plain_password.strip(), hashed_password)
    except ValueError:
        return False


def get_password_hash(password: str) -> str:
    return pwd_context.hash(password.strip())


def main() -> int:
    """Print a bcrypt hash for IDEATANK_ADMIN_PASSWORD_HASH."""
    password = getpass.getpass("Admin password: ")
    if not password.strip():
        print("Password must not be empty.", file=sys.stderr)
        return 1
    print(get_password_hash(password))
    return 0


if __name__ == "__main__":
    sys.exit(main())
