from passlib.context import CryptContext

from gophercrm.core.errors import InvalidRequestError

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")

MAX_BCRYPT_BYTES = 72


class PasswordTooLongError(InvalidRequestError):
    code = "password_too_long"
    default_message = "password is too long (max 72 bytes when UTF-8 encoded)"


def hash_password(password: str) -> str:
    if len(password.encode("utf-8")) > MAX_BCRYPT_BYTES:
        raise PasswordTooLongError()
    return pwd_context.hash(password)


def verify_password(plain: str, hashed: str) -> bool:
    # Nothing longer than the limit was ever hashed.
    if len(plain.encode("utf-8")) > MAX_BCRYPT_BYTES:
        pwd_context.dummy_verify()
        return False
    return pwd_context.verify(plain, hashed)


def dummy_verify() -> None:
    """Spend the same time as a real verification when no user matched."""

    pwd_context.dummy_verify()
