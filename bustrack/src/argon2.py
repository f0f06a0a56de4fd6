from argon2 import PasswordHasher
from argon2.exceptions import VerifyMismatchError

passwordHasher = PasswordHasher(encoding="utf-8")


def makePassword(password: str) -> str:
    """Hash a plain-text password using Argon2."""
    return passwordHasher.hash(password)


def checkPassword(password: str, actual_password: str) -> bool:
    """
    Verify a plain-text password against a stored Argon2 hash.

    Args:
        password (str): The plain-text password supplied at login.
        actual_password (str): The stored Argon2 hash of the user.

    Returns:
        bool: True if the password matches the hash, False otherwise.
    """
    try:
        passwordHasher.verify(actual_password, password)
        return True
    except VerifyMismatchError:
        return False


def needsRehash(actual_password: str) -> bool:
    """True when a stored hash was made with weaker parameters than the current hasher."""
    return passwordHasher.check_needs_rehash(actual_password)
