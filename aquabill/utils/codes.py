import secrets
import string
from typing import Callable, Optional

from aquabill.errors import ConflictError

CODE_ALPHABET = string.ascii_uppercase + string.digits


def random_token(length: int = 8) -> str:
    """Return a random upper-case alphanumeric token."""
    return "".join(secrets.choice(CODE_ALPHABET) for _ in range(length))


def derive_flat_code(property_code: str, flat_number: str) -> str:
    return f"{property_code}-F{flat_number}"


def generate_unique_code(
    is_taken: Callable[[str], bool],
    length: int = 8,
    max_attempts: int = 10,
    token_source: Optional[Callable[[int], str]] = None,
) -> str:
    """Draw tokens until one is not taken.

    ``is_taken`` is checked against the registry (active and retired codes);
    ``token_source`` can be swapped in tests to force collisions.
    """
    source = token_source or random_token
    for _ in range(max_attempts):
        candidate = source(length)
        if not is_taken(candidate):
            return candidate
    raise ConflictError(
        f"Could not generate a unique flat code after {max_attempts} attempts",
        kind="flat_code_exhausted",
    )
