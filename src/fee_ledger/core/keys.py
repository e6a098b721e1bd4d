'''
Identity of a (student, billing period) pair.

Payments recorded over the years spell the same academic session in
different ways ("2025/2026", "2025-2026", "2025 / 2026"). Every id built
here goes through the same normalization so those spellings land on one
fee status row.
'''
import re
from typing import Union
from uuid import UUID

# every separator we have seen inside a session string, with any padding
_SESSION_SEPARATORS = re.compile(r"\s*[/\\\-–—_.]+\s*")
_WHITESPACE = re.compile(r"\s+")


def normalize_session(session: str) -> str:
    """'2025/2026', '2025 - 2026', '2025_2026' -> '2025-2026'"""
    return _SESSION_SEPARATORS.sub("-", str(session).strip())


def normalize_term(term: str) -> str:
    """'First Term ' -> 'first_term'"""
    return _WHITESPACE.sub("_", str(term).strip().lower())


def derive_key(account_id: Union[UUID, str], term: str, session: str) -> str:
    """
    Builds the fee status id for a student and billing period.
    Pure and total: any strings go in, a key always comes out.
    """
    return f"{account_id}-{normalize_term(term)}-{normalize_session(session)}"


def derive_structure_id(class_id: str, term: str, session: str) -> str:
    """Builds the fee structure id for a class and billing period."""
    return f"{str(class_id).strip()}-{normalize_term(term)}-{normalize_session(session)}"
