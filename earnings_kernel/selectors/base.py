"""
Module: earnings_kernel.selectors.base
Responsibility: Abstract base class for all read-only query selectors and the
    shared pagination helpers.
Architecture position: Kernel > Selectors.  May import from db/ and models/.
    MUST NOT import from services/ or outer layers.

Invariants enforced:
    - Read-only access: selectors accept a Session from the caller and never
      add, delete, flush or commit.
    - Session ownership: the caller owns the session and its transaction
      scope, so a reconciliation read sees one snapshot.
"""

from abc import ABC
from dataclasses import dataclass
from typing import Generic, TypeVar

from sqlalchemy.orm import Session

from earnings_kernel.db.base import Base
from earnings_kernel.exceptions import InvalidPaginationError

ModelType = TypeVar("ModelType", bound=Base)
T = TypeVar("T")

MAX_PAGE_SIZE = 100


@dataclass(frozen=True)
class Page(Generic[T]):
    """One page of results plus the total row count."""

    page: int
    page_size: int
    total: int
    items: tuple[T, ...]


def validate_page(page: int, page_size: int, max_page_size: int = MAX_PAGE_SIZE) -> None:
    """
    Raises:
        InvalidPaginationError: page < 1 or page_size outside [1, max_page_size].
    """
    if page < 1:
        raise InvalidPaginationError("page", page)
    if page_size < 1 or page_size > max_page_size:
        raise InvalidPaginationError("page_size", page_size)


class BaseSelector(ABC, Generic[ModelType]):
    """
    Abstract base class for all selectors.

    Contract:
        Selectors accept a Session from the caller, perform read-only
        queries, and return DTOs or computed results.
    """

    def __init__(self, session: Session):
        self.session = session
