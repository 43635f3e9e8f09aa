"""Review flag service."""

from datetime import datetime, UTC
from typing import Callable, Optional

from fulfillbill.database.base import Database
from fulfillbill.domain.entities import ReviewFlag
from fulfillbill.domain.errors import NotFoundError


class ReviewService:
    """Service for listing and resolving items held for manual review."""

    def __init__(self, db: Database, clock: Callable[[], datetime] = lambda: datetime.now(UTC)):
        """Initialize review service.

        Args:
            db: Database instance
            clock: Returns the current time; injectable for tests
        """
        self.db = db
        self.clock = clock

    def list_flags(self, kind: Optional[str] = None, include_resolved: bool = False) -> list[ReviewFlag]:
        """List review flags, open ones only by default."""
        return self.db.list_review_flags(kind=kind, include_resolved=include_resolved)

    def resolve(self, flag_id: int) -> None:
        """Resolve an open flag, releasing any approval it was blocking.

        Raises:
            NotFoundError: If no open flag has this ID
        """
        if not self.db.resolve_review_flag(flag_id, self.clock()):
            raise NotFoundError(f"Open review flag {flag_id} not found")
