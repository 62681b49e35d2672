import logging
import threading
from datetime import date
from typing import Callable, ContextManager, Optional

from sqlalchemy.orm import Session

from config import get_settings
from database import session_scope
from periods import local_today, month_key
from services import AdjustmentService

logger = logging.getLogger(__name__)


class RolloverManager:
    """Applies due scheduled adjustments lazily, from whichever request sees
    the new month first.

    There is no background thread. Redundant runs from concurrent requests are
    harmless because each adjustment is claimed with a compare-and-set; the
    per-household memo only saves the query once a month has been fully rolled
    over in this process.
    """

    def __init__(
        self, scope: Callable[[], ContextManager[Session]] = session_scope
    ) -> None:
        self._scope = scope
        self._lock = threading.Lock()
        self._settled: dict[int, int] = {}

    def _is_settled(self, household_id: int, today: date) -> bool:
        with self._lock:
            return self._settled.get(household_id) == month_key(today.year, today.month)

    def _remember(self, household_id: int, today: date, settled: bool) -> None:
        with self._lock:
            if settled:
                self._settled[household_id] = month_key(today.year, today.month)
            else:
                self._settled.pop(household_id, None)

    def apply(
        self,
        session: Session,
        household_id: int,
        source: str = "request",
        today: Optional[date] = None,
    ) -> int:
        today = today or local_today()
        if self._is_settled(household_id, today):
            return 0
        service = AdjustmentService(session, household_id)
        count = service.auto_apply_due_adjustments(today)
        remaining = service.count_due(today)
        self._remember(household_id, today, settled=remaining == 0)
        if count or remaining:
            logger.info(
                f"rollover_run: source={source} household={household_id} "
                f"adjustments_applied={count} still_pending={remaining}"
            )
        return count

    def run(
        self,
        household_id: Optional[int] = None,
        source: str = "manual",
        today: Optional[date] = None,
    ) -> int:
        household_id = household_id or get_settings().default_household_id
        logger.info(f"rollover_run: source={source} household={household_id}")
        with self._scope() as session:
            return self.apply(session, household_id, source=source, today=today)

    def forget(self, household_id: int) -> None:
        self._remember(household_id, local_today(), settled=False)


def main() -> None:
    logging.basicConfig(level=logging.INFO)
    count = RolloverManager().run(source="cli")
    logger.info(f"rollover_done: adjustments_applied={count}")


if __name__ == "__main__":
    main()
