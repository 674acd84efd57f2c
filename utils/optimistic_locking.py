"""
Status-Guarded Updates
Conditional single-row writes that only apply when the row is still in the
expected prior state. Concurrent actors (admins, webhooks, scheduler ticks)
race on the same rows; the loser sees rowcount 0 and backs off.
"""

import logging
from enum import Enum
from typing import Any, Dict, Iterable, Type, Union

from sqlalchemy import update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from models import Base

logger = logging.getLogger(__name__)

StatusLike = Union[str, Enum]


def _status_values(expected: Union[StatusLike, Iterable[StatusLike]]) -> list:
    if isinstance(expected, (str, Enum)):
        expected = [expected]
    return [s.value if isinstance(s, Enum) else s for s in expected]


def status_guarded_update(
    session: Session,
    model_class: Type[Base],
    entity_id: Any,
    expected_status: Union[StatusLike, Iterable[StatusLike]],
    updates: Dict[str, Any],
    extra_criteria: Iterable[Any] = (),
) -> bool:
    """
    UPDATE model SET ... WHERE id = :id AND status IN (:expected) [AND extra]

    Returns True when exactly this call moved the row. Any instance already
    loaded in ``session`` is refreshed from the database afterwards.
    """
    expected_values = _status_values(expected_status)
    values = {k: (v.value if isinstance(v, Enum) else v) for k, v in updates.items()}

    try:
        # Pending ORM changes must reach the database before the guarded write
        session.flush()

        stmt = (
            update(model_class)
            .where(
                model_class.id == entity_id,
                model_class.status.in_(expected_values),
                *extra_criteria,
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        result = session.execute(stmt)
    except SQLAlchemyError as e:
        logger.error(f"❌ Database error during guarded update of {model_class.__name__} id={entity_id}: {e}")
        raise

    if result.rowcount == 0:
        logger.info(
            f"🔒 GUARDED_UPDATE_SKIPPED: {model_class.__name__} id={entity_id} "
            f"no longer in {expected_values}"
        )
        return False

    session.get(model_class, entity_id, populate_existing=True)
    logger.debug(f"✅ Guarded update: {model_class.__name__} id={entity_id} {expected_values} -> {values.get('status')}")
    return True
