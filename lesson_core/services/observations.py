"""Append-only store of grammar/translation observations."""
import logging
from typing import Iterable, List, Mapping, Optional, Sequence, Union

import pydantic
from sqlalchemy import select
from sqlalchemy.orm import Session

from lesson_core.core.errors import ValidationError
from lesson_core.database import transaction
from lesson_core.models.records import Observation, PERFORMANCE_LEVELS
from lesson_core.schemas.lessons import ObservationCreate

logger = logging.getLogger(__name__)

ObservationInput = Union[ObservationCreate, Mapping]

DEFAULT_QUERY_LIMIT = 100


def _validate(item: ObservationInput, index: Optional[int]) -> ObservationCreate:
    if isinstance(item, ObservationCreate):
        return item
    try:
        return ObservationCreate.model_validate(item)
    except pydantic.ValidationError as e:
        first = e.errors()[0]
        field = ".".join(str(part) for part in first["loc"]) or "observation"
        where = f" (observation {index})" if index is not None else ""
        raise ValidationError(field, f"{first['msg']}{where}") from e


def append(db: Session, observations: Union[ObservationInput, Sequence[ObservationInput]]) -> List[int]:
    """
    Validate and insert one observation or a batch.

    The whole batch is validated before anything is written, then inserted in a
    single transaction: either every row lands or none does.

    Returns:
        Ids assigned to the new rows, in input order.

    Raises:
        ValidationError: naming the first missing/invalid field.
    """
    if isinstance(observations, (ObservationCreate, Mapping)):
        validated = [_validate(observations, None)]
    else:
        validated = [_validate(item, i) for i, item in enumerate(observations)]
    if not validated:
        return []

    rows = [Observation(**obs.model_dump()) for obs in validated]
    with transaction(db):
        db.add_all(rows)
        db.flush()
        ids = [row.id for row in rows]
    logger.debug(f"Logged {len(ids)} observation(s) for session {validated[0].session_id}")
    return ids


def query(
    db: Session,
    session_id: Optional[str] = None,
    user_id: Optional[str] = None,
    grammar_feature: Optional[str] = None,
    performance_level: Optional[str] = None,
    limit: int = DEFAULT_QUERY_LIMIT,
) -> List[Observation]:
    """Filtered observations, newest first."""
    if performance_level is not None and performance_level not in PERFORMANCE_LEVELS:
        raise ValidationError("performance_level", f"must be one of {', '.join(PERFORMANCE_LEVELS)}")

    stmt = select(Observation)
    if session_id is not None:
        stmt = stmt.where(Observation.session_id == session_id)
    if user_id is not None:
        stmt = stmt.where(Observation.user_id == user_id)
    if grammar_feature is not None:
        stmt = stmt.where(Observation.grammar_feature == grammar_feature)
    if performance_level is not None:
        stmt = stmt.where(Observation.performance_level == performance_level)
    stmt = stmt.order_by(Observation.created_at.desc(), Observation.id.desc()).limit(limit)
    return list(db.execute(stmt).scalars())


def for_lesson(db: Session, lesson_id: str) -> List[Observation]:
    """All observations of one lesson in the order they were logged."""
    stmt = (
        select(Observation)
        .where(Observation.session_id == lesson_id)
        .order_by(Observation.created_at.asc(), Observation.id.asc())
    )
    return list(db.execute(stmt).scalars())


def for_user(db: Session, user_id: str, features: Iterable[str], include: bool, limit: int) -> List[Observation]:
    """A user's most recent observations whose feature is (include=True) or is not in features."""
    features = list(features)
    stmt = select(Observation).where(Observation.user_id == user_id)
    if include:
        stmt = stmt.where(Observation.grammar_feature.in_(features))
    elif features:
        stmt = stmt.where(Observation.grammar_feature.not_in(features))
    stmt = stmt.order_by(Observation.created_at.desc(), Observation.id.desc()).limit(limit)
    return list(db.execute(stmt).scalars())
