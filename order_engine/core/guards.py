from sqlalchemy import update
from sqlalchemy.orm import Session
from sqlalchemy.orm.attributes import set_committed_value

from order_engine.core.errors import ConcurrencyConflictError


def guarded_update(db: Session, obj, *conditions, **values) -> None:
    """
    UPDATE ``obj``'s row only while ``conditions`` still hold.

    ``conditions`` restate what this transaction read (a version number, a
    status, a counter). If another transaction changed the row in between the
    UPDATE matches nothing and ConcurrencyConflictError is raised, which the
    unit of work retries. On success the new values are written back onto
    ``obj`` as committed state so the ORM does not flush them a second time.
    """
    model = type(obj)
    update_count = db.execute(
        update(model)
        .where(model.id == obj.id, *conditions)
        .values(**values)
        .execution_options(synchronize_session=False)
    ).rowcount
    if update_count == 0:
        # Another transaction updated this row
        raise ConcurrencyConflictError(f"{model.__name__} {obj.id} was modified by another transaction")

    for key, value in values.items():
        set_committed_value(obj, key, value)
