from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.orm import Session


def dialect_insert(db: Session, table):
    """
    INSERT construct for the bound dialect, so callers can use
    on_conflict_do_nothing() as a single atomic statement.
    """
    name = db.get_bind().dialect.name
    if name == "postgresql":
        return postgresql.insert(table)
    if name == "sqlite":
        return sqlite.insert(table)
    raise NotImplementedError(f"conditional insert not supported for dialect {name!r}")
