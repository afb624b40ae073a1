from sqlalchemy import inspect, text
from sqlalchemy.engine import Engine

# Columns added after the first release of each table
LATE_COLUMNS = {
    "users": {
        "active_session_id": "VARCHAR",
        "login_count": "INTEGER DEFAULT 0",
        "last_logout": "TIMESTAMP",
        "deploy_timestamp": "TIMESTAMP",
        "active_form_number": "INTEGER",
        "active_run_id": "VARCHAR",
    },
    "admin": {
        "active_session_id": "VARCHAR",
        "session_expires_at": "TIMESTAMP",
    },
}


def ensure_deploy_columns(engine: Engine) -> list[str]:
    """Add missing session/deploy columns to tables created by older releases."""
    inspector = inspect(engine)
    tables = set(inspector.get_table_names())
    statements = []
    for table, columns in LATE_COLUMNS.items():
        if table not in tables:
            continue
        existing = {column["name"] for column in inspector.get_columns(table)}
        for name, ddl in columns.items():
            if name not in existing:
                statements.append(f"ALTER TABLE {table} ADD COLUMN {name} {ddl}")
    if not statements:
        return []
    with engine.begin() as connection:
        for statement in statements:
            connection.execute(text(statement))
    return statements
