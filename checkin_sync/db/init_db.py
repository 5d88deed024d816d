import asyncio
import logging
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine
from checkin_sync.db.session import engine
from checkin_sync.db.models import Base
from checkin_sync.services.feed import channel_name

logger = logging.getLogger(__name__)

NOTIFY_TABLES = ("check_ins", "notes", "action_items")

# Every row change is published as {"type", "table", "record", "old_record"}
# on channel <table>_changes, the payload ChangeEvent.from_json expects. Only one
# row image is sent (old_record for DELETE, record otherwise) so a single row
# bounded by the request schemas always fits the NOTIFY payload cap.
NOTIFY_FUNCTION = """
CREATE OR REPLACE FUNCTION notify_row_change() RETURNS trigger AS $$
DECLARE
    payload json;
BEGIN
    payload := json_build_object(
        'type', TG_OP,
        'table', TG_TABLE_NAME,
        'record', CASE WHEN TG_OP = 'DELETE' THEN NULL ELSE row_to_json(NEW) END,
        'old_record', CASE WHEN TG_OP = 'DELETE' THEN row_to_json(OLD) ELSE NULL END
    );
    PERFORM pg_notify(TG_TABLE_NAME || '_changes', payload::text);
    RETURN COALESCE(NEW, OLD);
END;
$$ LANGUAGE plpgsql
"""


def trigger_statements(table: str) -> list[str]:
    trigger = f"{channel_name(table)}_notify"
    return [
        f"DROP TRIGGER IF EXISTS {trigger} ON {table}",
        f"CREATE TRIGGER {trigger} AFTER INSERT OR UPDATE OR DELETE ON {table} "
        f"FOR EACH ROW EXECUTE FUNCTION notify_row_change()",
    ]


async def install_notify_triggers(conn: AsyncConnection) -> None:
    await conn.execute(text(NOTIFY_FUNCTION))
    for table in NOTIFY_TABLES:
        for stmt in trigger_statements(table):
            await conn.execute(text(stmt))
    logger.info("Change notification triggers installed on %s", ", ".join(NOTIFY_TABLES))


async def init_db(bind: AsyncEngine = engine):
    """Create tables; on PostgreSQL also install the change notification triggers."""
    try:
        async with bind.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
            if conn.dialect.name == "postgresql":
                await install_notify_triggers(conn)
        logger.info("Database tables initialized successfully")
    except Exception as e:
        logger.error("Failed to initialize database: %s", e)
        raise

if __name__ == "__main__":
    asyncio.run(init_db())
