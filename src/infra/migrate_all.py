import asyncio
import logging
import os

from sqlalchemy import text
from sqlalchemy.exc import OperationalError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from src.infra.database import get_session_factory

logger = logging.getLogger(__name__)

MIGRATIONS_DIR = os.path.join(os.path.dirname(os.path.dirname(os.path.dirname(__file__))), "migrations")


def split_sql_statements(sql: str) -> list[str]:
    """Split a migration file into statements, dropping `--` comment lines."""
    lines = [line for line in sql.splitlines() if not line.strip().startswith("--")]
    return [stmt.strip() for stmt in "\n".join(lines).split(";") if stmt.strip()]


async def run_migrations(
    session_factory: async_sessionmaker[AsyncSession] | None = None,
    migrations_dir: str = MIGRATIONS_DIR,
    max_retries: int = 10,
    retry_interval: float = 2.0,
):
    """
    Executes all SQL files in the migrations/ directory in alphabetical order.
    Files must be idempotent (CREATE ... IF NOT EXISTS).
    Retries the initial connection while the database is starting.
    """
    if not os.path.exists(migrations_dir):
        logger.warning(f"Migrations directory not found at {migrations_dir}")
        return

    files = sorted(f for f in os.listdir(migrations_dir) if f.endswith(".sql"))
    logger.info(f"Found {len(files)} migration files in {migrations_dir}")
    factory = session_factory or get_session_factory()

    for attempt in range(max_retries):
        try:
            async with factory() as session:
                await session.execute(text("SELECT 1"))
                for filename in files:
                    with open(os.path.join(migrations_dir, filename), "r", encoding="utf-8") as f:
                        statements = split_sql_statements(f.read())
                    for stmt in statements:
                        await session.execute(text(stmt))
                    logger.info(f"Applied migration {filename} ({len(statements)} statements)")
                await session.commit()
            return
        except (OSError, ConnectionError, OperationalError) as e:
            logger.warning(f"Database not ready (attempt {attempt + 1}/{max_retries}): {e}")
            await asyncio.sleep(retry_interval)

    raise RuntimeError(f"Migrations failed after {max_retries} attempts")
