"""SQL migrations applied on service startup."""
from __future__ import annotations

import asyncio
import hashlib
from pathlib import Path
from typing import Awaitable, Callable, Iterable

import asyncpg  # type: ignore[import-untyped]
import structlog
from aiohttp import web

logger = structlog.get_logger(__name__)

_CONNECT_ATTEMPTS = 5
_CONNECT_DELAY_SECONDS = 2.0


def load_migrations(migrations_dir: Path) -> dict[str, str]:
    """Return ``{version: sql}`` ordered by file name."""
    migrations: dict[str, str] = {}
    for path in sorted(migrations_dir.glob("*.sql")):
        migrations[path.stem] = path.read_text(encoding="utf-8")
    return migrations


def checksum(sql: str) -> str:
    return hashlib.sha256(sql.encode("utf-8")).hexdigest()


async def _connect(dsn: str) -> asyncpg.Connection:
    for attempt in range(1, _CONNECT_ATTEMPTS + 1):
        try:
            return await asyncpg.connect(dsn)
        except (OSError, asyncpg.exceptions.InvalidCatalogNameError):
            if attempt == _CONNECT_ATTEMPTS:
                raise
            logger.warning("database not reachable, retrying", attempt=attempt)
            await asyncio.sleep(_CONNECT_DELAY_SECONDS)
    raise RuntimeError("unreachable")


async def apply_migrations(dsn: str, migrations_dir: Path) -> list[str]:
    """Apply pending migrations; returns the versions applied."""
    migrations = load_migrations(migrations_dir)
    if not migrations:
        logger.warning("no migrations found", path=str(migrations_dir))
        return []

    conn = await _connect(dsn)
    try:
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS schema_migrations (
                version text PRIMARY KEY,
                checksum text NOT NULL,
                applied_at timestamptz NOT NULL DEFAULT now()
            );
            """
        )
        rows = await conn.fetch("SELECT version, checksum FROM schema_migrations")
        applied = {row["version"]: row["checksum"] for row in rows}

        done: list[str] = []
        for version, sql in migrations.items():
            digest = checksum(sql)
            if version in applied:
                if applied[version] != digest:
                    raise RuntimeError(
                        f"Checksum mismatch for {version}: {applied[version]} (db) != {digest} (file)"
                    )
                continue
            async with conn.transaction():
                await conn.execute(sql)
                await conn.execute(
                    "INSERT INTO schema_migrations (version, checksum) VALUES ($1, $2)",
                    version,
                    digest,
                )
            logger.info("migration applied", version=version)
            done.append(version)
        return done
    finally:
        await conn.close()


def create_migration_runner(
    dsn: str, possible_paths: Iterable[Path]
) -> Callable[[web.Application], Awaitable[None]]:
    """Create an ``app.on_startup`` hook applying migrations from the first existing dir."""
    paths = list(possible_paths)

    async def apply_migrations_on_startup(_app: web.Application) -> None:
        migrations_dir = next((p for p in paths if p.exists()), None)
        if migrations_dir is None:
            logger.warning("migrations directory not found", tried=[str(p) for p in paths])
            return
        await apply_migrations(dsn, migrations_dir)

    return apply_migrations_on_startup
