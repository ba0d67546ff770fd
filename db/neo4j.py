"""Neo4j driver lifecycle and the reasoning graph schema.

The driver is created once at startup (init_neo4j) and shared. Pool size
and acquisition timeout come from NEO4J_POOL_MAX_SIZE and
NEO4J_POOL_ACQUISITION_TIMEOUT.
"""

import asyncio
import random
from typing import Any, Awaitable, Callable, TypeVar

from neo4j import AsyncGraphDatabase
from neo4j.exceptions import (
    ClientError,
    DatabaseError,
    ServiceUnavailable,
    SessionExpired,
    TransientError,
)

from config import get_settings
from utils.logging import get_logger

logger = get_logger(__name__)

driver = None

T = TypeVar("T")

TRANSIENT_ERRORS = (
    ServiceUnavailable,
    SessionExpired,
    TransientError,
    ConnectionError,
    TimeoutError,
    OSError,
)

# Uniqueness constraints double as the id lookup indexes for MERGE
SCHEMA_CONSTRAINTS = (
    "CREATE CONSTRAINT reason_fragment_id IF NOT EXISTS FOR (rf:ReasonFragment) REQUIRE rf.id IS UNIQUE",
    "CREATE CONSTRAINT browser_session_id IF NOT EXISTS FOR (bs:BrowserSession) REQUIRE bs.id IS UNIQUE",
    "CREATE CONSTRAINT task_id IF NOT EXISTS FOR (t:Task) REQUIRE t.id IS UNIQUE",
    "CREATE CONSTRAINT concept_id IF NOT EXISTS FOR (c:Concept) REQUIRE c.id IS UNIQUE",
)

SCHEMA_INDEXES = (
    "CREATE INDEX reason_fragment_text IF NOT EXISTS FOR (rf:ReasonFragment) ON (rf.text)",
    "CREATE INDEX reason_fragment_step IF NOT EXISTS FOR (rf:ReasonFragment) ON (rf.stepNumber)",
    "CREATE INDEX concept_name IF NOT EXISTS FOR (c:Concept) ON (c.name)",
)


def retry_delay(attempt: int, base_delay: float = 1.0, max_delay: float = 8.0) -> float:
    """Exponential delay for a 0-indexed attempt, capped, plus up to 1s jitter."""
    return min(base_delay * (2**attempt), max_delay) + random.uniform(0, 1)


async def with_retry(
    operation: Callable[..., Awaitable[T]],
    *args: Any,
    max_retries: int = 3,
    base_delay: float = 1.0,
    operation_name: str = "Neo4j operation",
    **kwargs: Any,
) -> T:
    """Await operation(*args, **kwargs), retrying TRANSIENT_ERRORS.

    Other errors, and the last transient one, propagate.
    """
    attempt = 0
    while True:
        try:
            return await operation(*args, **kwargs)
        except TRANSIENT_ERRORS as e:
            if attempt >= max_retries:
                logger.error(
                    f"{operation_name} failed after {attempt + 1} attempts: "
                    f"{type(e).__name__}: {e}"
                )
                raise
            delay = retry_delay(attempt, base_delay)
            logger.warning(
                f"{operation_name} attempt {attempt + 1}/{max_retries + 1} failed: "
                f"{type(e).__name__}: {e}. Retrying in {delay:.2f}s"
            )
            await asyncio.sleep(delay)
            attempt += 1


async def init_neo4j():
    """Create the driver and wait until the database answers."""
    global driver
    settings = get_settings()

    logger.info(
        f"Connecting to Neo4j at {settings.neo4j_uri} "
        f"(pool max_size={settings.neo4j_pool_max_size}, "
        f"acquisition_timeout={settings.neo4j_pool_acquisition_timeout}s)"
    )

    driver = AsyncGraphDatabase.driver(
        settings.neo4j_uri,
        auth=(settings.neo4j_user, settings.get_neo4j_password()),
        max_connection_pool_size=settings.neo4j_pool_max_size,
        connection_acquisition_timeout=settings.neo4j_pool_acquisition_timeout,
    )

    await with_retry(driver.verify_connectivity, operation_name="Neo4j connectivity check")
    logger.info("Neo4j driver ready")


async def create_schema(session) -> None:
    """Create uniqueness constraints and lookup indexes.

    Constraints are required; index creation failures are logged and skipped.
    """
    for statement in SCHEMA_CONSTRAINTS:
        await session.run(statement)

    for statement in SCHEMA_INDEXES:
        try:
            await session.run(statement)
        except (ClientError, DatabaseError) as e:
            logger.debug(f"Index creation skipped: {e}")


async def close_neo4j():
    """Close Neo4j connection pool."""
    global driver
    if driver:
        await driver.close()
        driver = None
        logger.info("Neo4j connection pool closed")


async def get_neo4j_session():
    """Get a Neo4j session from the pool."""
    if driver is None:
        raise RuntimeError("Neo4j driver is not initialized")
    return driver.session()
