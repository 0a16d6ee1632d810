"""
Schema Capability Gate
=======================

Checks that a relation exposes the columns a query needs before the query
is issued, so the inbox keeps working while migrations roll out.

Two providers share one contract ("return False, never raise"):
- SQLAlchemySchemaCapabilityProvider: live introspection, cached per process
- StaticSchemaCapabilityProvider: a fixed capability table resolved at startup
"""

from typing import Dict, Iterable, Mapping, Optional, Sequence, Set, Tuple

from sqlalchemy import MetaData, inspect
from sqlalchemy.exc import DBAPIError
from sqlalchemy.ext.asyncio import AsyncEngine

from src.ops.application.services import ISchemaCapabilityProvider
from src.shared.infrastructure.logging import get_logger, warn_once

logger = get_logger(__name__)


MISSING_SCHEMA_CODES = {"42P01", "42703", "PGRST205"}
MISSING_SCHEMA_MESSAGES = ("no such table", "no such column", "does not exist", "could not find the table")

_MAX_ERROR_MESSAGE = 300


def _error_chain(exc: BaseException) -> Iterable[BaseException]:
    seen = set()
    current: Optional[BaseException] = exc
    while current is not None and id(current) not in seen:
        seen.add(id(current))
        yield current
        orig = getattr(current, "orig", None)
        if isinstance(orig, BaseException) and id(orig) not in seen:
            current = orig
        else:
            current = current.__cause__ or current.__context__


def _error_code(exc: BaseException) -> Optional[str]:
    for attr in ("sqlstate", "pgcode"):
        value = getattr(exc, attr, None)
        if isinstance(value, str) and value:
            return value
    # PostgREST-style errors carry the code in `code`; SQLAlchemy's own
    # `code` is a documentation slug and is skipped.
    if not isinstance(exc, DBAPIError):
        value = getattr(exc, "code", None)
        if isinstance(value, str) and value:
            return value
    return None


def is_missing_schema_error(exc: BaseException) -> bool:
    """True when an error signals an undefined relation or column."""
    for err in _error_chain(exc):
        code = _error_code(err)
        if code and code.upper() in MISSING_SCHEMA_CODES:
            return True
        if isinstance(err, DBAPIError):
            continue
        message = str(err).lower()
        if any(marker in message for marker in MISSING_SCHEMA_MESSAGES):
            return True
    return False


def serialize_db_error(exc: BaseException) -> Dict[str, Optional[str]]:
    """
    Reduce a database error to a loggable {code, message}.

    Statement text and bound parameters are never included.
    """
    code: Optional[str] = None
    message: Optional[str] = None
    for err in _error_chain(exc):
        code = code or _error_code(err)
        if isinstance(err, DBAPIError):
            continue
        if message is None:
            text = str(err).strip().splitlines()
            message = text[0][:_MAX_ERROR_MESSAGE] if text else None
    return {"code": code or type(exc).__name__, "message": message}


def _inspect_columns(sync_conn, relation: str) -> Optional[Set[str]]:
    inspector = inspect(sync_conn)
    if not inspector.has_table(relation):
        return None
    return {column["name"] for column in inspector.get_columns(relation)}


class SQLAlchemySchemaCapabilityProvider(ISchemaCapabilityProvider):
    """
    Live schema gate backed by SQLAlchemy's inspector.

    Answers are cached per (relation, columns) signature for the process
    lifetime; a relation found missing short-circuits later probes.
    Introspection failures are not cached.
    """

    def __init__(self, engine: AsyncEngine):
        self._engine = engine
        self._cache: Dict[Tuple[str, Tuple[str, ...]], bool] = {}
        self._missing_relations: Set[str] = set()

    async def has_required_columns(self, relation: str, columns: Sequence[str]) -> bool:
        wanted = tuple(sorted({c for c in columns if c}))
        signature = (relation, wanted)

        cached = self._cache.get(signature)
        if cached is not None:
            return cached
        if relation in self._missing_relations:
            return False

        try:
            async with self._engine.connect() as conn:
                available = await conn.run_sync(_inspect_columns, relation)
        except Exception as e:
            logger.warning(
                "Schema introspection failed",
                extra={"relation": relation, **serialize_db_error(e)}
            )
            return False

        if available is None:
            self._missing_relations.add(relation)
            self._cache[signature] = False
            warn_once(
                logger,
                f"schema:{relation}:missing_relation",
                "Relation missing; dependent queries disabled",
                relation=relation,
            )
            return False

        missing = [c for c in wanted if c not in available]
        supported = not missing
        self._cache[signature] = supported
        if missing:
            warn_once(
                logger,
                f"schema:{relation}:{','.join(missing)}",
                "Relation missing columns; dependent queries disabled",
                relation=relation,
                missing_columns=missing,
            )
        return supported

    def invalidate(self) -> None:
        """Forget cached answers (after a migration)."""
        self._cache.clear()
        self._missing_relations.clear()


class StaticSchemaCapabilityProvider(ISchemaCapabilityProvider):
    """Schema gate over a fixed relation -> columns table."""

    def __init__(self, capabilities: Mapping[str, Iterable[str]]):
        self._capabilities: Dict[str, frozenset] = {
            relation: frozenset(columns) for relation, columns in capabilities.items()
        }

    @classmethod
    def from_metadata(cls, metadata: MetaData) -> "StaticSchemaCapabilityProvider":
        """Build the table from the mapped ORM models."""
        return cls({
            table.name: [column.name for column in table.columns]
            for table in metadata.tables.values()
        })

    async def has_required_columns(self, relation: str, columns: Sequence[str]) -> bool:
        available = self._capabilities.get(relation)
        if available is None:
            return False
        return all(c in available for c in columns if c)
