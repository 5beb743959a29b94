"""
PostgreSQL Object Store - asyncpg-backed ResourceStore.

Each control plane or seed is backed by its own database. Objects live in
the managed_objects table as JSONB; resource versions come from a sequence;
watch events are delivered through LISTEN/NOTIFY on the
managed_objects_events channel.
"""

import asyncio
import json
import logging
from datetime import timezone
from typing import Any, AsyncIterator, Dict, List, Optional

import asyncpg

from events import EventType, WatchEvent
from mergepatch import apply_merge_patch
from migrate import run_migrations
from resources import ManagedResource, object_key
from store import (
    PROPAGATION_BACKGROUND,
    AlreadyExistsError,
    ConflictError,
    NotFoundError,
    ResourceStore,
)

logger = logging.getLogger(__name__)

NOTIFY_CHANNEL = "managed_objects_events"

_NOTIFY_EVENT_TYPES = {
    "INSERT": EventType.ADDED,
    "UPDATE": EventType.MODIFIED,
    "DELETE": EventType.DELETED,
}

_SELECT_COLUMNS = "kind, namespace, name, uid, resource_version, body, deletion_timestamp"


class PostgresResourceStore(ResourceStore):
    """ResourceStore persisted in PostgreSQL."""

    def __init__(
        self,
        name: str = "master",
        dsn: Optional[str] = None,
        host: str = "localhost",
        port: int = 5432,
        database: str = "fleetsync",
        user: str = "fleetsync",
        password: str = "",
        min_pool_size: int = 2,
        max_pool_size: int = 10,
    ):
        self.name = name
        self.dsn = dsn
        self.host = host
        self.port = port
        self.database = database
        self.user = user
        self.password = password
        self.min_pool_size = min_pool_size
        self.max_pool_size = max_pool_size
        self.pool: Optional[asyncpg.Pool] = None

    async def connect(self) -> None:
        """Establish the connection pool."""
        if self.dsn:
            self.pool = await asyncpg.create_pool(
                dsn=self.dsn,
                min_size=self.min_pool_size,
                max_size=self.max_pool_size,
                command_timeout=60,
            )
        else:
            self.pool = await asyncpg.create_pool(
                host=self.host,
                port=self.port,
                database=self.database,
                user=self.user,
                password=self.password,
                min_size=self.min_pool_size,
                max_size=self.max_pool_size,
                command_timeout=60,
            )
        logger.info(
            f"[{self.name}] Connected to PostgreSQL "
            f"(pool: {self.min_pool_size}-{self.max_pool_size})"
        )

    async def close(self) -> None:
        if self.pool:
            await self.pool.close()
            self.pool = None
            logger.info(f"[{self.name}] Closed PostgreSQL connection")

    def _ensure_connected(self) -> None:
        if self.pool is None:
            raise RuntimeError(
                "Database not connected. Call connect() before performing operations."
            )

    async def initialize_schema(self) -> None:
        """Apply migrations to bring the schema up to date."""
        self._ensure_connected()
        await run_migrations(self.pool)

    # ==================== Reads ====================

    async def get(self, kind: str, namespace: str, name: str) -> ManagedResource:
        self._ensure_connected()
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(
                f"SELECT {_SELECT_COLUMNS} FROM managed_objects "
                "WHERE kind = $1 AND namespace = $2 AND name = $3",
                kind,
                namespace,
                name,
            )
        if row is None:
            raise self._not_found(kind, namespace, name)
        return self._parse_row(row)

    async def list(
        self, kind: str, namespace: Optional[str] = None
    ) -> List[ManagedResource]:
        self._ensure_connected()
        async with self.pool.acquire() as conn:
            if namespace is None:
                rows = await conn.fetch(
                    f"SELECT {_SELECT_COLUMNS} FROM managed_objects "
                    "WHERE kind = $1 ORDER BY namespace, name",
                    kind,
                )
            else:
                rows = await conn.fetch(
                    f"SELECT {_SELECT_COLUMNS} FROM managed_objects "
                    "WHERE kind = $1 AND namespace = $2 ORDER BY name",
                    kind,
                    namespace,
                )
        return [self._parse_row(row) for row in rows]

    # ==================== Writes ====================

    async def create(self, obj: ManagedResource) -> ManagedResource:
        self._ensure_connected()
        owner = obj.owner_reference
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(
                f"""
                INSERT INTO managed_objects (
                    kind, namespace, name, body, finalizers,
                    owner_kind, owner_name, owner_uid
                )
                VALUES ($1, $2, $3, $4, $5, $6, $7, $8)
                ON CONFLICT (kind, namespace, name) DO NOTHING
                RETURNING {_SELECT_COLUMNS}
                """,
                obj.kind,
                obj.namespace,
                obj.name,
                self._serialize_body(obj),
                json.dumps(obj.finalizers),
                owner.kind if owner else None,
                owner.name if owner else None,
                owner.uid if owner else None,
            )
        if row is None:
            raise AlreadyExistsError(
                f"{obj.kind} {obj.key} already exists",
                obj.kind,
                obj.namespace,
                obj.name,
            )
        logger.debug(f"[{self.name}] Created {obj.kind} {obj.key}")
        return self._parse_row(row)

    async def update(self, obj: ManagedResource) -> ManagedResource:
        self._ensure_connected()
        async with self.pool.acquire() as conn:
            async with conn.transaction():
                current = await self._select_for_update(
                    conn, obj.kind, obj.namespace, obj.name
                )
                if (
                    obj.resource_version
                    and obj.resource_version != current.resource_version
                ):
                    raise ConflictError(
                        f"Operation cannot be fulfilled on {obj.kind} {obj.key}: "
                        f"the object has been modified",
                        obj.kind,
                        obj.namespace,
                        obj.name,
                    )
                return await self._write(conn, obj, current)

    async def patch(
        self, kind: str, namespace: str, name: str, patch: Dict[str, Any]
    ) -> ManagedResource:
        self._ensure_connected()
        patch = {
            k: v
            for k, v in patch.items()
            if k not in ("kind", "name", "namespace", "uid", "resource_version")
        }
        async with self.pool.acquire() as conn:
            async with conn.transaction():
                current = await self._select_for_update(conn, kind, namespace, name)
                merged = ManagedResource.from_dict(
                    apply_merge_patch(current.to_dict(), patch)
                )
                return await self._write(conn, merged, current)

    async def delete(
        self,
        kind: str,
        namespace: str,
        name: str,
        propagation: str = PROPAGATION_BACKGROUND,
    ) -> None:
        self._ensure_connected()
        async with self.pool.acquire() as conn:
            async with conn.transaction():
                current = await self._select_for_update(conn, kind, namespace, name)
                if current.finalizers:
                    await conn.execute(
                        """
                        UPDATE managed_objects
                        SET deletion_timestamp = COALESCE(deletion_timestamp, NOW()),
                            resource_version = nextval('managed_objects_resource_version_seq'),
                            updated_at = NOW()
                        WHERE kind = $1 AND namespace = $2 AND name = $3
                        """,
                        kind,
                        namespace,
                        name,
                    )
                    return
                await self._remove(conn, current)
        logger.debug(
            f"[{self.name}] Deleted {kind} {object_key(namespace, name)} "
            f"(propagation: {propagation})"
        )

    # ==================== Watch ====================

    async def watch(self, kind: str) -> AsyncIterator[WatchEvent]:
        self._ensure_connected()
        queue: asyncio.Queue = asyncio.Queue()

        def on_notify(connection, pid, channel, payload):
            queue.put_nowait(payload)

        conn = await self.pool.acquire()
        await conn.add_listener(NOTIFY_CHANNEL, on_notify)
        try:
            while True:
                payload = json.loads(await queue.get())
                if payload["kind"] != kind:
                    continue
                event_type = _NOTIFY_EVENT_TYPES[payload["op"]]
                if event_type == EventType.DELETED:
                    obj = ManagedResource(
                        kind=kind,
                        namespace=payload["namespace"],
                        name=payload["name"],
                    )
                else:
                    try:
                        obj = await self.get(kind, payload["namespace"], payload["name"])
                    except NotFoundError:
                        continue
                yield WatchEvent(event_type, obj)
        finally:
            await conn.remove_listener(NOTIFY_CHANNEL, on_notify)
            await self.pool.release(conn)

    # ==================== Internals ====================

    def _not_found(self, kind: str, namespace: str, name: str) -> NotFoundError:
        return NotFoundError(
            f"{kind} {object_key(namespace, name)} not found", kind, namespace, name
        )

    async def _select_for_update(
        self, conn: asyncpg.Connection, kind: str, namespace: str, name: str
    ) -> ManagedResource:
        row = await conn.fetchrow(
            f"SELECT {_SELECT_COLUMNS} FROM managed_objects "
            "WHERE kind = $1 AND namespace = $2 AND name = $3 FOR UPDATE",
            kind,
            namespace,
            name,
        )
        if row is None:
            raise self._not_found(kind, namespace, name)
        return self._parse_row(row)

    async def _write(
        self,
        conn: asyncpg.Connection,
        obj: ManagedResource,
        current: ManagedResource,
    ) -> ManagedResource:
        """Persist a new body; remove the row if its deletion is now unblocked."""
        owner = obj.owner_reference
        row = await conn.fetchrow(
            f"""
            UPDATE managed_objects
            SET body = $4,
                finalizers = $5,
                owner_kind = $6,
                owner_name = $7,
                owner_uid = $8,
                resource_version = nextval('managed_objects_resource_version_seq'),
                updated_at = NOW()
            WHERE kind = $1 AND namespace = $2 AND name = $3
            RETURNING {_SELECT_COLUMNS}
            """,
            obj.kind,
            obj.namespace,
            obj.name,
            self._serialize_body(obj),
            json.dumps(obj.finalizers),
            owner.kind if owner else None,
            owner.name if owner else None,
            owner.uid if owner else None,
        )
        stored = self._parse_row(row)
        if current.is_deleting and not stored.finalizers:
            await self._remove(conn, stored)
        return stored

    async def _remove(self, conn: asyncpg.Connection, obj: ManagedResource) -> None:
        await conn.execute(
            "DELETE FROM managed_objects "
            "WHERE kind = $1 AND namespace = $2 AND name = $3",
            obj.kind,
            obj.namespace,
            obj.name,
        )

        # Garbage-collect dependents of the removed object
        await conn.execute(
            """
            UPDATE managed_objects
            SET deletion_timestamp = COALESCE(deletion_timestamp, NOW()),
                resource_version = nextval('managed_objects_resource_version_seq')
            WHERE owner_kind = $1 AND owner_name = $2
              AND (owner_uid IS NULL OR owner_uid = '' OR owner_uid = $3)
              AND finalizers <> '[]'::jsonb
            """,
            obj.kind,
            obj.name,
            obj.uid,
        )
        rows = await conn.fetch(
            f"""
            SELECT {_SELECT_COLUMNS} FROM managed_objects
            WHERE owner_kind = $1 AND owner_name = $2
              AND (owner_uid IS NULL OR owner_uid = '' OR owner_uid = $3)
              AND finalizers = '[]'::jsonb
            """,
            obj.kind,
            obj.name,
            obj.uid,
        )
        for row in rows:
            await self._remove(conn, self._parse_row(row))

    def _serialize_body(self, obj: ManagedResource) -> str:
        body = obj.to_dict()
        for column_owned in ("uid", "resource_version", "deletion_timestamp"):
            body.pop(column_owned, None)
        return json.dumps(body)

    def _parse_row(self, row: asyncpg.Record) -> ManagedResource:
        body = row["body"]
        if isinstance(body, str):
            body = json.loads(body)
        obj = ManagedResource.from_dict(body)
        obj.uid = str(row["uid"])
        obj.resource_version = int(row["resource_version"])
        deletion = row["deletion_timestamp"]
        if deletion is not None and deletion.tzinfo is None:
            deletion = deletion.replace(tzinfo=timezone.utc)
        obj.deletion_timestamp = deletion
        return obj


async def connect_seed_store(seed: ManagedResource) -> PostgresResourceStore:
    """
    Store factory for Seed objects.

    A Seed's data carries either a ``dsn`` or discrete connection fields
    (``host``, ``port``, ``database``, ``user``, ``password``).
    """
    spec = seed.data
    store = PostgresResourceStore(
        name=seed.name,
        dsn=spec.get("dsn"),
        host=spec.get("host", "localhost"),
        port=int(spec.get("port", 5432)),
        database=spec.get("database", "fleetsync"),
        user=spec.get("user", "fleetsync"),
        password=spec.get("password", ""),
    )
    await store.connect()
    await store.initialize_schema()
    return store
