"""The main store: the proof tree of claims and pieces, and votes on it."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import ClassVar

from sqlalchemy import select, text, update
from sqlalchemy.exc import DBAPIError, SQLAlchemyError
from sqlalchemy.schema import CreateTable

from litestar_refinery.core.ids import new_id
from litestar_refinery.db.connection import Database, is_busy_error
from litestar_refinery.db.models import MainBase, NodeModel, VoteModel
from litestar_refinery.db.repositories import NodeRepository, VoteRepository
from litestar_refinery.exceptions import NodeNotFoundError, SchemaMigrationError, SelfVoteError

__all__ = ["VOTE_MAX_ATTEMPTS", "MainStore"]

logger = logging.getLogger(__name__)

VOTE_MAX_ATTEMPTS = 5

_TREE_QUERY = text(
    """
    WITH RECURSIVE tree AS (
        SELECT id, 0 AS rel_depth FROM nodes
        WHERE id = :root_id AND deleted_at IS NULL
        UNION ALL
        SELECT n.id, t.rel_depth + 1 FROM nodes n
        JOIN tree t ON n.parent_id = t.id
        WHERE t.rel_depth < :max_depth AND n.deleted_at IS NULL
    )
    SELECT id FROM tree
    """
)


def _now() -> datetime:
    return datetime.now(timezone.utc)


class MainStore(Database):
    """Typed access to the node tree."""

    metadata = MainBase.metadata
    alterations: ClassVar[tuple[str, ...]] = (
        "ALTER TABLE nodes ADD COLUMN visibility VARCHAR(32) DEFAULT 'public'",
        "ALTER TABLE nodes ADD COLUMN deleted_at DATETIME",
        "ALTER TABLE nodes ADD COLUMN decomposed_from VARCHAR(12) REFERENCES nodes(id)",
    )
    seeds: ClassVar[tuple[str, ...]] = (
        "INSERT OR IGNORE INTO visibility_strata (id, min_role, ordinal) VALUES ('public', 'anon', 0)",
        "INSERT OR IGNORE INTO visibility_strata (id, min_role, ordinal) VALUES ('research', 'researcher', 1)",
        "INSERT OR IGNORE INTO visibility_strata (id, min_role, ordinal) VALUES ('provider', 'provider', 2)",
        "INSERT OR IGNORE INTO visibility_strata (id, min_role, ordinal) VALUES ('instance', 'operator', 3)",
    )

    async def post_migrate(self) -> None:
        await self.migrate_node_type_constraint()

    async def migrate_node_type_constraint(self) -> bool:
        """Rebuild ``nodes`` so that its node type check admits only ``piece`` and ``claim``.

        Stores created by older releases constrained ``node_type`` to the
        legacy vocabulary. The table is rebuilt in a single transaction with
        foreign keys switched off: ``evidence`` rows become ``piece``, every
        other type becomes ``claim``. A failure rolls back and leaves the old
        table untouched.

        Returns:
            ``True`` if the table was rebuilt, ``False`` if it was already current.

        Raises:
            SchemaMigrationError: If the rebuild fails.
        """
        async with self.engine.connect() as conn:
            ddl = (
                await conn.exec_driver_sql("SELECT sql FROM sqlite_master WHERE type = 'table' AND name = 'nodes'")
            ).scalar_one_or_none()
        if ddl is None or "'piece'" in ddl:
            return False

        table = NodeModel.__table__
        async with self.engine.connect() as raw:
            conn = await raw.execution_options(isolation_level="AUTOCOMMIT")
            await conn.exec_driver_sql("PRAGMA foreign_keys=OFF")
            try:
                await conn.exec_driver_sql("BEGIN")
                try:
                    await conn.exec_driver_sql("ALTER TABLE nodes RENAME TO _nodes_old")
                    await conn.exec_driver_sql(str(CreateTable(table).compile(dialect=conn.dialect)))
                    old_columns = {
                        row[1] for row in (await conn.exec_driver_sql("PRAGMA table_info(_nodes_old)")).all()
                    }
                    shared = [column.name for column in table.columns if column.name in old_columns]
                    select_list = ", ".join(
                        "CASE node_type WHEN 'evidence' THEN 'piece' ELSE 'claim' END" if name == "node_type" else name
                        for name in shared
                    )
                    await conn.exec_driver_sql(
                        f"INSERT INTO nodes ({', '.join(shared)}) SELECT {select_list} FROM _nodes_old"  # noqa: S608
                    )
                    await conn.exec_driver_sql("DROP TABLE _nodes_old")
                    await conn.exec_driver_sql("COMMIT")
                except DBAPIError as exc:
                    await conn.exec_driver_sql("ROLLBACK")
                    raise SchemaMigrationError(self.path, "rebuild nodes node_type constraint", exc) from exc
            finally:
                await conn.exec_driver_sql("PRAGMA foreign_keys=ON")

        try:
            async with self.engine.begin() as conn:
                for index in table.indexes:
                    await conn.run_sync(lambda sync_conn, index=index: index.create(sync_conn, checkfirst=True))
        except SQLAlchemyError as exc:
            raise SchemaMigrationError(self.path, "recreate nodes indexes", exc) from exc
        logger.info("rebuilt nodes table of %s with the piece/claim node types", self.path)
        return True

    async def create_node(
        self,
        body: str,
        author_id: str,
        *,
        node_type: str = "claim",
        parent_id: str | None = None,
        model_id: str | None = None,
        visibility: str = "public",
    ) -> NodeModel:
        """Insert a node under ``parent_id`` (or as a new root) and bump the parent's child count.

        Raises:
            NodeNotFoundError: If the parent does not exist.
        """
        node_id = new_id()
        async with self.session() as session, session.begin():
            repo = NodeRepository(session=session)
            if parent_id:
                parent = await repo.get_one_or_none(id=parent_id)
                if parent is None:
                    raise NodeNotFoundError(parent_id)
                root_id, depth = parent.root_id, parent.depth + 1
            else:
                root_id, depth = node_id, 0
            node = NodeModel(
                id=node_id,
                parent_id=parent_id,
                root_id=root_id,
                node_type=node_type,
                body=body,
                author_id=author_id,
                model_id=model_id,
                score=0,
                temperature="cold",
                child_count=0,
                depth=depth,
                visibility=visibility,
            )
            await repo.add(node)
            if parent_id:
                await session.execute(
                    update(NodeModel)
                    .where(NodeModel.id == parent_id)
                    .values(child_count=NodeModel.child_count + 1, updated_at=_now())
                )
        return node

    async def get_node(self, node_id: str) -> NodeModel:
        """Return a live node. A missing visibility reads as ``public``.

        Raises:
            NodeNotFoundError: If it does not exist or was soft-deleted.
        """
        async with self.session() as session:
            node = (
                await session.execute(select(NodeModel).where(NodeModel.id == node_id, NodeModel.deleted_at.is_(None)))
            ).scalar_one_or_none()
        if node is None:
            raise NodeNotFoundError(node_id)
        node.visibility = node.visibility or "public"
        return node

    async def get_tree(self, root_id: str, max_depth: int = 50) -> list[NodeModel]:
        """Return the live subtree under ``root_id``, shallowest first, best scored first within a level.

        Soft-deleted nodes and everything below them are skipped.
        """
        async with self.session() as session:
            ids = (await session.execute(_TREE_QUERY, {"root_id": root_id, "max_depth": max_depth})).scalars().all()
            if not ids:
                return []
            nodes = (
                (
                    await session.execute(
                        select(NodeModel)
                        .where(NodeModel.id.in_(ids))
                        .order_by(NodeModel.depth.asc(), NodeModel.score.desc(), NodeModel.created_at.asc())
                    )
                )
                .scalars()
                .all()
            )
        for node in nodes:
            node.visibility = node.visibility or "public"
        return list(nodes)

    async def soft_delete_node(self, node_id: str) -> None:
        async with self.session() as session, session.begin():
            await session.execute(
                update(NodeModel).where(NodeModel.id == node_id, NodeModel.deleted_at.is_(None)).values(deleted_at=_now())
            )

    async def vote(self, node_id: str, user_id: str, value: int) -> None:
        """Record a +1/-1 vote and move the node's score by the difference.

        A repeated identical vote is a no-op. Lock contention is retried up to
        five attempts with a growing pause.

        Raises:
            NodeNotFoundError: If the node does not exist.
            SelfVoteError: If the voter authored the node.
            ValueError: If ``value`` is not +1 or -1.
        """
        if value not in (-1, 1):
            msg = f"vote value must be +1 or -1, got {value}"
            raise ValueError(msg)

        async with self.session() as session:
            author_id = (
                await session.execute(select(NodeModel.author_id).where(NodeModel.id == node_id))
            ).scalar_one_or_none()
        if author_id is None:
            raise NodeNotFoundError(node_id)
        if author_id == user_id:
            raise SelfVoteError

        for attempt in range(VOTE_MAX_ATTEMPTS):
            try:
                await self._vote_once(node_id, user_id, value)
            except DBAPIError as exc:
                if not is_busy_error(exc) or attempt == VOTE_MAX_ATTEMPTS - 1:
                    raise
                logger.debug("vote on %s busy, attempt %d", node_id, attempt + 1)
                await asyncio.sleep(0.01 * (attempt + 1))
            else:
                return

    async def _vote_once(self, node_id: str, user_id: str, value: int) -> None:
        async with self.session() as session, session.begin():
            existing = await VoteRepository(session=session).get_vote(user_id, node_id)
            if existing is None:
                session.add(VoteModel(user_id=user_id, node_id=node_id, value=value, created_at=_now()))
                delta = value
            elif existing.value == value:
                return
            else:
                delta = value - existing.value
                existing.value = value
                existing.created_at = _now()
            await session.flush()
            await session.execute(
                update(NodeModel)
                .where(NodeModel.id == node_id)
                .values(score=NodeModel.score + delta, updated_at=_now())
            )
