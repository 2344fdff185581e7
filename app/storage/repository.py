# app/storage/repository.py
"""Metadata repository: Node records over SQLAlchemy.

Each method runs in its own session so it can be called from any worker
thread. Methods block; the services run them through ``call_remote``.
"""

import logging
import posixpath
from contextlib import contextmanager
from typing import Iterable

from sqlalchemy import func
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from app.core.errors import Forbidden, InvalidInput, NotFound, RepositoryUnavailable
from app.models.node import Node

logger = logging.getLogger(__name__)

# folder sizes are the only thing rewritten after a node is created
_MUTABLE_FIELDS = {"size"}


class MetadataRepository:
    def __init__(self, session_factory: sessionmaker):
        self._session_factory = session_factory

    @contextmanager
    def _session(self):
        db: Session = self._session_factory()
        try:
            yield db
        except SQLAlchemyError as exc:
            db.rollback()
            logger.exception("Metadata store call failed")
            raise RepositoryUnavailable("Metadata store is unavailable") from exc
        finally:
            db.close()

    def create(self, **fields) -> Node:
        with self._session() as db:
            node = Node(**fields)
            db.add(node)
            db.commit()
            db.refresh(node)
            return node

    def create_subtree(
        self,
        owner_id: int,
        parent_id: int | None,
        folders: Iterable[str],
        files: Iterable[tuple[str, int, str]],
    ) -> list[Node]:
        """Create one ingestion's folders and files in a single transaction.

        ``folders`` are relative POSIX paths; ``files`` are
        ``(relative path, size, location)`` tuples. Intermediate folders
        missing from ``folders`` are created on demand; each path maps to
        exactly one new folder.

        The destination is checked again inside the transaction: it may
        have been deleted while the blobs were uploading.
        """
        with self._session() as db:
            if parent_id is not None:
                parent = db.get(Node, parent_id)
                if parent is None:
                    raise NotFound(f"Destination folder {parent_id} no longer exists")
                if parent.owner_id != owner_id:
                    raise Forbidden(f"Node {parent_id} belongs to another user")
                if not parent.is_folder:
                    raise InvalidInput(f"Node {parent_id} is a file, not a folder")

            created: list[Node] = []
            folder_ids: dict[str, int | None] = {"": parent_id}

            def folder_id_for(path: str) -> int | None:
                if path in folder_ids:
                    return folder_ids[path]
                head, name = posixpath.split(path)
                folder = Node(
                    owner_id=owner_id,
                    name=name,
                    parent_id=folder_id_for(head),
                    is_folder=True,
                    size=0,
                )
                db.add(folder)
                db.flush()
                folder_ids[path] = folder.id
                created.append(folder)
                return folder.id

            for path in sorted(folders, key=lambda p: (p.count("/"), p)):
                folder_id_for(path)

            for path, size, location in files:
                head, name = posixpath.split(path)
                node = Node(
                    owner_id=owner_id,
                    name=name,
                    parent_id=folder_id_for(head),
                    is_folder=False,
                    location=location,
                    size=size,
                )
                db.add(node)
                created.append(node)

            db.commit()
            return created

    def find_by_id(self, node_id: int) -> Node | None:
        with self._session() as db:
            return db.get(Node, node_id)

    def find_by_parent(self, parent_id: int | None, owner_id: int | None = None) -> list[Node]:
        with self._session() as db:
            query = db.query(Node)
            if parent_id is None:
                query = query.filter(Node.parent_id.is_(None))
            else:
                query = query.filter(Node.parent_id == parent_id)
            if owner_id is not None:
                query = query.filter(Node.owner_id == owner_id)
            return query.order_by(Node.is_folder.desc(), Node.name, Node.id).all()

    def find_by_owner(self, owner_id: int) -> list[Node]:
        with self._session() as db:
            return (
                db.query(Node)
                .filter(Node.owner_id == owner_id)
                .order_by(Node.created_at.desc(), Node.id.desc())
                .all()
            )

    def update(self, node_id: int, **fields) -> Node:
        unknown = set(fields) - _MUTABLE_FIELDS
        if unknown:
            raise ValueError(f"Fields cannot be updated: {sorted(unknown)}")
        with self._session() as db:
            node = db.get(Node, node_id)
            if node is None:
                raise NotFound(f"Node {node_id} does not exist")
            for field, value in fields.items():
                setattr(node, field, value)
            db.commit()
            db.refresh(node)
            return node

    def sum_child_sizes(self, parent_id: int) -> int:
        with self._session() as db:
            total = db.query(func.sum(Node.size)).filter(Node.parent_id == parent_id).scalar()
            return int(total or 0)

    def collect_descendants(self, folder_id: int) -> list[Node]:
        """Every node below ``folder_id``, breadth-first."""
        with self._session() as db:
            return self._descendants(db, folder_id)

    def delete_subtree(self, node_id: int) -> list[Node]:
        """Delete a node and everything below it; returns the removed nodes."""
        with self._session() as db:
            node = db.get(Node, node_id)
            if node is None:
                raise NotFound(f"Node {node_id} does not exist")
            doomed = [node] + self._descendants(db, node_id)
            # children before parents so the parent_id foreign key holds
            for victim in reversed(doomed):
                db.delete(victim)
                db.flush()
            db.commit()
            return doomed

    def delete_created(self, nodes: list[Node]) -> None:
        """Remove nodes created together, given parents before children."""
        with self._session() as db:
            for node in reversed(nodes):
                victim = db.get(Node, node.id)
                if victim is not None:
                    db.delete(victim)
                    db.flush()
            db.commit()

    @staticmethod
    def _descendants(db: Session, folder_id: int) -> list[Node]:
        found: list[Node] = []
        seen = {folder_id}
        frontier = [folder_id]
        while frontier:
            children = (
                db.query(Node)
                .filter(Node.parent_id.in_(frontier))
                .order_by(Node.id)
                .all()
            )
            # a corrupted parent chain must not loop forever
            children = [child for child in children if child.id not in seen]
            seen.update(child.id for child in children)
            found.extend(children)
            frontier = [child.id for child in children if child.is_folder]
        return found
