# app/services/access.py
"""Ownership checks shared by the pipelines."""

from app.core.config import Settings
from app.core.errors import Forbidden, InvalidInput, NotFound, RepositoryUnavailable
from app.models.node import Node
from app.services.remote import call_remote
from app.storage.repository import MetadataRepository


async def load_owned_node(
    repository: MetadataRepository,
    settings: Settings,
    node_id: int,
    requester_id: int,
) -> Node:
    node = await call_remote(
        repository.find_by_id,
        node_id,
        timeout=settings.remote_call_timeout,
        unavailable=RepositoryUnavailable,
    )
    if node is None:
        raise NotFound(f"Node {node_id} does not exist")
    if node.owner_id != requester_id:
        raise Forbidden(f"Node {node_id} belongs to another user")
    return node


async def resolve_parent(
    repository: MetadataRepository,
    settings: Settings,
    owner_id: int,
    parent_id: int | None,
) -> Node | None:
    """Check that new children of ``owner_id`` may be attached under ``parent_id``."""
    if parent_id is None:
        return None
    parent = await load_owned_node(repository, settings, parent_id, owner_id)
    if not parent.is_folder:
        raise InvalidInput(f"Node {parent_id} is a file, not a folder")
    return parent
