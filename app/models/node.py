# app/models/node.py
from sqlalchemy import BigInteger, Boolean, Column, DateTime, ForeignKey, Integer, String
from datetime import datetime

from app.models.database import Base


class Node(Base):
    """A file or a folder in a user's drive.

    Folders never have a ``location``; their ``size`` is maintained by the
    size aggregator as the sum of their children's sizes. Files carry the
    blob store location of their content.
    """

    __tablename__ = "nodes"
    # ids of deleted nodes are never handed out again
    __table_args__ = {"sqlite_autoincrement": True}

    id = Column(Integer, primary_key=True, index=True)
    owner_id = Column(Integer, nullable=False, index=True)
    name = Column(String, nullable=False)
    # NULL = root level
    parent_id = Column(Integer, ForeignKey("nodes.id"), nullable=True, index=True)
    is_folder = Column(Boolean, nullable=False, default=False)
    location = Column(String, nullable=True)          # blob store key, files only
    size = Column(BigInteger, nullable=False, default=0)   # Size in bytes
    created_at = Column(DateTime, default=datetime.utcnow)

    def __repr__(self) -> str:
        kind = "folder" if self.is_folder else "file"
        return f"<Node {self.id} {kind} {self.name!r} parent={self.parent_id} size={self.size}>"
