# app/schemas/node.py
from datetime import datetime

from pydantic import BaseModel, ConfigDict


class NodeOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    owner_id: int
    name: str
    parent_id: int | None
    is_folder: bool
    size: int
    created_at: datetime | None
