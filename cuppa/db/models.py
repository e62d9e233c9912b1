# =============================================
# File: cuppa/db/models.py
# Purpose: SQLModel table for persisted interaction events
# =============================================

from datetime import datetime
from typing import Any, Dict, Optional

from sqlalchemy import JSON, Column
from sqlmodel import Field, SQLModel


class InteractionRecord(SQLModel, table=True):
    __tablename__ = "interaction_events"

    id: Optional[int] = Field(default=None, primary_key=True)
    event_id: str = Field(index=True, unique=True)
    user_id: str = Field(index=True)
    item_id: str = Field(index=True)
    interaction_type: str = Field(index=True)
    value: Optional[float] = None
    ts: datetime = Field(index=True)
    # "metadata" is reserved on SQLModel classes
    event_metadata: Dict[str, Any] = Field(default_factory=dict, sa_column=Column(JSON))
