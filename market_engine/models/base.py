import uuid
from datetime import datetime

from sqlalchemy import JSON
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.sql import func
from sqlalchemy.types import DateTime


# JSONB on PostgreSQL, plain JSON elsewhere (the SQLite test store)
JsonDoc = JSON().with_variant(JSONB(), "postgresql")


def gen_id(prefix: str) -> str:
    # prefixed so ids read as their kind: lst_, lph_, ntf_, mks_, obx_
    return f"{prefix}_{uuid.uuid4().hex}"


class Base(DeclarativeBase):
    pass

class AuditMixin:
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False
    )
