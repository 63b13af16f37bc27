from datetime import datetime

from sqlalchemy import DateTime, String, text
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.sql import func

SYSTEM_ACTOR = "system@local"


class AuditMixin:
    """Who created / last changed a row, and when. Actors are request emails."""

    created_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now(), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime,
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )
    created_by: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
        default=SYSTEM_ACTOR,
        server_default=text(f"'{SYSTEM_ACTOR}'"),
    )
    last_changed_by: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
        default=SYSTEM_ACTOR,
        server_default=text(f"'{SYSTEM_ACTOR}'"),
    )

    def stamp_change(self, actor: str | None) -> None:
        if actor and actor != self.last_changed_by:
            self.last_changed_by = actor
