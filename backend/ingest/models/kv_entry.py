from sqlalchemy import BigInteger, Index, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from ingest.db.base import Base


class KVEntry(Base):
    key: Mapped[str] = mapped_column(String(512), primary_key=True)
    value: Mapped[str] = mapped_column(Text, nullable=False)
    # Absolute expiry in epoch milliseconds; NULL never expires.
    expires_at: Mapped[int | None] = mapped_column(BigInteger, nullable=True)

    def __repr__(self) -> str:  # pragma: no cover
        return f"KVEntry(key={self.key!r}, expires_at={self.expires_at!r})"


Index("ix_kventry_expires_at", KVEntry.expires_at)
