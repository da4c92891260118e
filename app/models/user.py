"""
User model — покупатель VPN и его текущий ключ.
vpn_key перезаписывается при каждой новой покупке (ключ действует 30 дней).
"""
from datetime import datetime, timezone

from sqlalchemy import Column, DateTime, String, Text

from app.db.base import Base


class User(Base):
    __tablename__ = "users"

    telegram_id = Column(String, primary_key=True)
    vpn_key = Column(Text, nullable=True)
    key_issued_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=lambda: datetime.now(timezone.utc))
    updated_at = Column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    def has_key(self) -> bool:
        return bool(self.vpn_key)
