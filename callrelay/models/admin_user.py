from sqlalchemy import BigInteger, Column, DateTime, Integer, Text
from sqlalchemy.sql import func

from callrelay.database import Base


class AdminUser(Base):
    __tablename__ = "admin_users"

    id = Column(Integer, primary_key=True, autoincrement=True)
    telegram_user_id = Column(BigInteger, unique=True)
    username = Column(Text, unique=True)  # lowercase, without "@"
    display_name = Column(Text)
    role = Column(Text, nullable=False, default="normal")
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())

    @property
    def label(self) -> str:
        parts = []
        if self.display_name:
            parts.append(self.display_name)
        if self.username:
            parts.append(f"@{self.username}")
        if self.telegram_user_id is not None:
            parts.append(f"id {self.telegram_user_id}")
        return " ".join(parts) or f"#{self.id}"
