from sqlalchemy import BigInteger, Column, DateTime, Text
from sqlalchemy.sql import func

from callrelay.database import Base


class KnownChat(Base):
    __tablename__ = "chats"

    id = Column(BigInteger, primary_key=True, autoincrement=False)
    title = Column(Text)
    type = Column(Text)  # private, group, supergroup, channel
    updated_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now(), onupdate=func.now())
