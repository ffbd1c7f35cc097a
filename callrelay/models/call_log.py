from sqlalchemy import Column, DateTime, Integer, Text
from sqlalchemy.sql import func

from callrelay.database import Base


class CallLog(Base):
    __tablename__ = "call_logs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    call_id = Column(Text, nullable=False, unique=True)
    scenario_id = Column(Text)
    result_name = Column(Text)
    manager_name = Column(Text)
    phone = Column(Text)
    comment = Column(Text)
    started_at = Column(DateTime(timezone=True))
    processed_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
    telegram_chat_id_sent = Column(Text)
    delivery = Column(Text)  # audio, text, failed
