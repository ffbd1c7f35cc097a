from sqlalchemy import Column, DateTime, Integer, Text
from sqlalchemy.sql import func

from callrelay.database import Base


class ScenarioBinding(Base):
    __tablename__ = "scenario_mappings"

    id = Column(Integer, primary_key=True, autoincrement=True)
    scenario_id = Column(Text, nullable=False, unique=True)
    scenario_name = Column(Text)
    chat_id = Column(Text, nullable=False)
    chat_title = Column(Text)
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
