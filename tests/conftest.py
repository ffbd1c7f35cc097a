from unittest.mock import AsyncMock, Mock

import pytest
from sqlalchemy.orm import sessionmaker

from callrelay.config import DEFAULT_SUCCESS_MARKERS
from callrelay.database import build_engine, init_db
from callrelay.services.dedup import DedupSet
from callrelay.services.delivery_service import DeliveryPipeline, PipelineConfig
from callrelay.services.skorozvon_client import Scenario

FAKE_MP3 = b"ID3\x03\x00\x00\x00fake-mp3-payload"


@pytest.fixture
def session_factory(tmp_path):
    """File-backed SQLite so worker threads share the same data."""
    engine = build_engine(f"sqlite:///{tmp_path / 'test.db'}")
    init_db(bind=engine)
    yield sessionmaker(bind=engine, autocommit=False, autoflush=False)
    engine.dispose()


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def fake_telegram():
    telegram = Mock()
    telegram.enabled = True
    telegram.send_message = AsyncMock(return_value={"ok": True, "result": {"message_id": 1}})
    telegram.send_audio = AsyncMock(return_value={"ok": True, "result": {"message_id": 2}})
    telegram.answer_callback_query = AsyncMock(return_value={"ok": True})
    telegram.get_chat = AsyncMock(return_value={"id": -100500, "type": "supergroup", "title": "Продажи"})
    telegram.get_webhook_info = AsyncMock(return_value={"ok": True, "result": {"url": ""}})
    return telegram


@pytest.fixture
def fake_skorozvon():
    skorozvon = Mock()
    skorozvon.configured = True
    skorozvon.get_access_token = AsyncMock(return_value="token")
    skorozvon.fetch_recording = AsyncMock(return_value=FAKE_MP3)
    skorozvon.list_scenarios = AsyncMock(
        return_value=[Scenario("42", "Холодные звонки"), Scenario("7", "Входящие")]
    )
    return skorozvon


@pytest.fixture
def pipeline_config():
    return PipelineConfig(success_markers=list(DEFAULT_SUCCESS_MARKERS), recording_delay_seconds=0)


@pytest.fixture
def pipeline(pipeline_config, session_factory, fake_skorozvon, fake_telegram):
    return DeliveryPipeline(pipeline_config, session_factory, fake_skorozvon, fake_telegram, DedupSet())
