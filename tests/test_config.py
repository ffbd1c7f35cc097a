import pytest
from pydantic import ValidationError

from callrelay.config import DEFAULT_SUCCESS_MARKERS, Settings
from callrelay.services.delivery_service import PipelineConfig


class TestSettings:
    def test_defaults(self, monkeypatch):
        for key in ("SUCCESSFUL_RESULT_NAMES", "MAIN_ADMINS", "FALLBACK_CHAT_ID", "RECORDING_RETRY_DELAYS"):
            monkeypatch.delenv(key, raising=False)

        settings = Settings(_env_file=None)

        assert settings.successful_result_names == DEFAULT_SUCCESS_MARKERS
        assert settings.main_admins == []
        assert settings.fallback_chat_id is None
        assert settings.recording_delay_seconds == 120.0
        assert settings.not_specified_placeholder == "не указано"

    def test_comma_separated_lists(self, monkeypatch):
        monkeypatch.setenv("SUCCESSFUL_RESULT_NAMES", " Успех , Встреча,, ")
        monkeypatch.setenv("MAIN_ADMINS", "1001,@boss")
        monkeypatch.setenv("RECORDING_RETRY_DELAYS", "60, 180")

        settings = Settings(_env_file=None)

        assert settings.successful_result_names == ["Успех", "Встреча"]
        assert settings.main_admins == ["1001", "@boss"]
        assert settings.recording_retry_delays == [60.0, 180.0]

    def test_blank_markers_fall_back_to_defaults(self, monkeypatch):
        monkeypatch.setenv("SUCCESSFUL_RESULT_NAMES", " , ")
        assert Settings(_env_file=None).successful_result_names == DEFAULT_SUCCESS_MARKERS

    def test_blank_fallback_chat_is_none(self, monkeypatch):
        monkeypatch.setenv("FALLBACK_CHAT_ID", "   ")
        assert Settings(_env_file=None).fallback_chat_id is None

    def test_negative_retry_delay_rejected(self, monkeypatch):
        monkeypatch.setenv("RECORDING_RETRY_DELAYS", "60,-1")
        with pytest.raises(ValidationError):
            Settings(_env_file=None)

    def test_call_link_template_accepted(self, monkeypatch):
        monkeypatch.setenv("CALL_LINK_TEMPLATE", "https://app.skorozvon.ru/calls/{call_id}")
        assert Settings(_env_file=None).call_link_template == "https://app.skorozvon.ru/calls/{call_id}"

    @pytest.mark.parametrize(
        "template",
        ["https://crm/calls/{id}", "https://crm/calls/", "https://crm/{call_id}/{scenario_id}", "https://crm/{"],
    )
    def test_call_link_template_rejected(self, monkeypatch, template):
        monkeypatch.setenv("CALL_LINK_TEMPLATE", template)
        with pytest.raises(ValidationError):
            Settings(_env_file=None)

    def test_pipeline_config_from_settings(self, monkeypatch):
        monkeypatch.setenv("FALLBACK_CHAT_ID", "-999")
        monkeypatch.setenv("RECORDING_DELAY_SECONDS", "180")

        config = PipelineConfig.from_settings(Settings(_env_file=None))

        assert config.fallback_chat_id == "-999"
        assert config.recording_schedule[0] == 180.0
