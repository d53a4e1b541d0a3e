"""
Security tests for API key handling.

Keys come from the environment or a .env file and must never be
persisted to the config file or leak into routing events.
"""

import json

import pytest

from agentroute.client import OrchestrationClient
from agentroute.config import OrchestrationConfig, RoutingConfig
from agentroute.events import JsonlEventSink, JsonlSinkConfig
from agentroute.mock import ScriptedInvoker
from agentroute.types import TaskDifficulty

SECRET = "sk-ant-REDACTED"


@pytest.mark.security
class TestCredentialPersistence:
    """Tests that saved configuration carries no keys."""

    def test_save_omits_credentials(self, tmp_path):
        path = tmp_path / "config.json"
        config = OrchestrationConfig(routing=RoutingConfig(provider_credentials={"anthropic": SECRET}))

        config.save(path)

        text = path.read_text()
        assert SECRET not in text
        assert "provider_credentials" not in json.loads(text)["routing"]

    def test_dotenv_key_not_saved(self, monkeypatch, tmp_path):
        # setenv first so the value load_dotenv writes is undone afterwards
        for var in ("ANTHROPIC_API_KEY", "OPENAI_API_KEY"):
            monkeypatch.setenv(var, "placeholder")
            monkeypatch.delenv(var)
        env_file = tmp_path / ".env"
        env_file.write_text(f"ANTHROPIC_API_KEY={SECRET}\n")
        config_path = tmp_path / "config.json"

        client = OrchestrationClient.from_env(env_file=env_file, config_path=config_path)
        assert client.config.routing.provider_credentials["anthropic"] == SECRET
        client.config.save(config_path)

        assert SECRET not in config_path.read_text()


@pytest.mark.security
class TestEventRedaction:
    """Tests that routing events never carry keys."""

    @pytest.mark.asyncio
    async def test_events_do_not_contain_keys(self, fast_config, tier_table, make_envelope, tmp_path):
        sink = JsonlEventSink(JsonlSinkConfig(log_path=str(tmp_path / "events.jsonl")))
        client = OrchestrationClient(
            fast_config, invoker=ScriptedInvoker(), tier_table=tier_table, event_sink=sink
        )
        routing = RoutingConfig.cloud_only(provider_credentials={"anthropic": SECRET})

        await client.send(make_envelope(hint=TaskDifficulty.EASY), routing)

        assert SECRET not in sink.log_path.read_text()
