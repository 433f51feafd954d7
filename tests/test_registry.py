"""Tests for provider routing and configuration."""

import pytest

from chatgate.config import GatewayConfig, get_model_overrides
from chatgate.registry import DEFAULT_FAMILY, FamilySpec, ProviderRouter
from chatgate.schemas import TransportMode


CONFIG = GatewayConfig(base_url="https://project.example.co/")


class TestProviderRouter:
    """Test model id resolution."""

    def test_stream_family(self):
        route = ProviderRouter(CONFIG).resolve("DeepSeek-V3")

        assert route.family == "deepseek"
        assert route.transport == TransportMode.STREAM
        assert route.endpoint == "https://project.example.co/functions/v1/deepseek-chat"

    @pytest.mark.parametrize("model_id,family", [
        ("claude-3-haiku-20240307", "claude"),
        ("mistral-small-latest", "mistral"),
        ("llama-3.3-70b-versatile", "groq"),
        ("qwen-max", "qwen"),
    ])
    def test_batch_families(self, model_id, family):
        route = ProviderRouter(CONFIG).resolve(model_id)

        assert route.family == family
        assert route.transport == TransportMode.BATCH
        assert route.endpoint.endswith(f"/functions/v1/{family}-chat")

    def test_unknown_model_uses_default_family(self):
        """Unrecognized ids route to the default streaming family, keeping the id."""
        route = ProviderRouter(CONFIG).resolve("brand-new-model")

        assert route.family == DEFAULT_FAMILY
        assert route.transport == TransportMode.STREAM
        assert route.model_id == "brand-new-model"

    def test_register_unknown_family_rejected(self):
        router = ProviderRouter(CONFIG)
        with pytest.raises(ValueError):
            router.register("m", "no-such-family")

    def test_register_family_then_model(self):
        """New backends are added as table rows."""
        router = ProviderRouter(CONFIG)
        router.register_family("gemini", FamilySpec(TransportMode.STREAM, "gemini-chat"))
        router.register("gemini-pro", "gemini")

        route = router.resolve("gemini-pro")
        assert route.endpoint == "https://project.example.co/functions/v1/gemini-chat"

    def test_explicit_model_table(self):
        router = ProviderRouter(CONFIG, models={"only-model": "groq"})
        assert [m["model"] for m in router.list_models()] == ["only-model"]

    def test_list_models_includes_transport(self):
        models = ProviderRouter(CONFIG).list_models()
        entry = next(m for m in models if m["model"] == "codestral-latest")

        assert entry == {"model": "codestral-latest", "family": "mistral", "transport": "batch"}
        assert [m["model"] for m in models] == sorted(m["model"] for m in models)

    def test_env_overrides(self, monkeypatch):
        monkeypatch.setenv("CHATGATE_MODELS_JSON", '{"my-model": "groq", "bad-model": "nope"}')
        router = ProviderRouter(CONFIG)

        assert router.family_for("my-model") == "groq"
        assert "bad-model" not in router.models

    def test_invalid_default_family(self):
        with pytest.raises(ValueError):
            ProviderRouter(CONFIG, default_family="nope")


class TestConfig:
    """Test configuration loading."""

    def test_defaults(self):
        config = GatewayConfig()
        assert config.daily_limit == 10
        assert config.reset_hour == 2
        assert config.burst_max_messages == 2
        assert config.session_ttl_seconds == 300.0

    def test_from_env(self):
        config = GatewayConfig.from_env({
            "CHATGATE_DAILY_LIMIT": "20",
            "CHATGATE_BATCH_TIMEOUT_SECONDS": "12.5",
            "CHATGATE_BASE_URL": "https://x.example",
            "UNRELATED": "1",
        })
        assert config.daily_limit == 20
        assert config.batch_timeout_seconds == 12.5
        assert config.base_url == "https://x.example"

    def test_from_env_ignores_invalid_values(self):
        config = GatewayConfig.from_env({"CHATGATE_DAILY_LIMIT": "lots"})
        assert config.daily_limit == 10

    def test_functions_url(self):
        assert GatewayConfig(base_url="http://h/", functions_path="/functions/v1/").functions_url == "http://h/functions/v1"

    def test_model_overrides_bad_json(self, monkeypatch):
        monkeypatch.setenv("CHATGATE_MODELS_JSON", "[not json")
        assert get_model_overrides() == {}
