"""
Unit tests for CommonsConfig
"""

import pytest

from backend.commons.config import CommonsConfig


@pytest.fixture
def clean_env(monkeypatch, tmp_path):
    for name in ("ANTHROPIC_API_KEY", "COMMONS_ANTHROPIC_API_KEY", "COMMONS_TEMPERATURE",
                 "COMMONS_GENERATE_TITLES", "COMMONS_TOOL_ENDPOINT_URL", "COMMONS_INTERACTION_TIMEOUT"):
        monkeypatch.delenv(name, raising=False)
    # Keep load_dotenv away from any .env in the working tree
    monkeypatch.chdir(tmp_path)
    return monkeypatch


def test_from_env_requires_api_key(clean_env, tmp_path):
    with pytest.raises(ValueError):
        CommonsConfig.from_env(str(tmp_path / "missing.env"))


def test_from_env_reads_overrides(clean_env, tmp_path):
    clean_env.setenv("ANTHROPIC_API_KEY", "sk-test")
    clean_env.setenv("COMMONS_TEMPERATURE", "0.2")
    clean_env.setenv("COMMONS_GENERATE_TITLES", "true")
    clean_env.setenv("COMMONS_INTERACTION_TIMEOUT", "30")

    config = CommonsConfig.from_env(str(tmp_path / "missing.env"))

    assert config.anthropic_api_key == "sk-test"
    assert config.default_temperature == 0.2
    assert config.default_top_p == 1.0
    assert config.generate_titles is True
    assert config.interaction_timeout == 30.0
    assert config.tool_endpoint_url is None


def test_from_env_file(clean_env, tmp_path):
    env_file = tmp_path / "commons.env"
    env_file.write_text("COMMONS_ANTHROPIC_API_KEY=from-file\nCOMMONS_TOOL_ENDPOINT_URL=http://tools/run\n")

    config = CommonsConfig.from_env(str(env_file))

    assert config.anthropic_api_key == "from-file"
    assert config.tool_endpoint_url == "http://tools/run"


@pytest.mark.parametrize(
    "overrides",
    [
        {"anthropic_api_key": ""},
        {"default_temperature": 2.5},
        {"default_top_p": 0},
        {"max_tokens": 0},
        {"interaction_timeout": 0},
        {"event_queue_maxsize": 0},
    ],
)
def test_validate_rejects_bad_values(overrides):
    params = {"anthropic_api_key": "k"}
    params.update(overrides)

    with pytest.raises(ValueError):
        CommonsConfig(**params).validate()


def test_defaults_are_valid():
    CommonsConfig(anthropic_api_key="k").validate()
