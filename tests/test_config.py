"""Tests for roleforge.config: settings layering."""

import json

import pytest
from pydantic import ValidationError

from roleforge.config import default_settings, load_settings, save_settings


class TestDefaults:
    def test_defaults(self) -> None:
        s = default_settings()
        assert s.world_agent_enabled is True
        assert s.max_director_passes == 2
        assert s.memory_top_k == 5
        assert s.temporal_decay.enabled is False
        assert s.temporal_decay.half_life is None
        assert s.conditional_rules == []
        assert s.llm_provider_format == "koboldcpp"

    def test_overrides(self) -> None:
        s = default_settings(max_director_passes=4, persona_name="Frodo")
        assert s.max_director_passes == 4
        assert s.persona_name == "Frodo"

    def test_effective_top_k_is_capped(self) -> None:
        assert default_settings(memory_top_k=50, memory_max_top_k=12).effective_top_k == 12
        assert default_settings(memory_top_k=3).effective_top_k == 3

    def test_invalid_values_rejected(self) -> None:
        with pytest.raises(ValidationError):
            default_settings(max_director_passes=0)
        with pytest.raises(ValidationError):
            default_settings(llm_provider_format="carrier-pigeon")

    def test_settings_are_frozen(self) -> None:
        with pytest.raises(ValidationError):
            default_settings().max_director_passes = 9


class TestLoad:
    def test_no_data_dir(self) -> None:
        assert load_settings(env={}) == default_settings()

    def test_config_file(self, tmp_path) -> None:
        (tmp_path / "config.json").write_text(json.dumps({
            "max_director_passes": 3,
            "temporal_decay": {"enabled": True, "halfLife": 12},
            "conditional_rules": [{"field": "emotion", "match": "happy", "boost": 1.2}],
        }))
        s = load_settings(tmp_path, env={})
        assert s.max_director_passes == 3
        assert s.temporal_decay.enabled is True
        assert s.temporal_decay.half_life == 12
        assert s.temporal_decay.floor == 0.3
        assert s.conditional_rules[0].boost == 1.2

    def test_role_samplers_merge_over_base(self, tmp_path) -> None:
        (tmp_path / "config.json").write_text(json.dumps({
            "llm_sampler": {"top_p": 0.5},
            "role_samplers": {"character": {"temperature": 1.1, "stop": ["</s>"]}},
        }))
        s = load_settings(tmp_path, env={})
        character = s.sampler_for("character")
        assert character.temperature == 1.1
        assert character.top_p == 0.5
        assert character.stop == ("</s>",)
        assert s.sampler_for("director").temperature == 0.4
        assert s.sampler_for("narrator").max_tokens == 512

    def test_unknown_keys_ignored(self, tmp_path) -> None:
        (tmp_path / "config.json").write_text(json.dumps({"font_size": 18}))
        assert load_settings(tmp_path, env={}) == default_settings()

    def test_env_wins_over_file(self, tmp_path) -> None:
        (tmp_path / "config.json").write_text(json.dumps({"memory_top_k": 8}))
        env = {
            "ROLEFORGE_MEMORY_TOP_K": "2",
            "ROLEFORGE_WORLD_AGENT_ENABLED": "false",
            "ROLEFORGE_TEMPORAL_DECAY": '{"enabled": true, "mode": "messageCount"}',
        }
        s = load_settings(tmp_path, env=env)
        assert s.memory_top_k == 2
        assert s.world_agent_enabled is False
        assert s.temporal_decay.mode == "messageCount"

    def test_bad_env_json_ignored(self) -> None:
        s = load_settings(env={"ROLEFORGE_CONDITIONAL_RULES": "not json"})
        assert s.conditional_rules == []


def test_save_settings_merges(tmp_path) -> None:
    save_settings(tmp_path, {"persona_name": "Frodo"})
    s = save_settings(tmp_path, {"max_director_passes": 5})
    assert s.persona_name == "Frodo"
    assert s.max_director_passes == 5
    assert json.loads((tmp_path / "config.json").read_text()) == {
        "persona_name": "Frodo",
        "max_director_passes": 5,
    }
