"""Tests for agent.prompt_builder."""

from dataclasses import dataclass

from agent.claude_session import IntegrationConfig
from agent.prompt_builder import BASE_INSTRUCTIONS, build_integration_section, build_system_prompt


@dataclass
class FakeSkill:
    name: str
    effect: str


def _api_key(name, env, key="secret-value-1234", service=None):
    return IntegrationConfig(id=name, name=name, type="api-key",
                             env_variable=env, api_key=key, service_name=service)


class TestBuildSystemPrompt:
    def test_base_only(self):
        assert build_system_prompt() == BASE_INSTRUCTIONS

    def test_skill_effects_follow_base(self):
        prompt = build_system_prompt([FakeSkill("tdd", "Write tests first."), FakeSkill("terse", "Be terse.")])
        assert prompt == BASE_INSTRUCTIONS + "\n\n" + "Write tests first.\nBe terse."

    def test_skills_without_effect_are_skipped(self):
        assert build_system_prompt([FakeSkill("empty", "")]) == BASE_INSTRUCTIONS

    def test_integration_section_is_last(self):
        prompt = build_system_prompt(
            [FakeSkill("terse", "Be terse.")],
            [_api_key("linear", "LINEAR_API_KEY", service="Linear")],
        )
        assert prompt.index("Be terse.") < prompt.index("## API Key Integrations")
        assert "- Linear: API key available in environment variable $LINEAR_API_KEY" in prompt

    def test_key_values_never_appear(self):
        prompt = build_system_prompt([], [_api_key("gh", "GITHUB_TOKEN", key="ghp_do_not_leak_me")])
        assert "ghp_do_not_leak_me" not in prompt
        assert "$GITHUB_TOKEN" in prompt


class TestIntegrationSection:
    def test_none_without_keyed_integrations(self):
        mcp = IntegrationConfig(id="fs", name="fs", type="mcp", server_command="npx", server_args=[])
        assert build_integration_section([]) is None
        assert build_integration_section([mcp, _api_key("x", "X_KEY", key=None)]) is None

    def test_lists_every_keyed_integration(self):
        section = build_integration_section([
            _api_key("gh", "GITHUB_TOKEN", service="GitHub"),
            _api_key("linear", "LINEAR_API_KEY"),
        ])
        assert "$GITHUB_TOKEN" in section
        assert "$LINEAR_API_KEY" in section
        assert section.endswith("Do NOT use curl or MCP tools for GitHub, linear.")
