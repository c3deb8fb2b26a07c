from pathlib import Path

import pytest

from src.airouter.providers import ProviderConfig, ProviderRegistry
from src.airouter.router import (
    ProviderSelector,
    RouterSettings,
    load_settings,
    parse_settings,
)
from src.airouter.types import AIProvider, ChatMessage, RoutingParams


def make_selector(*providers: AIProvider, settings: RouterSettings | None = None) -> ProviderSelector:
    configs = {p: ProviderConfig(provider=p, api_key="k", model=f"{p.value}-m") for p in providers}
    return ProviderSelector(ProviderRegistry(configs, {}), settings)


def user(text: str) -> list[ChatMessage]:
    return [ChatMessage(role="user", content=text)]


def test_explicit_configured_provider_wins_over_smart_routing() -> None:
    selector = make_selector(AIProvider.OPENAI, AIProvider.COHERE, AIProvider.ANTHROPIC)

    params = RoutingParams(provider=AIProvider.COHERE, use_smart_routing=True)

    assert selector.select_provider(user("write a poem"), params) is AIProvider.COHERE


def test_explicit_unconfigured_provider_is_ignored() -> None:
    selector = make_selector(AIProvider.GEMINI)

    params = RoutingParams(provider=AIProvider.OPENAI)

    assert selector.select_provider(user("hi"), params) is AIProvider.GEMINI


def test_default_follows_default_order() -> None:
    settings = RouterSettings(default_order=(AIProvider.MISTRAL, AIProvider.OPENAI))
    selector = make_selector(AIProvider.OPENAI, AIProvider.MISTRAL, settings=settings)

    assert selector.select_provider(user("hi")) is AIProvider.MISTRAL


def test_default_uses_any_configured_provider_outside_default_order() -> None:
    settings = RouterSettings(default_order=(AIProvider.OPENAI,))
    selector = make_selector(AIProvider.COHERE, settings=settings)

    assert selector.default_provider() is AIProvider.COHERE


def test_nothing_configured_returns_hardcoded_default() -> None:
    selector = make_selector()

    assert selector.select_provider(user("hi"), RoutingParams(use_smart_routing=True)) is AIProvider.OPENAI


def test_smart_routing_disabled_uses_default() -> None:
    selector = make_selector(AIProvider.OPENAI, AIProvider.ANTHROPIC)

    assert selector.select_provider(user("tell me a story")) is AIProvider.OPENAI


@pytest.mark.parametrize(
    ("text", "expected"),
    [
        ("Tell me a STORY about dragons", AIProvider.ANTHROPIC),
        ("Write a python function", AIProvider.OPENAI),
        ("Please analyze these numbers", AIProvider.ANTHROPIC),
        ("write a poem about code", AIProvider.ANTHROPIC),
        ("x" * 10001, AIProvider.GEMINI),
        ("good morning", AIProvider.OPENAI),
    ],
)
def test_smart_route_rules(text: str, expected: AIProvider) -> None:
    selector = make_selector(*AIProvider)

    assert selector.smart_route(user(text)) is expected


def test_smart_route_long_conversation_by_message_count() -> None:
    selector = make_selector(*AIProvider)
    messages = [ChatMessage(role="user", content="hi")] * 21

    assert selector.smart_route(messages) is AIProvider.GEMINI
    assert selector.smart_route(messages[:20]) is AIProvider.OPENAI


def test_smart_route_exact_threshold_is_not_long() -> None:
    selector = make_selector(*AIProvider)

    assert selector.smart_route(user("x" * 10000)) is AIProvider.OPENAI


def test_smart_route_skips_rules_whose_target_is_unconfigured() -> None:
    selector = make_selector(AIProvider.OPENAI, AIProvider.MISTRAL)

    assert selector.smart_route(user("x" * 20000)) is AIProvider.OPENAI
    assert selector.smart_route(user("a creative poem about code")) is AIProvider.OPENAI


def test_smart_route_empty_messages_falls_back_to_default() -> None:
    selector = make_selector(AIProvider.COHERE)

    assert selector.smart_route([]) is AIProvider.COHERE


def test_smart_route_uses_last_message_only() -> None:
    selector = make_selector(*AIProvider)
    messages = [
        ChatMessage(role="user", content="write a story"),
        ChatMessage(role="user", content="thanks"),
    ]

    assert selector.smart_route(messages) is AIProvider.OPENAI


def test_parse_settings_overrides_defaults() -> None:
    settings = parse_settings(
        {
            "default_order": ["cohere", "openai"],
            "smart_routing": {"code": "mistral", "long_context_chars": 500},
            "attempt_timeout_s": 12,
            "stream_word_delay_s": 0,
            "capabilities": {"openai": {"cost_per_1k_tokens": 0.01}},
        }
    )

    assert settings.default_order == (AIProvider.COHERE, AIProvider.OPENAI)
    assert settings.smart_routing.code is AIProvider.MISTRAL
    assert settings.smart_routing.creative is AIProvider.ANTHROPIC
    assert settings.smart_routing.long_context_chars == 500
    assert settings.attempt_timeout_s == 12.0
    assert settings.stream_word_delay_s == 0.0
    assert settings.capabilities[AIProvider.OPENAI].cost_per_1k_tokens == 0.01
    assert settings.capabilities[AIProvider.OPENAI].max_tokens is None


def test_parse_settings_empty_document_gives_defaults() -> None:
    assert parse_settings(None) == RouterSettings()


def test_parse_settings_rejects_unknown_provider() -> None:
    with pytest.raises(ValueError) as exc_info:
        parse_settings({"default_order": ["openai", "llama"]})

    message = str(exc_info.value)
    assert "default_order -> 1" in message
    assert "(got 'llama')" in message


def test_parse_settings_rejects_unknown_keys_and_bad_values() -> None:
    with pytest.raises(ValueError) as exc_info:
        parse_settings({"routes": {}, "probe_max_tokens": 0})

    message = str(exc_info.value)
    assert "routes" in message
    assert "probe_max_tokens" in message


def test_load_settings_missing_file_returns_defaults(tmp_path: Path) -> None:
    assert load_settings(str(tmp_path)) == RouterSettings()
    assert load_settings(None) == RouterSettings()


def test_load_settings_reads_yaml(tmp_path: Path) -> None:
    (tmp_path / "router.yaml").write_text(
        "recommendation_order: [gemini, openai]\nprobe_max_tokens: 4\n",
        encoding="utf-8",
    )

    settings = load_settings(str(tmp_path))

    assert settings.recommendation_order == (AIProvider.GEMINI, AIProvider.OPENAI)
    assert settings.probe_max_tokens == 4


def test_bundled_router_yaml_matches_defaults() -> None:
    config_dir = Path(__file__).resolve().parents[1] / "config"

    assert load_settings(str(config_dir)) == RouterSettings()


def test_long_context_rule_precedes_keyword_rules() -> None:
    selector = make_selector(*AIProvider)
    story = "Write a story about " + "x" * 20000
    code = "refactor this code " + "y" * 10001

    assert selector.select_provider(user(story), RoutingParams(use_smart_routing=True)) is AIProvider.GEMINI
    assert selector.smart_route(user(code)) is AIProvider.GEMINI


def test_smart_route_is_deterministic() -> None:
    selector = make_selector(AIProvider.OPENAI, AIProvider.ANTHROPIC)
    messages = user("explain the reasoning behind this")

    assert {selector.smart_route(messages) for _ in range(5)} == {AIProvider.ANTHROPIC}
