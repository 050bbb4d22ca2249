from __future__ import annotations

import allure

from workflow_pilot.orchestrator.pricing import estimate_cost_usd, parse_pricing_table
from workflow_pilot.orchestrator.sanitization import sanitize_preview
from workflow_pilot.orchestrator.usage import extract_usage

pytestmark = [
    allure.epic("Provider Factory"),
    allure.feature("Usage & Cost"),
]


def test_estimate_cost_usd_uses_input_and_output_tokens() -> None:
    table = parse_pricing_table("codex:gpt-test:1.0:3.0")

    cost = estimate_cost_usd(
        table,
        provider="codex",
        model="gpt-test",
        prompt_tokens=1_000_000,
        completion_tokens=500_000,
        total_tokens=None,
    )

    assert cost == 2.5


def test_estimate_cost_usd_uses_average_price_for_total_tokens() -> None:
    table = parse_pricing_table("codex:gpt-test:1.0:3.0")

    cost = estimate_cost_usd(
        table,
        provider="codex",
        model="gpt-test",
        prompt_tokens=None,
        completion_tokens=None,
        total_tokens=1_000_000,
    )

    assert cost == 2.0


def test_estimate_cost_usd_applies_wildcards_and_skips_malformed_entries() -> None:
    table = parse_pricing_table("codex:*:2.0:2.0, broken-entry, *:*:9.0:x, *:*:9.0:9.0")

    assert estimate_cost_usd(
        table,
        provider="CODEX",
        model="anything",
        prompt_tokens=500_000,
        completion_tokens=500_000,
        total_tokens=None,
    ) == 2.0
    assert estimate_cost_usd(
        table,
        provider="gemini",
        model="pro",
        prompt_tokens=1_000_000,
        completion_tokens=0,
        total_tokens=None,
    ) == 9.0
    assert len(table) == 2


def test_estimate_cost_usd_is_unknown_without_pricing() -> None:
    assert (
        estimate_cost_usd(
            {},
            provider="codex",
            model="gpt",
            prompt_tokens=10,
            completion_tokens=10,
            total_tokens=20,
        )
        is None
    )


def test_extract_usage_prefers_structured_markers() -> None:
    usage = extract_usage(
        stdout='{"usage": {"input_tokens": 120, "output_tokens": 30, "total_tokens": 150}}',
        stderr="input_tokens=1 output_tokens=1",
    )

    assert (usage.prompt_tokens, usage.completion_tokens, usage.total_tokens) == (120, 30, 150)
    assert usage.usage_status == "reported"
    assert usage.usage_source == "stdout_json"


def test_extract_usage_estimates_total_from_textual_markers() -> None:
    usage = extract_usage(stdout="done", stderr="model=x input_tokens=1,200 output_tokens=300")

    assert usage.prompt_tokens == 1200
    assert usage.completion_tokens == 300
    assert usage.total_tokens == 1500
    assert usage.usage_status == "estimated"
    assert usage.usage_source == "stderr_text"


def test_extract_usage_reports_unknown() -> None:
    usage = extract_usage(stdout="plain answer", stderr="")

    assert usage.known is False
    assert usage.total_tokens is None


def test_sanitize_preview_redacts_secrets_and_clamps() -> None:
    text = (
        "Authorization: Bearer abcdefgh12345678 key sk-live1234567890 "
        "OPENAI_API_KEY=secret-value https://x.test/?token=abc mail me@example.com"
    )

    preview = sanitize_preview(text)

    assert "abcdefgh12345678" not in preview
    assert "sk-live1234567890" not in preview
    assert "secret-value" not in preview
    assert "token=[redacted]" in preview
    assert "[redacted-email]" in preview
    assert len(sanitize_preview("x" * 5_000)) == 2_000
    assert sanitize_preview("   ") == ""
