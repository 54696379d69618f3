from __future__ import annotations

import json

import pytest

from ultrasearch.services.prompt_store import PromptCatalog, render_prompt


def test_render_prompt_substitutes_template_values():
    prompt = render_prompt("ultra.writer_plan_only", plan="1. Find the peak")

    assert prompt.startswith("Plan:\n1. Find the peak")


def test_render_prompt_raises_for_unknown_key():
    with pytest.raises(KeyError):
        render_prompt("missing.prompt.key")


def test_render_prompt_reports_missing_values():
    with pytest.raises(KeyError, match="current_date"):
        render_prompt("ultra.planner_system")


def test_catalog_clear_forces_reload(tmp_path):
    path = tmp_path / "prompts.json"
    path.write_text(json.dumps({"greeting": {"text": "Hello $name"}}), encoding="utf-8")
    catalog = PromptCatalog(path)

    assert catalog.render("greeting.text", name="Ada") == "Hello Ada"

    path.write_text(json.dumps({"greeting": {"text": "Hi $name"}}), encoding="utf-8")
    catalog.clear()

    assert catalog.render("greeting.text", name="Ada") == "Hi Ada"


def test_catalog_rejects_non_string_entries(tmp_path):
    path = tmp_path / "prompts.json"
    path.write_text(json.dumps({"ultra": {"planner": {"system": "x"}}}), encoding="utf-8")

    with pytest.raises(TypeError):
        PromptCatalog(path).entry("ultra.planner")
