"""Tests for config.py: loading, validation and policy resolution."""

from __future__ import annotations

import textwrap
from typing import TYPE_CHECKING

import pytest
import yaml

from review_queue.config import (
    DEFAULT_CONFIG_YAML,
    ConfigError,
    describe_policy,
    get_config_path,
    load_and_resolve_config,
    parse_config,
    write_default_config,
)
from review_queue.effect import parse_effect
from review_queue.policy import DEFAULT_POLICY

if TYPE_CHECKING:
    from pathlib import Path


def _parse(text: str) -> object:
    return parse_config(yaml.safe_load(textwrap.dedent(text)))


def _problems(text: str) -> list[str]:
    with pytest.raises(ConfigError) as exc_info:
        _parse(text)
    return exc_info.value.problems


# === get_config_path() ===


def test_get_config_path_respects_xdg(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.setenv("XDG_CONFIG_HOME", str(tmp_path))
    assert get_config_path() == tmp_path / "review-queue" / "config.yaml"


# === parse_config() ===


def test_full_config_resolves_each_query() -> None:
    config = _parse("""\
        auto_refresh_interval: 120
        scoring:
          base_score: 100
          age: "+1 per 1h"
          approvals: "+10 per 1"
          size:
            exclude: ["*.lock"]
            buckets:
              - range: "<100"
                effect: "x5"
          labels:
            - name: urgent
              effect: "+20"
          previously_reviewed: "x0.5"
        queries:
          - name: Review requested
            query: "is:pr is:open review-requested:@me"
            scoring: { base_score: 50 }
          - query: "is:pr is:open author:@me"
        """)
    assert config.auto_refresh_interval == 120
    assert [q.name for q in config.queries] == ["Review requested", "is:pr is:open author:@me"]

    requested = config.query("Review requested").policy
    assert requested.base_score == 50
    assert requested.age == parse_effect("+1 per 1h")
    assert requested.size is not None
    assert requested.size.exclude == ("*.lock",)
    assert requested.labels[0].name == "urgent"

    assert config.queries[1].policy == config.scoring
    assert config.scoring.base_score == 100


def test_missing_scoring_uses_default_policy() -> None:
    config = _parse("""\
        queries:
          - query: "is:open"
        """)
    assert config.scoring == DEFAULT_POLICY
    assert config.queries[0].policy == DEFAULT_POLICY


def test_empty_document_is_valid() -> None:
    config = parse_config(None)
    assert config.queries == ()
    assert config.auto_refresh_interval == 300


def test_unknown_keys_are_rejected_with_path() -> None:
    problems = _problems("""\
        bogus: 1
        scoring:
          sise: {}
        queries:
          - query: "is:open"
            scoring:
              size:
                exclud: ["*.lock"]
        """)
    assert "bogus: unknown key" in problems
    assert "scoring.sise: unknown key" in problems
    assert "queries[0].scoring.size.exclud: unknown key" in problems


def test_all_problems_are_reported_together() -> None:
    problems = _problems("""\
        scoring:
          base_score: -1
          age: "+1"
          approvals: "20"
        """)
    assert len(problems) == 2
    assert problems[0].startswith("scoring.base_score:")
    assert problems[1].startswith("scoring.approvals: invalid effect")


@pytest.mark.parametrize(
    ("field", "value", "message"),
    [
        ("previously_reviewed", "x0.5 per 1h", "'per' is not allowed here"),
        ("age", "+1 per 3", "expected a duration"),
        ("approvals", "+10 per 1h", "expected a count"),
    ],
)
def test_per_unit_kind_is_checked(field: str, value: str, message: str) -> None:
    problems = _problems(f"""\
        scoring:
          {field}: "{value}"
        """)
    assert len(problems) == 1
    assert problems[0].startswith(f"scoring.{field}:")
    assert message in problems[0]


def test_overlapping_buckets_are_rejected() -> None:
    problems = _problems("""\
        scoring:
          size:
            buckets:
              - range: "<100"
                effect: "x5"
              - range: "50-200"
                effect: "x1"
        """)
    assert problems == ["scoring.size.buckets: size buckets '<100' and '50-200' overlap"]


def test_invalid_range_reports_field_path() -> None:
    problems = _problems("""\
        scoring:
          size:
            buckets:
              - range: "<100"
                effect: "x5"
              - range: "lots"
                effect: "x1"
        """)
    assert len(problems) == 1
    assert problems[0].startswith("scoring.size.buckets[1].range: invalid range")


def test_bucket_missing_effect() -> None:
    problems = _problems("""\
        scoring:
          size:
            buckets:
              - range: "<100"
        """)
    assert problems == ["scoring.size.buckets[0].effect: missing required key"]


def test_bucket_effect_must_be_unitless() -> None:
    problems = _problems("""\
        scoring:
          size:
            buckets:
              - range: "<100"
                effect: "+1 per 1h"
        """)
    assert problems[0].startswith("scoring.size.buckets[0].effect: 'per' is not allowed")


def test_invalid_glob_is_rejected() -> None:
    problems = _problems("""\
        scoring:
          size:
            exclude: ["*.lock", "[abc", ""]
        """)
    assert problems[0].startswith("scoring.size.exclude[1]: invalid glob pattern")
    assert problems[1].startswith("scoring.size.exclude[2]:")


def test_duplicate_label_names_are_rejected_case_insensitively() -> None:
    problems = _problems("""\
        scoring:
          labels:
            - name: urgent
              effect: "+20"
            - name: URGENT
              effect: "+5"
            - name: ""
              effect: "+1"
        """)
    assert problems[0].startswith("scoring.labels[1].name: duplicate label 'URGENT'")
    assert problems[1] == "scoring.labels[2].name: label name must be a non-empty string"


def test_query_requires_search_string() -> None:
    problems = _problems("""\
        queries:
          - name: nothing
        """)
    assert problems == ["queries[0].query: missing or empty search query"]


def test_duplicate_query_names_are_rejected() -> None:
    problems = _problems("""\
        queries:
          - name: mine
            query: "author:@me"
          - name: mine
            query: "assignee:@me"
        """)
    assert problems == ["queries[1].name: duplicate query name 'mine'"]


def test_auto_refresh_interval_must_be_positive() -> None:
    problems = _problems("auto_refresh_interval: 0\n")
    assert problems[0].startswith("auto_refresh_interval:")


def test_query_override_errors_use_query_path() -> None:
    problems = _problems("""\
        queries:
          - query: "is:open"
            scoring:
              age: "x2 per forever"
        """)
    assert problems[0].startswith("queries[0].scoring.age: invalid effect")


# === load_and_resolve_config() / write_default_config() ===


def test_missing_file(tmp_path: Path) -> None:
    with pytest.raises(ConfigError, match="review-queue init"):
        load_and_resolve_config(tmp_path / "config.yaml")


def test_invalid_yaml(tmp_path: Path) -> None:
    path = tmp_path / "config.yaml"
    path.write_text("queries: [unclosed\n")
    with pytest.raises(ConfigError, match="Invalid YAML"):
        load_and_resolve_config(path)


def test_default_config_round_trips(tmp_path: Path) -> None:
    path = write_default_config(tmp_path / "sub" / "config.yaml")
    assert path.read_text() == DEFAULT_CONFIG_YAML
    config = load_and_resolve_config(path)
    assert config.path == path
    assert len(config.queries) >= 1


def test_write_default_config_refuses_overwrite(tmp_path: Path) -> None:
    path = tmp_path / "config.yaml"
    path.write_text("queries: []\n")
    with pytest.raises(ConfigError, match="already exists"):
        write_default_config(path)
    write_default_config(path, force=True)
    assert path.read_text() == DEFAULT_CONFIG_YAML


def test_describe_policy() -> None:
    lines = describe_policy(DEFAULT_POLICY)
    assert lines == [
        "base_score: 100",
        "age: +1 per 1h",
        "approvals: +10 per 1",
        "size <100: x5",
        "size 100-500: x1",
        "size >500: x0.5",
    ]
