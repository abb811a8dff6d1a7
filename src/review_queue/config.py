"""User configuration: load, validate and resolve config.yaml."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Any

import yaml

from review_queue.buckets import (
    BucketOverlapError,
    RangeSyntaxError,
    SizeBucket,
    parse_range,
    validate_buckets,
)
from review_queue.effect import EffectSyntaxError, Unit, format_effect, parse_effect
from review_queue.policy import (
    DEFAULT_BASE_SCORE,
    DEFAULT_POLICY,
    LabelRule,
    PolicyOverride,
    Query,
    ScoringPolicy,
    SizeOverride,
    SizePolicy,
    resolve,
)

if TYPE_CHECKING:
    from review_queue.effect import Effect

DEFAULT_AUTO_REFRESH_INTERVAL = 300  # seconds

_TOP_LEVEL_KEYS = frozenset({"queries", "scoring", "auto_refresh_interval"})
_QUERY_KEYS = frozenset({"name", "query", "scoring"})
_SCORING_KEYS = frozenset(
    {"base_score", "age", "approvals", "size", "labels", "previously_reviewed"}
)
_SIZE_KEYS = frozenset({"exclude", "buckets"})
_BUCKET_KEYS = frozenset({"range", "effect"})
_LABEL_KEYS = frozenset({"name", "effect"})

DEFAULT_CONFIG_YAML = """\
# review-queue configuration
auto_refresh_interval: 300

scoring:
  base_score: 100
  age: "+1 per 1h"
  approvals: "+10 per 1"
  size:
    exclude: ["*.lock", "package-lock.json"]
    buckets:
      - range: "<100"
        effect: "x5"
      - range: "100-500"
        effect: "x1"
      - range: ">500"
        effect: "x0.5"

queries:
  - name: Review requested
    query: "is:pr is:open review-requested:@me archived:false"
"""


class ConfigError(Exception):
    """Raised when config.yaml is missing, malformed or semantically invalid.

    ``problems`` lists every ``field.path: message`` found, not just the first.
    """

    def __init__(self, problems: list[str]) -> None:
        self.problems = problems
        super().__init__("\n".join(problems))


@dataclass(frozen=True)
class Config:
    """A loaded configuration with one resolved policy per query."""

    scoring: ScoringPolicy
    queries: tuple[Query, ...]
    auto_refresh_interval: int = DEFAULT_AUTO_REFRESH_INTERVAL
    path: Path | None = field(default=None, compare=False)

    def query(self, name: str) -> Query:
        for q in self.queries:
            if q.name == name:
                return q
        msg = f"Unknown query {name!r}"
        raise KeyError(msg)


def get_config_path() -> Path:
    """Return the path to config.yaml, respecting XDG_CONFIG_HOME."""
    xdg = os.environ.get("XDG_CONFIG_HOME")
    base = Path(xdg) if xdg else Path.home() / ".config"
    return base / "review-queue" / "config.yaml"


class _Validator:
    """Walks the raw YAML tree, collecting every problem with its field path."""

    def __init__(self) -> None:
        self.problems: list[str] = []

    def error(self, path: str, message: str) -> None:
        self.problems.append(f"{path or 'config'}: {message}")

    def mapping(self, value: Any, path: str, allowed: frozenset[str]) -> dict[str, Any] | None:
        if not isinstance(value, dict):
            self.error(path, f"expected a mapping, got {type(value).__name__}")
            return None
        for key in value:
            if key not in allowed:
                self.error(f"{path}.{key}" if path else str(key), "unknown key")
        return value

    def sequence(self, value: Any, path: str) -> list[Any] | None:
        if not isinstance(value, list):
            self.error(path, f"expected a list, got {type(value).__name__}")
            return None
        return value

    def effect(self, value: Any, path: str, unit: Unit | None = None) -> Effect | None:
        """Parse an effect; ``unit`` is the only per-unit kind the field accepts."""
        try:
            effect = parse_effect(value)
        except EffectSyntaxError as e:
            self.error(path, f"invalid effect: {e}")
            return None
        if effect.unit is not None and effect.unit is not unit:
            if unit is None:
                self.error(path, f"'per' is not allowed here: {value!r}")
            elif unit is Unit.DURATION:
                self.error(path, f"expected a duration after 'per' (e.g. 1h): {value!r}")
            else:
                self.error(path, f"expected a count after 'per' (e.g. 1): {value!r}")
            return None
        return effect

    def glob(self, value: Any, path: str) -> str | None:
        if not isinstance(value, str) or not value.strip():
            self.error(path, "glob pattern must be a non-empty string")
            return None
        depth = 0
        for ch in value:
            if ch == "[":
                depth += 1
            elif ch == "]" and depth:
                depth -= 1
        if depth:
            self.error(path, f"invalid glob pattern {value!r}: unclosed '['")
            return None
        return value

    def bucket(self, value: Any, path: str) -> SizeBucket | None:
        entry = self.mapping(value, path, _BUCKET_KEYS)
        if entry is None:
            return None
        missing = [key for key in ("range", "effect") if key not in entry]
        for key in missing:
            self.error(f"{path}.{key}", "missing required key")
        if missing:
            return None
        effect = self.effect(entry["effect"], f"{path}.effect")
        try:
            lower, upper = parse_range(entry["range"])
        except RangeSyntaxError as e:
            self.error(f"{path}.range", str(e))
            return None
        if effect is None:
            return None
        return SizeBucket(
            range_text=entry["range"].strip(), lower=lower, upper=upper, effect=effect
        )

    def buckets(self, value: Any, path: str) -> tuple[SizeBucket, ...] | None:
        items = self.sequence(value, path)
        if items is None:
            return None
        buckets: list[SizeBucket] = []
        failed = False
        for i, raw in enumerate(items):
            bucket = self.bucket(raw, f"{path}[{i}]")
            if bucket is None:
                failed = True
            else:
                buckets.append(bucket)
        if failed:
            return None
        try:
            validate_buckets(buckets)
        except BucketOverlapError as e:
            self.error(path, str(e))
            return None
        return tuple(buckets)

    def size(self, value: Any, path: str) -> SizeOverride | None:
        section = self.mapping(value, path, _SIZE_KEYS)
        if section is None:
            return None
        exclude: tuple[str, ...] | None = None
        if "exclude" in section:
            patterns = self.sequence(section["exclude"], f"{path}.exclude") or []
            exclude = tuple(
                p
                for i, raw in enumerate(patterns)
                if (p := self.glob(raw, f"{path}.exclude[{i}]")) is not None
            )
        buckets = None
        if "buckets" in section:
            buckets = self.buckets(section["buckets"], f"{path}.buckets")
        return SizeOverride(exclude=exclude, buckets=buckets)

    def labels(self, value: Any, path: str) -> tuple[LabelRule, ...] | None:
        items = self.sequence(value, path)
        if items is None:
            return None
        rules: list[LabelRule] = []
        seen: dict[str, int] = {}
        for i, raw in enumerate(items):
            item_path = f"{path}[{i}]"
            entry = self.mapping(raw, item_path, _LABEL_KEYS)
            if entry is None:
                continue
            name = entry.get("name")
            if not isinstance(name, str) or not name.strip():
                self.error(f"{item_path}.name", "label name must be a non-empty string")
                continue
            if "effect" not in entry:
                self.error(f"{item_path}.effect", "missing required key")
                continue
            key = name.strip().lower()
            if key in seen:
                self.error(
                    f"{item_path}.name",
                    f"duplicate label {name!r} (same as {path}[{seen[key]}], case-insensitive)",
                )
                continue
            seen[key] = i
            effect = self.effect(entry["effect"], f"{item_path}.effect")
            if effect is not None:
                rules.append(LabelRule(name=name.strip(), effect=effect))
        return tuple(rules)

    def base_score(self, value: Any, path: str) -> float | None:
        if isinstance(value, bool) or not isinstance(value, int | float):
            self.error(path, f"expected a number, got {value!r}")
            return None
        if value < 0:
            self.error(path, "must be non-negative")
            return None
        return float(value)

    def override(self, value: Any, path: str) -> PolicyOverride | None:
        section = self.mapping(value, path, _SCORING_KEYS)
        if section is None:
            return None

        def optional_effect(key: str, unit: Unit | None = None) -> Effect | None:
            if key not in section:
                return None
            return self.effect(section[key], f"{path}.{key}", unit)

        return PolicyOverride(
            base_score=(
                self.base_score(section["base_score"], f"{path}.base_score")
                if "base_score" in section
                else None
            ),
            age=optional_effect("age", Unit.DURATION),
            approvals=optional_effect("approvals", Unit.COUNT),
            size=self.size(section["size"], f"{path}.size") if "size" in section else None,
            labels=(
                self.labels(section["labels"], f"{path}.labels") if "labels" in section else None
            ),
            previously_reviewed=optional_effect("previously_reviewed"),
        )


def _global_policy(override: PolicyOverride) -> ScoringPolicy:
    """Turn the top-level ``scoring`` section into a complete policy."""
    return resolve(
        ScoringPolicy(base_score=DEFAULT_BASE_SCORE),
        override,
    )


def parse_config(data: Any, path: Path | None = None) -> Config:
    """Validate a parsed YAML document and resolve every query's policy."""
    v = _Validator()
    if data is None:
        data = {}
    root = v.mapping(data, "", _TOP_LEVEL_KEYS)
    if root is None:
        raise ConfigError(v.problems)

    scoring = DEFAULT_POLICY
    if "scoring" in root:
        override = v.override(root["scoring"], "scoring")
        if override is not None:
            scoring = _global_policy(override)

    interval = root.get("auto_refresh_interval", DEFAULT_AUTO_REFRESH_INTERVAL)
    if isinstance(interval, bool) or not isinstance(interval, int) or interval <= 0:
        v.error("auto_refresh_interval", f"expected a positive integer, got {interval!r}")

    queries: list[Query] = []
    raw_queries = v.sequence(root.get("queries", []), "queries") or []
    names: set[str] = set()
    for i, raw in enumerate(raw_queries):
        qpath = f"queries[{i}]"
        entry = v.mapping(raw, qpath, _QUERY_KEYS)
        if entry is None:
            continue
        search = entry.get("query")
        if not isinstance(search, str) or not search.strip():
            v.error(f"{qpath}.query", "missing or empty search query")
            continue
        name = entry.get("name", search)
        if not isinstance(name, str) or not name.strip():
            v.error(f"{qpath}.name", "query name must be a non-empty string")
            continue
        if name in names:
            v.error(f"{qpath}.name", f"duplicate query name {name!r}")
            continue
        names.add(name)
        override = v.override(entry["scoring"], f"{qpath}.scoring") if "scoring" in entry else None
        queries.append(
            Query(
                name=name,
                query=search.strip(),
                override=override,
                policy=resolve(scoring, override),
            )
        )

    if v.problems:
        raise ConfigError(v.problems)
    return Config(
        scoring=scoring,
        queries=tuple(queries),
        auto_refresh_interval=interval,
        path=path,
    )


def load_and_resolve_config(path: Path | None = None) -> Config:
    """Load config.yaml and resolve each query's scoring policy.

    Raises ConfigError on a missing file, invalid YAML or any validation problem.
    """
    path = path or get_config_path()
    if not path.exists():
        msg = f"Config file not found at {path}. Run `review-queue init` to create one."
        raise ConfigError([msg])

    try:
        data = yaml.safe_load(path.read_text())
    except yaml.YAMLError as e:
        msg = f"Invalid YAML in {path}: {e}"
        raise ConfigError([msg]) from e
    return parse_config(data, path)


def write_default_config(path: Path | None = None, *, force: bool = False) -> Path:
    """Write a starter config.yaml. Refuses to overwrite unless ``force`` is set."""
    path = path or get_config_path()
    if path.exists() and not force:
        msg = f"Config file already exists at {path} (use --force to overwrite)"
        raise ConfigError([msg])
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(DEFAULT_CONFIG_YAML)
    return path


def describe_policy(policy: ScoringPolicy) -> list[str]:
    """Render a resolved policy as ``key: value`` lines for display."""
    lines = [f"base_score: {policy.base_score:g}"]
    if policy.age is not None:
        lines.append(f"age: {format_effect(policy.age)}")
    if policy.approvals is not None:
        lines.append(f"approvals: {format_effect(policy.approvals)}")
    if policy.size is not None:
        size: SizePolicy = policy.size
        if size.exclude:
            lines.append(f"size.exclude: {', '.join(size.exclude)}")
        lines.extend(
            f"size {b.range_text}: {format_effect(b.effect)}" for b in size.buckets
        )
    lines.extend(f"label {r.name}: {format_effect(r.effect)}" for r in policy.labels)
    if policy.previously_reviewed is not None:
        lines.append(f"previously_reviewed: {format_effect(policy.previously_reviewed)}")
    return lines
