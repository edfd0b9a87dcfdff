from __future__ import annotations

import os
import tomllib
from dataclasses import dataclass
from pathlib import Path
from typing import Any


class ConfigError(RuntimeError):
    pass


def _as_int(value: Any, *, key: str, min_v: int | None = None) -> int:
    try:
        v = int(value)
    except (TypeError, ValueError) as e:
        raise ConfigError(f"Invalid int for {key}: {value!r}") from e
    if min_v is not None and v < min_v:
        raise ConfigError(f"Invalid {key}: must be >= {min_v}, got {v}")
    return v


def _as_float(value: Any, *, key: str) -> float:
    try:
        return float(value)
    except (TypeError, ValueError) as e:
        raise ConfigError(f"Invalid float for {key}: {value!r}") from e


def _as_str(value: Any, *, key: str) -> str:
    if value is None:
        raise ConfigError(f"Missing required config key: {key}")
    return str(value)


def _as_bool(value: Any, *, key: str) -> bool:
    if isinstance(value, bool):
        return value
    raise ConfigError(f"Invalid bool for {key}: {value!r}")


@dataclass(frozen=True)
class FlowConfig:
    # Books per enrich-item-batch node: browser tabs per batch vs. items per scoring prompt.
    batch_size: int
    max_workers: int
    search_pages: int


@dataclass(frozen=True)
class SourceConfig:
    search_url_template: str
    result_selector: str
    title_selector: str
    link_selector: str
    current_price_selector: str
    original_price_selector: str


@dataclass(frozen=True)
class ExtractorConfig:
    description_selector: str
    headless: bool
    navigation_timeout_ms: int


@dataclass(frozen=True)
class ScoringConfig:
    precision: int
    temperature: float
    system_prompt: str
    user_prompt_template: str


@dataclass(frozen=True)
class NotifyConfig:
    timeout_s: float


@dataclass(frozen=True)
class AppConfig:
    flow: FlowConfig
    source: SourceConfig
    extractor: ExtractorConfig
    scoring: ScoringConfig
    notify: NotifyConfig


def default_config_path() -> Path:
    env = os.getenv("BOOKFLOW_CONFIG_PATH")
    if env:
        return Path(env).expanduser().resolve()
    # Repo checkout: <repo>/config/default.toml next to the package.
    return (Path(__file__).resolve().parents[2] / "config" / "default.toml").resolve()


def load_app_config(path: Path | None = None) -> AppConfig:
    cfg_path = path or default_config_path()
    if not cfg_path.exists():
        raise ConfigError(f"Config file not found: {cfg_path}")

    try:
        raw = tomllib.loads(cfg_path.read_text(encoding="utf-8"))
    except tomllib.TOMLDecodeError as e:
        raise ConfigError(f"Invalid TOML in {cfg_path}: {e}") from e

    flow = raw.get("flow", {})
    source = raw.get("source", {})
    extractor = raw.get("extractor", {})
    scoring = raw.get("scoring", {})
    notify = raw.get("notify", {})

    search_url_template = _as_str(source.get("search_url_template"), key="source.search_url_template")
    if "{query}" not in search_url_template or "{page}" not in search_url_template:
        raise ConfigError("Invalid source.search_url_template: must contain {query} and {page}")

    return AppConfig(
        flow=FlowConfig(
            batch_size=_as_int(flow.get("batch_size", 6), key="flow.batch_size", min_v=1),
            max_workers=_as_int(flow.get("max_workers", 4), key="flow.max_workers", min_v=1),
            search_pages=_as_int(flow.get("search_pages", 2), key="flow.search_pages", min_v=1),
        ),
        source=SourceConfig(
            search_url_template=search_url_template,
            result_selector=_as_str(source.get("result_selector"), key="source.result_selector"),
            title_selector=_as_str(source.get("title_selector"), key="source.title_selector"),
            link_selector=_as_str(source.get("link_selector"), key="source.link_selector"),
            current_price_selector=_as_str(
                source.get("current_price_selector"), key="source.current_price_selector"
            ),
            original_price_selector=_as_str(
                source.get("original_price_selector"), key="source.original_price_selector"
            ),
        ),
        extractor=ExtractorConfig(
            description_selector=_as_str(
                extractor.get("description_selector"), key="extractor.description_selector"
            ),
            headless=_as_bool(extractor.get("headless", True), key="extractor.headless"),
            navigation_timeout_ms=_as_int(
                extractor.get("navigation_timeout_ms", 30000), key="extractor.navigation_timeout_ms", min_v=1
            ),
        ),
        scoring=ScoringConfig(
            precision=_as_int(scoring.get("precision", 2), key="scoring.precision", min_v=0),
            temperature=_as_float(scoring.get("temperature", 0.2), key="scoring.temperature"),
            system_prompt=_as_str(scoring.get("system_prompt"), key="scoring.system_prompt"),
            user_prompt_template=_as_str(scoring.get("user_prompt_template"), key="scoring.user_prompt_template"),
        ),
        notify=NotifyConfig(
            timeout_s=_as_float(notify.get("timeout_s", 30.0), key="notify.timeout_s"),
        ),
    )
