"""Load settings.yaml into typed dataclasses. Checks API keys at startup."""

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path

import yaml

logger = logging.getLogger(__name__)

_SETTINGS_PATH = Path(__file__).parent / "settings.yaml"


@dataclass
class ModelConfig:
    name: str
    sdk: str
    model: str
    api_key_env: str
    max_tokens: int
    base_url: str | None = None


@dataclass
class PromptsConfig:
    ranking_system: str
    ranking: str
    chairman_system: str
    chairman: str


@dataclass
class DefaultsConfig:
    ray_count: int
    output_dir: Path
    gather_model: str | None = None
    chairman: str | None = None
    factory: str = "fuse"
    ray_models: list[str] = field(default_factory=list)
    preferences_path: Path = Path(".beam/preferences.yaml")


@dataclass
class AppConfig:
    defaults: DefaultsConfig
    models: dict[str, ModelConfig]
    prompts: PromptsConfig
    available_providers: set[str] = field(default_factory=set)


def load_config(settings_path: Path = _SETTINGS_PATH) -> AppConfig:
    """Load and validate configuration from settings.yaml.

    Raises FileNotFoundError if settings file missing.
    Logs providers with missing API keys but does not raise; callers check
    available_providers count.
    """
    if not settings_path.exists():
        raise FileNotFoundError(f"Settings file not found: {settings_path}")

    with settings_path.open("r", encoding="utf-8") as f:
        raw = yaml.safe_load(f)

    defaults_raw = raw["defaults"]
    defaults = DefaultsConfig(
        ray_count=int(defaults_raw["ray_count"]),
        output_dir=Path(defaults_raw["output_dir"]),
        gather_model=defaults_raw.get("gather_model"),
        chairman=defaults_raw.get("chairman"),
        factory=str(defaults_raw.get("factory", "fuse")),
        ray_models=list(defaults_raw.get("ray_models") or []),
        preferences_path=Path(defaults_raw.get("preferences_path", ".beam/preferences.yaml")),
    )

    prompts_raw = raw["prompts"]
    prompts = PromptsConfig(
        ranking_system=prompts_raw["ranking_system"],
        ranking=prompts_raw["ranking"],
        chairman_system=prompts_raw["chairman_system"],
        chairman=prompts_raw["chairman"],
    )

    models: dict[str, ModelConfig] = {}
    available_providers: set[str] = set()

    for provider_name, model_raw in raw["models"].items():
        model_cfg = ModelConfig(
            name=provider_name,
            sdk=model_raw["sdk"],
            model=model_raw["model"],
            api_key_env=model_raw["api_key_env"],
            max_tokens=int(model_raw["max_tokens"]),
            base_url=model_raw.get("base_url"),
        )
        models[provider_name] = model_cfg

        api_key = os.environ.get(model_raw["api_key_env"], "").strip()
        if api_key:
            available_providers.add(provider_name)
            logger.info("Provider available: %s", provider_name)
        else:
            logger.info(
                "Provider skipped (no API key): %s, set %s in .env",
                provider_name,
                model_raw["api_key_env"],
            )

    return AppConfig(
        defaults=defaults,
        models=models,
        prompts=prompts,
        available_providers=available_providers,
    )
