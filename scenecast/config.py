"""Global app configuration (LLM connection, image cache, prompt overrides)."""

import json
from pathlib import Path
from typing import Any

_CONFIG_DEFAULTS: dict[str, Any] = {
    "provider_url": "http://localhost:5001",
    "api_key": "",
    "provider_format": "koboldcpp",
    "model": "",
    "llm_timeout": 120.0,
    "image_endpoint": "https://image.pollinations.ai/prompt/",
    "image_width": 368,
    "image_height": 448,
    "image_connect_timeout": 15.0,
    "image_read_timeout": 15.0,
    "prompt_templates": {
        "initial_scene": "",
        "summarize_turn": "",
        "generate_scene": "",
        "diagnosis": "",
    },
}


def _config_path(data_dir: Path) -> Path:
    return data_dir / "config.json"


def _defaults() -> dict[str, Any]:
    return json.loads(json.dumps(_CONFIG_DEFAULTS))


def _merge(config: dict[str, Any], fields: dict[str, Any]) -> None:
    for key, value in fields.items():
        if key not in config:
            continue
        if key == "prompt_templates":
            if isinstance(value, dict):
                config["prompt_templates"].update(
                    {k: v for k, v in value.items() if k in config["prompt_templates"]}
                )
            continue
        config[key] = value


def get_config(data_dir: Path) -> dict[str, Any]:
    """Read config, returning defaults merged with stored values."""
    config = _defaults()
    path = _config_path(data_dir)
    if path.is_file():
        _merge(config, json.loads(path.read_text()))
    return config


def update_config(data_dir: Path, fields: dict[str, Any]) -> dict[str, Any]:
    """Merge fields into config and persist. Returns full config.

    Unknown keys are ignored.
    """
    config = get_config(data_dir)
    _merge(config, fields)
    _config_path(data_dir).write_text(json.dumps(config, indent=2))
    return config
