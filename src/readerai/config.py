"""Provider configuration for the AI sidebar."""

import os
import json
from enum import Enum
from pathlib import Path
from dataclasses import dataclass, field
from typing import Any, Dict, Optional
from dotenv import load_dotenv

from .thinking import ThinkingMode


class Provider(Enum):
    """Backend the sidebar streams from."""
    BUILTIN_LOCAL = "builtin_local"
    OLLAMA = "ollama"
    OPENAI_COMPATIBLE = "openai_compatible"


SAMPLING_KEYS = ("temperature", "top_p", "top_k", "min_p")


def get_global_config_path() -> Path:
    """Get path to global config: ~/.readerai.json"""
    return Path.home() / ".readerai.json"


def get_workspace_config_path(workspace: Optional[Path] = None) -> Path:
    """Get path to workspace config: workspace/.readerai/config.json"""
    ws = workspace or Path.cwd()
    return ws / ".readerai" / "config.json"


def load_json_config(path: Path) -> dict:
    """Load config from JSON file if it exists."""
    if path.exists():
        try:
            return json.loads(path.read_text(encoding="utf-8"))
        except (json.JSONDecodeError, IOError):
            pass
    return {}


def _parse_sampling(raw: Any) -> Dict[str, float]:
    if not isinstance(raw, dict):
        return {}
    out: Dict[str, float] = {}
    for key in SAMPLING_KEYS:
        if raw.get(key) is not None:
            out[key] = float(raw[key]) if key != "top_k" else int(raw[key])
    return out


@dataclass
class ProviderConfig:
    """Settings the stream adapters read once per task start."""

    provider: Provider = Provider.BUILTIN_LOCAL
    # Base URL of the running built-in llama-server; empty while it is stopped.
    builtin_base_url: str = ""
    builtin_model_id: str = "qwen3_0_6b_q4_k_m"
    ollama_url: str = "http://localhost:11434"
    ollama_model: str = "qwen3:8b"
    openai_base_url: str = "https://api.openai.com/v1"
    openai_api_key: str = ""
    openai_model: str = "gpt-4o-mini"
    thinking_mode: ThinkingMode = ThinkingMode.QUICK
    sampling: Dict[str, float] = field(default_factory=dict)
    request_timeout: float = 600.0

    @property
    def active_model(self) -> str:
        if self.provider is Provider.OPENAI_COMPATIBLE:
            return self.openai_model
        if self.provider is Provider.OLLAMA:
            return self.ollama_model
        return self.builtin_model_id

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ProviderConfig":
        defaults = cls()
        return cls(
            provider=Provider(data.get("provider", defaults.provider.value)),
            builtin_base_url=data.get("builtin_base_url", defaults.builtin_base_url),
            builtin_model_id=data.get("builtin_model_id", defaults.builtin_model_id),
            ollama_url=data.get("ollama_url", defaults.ollama_url),
            ollama_model=data.get("ollama_model", defaults.ollama_model),
            openai_base_url=data.get("openai_base_url", defaults.openai_base_url),
            openai_api_key=data.get("openai_api_key", defaults.openai_api_key),
            openai_model=data.get("openai_model", defaults.openai_model),
            thinking_mode=ThinkingMode.parse(data.get("thinking_mode"), defaults.thinking_mode),
            sampling=_parse_sampling(data.get("sampling")),
            request_timeout=float(data.get("request_timeout", defaults.request_timeout)),
        )

    @classmethod
    def from_json(cls, workspace: Optional[Path] = None) -> "ProviderConfig":
        """Load configuration from JSON files.

        Priority (later overrides earlier):
        1. ~/.readerai.json (global)
        2. workspace/.readerai/config.json (workspace-specific)
        """
        config_data = {}
        config_data.update(load_json_config(get_global_config_path()))
        config_data.update(load_json_config(get_workspace_config_path(workspace)))
        return cls.from_dict(config_data)

    @classmethod
    def from_env(cls, env_path: Optional[Path] = None) -> "ProviderConfig":
        """Load configuration from READERAI_* environment variables, falling back to JSON."""
        if env_path and env_path.exists():
            load_dotenv(env_path)
        else:
            load_dotenv()

        provider = os.getenv("READERAI_PROVIDER", "")
        if not provider:
            return cls.from_json()

        data: Dict[str, Any] = {"provider": provider}
        env_map = {
            "builtin_base_url": "READERAI_BUILTIN_BASE_URL",
            "builtin_model_id": "READERAI_BUILTIN_MODEL",
            "ollama_url": "READERAI_OLLAMA_URL",
            "ollama_model": "READERAI_OLLAMA_MODEL",
            "openai_base_url": "READERAI_OPENAI_BASE_URL",
            "openai_api_key": "READERAI_OPENAI_API_KEY",
            "openai_model": "READERAI_OPENAI_MODEL",
            "thinking_mode": "READERAI_THINKING_MODE",
            "request_timeout": "READERAI_REQUEST_TIMEOUT",
        }
        for key, var in env_map.items():
            value = os.getenv(var)
            if value is not None:
                data[key] = value
        sampling = {}
        for key in SAMPLING_KEYS:
            value = os.getenv(f"READERAI_{key.upper()}")
            if value:
                sampling[key] = value
        data["sampling"] = sampling
        return cls.from_dict(data)

    def validate(self, provider: Optional[Provider] = None) -> bool:
        """Validate the settings *provider* (default: the selected one) needs."""
        provider = provider or self.provider
        if provider is Provider.OPENAI_COMPATIBLE:
            if not self.openai_base_url.strip():
                raise ValueError("OpenAI-compatible base URL is required.")
            if not self.openai_api_key.strip():
                raise ValueError("OpenAI-compatible API key is required.")
            if not self.openai_model.strip():
                raise ValueError("OpenAI-compatible model is required.")
        elif provider is Provider.OLLAMA:
            if not self.ollama_url.strip():
                raise ValueError("Ollama URL is required.")
            if not self.ollama_model.strip():
                raise ValueError("Ollama model is required.")
        else:
            if not self.builtin_base_url.strip():
                raise ValueError(
                    "Built-in model is not running. Start it from the model "
                    "selector or configure it in Settings."
                )
            if not self.builtin_model_id.strip():
                raise ValueError("Built-in model id is required.")
        return True
