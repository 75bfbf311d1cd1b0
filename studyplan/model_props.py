# studyplan/model_props.py
from __future__ import annotations

from dataclasses import dataclass, field, replace
from typing import Any, Dict, Optional
from pathlib import Path
import os
import commentjson

from dotenv import load_dotenv
load_dotenv()

OPENROUTER_BASE_URL = os.getenv("OPENROUTER_BASE_URL", "https://openrouter.ai/api/v1")
OPENROUTER_API_KEY = os.getenv("OPENROUTER_API_KEY", "")
DEFAULT_MODEL = os.getenv("OPENROUTER_MODEL", "google/gemini-2.0-flash-001")
MODEL_ALIASES_PATH = os.getenv("MODEL_ALIASES_PATH")
APP_URL = os.getenv("APP_URL", "http://localhost:8000")
APP_NAME = os.getenv("APP_NAME", "StudyPlan")

# The provider rejects the bare alias; it only serves the pinned revision.
BUILTIN_MODEL_ALIASES: Dict[str, str] = {
    "google/gemini-2.0-flash": "google/gemini-2.0-flash-001",
}


class ProviderConfigError(ValueError):
    pass


def _load_alias_config(path: Optional[str]) -> Dict[str, str]:
    """
    Load extra model aliases from a JSON-with-comments file:

        {
          // alias -> concrete model id
          "MODEL_ALIASES": {"openai/gpt-4o": "openai/gpt-4o-2024-11-20"}
        }

    Fails fast if the file is named but missing or malformed.
    """
    if not path:
        return {}
    cfg_path = Path(path)
    if not cfg_path.exists():
        raise FileNotFoundError(
            f"Model alias config file not found at '{cfg_path}'. "
        )

    with cfg_path.open("r", encoding="utf-8") as f:
        data = commentjson.load(f)

    aliases = data.get("MODEL_ALIASES") if isinstance(data, dict) else None
    if not isinstance(aliases, dict):
        raise ValueError("Model alias config missing or invalid key: MODEL_ALIASES")
    return {str(k): str(v) for k, v in aliases.items()}


def get_model_aliases(path: Optional[str] = None) -> Dict[str, str]:
    aliases = _load_alias_config(path if path is not None else MODEL_ALIASES_PATH)
    # built-ins always win
    aliases.update(BUILTIN_MODEL_ALIASES)
    return aliases


def resolve_model_alias(model: str, aliases: Optional[Dict[str, str]] = None) -> str:
    model = (model or "").strip()
    if not model:
        raise ProviderConfigError("resolve_model_alias: No Model Name passed. ")
    table = aliases if aliases is not None else get_model_aliases()
    return table.get(model, model)


@dataclass(frozen=True)
class HttpOptions:
    timeout: Optional[float] = None
    headers: Dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class ProviderSettings:
    api_key: str
    model: str
    parameters: Dict[str, Any] = field(default_factory=dict)
    strict_response: bool = False
    http_options: Optional[HttpOptions] = None
    base_url: str = OPENROUTER_BASE_URL

    def default_headers(self) -> Dict[str, str]:
        headers = {
            "HTTP-Referer": APP_URL,
            "X-Title": APP_NAME,
        }
        if self.http_options is not None:
            headers.update(self.http_options.headers)
        return headers

    def with_model(self, model: str) -> "ProviderSettings":
        return replace(self, model=resolve_model_alias(model))


def build_provider_settings(
    api_key: Optional[str] = None,
    model: Optional[str] = None,
    parameters: Optional[Dict[str, Any]] = None,
    strict_response: bool = False,
    http_options: Optional[HttpOptions] = None,
) -> ProviderSettings:
    """
    Resolve the requested model alias and pin the OpenRouter endpoint.
    Arguments left out fall back to the environment configuration.
    """
    key = api_key if api_key is not None else OPENROUTER_API_KEY
    if not key:
        raise ProviderConfigError("OpenRouter API key is not configured.")

    return ProviderSettings(
        api_key=key,
        model=resolve_model_alias(model or DEFAULT_MODEL),
        parameters=dict(parameters or {}),
        strict_response=strict_response,
        http_options=http_options,
        base_url=OPENROUTER_BASE_URL,
    )
