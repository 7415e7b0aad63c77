import json
import os
from pathlib import Path
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field

from dotenv import load_dotenv

CONFIG_PATH = Path("config.json")
ENV_OVERRIDE_KEY = "RESEARCH_AGENT_ENV_OVERRIDES_CONFIG"
ENV_OVERRIDE_TRUE = {"1", "true", "yes", "on"}
SECRET_FIELDS = ("llm_api_key", "tavily_api_key", "smtp_password")


class EndpointConfig(BaseModel):
    base_url: str
    model_id: str

    model_config = {"protected_namespaces": ()}


class DepthConfig(BaseModel):
    step_limit: int
    max_image_analyses: int


class SMTPConfig(BaseModel):
    host: Optional[str] = None
    port: int = 587
    user: Optional[str] = None
    password: Optional[str] = None
    sender: Optional[str] = None
    use_tls: bool = True

    @property
    def configured(self) -> bool:
        return bool(self.host and self.user and self.password)


class AppSettings(BaseModel):
    llm_base_url: str = "https://api.openai.com/v1"
    llm_api_key: Optional[str] = None
    chat_endpoint: EndpointConfig = Field(
        default_factory=lambda: EndpointConfig(base_url="https://api.openai.com/v1", model_id="gpt-4o-mini")
    )
    vision_endpoint: EndpointConfig = Field(
        default_factory=lambda: EndpointConfig(base_url="https://api.openai.com/v1", model_id="gpt-4o-mini")
    )
    embedding_endpoint: EndpointConfig = Field(
        default_factory=lambda: EndpointConfig(
            base_url="https://api.openai.com/v1", model_id="text-embedding-3-small"
        )
    )
    llm_timeout_s: float = 60.0
    llm_max_attempts: int = 2
    max_output_tokens: int = 8192
    vision_max_tokens: int = 4096
    history_window: int = 10

    tavily_api_key: Optional[str] = None
    smtp: SMTPConfig = Field(default_factory=SMTPConfig)
    email_enabled: bool = True
    memory_enabled: bool = True

    depths: Dict[str, DepthConfig] = Field(
        default_factory=lambda: {
            "general": DepthConfig(step_limit=7, max_image_analyses=3),
            "deep": DepthConfig(step_limit=12, max_image_analyses=5),
        }
    )
    image_max_width: int = 1568
    image_quality: int = 85
    memory_min_confidence: float = 0.6

    database_path: str = "research_agent.db"
    host: str = "0.0.0.0"
    port: int = 8000

    @property
    def max_step_limit(self) -> int:
        return max(d.step_limit for d in self.depths.values())

    def depth(self, name: Optional[str]) -> DepthConfig:
        return self.depths.get(name or "general") or self.depths["general"]

    @property
    def web_search_available(self) -> bool:
        return bool(self.tavily_api_key)

    @property
    def email_available(self) -> bool:
        return self.email_enabled and self.smtp.configured

    def to_safe_dict(self) -> dict:
        data = self.model_dump()
        for key in SECRET_FIELDS:
            if data.get(key):
                data[key] = "********"
        if data.get("smtp", {}).get("password"):
            data["smtp"]["password"] = "********"
        return data

    model_config = {"protected_namespaces": ()}


def _load_from_env() -> dict:
    load_dotenv()
    env_map = {
        "llm_base_url": os.getenv("LLM_BASE_URL"),
        "llm_api_key": os.getenv("LLM_API_KEY") or os.getenv("OPENAI_API_KEY"),
        "chat_model": os.getenv("CHAT_MODEL"),
        "vision_model": os.getenv("VISION_MODEL"),
        "embedding_model": os.getenv("EMBEDDING_MODEL"),
        "llm_timeout_s": os.getenv("LLM_TIMEOUT_S"),
        "llm_max_attempts": os.getenv("LLM_MAX_ATTEMPTS"),
        "max_output_tokens": os.getenv("MAX_OUTPUT_TOKENS"),
        "tavily_api_key": os.getenv("TAVILY_API_KEY"),
        "smtp_host": os.getenv("SMTP_HOST"),
        "smtp_port": os.getenv("SMTP_PORT"),
        "smtp_user": os.getenv("SMTP_USER"),
        "smtp_password": os.getenv("SMTP_PASSWORD"),
        "smtp_sender": os.getenv("SMTP_SENDER"),
        "email_enabled": os.getenv("EMAIL_ENABLED"),
        "memory_enabled": os.getenv("MEMORY_ENABLED"),
        "database_path": os.getenv("DATABASE_PATH"),
        "host": os.getenv("HOST"),
        "port": os.getenv("PORT"),
    }
    cleaned = {k: v for k, v in env_map.items() if v not in (None, "")}
    if "llm_timeout_s" in cleaned:
        cleaned["llm_timeout_s"] = float(cleaned["llm_timeout_s"])
    for key in ("llm_max_attempts", "max_output_tokens", "port", "smtp_port"):
        if key in cleaned:
            cleaned[key] = int(cleaned[key])
    for key in ("email_enabled", "memory_enabled"):
        if key in cleaned:
            cleaned[key] = str(cleaned[key]).lower() in ENV_OVERRIDE_TRUE
    return cleaned


def _env_overrides_config() -> bool:
    return str(os.getenv(ENV_OVERRIDE_KEY, "")).strip().lower() in ENV_OVERRIDE_TRUE


def _fold_flat_keys(merged: Dict[str, Any]) -> None:
    """Move flat env-style keys (chat_model, smtp_host, ...) into their nested configs."""
    defaults = AppSettings()
    base_url = merged.get("llm_base_url")
    for flat_key, endpoint_key in (
        ("chat_model", "chat_endpoint"),
        ("vision_model", "vision_endpoint"),
        ("embedding_model", "embedding_endpoint"),
    ):
        endpoint = merged.get(endpoint_key)
        if not isinstance(endpoint, dict):
            endpoint = {}
        model = merged.pop(flat_key, None)
        if model:
            endpoint["model_id"] = model
        if base_url and not endpoint.get("base_url"):
            endpoint["base_url"] = base_url
        if endpoint:
            endpoint.setdefault("model_id", getattr(defaults, endpoint_key).model_id)
            endpoint.setdefault("base_url", getattr(defaults, endpoint_key).base_url)
            merged[endpoint_key] = endpoint
    smtp = merged.get("smtp")
    if not isinstance(smtp, dict):
        smtp = {}
    for field in ("host", "port", "user", "password", "sender"):
        value = merged.pop(f"smtp_{field}", None)
        if value is not None and not smtp.get(field):
            smtp[field] = value
    merged["smtp"] = smtp


def load_settings(config_path: Optional[Path] = None) -> AppSettings:
    env_data = _load_from_env()
    path = config_path or CONFIG_PATH
    file_data: Dict[str, Any] = {}
    if path.exists():
        try:
            file_data = json.loads(path.read_text())
        except Exception:
            file_data = {}
    # Config wins by default; allow env overrides only when explicitly enabled.
    if _env_overrides_config():
        merged = {**file_data, **env_data}
    else:
        merged = {**env_data, **file_data}
    for key in SECRET_FIELDS:
        if not merged.get(key) and env_data.get(key):
            merged[key] = env_data[key]
    _fold_flat_keys(merged)
    return AppSettings(**merged)


def save_settings(settings: AppSettings, config_path: Optional[Path] = None) -> None:
    path = config_path or CONFIG_PATH
    path.write_text(settings.model_dump_json(indent=2))
