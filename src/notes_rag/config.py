from __future__ import annotations

from pathlib import Path
from typing import Literal, Optional

import yaml
from dotenv import load_dotenv
from pydantic import BaseModel, Field, ValidationError

from .errors import InvalidConfig

LLMProviderName = Literal["ollama", "openai", "claude", "groq", "none"]

DEFAULT_LLM_MODELS = {
    "ollama": "llama3.1",
    "openai": "gpt-4o-mini",
    "claude": "claude-3-5-haiku-latest",
    "groq": "llama-3.1-8b-instant",
}


class RAGConfig(BaseModel):
    embedding_model: str = Field(
        default="sentence-transformers/all-MiniLM-L6-v2"
    )
    llm_provider: LLMProviderName = "ollama"
    llm_model: Optional[str] = None
    llm_base_url: Optional[str] = None
    api_key: Optional[str] = None
    ollama_base_url: str = "http://localhost:11434"

    temperature: float = Field(default=0.7, ge=0.0, le=1.0)
    max_tokens: int = Field(default=1024, ge=1)
    context_window: int = Field(default=4096, ge=512, le=32768)
    top_k: int = Field(default=5, ge=1, le=20)
    min_score: float = Field(default=0.3, ge=0.0, le=1.0)

    enable_auto_tagging: bool = True
    enable_summarization: bool = True
    enable_similar_notes: bool = True
    enable_qa: bool = True

    chunk_max_chars: int = Field(default=512, ge=64)
    chunk_overlap: int = Field(default=128, ge=0)
    chunk_min_chars: int = Field(default=100, ge=0)

    index_dir: Optional[Path] = Field(default=Path("index"))
    data_dir: Path = Field(default=Path("data"))
    request_timeout: float = Field(default=60.0, gt=0)
    checkpoint_every: int = Field(default=25, ge=1)
    log_level: str = "INFO"

    @property
    def resolved_llm_model(self) -> str:
        if self.llm_model:
            return self.llm_model
        return DEFAULT_LLM_MODELS.get(self.llm_provider, "")

    @property
    def index_dir_resolved(self) -> Optional[Path]:
        return self.index_dir.resolve() if self.index_dir is not None else None

    @property
    def data_dir_resolved(self) -> Path:
        return self.data_dir.resolve()


def build_config(**overrides) -> RAGConfig:
    """Validate keyword options into a RAGConfig, raising InvalidConfig on bad values."""
    try:
        cfg = RAGConfig(**overrides)
    except ValidationError as e:
        raise InvalidConfig(f"Invalid configuration:\n{e}") from e
    if cfg.chunk_overlap >= cfg.chunk_max_chars:
        raise InvalidConfig("chunk_overlap must be smaller than chunk_max_chars")
    return cfg


def load_config(path: Optional[Path] = None) -> RAGConfig:
    """
    Load configuration from a YAML file.

    If `path` is None, looks for `config.yaml` in the current working directory.
    Also loads environment variables from a `.env` file if present, so API keys
    can live outside the YAML.
    """
    load_dotenv()

    if path is None:
        path = Path("config.yaml")

    if not path.exists():
        # Fall back to defaults if no config file is present.
        return build_config()

    with path.open("r", encoding="utf-8") as f:
        try:
            raw = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise InvalidConfig(f"Could not parse {path}: {e}") from e

    if not isinstance(raw, dict):
        raise InvalidConfig(f"{path} must contain a mapping of options")

    try:
        return build_config(**raw)
    except InvalidConfig as e:
        raise InvalidConfig(f"{path}: {e}") from e


__all__ = ["DEFAULT_LLM_MODELS", "LLMProviderName", "RAGConfig", "build_config", "load_config"]
