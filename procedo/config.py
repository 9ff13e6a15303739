import os
from functools import lru_cache
from pathlib import Path
from typing import Dict, Optional

from pydantic import BaseModel

KEYS_FILE = "keys.txt"

# keys.txt / environment name -> Settings field
ENV_FIELDS = {
    "OPENAI_API_KEY": "openai_api_key",
    "PROCEDO_ANALYSIS_MODEL": "analysis_model",
    "PROCEDO_HISTORY_MODEL": "history_model",
    "PROCEDO_ANALYSIS_MAX_TOKENS": "analysis_max_tokens",
    "PROCEDO_HISTORY_MAX_TOKENS": "history_max_tokens",
    "DATABASE_URL": "database_url",
    "PROCEDO_UPLOADS_DIR": "uploads_dir",
    "PROCEDO_MAX_CASE_FILE_MB": "max_case_file_mb",
    "PROCEDO_MAX_HISTORY_FILE_MB": "max_history_file_mb",
}


class Settings(BaseModel):
    openai_api_key: Optional[str] = None
    analysis_model: str = "gpt-4o"
    history_model: str = "gpt-4o-mini"
    analysis_max_tokens: int = 12000
    history_max_tokens: int = 4096
    database_url: str = "sqlite:///procedo.db"
    uploads_dir: str = "uploads"
    max_case_file_mb: int = 10
    max_history_file_mb: int = 5
    case_text_limit: int = 50000
    history_text_limit: int = 100000

    @property
    def max_case_file_bytes(self) -> int:
        return self.max_case_file_mb * 1024 * 1024

    @property
    def max_history_file_bytes(self) -> int:
        return self.max_history_file_mb * 1024 * 1024


def read_keys_file(keys_path: Path) -> Dict[str, str]:
    """Parse KEY=VALUE lines, ignoring blanks and # comments"""
    values: Dict[str, str] = {}
    for line in keys_path.read_text().splitlines():
        line = line.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        key, value = line.split("=", 1)
        values[key.strip()] = value.strip()
    return values


def load_settings(keys_path: str = KEYS_FILE) -> Settings:
    """
    Build settings from keys.txt, then let the environment override.

    A missing key file or OPENAI_API_KEY is only a warning: the OpenAI client
    is created on first use, so the API can still serve stored results.
    """
    raw: Dict[str, str] = {}

    path = Path(keys_path)
    if path.exists():
        raw.update(read_keys_file(path))
    else:
        print(f"Warning: {keys_path} file not found, using environment only")

    for env_name in ENV_FIELDS:
        if os.environ.get(env_name):
            raw[env_name] = os.environ[env_name]

    values = {ENV_FIELDS[k]: v for k, v in raw.items() if k in ENV_FIELDS}
    settings = Settings(**values)

    if not settings.openai_api_key:
        print("Warning: OPENAI_API_KEY not found in keys.txt or environment")

    return settings


@lru_cache()
def get_settings() -> Settings:
    return load_settings()
