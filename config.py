# config.py
import os
import yaml
from typing import List, Optional
from pydantic import BaseModel, Field, field_validator

DEFAULT_CONFIG_PATH = "lab_pipeline.yaml"


class DatabaseConfig(BaseModel):
    url: str = "sqlite:///labflow.db"
    echo: bool = False


class ClassifierConfig(BaseModel):
    command: List[str] = Field(default_factory=lambda: ["python", "rba/script.py"])
    timeout_seconds: float = 30
    max_concurrency: int = 4

    @field_validator("max_concurrency")
    @classmethod
    def validate_concurrency(cls, v):
        if v < 1:
            raise ValueError("max_concurrency must be at least 1")
        return v

    @field_validator("command")
    @classmethod
    def validate_command(cls, v):
        if not v:
            raise ValueError("classifier command cannot be empty")
        return v


class TextGenerationConfig(BaseModel):
    base_url: str = "https://generativelanguage.googleapis.com/v1beta"
    model: str = "gemini-2.0-flash"
    api_key_env: str = "GEMINI_API_KEY"
    timeout_seconds: float = 60
    max_output_tokens: int = 256
    temperature: float = 0.3


class CatalogItemConfig(BaseModel):
    id: int
    name: str
    unit: str = ""
    demographic_field: Optional[str] = None


class CatalogPanelConfig(BaseModel):
    id: int
    name: str
    items: List[int]


class CatalogConfig(BaseModel):
    items: List[CatalogItemConfig] = Field(default_factory=list)
    panels: List[CatalogPanelConfig] = Field(default_factory=list)


class LoggingConfig(BaseModel):
    level: str = "INFO"


class PipelineConfig(BaseModel):
    database: DatabaseConfig = Field(default_factory=DatabaseConfig)
    classifier: ClassifierConfig = Field(default_factory=ClassifierConfig)
    text_generation: TextGenerationConfig = Field(default_factory=TextGenerationConfig)
    catalog: CatalogConfig = Field(default_factory=CatalogConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)


def load_yaml(path):
    with open(path) as f:
        return yaml.safe_load(f) or {}


def load_config(path: Optional[str] = None) -> PipelineConfig:
    """
    Load pipeline settings from YAML.
    LABFLOW_CONFIG picks the file, LABFLOW_DATABASE_URL overrides the database.
    """
    path = path or os.environ.get("LABFLOW_CONFIG", DEFAULT_CONFIG_PATH)
    config = PipelineConfig.model_validate(load_yaml(path))
    database_url = os.environ.get("LABFLOW_DATABASE_URL")
    if database_url:
        config.database.url = database_url
    return config
