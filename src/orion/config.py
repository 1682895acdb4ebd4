"""Application configuration contract."""

from functools import lru_cache

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    app_env: str = Field(alias="APP_ENV", default="dev")
    log_level: str = Field(alias="LOG_LEVEL", default="INFO")

    primary_provider: str = Field(alias="PRIMARY_PROVIDER", default="anthropic")
    anthropic_api_key: str = Field(alias="ANTHROPIC_API_KEY", default="")
    anthropic_base_url: str = Field(
        alias="ANTHROPIC_BASE_URL", default="https://api.anthropic.com"
    )
    anthropic_model: str = Field(alias="ANTHROPIC_MODEL", default="claude-sonnet-4-5")
    anthropic_version: str = Field(alias="ANTHROPIC_VERSION", default="2023-06-01")
    openai_base_url: str = Field(alias="OPENAI_BASE_URL", default="http://localhost:30000/v1")
    openai_api_key: str = Field(alias="OPENAI_API_KEY", default="")
    openai_model: str = Field(alias="OPENAI_MODEL", default="openai/gpt-oss-120b")
    provider_timeout_seconds: int = Field(alias="PROVIDER_TIMEOUT_SECONDS", default=120)
    provider_primary_cooldown_seconds: float = Field(
        alias="PROVIDER_PRIMARY_COOLDOWN_SECONDS", default=30.0
    )
    model_max_tokens: int = Field(alias="MODEL_MAX_TOKENS", default=4096)
    model_temperature: float = Field(alias="MODEL_TEMPERATURE", default=0.7)

    tool_servers_config: str = Field(alias="TOOL_SERVERS_CONFIG", default=".orion/config.yaml")
    tool_connect_timeout_seconds: float = Field(alias="TOOL_CONNECT_TIMEOUT_SECONDS", default=5.0)
    tool_call_timeout_seconds: float = Field(alias="TOOL_CALL_TIMEOUT_SECONDS", default=30.0)
    tool_max_attempts: int = Field(alias="TOOL_MAX_ATTEMPTS", default=3)
    tool_retry_base_delay_seconds: float = Field(
        alias="TOOL_RETRY_BASE_DELAY_SECONDS", default=1.0
    )
    tool_failure_threshold: int = Field(alias="TOOL_FAILURE_THRESHOLD", default=3)
    tool_health_cooldown_seconds: float = Field(alias="TOOL_HEALTH_COOLDOWN_SECONDS", default=60.0)
    tool_health_max_servers: int = Field(alias="TOOL_HEALTH_MAX_SERVERS", default=256)
    tool_discovery_ttl_seconds: int = Field(alias="TOOL_DISCOVERY_TTL_SECONDS", default=300)

    context_budget_tokens: int = Field(alias="CONTEXT_BUDGET_TOKENS", default=100000)
    compaction_threshold: float = Field(alias="COMPACTION_THRESHOLD", default=0.8)
    compaction_keep_last_n: int = Field(alias="COMPACTION_KEEP_LAST_N", default=6)
    compaction_max_summary_tokens: int = Field(alias="COMPACTION_MAX_SUMMARY_TOKENS", default=1024)
    compaction_timeout_seconds: float = Field(alias="COMPACTION_TIMEOUT_SECONDS", default=20.0)

    loop_max_iterations: int = Field(alias="LOOP_MAX_ITERATIONS", default=10)
    loop_max_seconds: float = Field(alias="LOOP_MAX_SECONDS", default=240.0)

    research_task_timeout_seconds: float = Field(
        alias="RESEARCH_TASK_TIMEOUT_SECONDS", default=60.0
    )
    research_max_iterations: int = Field(alias="RESEARCH_MAX_ITERATIONS", default=3)
    research_relevance_threshold: float = Field(alias="RESEARCH_RELEVANCE_THRESHOLD", default=0.3)
    research_max_findings: int = Field(alias="RESEARCH_MAX_FINDINGS", default=12)
    research_low_quality_threshold: float = Field(
        alias="RESEARCH_LOW_QUALITY_THRESHOLD", default=0.5
    )

    memory_dir: str = Field(alias="MEMORY_DIR", default=".orion/memory")
    knowledge_dir: str = Field(alias="KNOWLEDGE_DIR", default=".orion/knowledge")
    knowledge_max_files: int = Field(alias="KNOWLEDGE_MAX_FILES", default=200)
    knowledge_max_file_bytes: int = Field(alias="KNOWLEDGE_MAX_FILE_BYTES", default=262144)
    knowledge_max_depth: int = Field(alias="KNOWLEDGE_MAX_DEPTH", default=4)


def validate_settings_for_env(settings: Settings) -> None:
    invalid: list[str] = []
    if not 0 < settings.compaction_threshold <= 1:
        invalid.append("COMPACTION_THRESHOLD(must be in (0, 1])")
    if settings.compaction_keep_last_n < 0:
        invalid.append("COMPACTION_KEEP_LAST_N(must be >= 0)")
    if not 0 <= settings.research_relevance_threshold <= 1:
        invalid.append("RESEARCH_RELEVANCE_THRESHOLD(must be in [0, 1])")
    positive = {
        "TOOL_CONNECT_TIMEOUT_SECONDS": settings.tool_connect_timeout_seconds,
        "TOOL_CALL_TIMEOUT_SECONDS": settings.tool_call_timeout_seconds,
        "TOOL_MAX_ATTEMPTS": settings.tool_max_attempts,
        "TOOL_FAILURE_THRESHOLD": settings.tool_failure_threshold,
        "LOOP_MAX_ITERATIONS": settings.loop_max_iterations,
        "LOOP_MAX_SECONDS": settings.loop_max_seconds,
        "COMPACTION_TIMEOUT_SECONDS": settings.compaction_timeout_seconds,
        "RESEARCH_TASK_TIMEOUT_SECONDS": settings.research_task_timeout_seconds,
    }
    for key, value in positive.items():
        if value <= 0:
            invalid.append(f"{key}(must be > 0)")
    if settings.primary_provider.strip().lower() not in {"anthropic", "openai"}:
        invalid.append("PRIMARY_PROVIDER(anthropic|openai)")

    if invalid:
        raise ValueError(f"invalid configuration: {', '.join(invalid)}")

    if settings.app_env != "prod":
        return

    missing: list[str] = []
    required_non_empty = {
        "ANTHROPIC_MODEL": settings.anthropic_model,
        "OPENAI_BASE_URL": settings.openai_base_url,
        "OPENAI_MODEL": settings.openai_model,
        "TOOL_SERVERS_CONFIG": settings.tool_servers_config,
        "MEMORY_DIR": settings.memory_dir,
    }
    if settings.primary_provider.strip().lower() == "anthropic":
        required_non_empty["ANTHROPIC_API_KEY"] = settings.anthropic_api_key
    for key, value in required_non_empty.items():
        if not value.strip():
            missing.append(key)
    if not settings.memory_dir.startswith("/"):
        missing.append("MEMORY_DIR(absolute path required)")

    if missing:
        keys = ", ".join(sorted(set(missing)))
        raise ValueError(f"invalid production configuration: {keys}")


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
