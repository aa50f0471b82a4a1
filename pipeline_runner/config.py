"""Service configuration loaded from environment variables."""

from pathlib import Path

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Central configuration – values are read from `.env` or the environment."""

    # LLM (any OpenAI-compatible endpoint)
    openai_base_url: str = "https://api.openai.com/v1"
    openai_api_key: str = "unused"
    llm_model: str = "gpt-4o"

    # Paths
    base_dir: Path = Path(__file__).resolve().parent.parent
    sqlite_path: Path = base_dir / "storage" / "sqlite" / "pipeline.db"

    # Message queue (Redis lists)
    redis_url: str = "redis://localhost:6379/0"
    run_queue: str = "pipeline-run"
    result_queue: str = "pipeline-result"
    queue_poll_timeout: int = 5  # seconds a blocking pop waits before re-polling
    worker_concurrency: int = 2  # runs processed at the same time
    start_worker: bool = True

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8", "extra": "ignore"}


settings = Settings()
