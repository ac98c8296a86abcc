from pathlib import Path
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    data_path: Path = Path.home() / "StepDocuments"
    api_prefix: str = "/api/v1"
    host: str = "127.0.0.1"
    port: int = 8000
    # Bounded wait for the per-step rebuild lock before reporting a concurrent modification.
    lock_timeout_seconds: float = 5.0
    retry_after_seconds: int = 1
    # Which upload survives when one session holds several documents of the same type.
    dedup_policy: str = "keep_earliest"

    @property
    def db_path(self) -> Path:
        return self.data_path / "db.sqlite"

    model_config = {"env_prefix": "STEPDOCS_"}


settings = Settings()
