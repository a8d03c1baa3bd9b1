import os

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application configuration loaded from environment variables."""

    # --- Server ---
    port: int = 8080
    workers: int = 1  # Session state is process-local
    graceful_shutdown_timeout: int = 30

    # --- File Limits ---
    max_file_size_mb: int = 32
    max_file_size_bytes: int = 0  # Computed in model_post_init

    # --- Dimension Planning ---
    max_dimension: int = 2048
    min_dimension: int = 100

    # --- Format Selection ---
    probe_max_width: int = 800
    probe_max_height: int = 600
    probe_quality: float = 0.8
    dominance_ratio: float = 0.8

    # --- Quality Search ---
    initial_quality: float = 0.95
    coarse_threshold: float = 0.02
    coarse_max_iterations: int = 15
    refine_threshold: float = 0.01
    refine_max_iterations: int = 20
    refine_min_quality: float = 0.1

    # --- Session Defaults ---
    default_target_ratio: float = 0.3
    default_target_floor_kb: int = 10
    min_target_kb: int = 5
    default_quality_hint: float = 0.8
    progress_interval_ms: int = 300
    progress_cap: int = 85
    tolerance_ratio: float = 0.15

    # --- Concurrency ---
    compression_semaphore_size: int = 0  # 0 = use CPU count
    max_queue_depth: int = 0  # 0 = 2 * CPU count

    # --- CORS ---
    allowed_origins: str = "*"

    # --- Logging ---
    log_level: str = "ERROR"

    model_config = {"env_prefix": "", "case_sensitive": False}

    def model_post_init(self, __context) -> None:
        if self.max_file_size_bytes == 0:
            self.max_file_size_bytes = self.max_file_size_mb * 1024 * 1024
        if self.compression_semaphore_size == 0:
            self.compression_semaphore_size = os.cpu_count() or 4
        if self.max_queue_depth == 0:
            self.max_queue_depth = 2 * self.compression_semaphore_size


settings = Settings()
