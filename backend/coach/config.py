from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    app_name: str = "Focus Coach API"
    gemini_api_key: str = ""
    # must support generateContent with function declarations; override via GEMINI_MODEL
    gemini_model: str = "gemini-2.5-pro"
    database_url: str = ""
    db_pool_min_size: int = 1
    db_pool_max_size: int = 10
    jwt_secret_key: str = ""
    jwt_algorithm: str = "HS256"
    log_level: str = "INFO"

    # Used when a user row has no timezone of its own.
    default_timezone: str = "UTC"
    # Size of the focus set for users who never picked one (allowed: 3, 4, 5).
    default_focus_goal_limit: int = 3

    max_agent_iterations: int = 10
    extraction_temperature: float = 0.0

    habit_window_days: int = 30
    # Above this many active habits an unscoped completion is matched against focus habits first.
    habit_focus_scope_threshold: int = 8
    # Empirical thresholds, tune against real habit titles before tightening.
    habit_match_min_coverage: float = 0.6
    habit_match_min_score: int = 5

    model_config = SettingsConfigDict(
        env_file=".env", env_file_encoding="utf-8", extra="ignore")


settings = Settings()
