from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    # Service
    app_name: str = "agent-task-engine"
    debug: bool = False
    json_logs: bool = False

    # Orchestration
    step_timeout_seconds: float = 300.0
    stop_on_failure: bool = True  # Fail the task on the first failed step
    enforce_single_active_task: bool = True  # One active task per (session, type)

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8", "env_prefix": "TASK_ENGINE_"}


settings = Settings()
