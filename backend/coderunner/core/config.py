from pydantic import AliasChoices, Field
from pydantic_settings import BaseSettings, SettingsConfigDict
from functools import lru_cache


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    APP_NAME: str = "Code Runner"
    WS_PATH: str = "/code-runner"
    HOST: str = "0.0.0.0"
    PORT: int = 24650

    # Client side
    SOCKET_BASE_URL: str = Field(
        default="ws://localhost:24650",
        validation_alias=AliasChoices(
            "CODE_RUNNER_SOCKET_URL", "NEXT_PUBLIC_API_BASE_SOCKET_URL", "SOCKET_BASE_URL"
        ),
    )
    CONNECT_TIMEOUT_S: float = 10.0
    CLIENT_HEARTBEAT_INTERVAL_S: float = 30.0
    RUN_TIMEOUT_HINT_MS: int = 30000
    STOP_COOLDOWN_S: float = 1.0

    # Server limits
    MAX_CONCURRENT_EXECUTIONS: int = 10
    MAX_QUEUE_SIZE: int = 100
    MAX_RUNS_PER_CONNECTION: int = 50
    EXECUTION_TIMEOUT_S: float = 60.0
    MAX_ITERATIONS: int = 1000
    MAX_OUTPUT_LINES: int = 2000
    MAX_MESSAGE_BYTES: int = 1024 * 1024
    SERVER_HEARTBEAT_INTERVAL_S: float = 30.0
    CLEANUP_INTERVAL_S: float = 60.0
    COMPILE_TIMEOUT_S: float = 30.0
    SYNTAX_CHECK_TIMEOUT_S: float = 5.0
    STOP_GRACE_S: float = 2.0

    # Toolchain binaries
    PYTHON_BIN: str = "python3"
    NODE_BIN: str = "node"
    CC_BIN: str = "gcc"
    CXX_BIN: str = "g++"
    JAVA_BIN: str = "java"
    JAVAC_BIN: str = "javac"

    # Redis run history
    RUN_HISTORY_ENABLED: bool = False
    REDIS_URL: str = "redis://localhost:6379/0"
    RUN_HISTORY_STREAM: str = "runs:history"
    RUN_HISTORY_MAXLEN: int = 1000


@lru_cache
def get_settings() -> Settings:
    return Settings()
