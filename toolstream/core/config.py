from pydantic_settings import BaseSettings
from typing import Dict, Optional
from pathlib import Path


def parse_tool_timeouts(v: str) -> Dict[str, float]:
    """Parse per-tool timeouts from environment variable format: tool_a:30,tool_b:120"""
    if not v:
        return {}
    timeouts = {}
    for item in v.split(','):
        if ':' in item:
            name, seconds = item.strip().split(':')
            timeouts[name.strip()] = float(seconds.strip())
    return timeouts


class Settings(BaseSettings):
    """Application settings - all configurable via environment variables"""

    # ==========================================
    # Application
    # ==========================================
    APP_NAME: str = "ToolStream"
    ENVIRONMENT: str = "development"

    # ==========================================
    # Logging
    # ==========================================
    LOG_LEVEL: str = "INFO"
    LOG_FILE: str = ""  # Empty disables the rotating file handler

    # ==========================================
    # Claude API
    # ==========================================
    ANTHROPIC_API_KEY: str = ""
    ANTHROPIC_BASE_URL: str = ""  # Optional Messages-compatible endpoint (proxy or mock server)
    CLAUDE_MODEL: str = "claude-sonnet-4-20250514"
    CLAUDE_MAX_TOKENS: int = 16000
    CLAUDE_TEMPERATURE: float = 0.7

    # Claude API Timeout and Retry Settings
    CLAUDE_REQUEST_TIMEOUT: int = 300  # seconds
    CLAUDE_CONNECT_TIMEOUT: int = 60  # seconds
    CLAUDE_MAX_RETRIES: int = 3
    CLAUDE_RETRY_BASE_DELAY: float = 2.0  # seconds
    CLAUDE_RETRY_MAX_DELAY: float = 30.0  # seconds

    # ==========================================
    # Agent Loop
    # ==========================================
    AGENT_MAX_ITERATIONS: int = 10
    AGENT_RECOVERY_RETRY_BUDGET: int = 3  # Corrective turns per session, independent of iterations
    AGENT_MAX_CONCURRENT_SESSIONS: int = 4
    SESSION_HARD_TIMEOUT: int = 1800  # seconds
    SESSION_RESULTS_RETAINED: int = 1000  # Finished results kept by SessionRunner, oldest dropped first

    # ==========================================
    # Tool Execution
    # ==========================================
    TOOL_MAX_CONCURRENCY: int = 4  # Workers per session
    TOOL_DEFAULT_TIMEOUT: float = 60.0  # seconds
    TOOL_TIMEOUTS: str = ""  # Format: tool_name:seconds,tool_name:seconds

    # ==========================================
    # Streaming
    # ==========================================
    STREAM_MAX_BLOCKS: int = 256  # Highest accepted content block index (exclusive)

    # ==========================================
    # Progress Events
    # ==========================================
    PROGRESS_QUEUE_SIZE: int = 100
    PROGRESS_HISTORY_SIZE: int = 1000

    # ==========================================
    # Session Ledger
    # ==========================================
    LEDGER_BACKEND: str = "memory"  # memory | database
    DATABASE_URL: str = "sqlite+aiosqlite:///./toolstream.db"
    DB_ECHO: bool = False

    # ==========================================
    # Workspace & Deployment
    # ==========================================
    CONTENT_STORE_ROOT: str = "./workspace"
    DEPLOY_WEBHOOK_URL: str = ""
    DEPLOY_WEBHOOK_TIMEOUT: float = 10.0

    class Config:
        env_file = ".env"
        case_sensitive = True
        extra = "ignore"  # Ignore extra fields in .env that aren't defined in Settings

    @property
    def WORKSPACE_DIR(self) -> Path:
        return Path(self.CONTENT_STORE_ROOT)

    def get_tool_timeouts(self) -> Dict[str, float]:
        """Get per-tool timeout overrides"""
        return parse_tool_timeouts(self.TOOL_TIMEOUTS)

    def get_tool_timeout(self, tool_name: str, default: Optional[float] = None) -> float:
        """Timeout for one tool, falling back to the default"""
        return self.get_tool_timeouts().get(
            tool_name,
            default if default is not None else self.TOOL_DEFAULT_TIMEOUT
        )

    def is_production(self) -> bool:
        return self.ENVIRONMENT == "production"


# Create settings instance
settings = Settings()
