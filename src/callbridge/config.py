"""
Configuration management for the grounded voice assistant.

Loads environment variables and provides a strongly-typed configuration object.
Validates required keys at startup.
"""

import os
from dataclasses import dataclass
from functools import lru_cache
from urllib.parse import urlparse

from dotenv import load_dotenv
import structlog

load_dotenv()

logger = structlog.get_logger(__name__)


DEFAULT_INSTRUCTIONS = (
    "You are an AI assistant for a cement company that helps people find information "
    "about products, clients, invoices, and regions.\n"
    "You have access to a database with information about cement products, client details, "
    "invoice data, and region information.\n"
    "When asked about specific products, clients, invoices, or regions, you will provide "
    "accurate information based on the database.\n"
    "Always be helpful, courteous, and precise with information from the database."
)

DEFAULT_GREETING = (
    "Bonjour et bienvenue chez notre service d'assistance pour les produits ciments. "
    "Je suis votre assistant virtuel. Comment puis-je vous aider aujourd'hui?"
)


class ConfigError(Exception):
    """Raised when configuration is invalid or missing."""
    pass


@dataclass(frozen=True)
class Config:
    """Strongly-typed configuration object."""

    # Server
    callback_uri: str
    port: int = 8080
    log_level: str = "INFO"

    # Azure Communication Services (call automation)
    acs_connection_string: str = ""

    # Azure OpenAI
    azure_openai_endpoint: str = ""
    azure_openai_key: str = ""
    azure_openai_realtime_deployment: str = ""
    azure_openai_chat_deployment: str = "gpt-4o"
    azure_openai_api_version: str = "2024-10-01-preview"

    # Realtime session
    realtime_voice: str = "shimmer"
    realtime_transcription_model: str = "whisper-1"
    realtime_instructions: str = DEFAULT_INSTRUCTIONS
    greeting_message: str = DEFAULT_GREETING

    # SQL Server
    sql_server: str = ""
    sql_database: str = ""
    sql_user: str = ""
    sql_password: str = ""
    sql_driver: str = "ODBC Driver 18 for SQL Server"
    database_url_override: str = ""
    db_pool_max: int = 10
    db_pool_idle_seconds: int = 30
    db_timeout_seconds: int = 30
    db_max_attempts: int = 3
    db_backoff_base_seconds: float = 1.0

    # Retrieval
    context_history_size: int = 10
    context_prompt_turns: int = 3
    summary_sample_rows: int = 10
    allow_write_queries: bool = True

    # Media socket lifecycle
    ws_setup_timeout_seconds: float = 5.0
    ws_ping_interval_seconds: float = 30.0
    shutdown_grace_seconds: int = 10

    @property
    def base_url(self) -> str:
        """Get the base HTTP URL used for webhook callbacks."""
        return self.callback_uri.rstrip("/")

    @property
    def ws_url(self) -> str:
        """Get the WebSocket base URL for media streaming."""
        parsed = urlparse(self.base_url)
        scheme = "ws" if parsed.scheme == "http" else "wss"
        return f"{scheme}://{parsed.netloc}{parsed.path}"

    @property
    def realtime_url(self) -> str:
        """Get the Azure OpenAI Realtime websocket URL."""
        parsed = urlparse(self.azure_openai_endpoint.strip())
        host = parsed.netloc or parsed.path.strip("/")
        return (
            f"wss://{host}/openai/realtime"
            f"?api-version={self.azure_openai_api_version}"
            f"&deployment={self.azure_openai_realtime_deployment}"
        )

    @property
    def database_url(self) -> str:
        """SQLAlchemy URL for the relational store."""
        if self.database_url_override:
            return self.database_url_override

        from sqlalchemy.engine import URL

        url = URL.create(
            "mssql+aioodbc",
            username=self.sql_user or None,
            password=self.sql_password or None,
            host=self.sql_server or None,
            database=self.sql_database or None,
            query={
                "driver": self.sql_driver,
                "Encrypt": "yes",
                "TrustServerCertificate": "no",
                "APP": "CallAutomation-AzOpenAI-Voice",
            },
        )
        return url.render_as_string(hide_password=False)

    def validate(self) -> None:
        """Validate that all required configuration is present."""
        missing = []

        if not self.acs_connection_string:
            missing.append("CONNECTION_STRING")
        if not self.callback_uri:
            missing.append("CALLBACK_URI")

        if missing:
            raise ConfigError(
                f"Missing required environment variables: {', '.join(missing)}\n"
                "Please check your .env file."
            )

        degraded = []
        if not (self.azure_openai_endpoint and self.azure_openai_key):
            degraded.append("AZURE_OPENAI_SERVICE_ENDPOINT/AZURE_OPENAI_SERVICE_KEY")
        if not self.azure_openai_realtime_deployment:
            degraded.append("AZURE_OPENAI_DEPLOYMENT_MODEL_NAME")
        if not self.database_url_override and not (self.sql_server and self.sql_database):
            degraded.append("SQL_SERVER/SQL_DATABASE")
        if degraded:
            logger.warning("Optional configuration missing", missing=degraded)

    def log_config(self) -> None:
        """Log configuration (without secrets)."""
        logger.info(
            "Configuration loaded",
            callback_uri=self.callback_uri,
            port=self.port,
            log_level=self.log_level,
            acs_connection_set=bool(self.acs_connection_string),
            azure_openai_endpoint=self.azure_openai_endpoint or "NOT SET",
            azure_openai_key_set=bool(self.azure_openai_key),
            realtime_deployment=self.azure_openai_realtime_deployment or "NOT SET",
            chat_deployment=self.azure_openai_chat_deployment,
            realtime_voice=self.realtime_voice,
            sql_server=self.sql_server or "NOT SET",
            sql_database=self.sql_database or "NOT SET",
            db_pool_max=self.db_pool_max,
            db_max_attempts=self.db_max_attempts,
            context_history_size=self.context_history_size,
            allow_write_queries=self.allow_write_queries,
        )


def _get_bool(key: str, default: bool = False) -> bool:
    """Get a boolean from environment variable."""
    value = os.getenv(key, str(default)).lower()
    return value in ("true", "1", "yes", "on")


def _get_int(key: str, default: int) -> int:
    """Get an integer from environment variable."""
    try:
        return int(os.getenv(key, str(default)))
    except ValueError:
        return default


def _get_float(key: str, default: float) -> float:
    """Get a float from environment variable."""
    try:
        return float(os.getenv(key, str(default)))
    except ValueError:
        return default


@lru_cache(maxsize=1)
def get_config() -> Config:
    """
    Get the application configuration.

    Uses lru_cache to ensure we only load config once.
    """
    return Config(
        # Server
        callback_uri=os.getenv("CALLBACK_URI", ""),
        port=_get_int("PORT", 8080),
        log_level=os.getenv("LOG_LEVEL", "INFO").upper(),

        # ACS
        acs_connection_string=os.getenv("CONNECTION_STRING", ""),

        # Azure OpenAI
        azure_openai_endpoint=os.getenv("AZURE_OPENAI_SERVICE_ENDPOINT", ""),
        azure_openai_key=os.getenv("AZURE_OPENAI_SERVICE_KEY", ""),
        azure_openai_realtime_deployment=os.getenv("AZURE_OPENAI_DEPLOYMENT_MODEL_NAME", ""),
        azure_openai_chat_deployment=os.getenv("AZURE_OPENAI_DEPLOYMENT_MODEL_NAME2", "gpt-4o"),
        azure_openai_api_version=os.getenv("AZURE_OPENAI_API_VERSION", "2024-10-01-preview"),

        # Realtime session
        realtime_voice=os.getenv("REALTIME_VOICE", "shimmer"),
        realtime_transcription_model=os.getenv("REALTIME_TRANSCRIPTION_MODEL", "whisper-1"),
        realtime_instructions=os.getenv("REALTIME_INSTRUCTIONS", "").strip() or DEFAULT_INSTRUCTIONS,
        greeting_message=os.getenv("GREETING_MESSAGE", "").strip() or DEFAULT_GREETING,

        # SQL Server
        sql_server=os.getenv("SQL_SERVER", ""),
        sql_database=os.getenv("SQL_DATABASE", ""),
        sql_user=os.getenv("SQL_USER", ""),
        sql_password=os.getenv("SQL_PASSWORD", ""),
        sql_driver=os.getenv("SQL_DRIVER", "ODBC Driver 18 for SQL Server"),
        database_url_override=os.getenv("DATABASE_URL", ""),
        db_pool_max=_get_int("DB_POOL_MAX", 10),
        db_pool_idle_seconds=_get_int("DB_POOL_IDLE_SECONDS", 30),
        db_timeout_seconds=_get_int("DB_TIMEOUT_SECONDS", 30),
        db_max_attempts=_get_int("DB_MAX_ATTEMPTS", 3),
        db_backoff_base_seconds=_get_float("DB_BACKOFF_BASE_SECONDS", 1.0),

        # Retrieval
        context_history_size=_get_int("CONTEXT_HISTORY_SIZE", 10),
        context_prompt_turns=_get_int("CONTEXT_PROMPT_TURNS", 3),
        summary_sample_rows=_get_int("SUMMARY_SAMPLE_ROWS", 10),
        allow_write_queries=_get_bool("ALLOW_WRITE_QUERIES", True),

        # Media socket lifecycle
        ws_setup_timeout_seconds=_get_float("WS_SETUP_TIMEOUT_SECONDS", 5.0),
        ws_ping_interval_seconds=_get_float("WS_PING_INTERVAL_SECONDS", 30.0),
        shutdown_grace_seconds=_get_int("SHUTDOWN_GRACE_SECONDS", 10),
    )


def init_config() -> Config:
    """
    Initialize and validate configuration.

    Call this at application startup to fail fast if config is invalid.
    """
    config = get_config()
    config.validate()
    config.log_config()
    return config
