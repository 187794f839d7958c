import logging
import logging.config
import os
from dataclasses import dataclass

from dotenv import load_dotenv

load_dotenv()


class HealthEndpointFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        message = record.getMessage()
        if "/health" in message:
            return " 200 " not in message
        return True


@dataclass(frozen=True)
class Settings:
    algod_address: str
    algod_token: str
    indexer_address: str
    indexer_token: str
    app_id: int
    service_mnemonic: str
    tx_timeout_rounds: int
    min_confirmations: int
    ledger_read_retries: int
    ledger_retry_base_delay: float
    database_url: str
    db_pool_min: int
    db_pool_max: int
    db_sslmode: str
    session_secret: str
    session_ttl_seconds: int
    admin_api_token: str
    wallet_challenge_ttl_seconds: int
    reconcile_interval_seconds: float
    store_url: str
    store_timeout_seconds: float
    verify_max_attempts: int
    verify_backoff_seconds: float
    signature_timeout_seconds: float
    attempt_store_path: str
    client_reconcile_interval_seconds: float
    log_level: str


def load_settings() -> Settings:
    return Settings(
        algod_address=os.getenv("ALGORAND_ALGOD_ADDRESS", ""),
        algod_token=os.getenv("ALGORAND_ALGOD_TOKEN", ""),
        indexer_address=os.getenv("ALGORAND_INDEXER_ADDRESS", ""),
        indexer_token=os.getenv("ALGORAND_INDEXER_TOKEN", ""),
        app_id=int(os.getenv("ALGORAND_APP_ID", "0")),
        service_mnemonic=os.getenv("ALGORAND_SERVICE_MNEMONIC", ""),
        tx_timeout_rounds=int(os.getenv("ALGORAND_TX_TIMEOUT_ROUNDS", "12")),
        min_confirmations=int(os.getenv("ALGORAND_MIN_CONFIRMATIONS", "0")),
        ledger_read_retries=int(os.getenv("LEDGER_READ_RETRIES", "3")),
        ledger_retry_base_delay=float(os.getenv("LEDGER_RETRY_BASE_DELAY", "0.5")),
        database_url=os.getenv("DATABASE_URL", ""),
        db_pool_min=int(os.getenv("DB_POOL_MIN", "1")),
        db_pool_max=int(os.getenv("DB_POOL_MAX", "10")),
        db_sslmode=os.getenv("DB_SSLMODE", "require"),
        session_secret=os.getenv("SESSION_SECRET", ""),
        session_ttl_seconds=int(os.getenv("SESSION_TTL_SECONDS", "3600")),
        admin_api_token=os.getenv("ADMIN_API_TOKEN", ""),
        wallet_challenge_ttl_seconds=int(os.getenv("WALLET_CHALLENGE_TTL_SECONDS", "300")),
        reconcile_interval_seconds=float(os.getenv("RECONCILE_INTERVAL_SECONDS", "300")),
        store_url=os.getenv("STORE_URL", "http://localhost:5000"),
        store_timeout_seconds=float(os.getenv("STORE_TIMEOUT_SECONDS", "10")),
        verify_max_attempts=int(os.getenv("VERIFY_MAX_ATTEMPTS", "5")),
        verify_backoff_seconds=float(os.getenv("VERIFY_BACKOFF_SECONDS", "1.0")),
        signature_timeout_seconds=float(os.getenv("SIGNATURE_TIMEOUT_SECONDS", "120")),
        attempt_store_path=os.getenv("ATTEMPT_STORE_PATH", os.path.expanduser("~/.chainballot/attempts.json")),
        client_reconcile_interval_seconds=float(os.getenv("CLIENT_RECONCILE_INTERVAL_SECONDS", "30")),
        log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
    )


def configure_logging(level: str = "INFO") -> None:
    logging.config.dictConfig(
        {
            "version": 1,
            "disable_existing_loggers": False,
            "filters": {
                "health_endpoint": {
                    "()": HealthEndpointFilter,
                },
            },
            "formatters": {
                "default": {
                    "format": "[{asctime}] {levelname} {name}: {message}",
                    "style": "{",
                },
            },
            "handlers": {
                "stderr": {
                    "class": "logging.StreamHandler",
                    "formatter": "default",
                    "filters": ["health_endpoint"],
                },
            },
            "root": {
                "handlers": ["stderr"],
                "level": level,
            },
        }
    )
