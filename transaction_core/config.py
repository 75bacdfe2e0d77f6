"""
Configuration Management Module

Provides centralized configuration using pydantic-settings for environment-based configuration.
"""

from pydantic_settings import BaseSettings


class TransactionCoreConfig(BaseSettings):
    """Transaction core service configuration"""
    
    # Storage configuration
    storage_backend: str = "sqlite"  # sqlite or memory
    sqlite_path: str = "transactions.db"
    
    # Account ledger service
    account_service_mode: str = "http"  # http, or local for an in-process ledger on the same storage
    account_service_url: str = "http://localhost:8081/api/v1"
    account_service_timeout: float = 2.0  # seconds, applies to connect/read/write
    account_service_max_attempts: int = 3
    account_service_backoff_seconds: float = 0.1
    account_service_backoff_max_seconds: float = 2.0
    account_service_api_key: str = ""
    
    # Balance guard (compare-and-swap retries)
    balance_guard_max_attempts: int = 5
    balance_guard_backoff_seconds: float = 0.01
    balance_guard_backoff_max_seconds: float = 0.25
    
    # API configuration
    api_host: str = "0.0.0.0"
    api_port: int = 8082
    default_page_size: int = 20
    max_page_size: int = 100
    
    # Logging configuration
    log_level: str = "INFO"
    log_format: str = "json"  # json or text
    
    # Read-through cache for transaction lookups
    cache_enabled: bool = True
    cache_ttl_seconds: int = 300  # 5 minutes default
    cache_max_entries: int = 1024
    
    class Config:
        env_prefix = "TXCORE_"
        env_file = ".env"
        case_sensitive = False


# Global configuration instance
config = TransactionCoreConfig()


def get_config() -> TransactionCoreConfig:
    """Get global configuration instance"""
    return config


def reload_config() -> TransactionCoreConfig:
    """Reload configuration from environment"""
    global config
    config = TransactionCoreConfig()
    return config
