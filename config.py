"""
Configuration management for the Entitlement Registry.

This module provides centralized configuration with validation using Pydantic.
All configuration values are loaded from environment variables with sensible defaults.
"""

from typing import Optional, Literal
from croniter import croniter
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class DatabaseConfig(BaseSettings):
    """Database connection and pool configuration."""

    model_config = SettingsConfigDict(env_prefix='DB_', case_sensitive=False)

    host: str = Field(default='localhost', description='Database host')
    port: int = Field(default=5432, description='Database port')
    name: str = Field(default='entitlement_registry', alias='POSTGRES_DB', description='Database name')
    user: str = Field(default='entitlement_user', alias='POSTGRES_USER', description='Database user')
    password: str = Field(default='entitlement_password', alias='POSTGRES_PASSWORD', description='Database password')

    # Connection pool settings
    pool_size: int = Field(default=10, description='Connection pool size')
    run_migrations: bool = Field(default=False, description='Apply pending migrations on startup')

    @property
    def connection_string(self) -> str:
        """Generate PostgreSQL connection string."""
        return f"postgresql://{self.user}:{self.password}@{self.host}:{self.port}/{self.name}"


class AzureConfig(BaseSettings):
    """
    Azure AD (Microsoft Graph) application credentials.

    Uses the MSAL client-credentials flow, so a client secret is
    required before the directory client can be constructed.
    """
    model_config = SettingsConfigDict(env_prefix='AZURE_', case_sensitive=False)

    client_id: str = Field(default='', description='Azure App Client ID')
    client_secret: str = Field(default='', description='Azure App Client Secret')
    tenant_id: str = Field(default='common', description='Azure Tenant ID')
    graph_base_url: str = Field(
        default='https://graph.microsoft.com/v1.0',
        description='Microsoft Graph base URL'
    )
    request_timeout: int = Field(default=30, description='Graph request timeout in seconds')


class AdminUserSyncConfig(BaseSettings):
    """Scheduled admin user sync from the role editor group."""

    model_config = SettingsConfigDict(env_prefix='SYNC_ADMIN_USERS_', case_sensitive=False)

    enabled: bool = Field(default=True, description='Enable scheduled admin user sync')
    cron_schedule: str = Field(default='0 * * * *', description='Cron schedule (UTC)')


class LockConfig(BaseSettings):
    """Distributed lock configuration."""

    model_config = SettingsConfigDict(env_prefix='LOCK_', case_sensitive=False)

    timeout_minutes: int = Field(default=30, description='Default lease duration in minutes')
    sweep_enabled: bool = Field(default=True, description='Periodically purge expired locks')
    sweep_cron_schedule: str = Field(default='*/15 * * * *', description='Expired lock sweep schedule')

    @field_validator('timeout_minutes')
    @classmethod
    def validate_timeout(cls, v: int) -> int:
        """Validate lease duration is positive."""
        if v <= 0:
            raise ValueError('Lock timeout must be positive')
        return v

    @field_validator('sweep_cron_schedule')
    @classmethod
    def validate_cron(cls, v: str) -> str:
        """Validate the sweep schedule is a cron expression."""
        if not croniter.is_valid(v):
            raise ValueError(f'Invalid cron expression: {v}')
        return v


class APIConfig(BaseSettings):
    """API server configuration."""

    model_config = SettingsConfigDict(env_prefix='API_', case_sensitive=False)

    host: str = Field(default='0.0.0.0', description='API host')
    port: int = Field(default=3004, description='API port')
    log_level: Literal['debug', 'info', 'warning', 'error', 'critical'] = Field(
        default='info',
        description='Logging level'
    )
    cors_origins: list[str] = Field(
        default=['*'],
        description='CORS allowed origins'
    )


class AppConfig(BaseSettings):
    """Main application configuration."""

    model_config = SettingsConfigDict(
        env_file='.env',
        env_file_encoding='utf-8',
        case_sensitive=False,
        extra='ignore'
    )

    # Environment
    environment: Literal['development', 'test', 'production'] = Field(
        default='development',
        description='Application environment'
    )
    service_name: str = Field(default='entitlement-registry', description='Service name')

    # Sub-configurations
    database: DatabaseConfig = Field(default_factory=DatabaseConfig)
    azure: AzureConfig = Field(default_factory=AzureConfig)
    admin_user_sync: AdminUserSyncConfig = Field(default_factory=AdminUserSyncConfig)
    lock: LockConfig = Field(default_factory=LockConfig)
    api: APIConfig = Field(default_factory=APIConfig)

    # Directory groups
    role_editor_group_id: str = Field(
        default='',
        description='AD security group whose members are synced as admins'
    )
    migration_source_group_id: str = Field(
        default='',
        description='AD group bulk-imported by the user migration endpoint'
    )

    @classmethod
    def load(cls) -> 'AppConfig':
        """Load configuration from environment."""
        return cls(
            database=DatabaseConfig(),
            azure=AzureConfig(),
            admin_user_sync=AdminUserSyncConfig(),
            lock=LockConfig(),
            api=APIConfig(),
        )

    def is_production(self) -> bool:
        """Check if running in production."""
        return self.environment == 'production'


# Global configuration instance
_config: Optional[AppConfig] = None


def get_config() -> AppConfig:
    """Get or create global configuration instance."""
    global _config
    if _config is None:
        _config = AppConfig.load()
    return _config


def reload_config() -> AppConfig:
    """Reload configuration from environment."""
    global _config
    _config = AppConfig.load()
    return _config
