from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import Optional, List, Dict
from pydantic import field_validator
import os

class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=True,
        extra="ignore",
    )

    # Database
    DATABASE_URL: str = "sqlite:///./softvuln.db"
    DATABASE_POOL_SIZE: int = 20
    DATABASE_MAX_OVERFLOW: int = 30

    # Application
    DEBUG: bool = False
    LOG_LEVEL: str = "INFO"
    LOG_FILE: Optional[str] = None
    APP_NAME: str = "SOFTVULN"

    # NVD JSON 1.1 yearly feeds
    NVD_FEED_BASE_URL: str = "https://nvd.nist.gov/feeds/json/cve/1.1/"
    NVD_FEED_START_YEAR: int = 2002
    NVD_FEED_DIR: str = "./cache/nvd"

    # Performance settings
    HTTP_TIMEOUT_SECONDS: int = 300
    FEED_SYNC_MAX_CONCURRENCY: int = 4
    RECONCILE_MAX_WORKERS: int = 10

    # Data retention settings
    VULNERABILITY_RETENTION_HOURS: int = 2

    # Explicit per-product exclusions, keyed "vendor:product"
    CVE_EXCLUSIONS: Dict[str, List[str]] = {}

    @field_validator('NVD_FEED_DIR')
    @classmethod
    def validate_feed_dir(cls, v):
        """Ensure feed directory exists"""
        if v:
            os.makedirs(v, exist_ok=True)
        return v

    @field_validator('LOG_LEVEL')
    @classmethod
    def validate_log_level(cls, v):
        """Ensure log level is valid"""
        valid_levels = ['DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL']
        if v.upper() not in valid_levels:
            raise ValueError(f'Log level must be one of: {valid_levels}')
        return v.upper()

    @field_validator('FEED_SYNC_MAX_CONCURRENCY', 'RECONCILE_MAX_WORKERS')
    @classmethod
    def validate_concurrency(cls, v):
        """Ensure worker counts are positive"""
        if v < 1:
            raise ValueError('Concurrency limits must be at least 1')
        return v

    @field_validator('CVE_EXCLUSIONS')
    @classmethod
    def normalize_exclusions(cls, v):
        """Lower-case product keys, upper-case CVE IDs"""
        normalized = {}
        for key, cves in (v or {}).items():
            if key.count(':') != 1:
                raise ValueError(f'Exclusion key must be "vendor:product", got {key!r}')
            normalized[key.lower()] = sorted({cve.strip().upper() for cve in cves if cve.strip()})
        return normalized

# Global settings instance
settings = Settings()

# Helper functions for common configuration tasks

def get_feed_dir_path(filename: str = "") -> str:
    """Get full path for a cached NVD feed file"""
    feed_dir = os.path.abspath(settings.NVD_FEED_DIR)
    return os.path.join(feed_dir, filename) if filename else feed_dir

def get_database_config() -> dict:
    """Get database configuration for SQLAlchemy"""
    config = {
        'url': settings.DATABASE_URL,
        'pool_pre_ping': True,
        'echo': settings.DEBUG
    }

    # SQLite engines use a single-connection pool
    if not settings.DATABASE_URL.startswith('sqlite'):
        config['pool_size'] = settings.DATABASE_POOL_SIZE
        config['max_overflow'] = settings.DATABASE_MAX_OVERFLOW
        config['pool_recycle'] = 3600

    return config

def get_http_client_config() -> dict:
    """Get HTTP client configuration"""
    return {
        'timeout': settings.HTTP_TIMEOUT_SECONDS,
        'follow_redirects': True,
        'headers': {
            'User-Agent': f'{settings.APP_NAME}/1.0'
        }
    }

def get_exclusions() -> Dict[str, frozenset]:
    """Get configured CVE exclusions as frozensets"""
    return {key: frozenset(cves) for key, cves in settings.CVE_EXCLUSIONS.items()}

# Validation helpers
def validate_environment() -> list:
    """Validate environment configuration and return any issues"""
    issues = []

    if not settings.DATABASE_URL:
        issues.append("DATABASE_URL must be configured")

    try:
        os.makedirs(settings.NVD_FEED_DIR, exist_ok=True)
    except OSError as e:
        issues.append(f"Cannot create feed directory: {e}")

    if settings.VULNERABILITY_RETENTION_HOURS <= 0:
        issues.append("VULNERABILITY_RETENTION_HOURS should be positive; every row would be retired")

    if not settings.NVD_FEED_BASE_URL.endswith('/'):
        issues.append("NVD_FEED_BASE_URL should end with '/'")

    return issues

# Environment-specific configurations
class DevelopmentSettings(Settings):
    """Development environment settings"""
    DEBUG: bool = True
    LOG_LEVEL: str = "DEBUG"

class ProductionSettings(Settings):
    """Production environment settings"""
    DEBUG: bool = False
    LOG_LEVEL: str = "INFO"
    DATABASE_POOL_SIZE: int = 50
    DATABASE_MAX_OVERFLOW: int = 50

class TestingSettings(Settings):
    """Testing environment settings"""
    DEBUG: bool = True
    LOG_LEVEL: str = "WARNING"  # Reduce noise in tests
    DATABASE_URL: str = "sqlite:///./test.db"
    NVD_FEED_DIR: str = "./test_cache/nvd"
    RECONCILE_MAX_WORKERS: int = 2

# Factory function to get environment-specific settings
def get_settings(environment: str = None) -> Settings:
    """Get settings based on environment"""
    if environment is None:
        environment = os.getenv('ENVIRONMENT', 'development').lower()

    settings_map = {
        'development': DevelopmentSettings,
        'production': ProductionSettings,
        'testing': TestingSettings
    }

    settings_class = settings_map.get(environment, Settings)
    return settings_class()

__all__ = [
    'Settings',
    'settings',
    'get_feed_dir_path',
    'get_database_config',
    'get_http_client_config',
    'get_exclusions',
    'validate_environment',
    'get_settings',
    'DevelopmentSettings',
    'ProductionSettings',
    'TestingSettings'
]
