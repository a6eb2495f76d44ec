from pydantic_settings import BaseSettings
from pydantic import field_validator
from typing import Any, List
import tempfile
from pathlib import Path


PACKAGE_DIR = Path(__file__).resolve().parent.parent


def parse_image_list(v: Any) -> List[str]:
    """Parse an image list from a comma-separated string or list"""
    if isinstance(v, list):
        return v
    if isinstance(v, str):
        return [image.strip() for image in v.split(',') if image.strip()]
    return []


class Settings(BaseSettings):
    """Installer settings - all configurable via environment variables"""

    # ==========================================
    # Application
    # ==========================================
    APP_NAME: str = "nrinstall"
    ENVIRONMENT: str = "development"
    LICENSE_KEY: str = ""

    # Logging
    LOG_LEVEL: str = "INFO"
    LOG_FILE: str = "logs/nrinstall.log"

    # ==========================================
    # Docker daemon
    # ==========================================
    DOCKER_HOST: str = ""  # Empty means local socket (docker.from_env)
    DOCKER_TIMEOUT: int = 30
    DOCKER_TLS_ENABLED: bool = False
    DOCKER_TLS_CA_CERT: str = "certs/ca.pem"
    DOCKER_TLS_CLIENT_CERT: str = "certs/cert.pem"
    DOCKER_TLS_CLIENT_KEY: str = "certs/key.pem"
    DOCKER_TLS_VERIFY: bool = True

    # ==========================================
    # Container Pool - single source of truth for environment lifecycle
    # ==========================================
    CONTAINER_DEFAULT_IMAGE: str = "ubuntu:22.04"
    CONTAINER_POOL_SIZE: int = 5
    CONTAINER_WARM_IMAGES_STR: str = ""  # Comma-separated images to pre-warm on startup
    CONTAINER_MAX_AGE_SECONDS: int = 3600  # 1 hour - older environments are unhealthy
    CONTAINER_IDLE_TIMEOUT_SECONDS: int = 1800  # 30 minutes idle before eviction
    CONTAINER_EVICTION_INTERVAL_SECONDS: int = 900  # 15 minutes between sweeps
    CONTAINER_NETWORK_MODE: str = "bridge"  # Own network namespace, never "host"
    CONTAINER_MEMORY_LIMIT: str = "512m"
    CONTAINER_CPU_LIMIT: float = 1.0
    CONTAINER_HEALTH_PROBE_TIMEOUT: int = 10
    CONTAINER_STOP_TIMEOUT: int = 10

    # ==========================================
    # Script Execution
    # ==========================================
    EXECUTION_TIMEOUT_SECONDS: int = 300  # 5 minutes - single script run
    EXECUTION_SCRIPT_DIR: str = str(Path(tempfile.gettempdir()) / "nrinstall")
    EXECUTION_REMOTE_DIR: str = "/tmp/nrinstall"

    # ==========================================
    # Templates
    # ==========================================
    TEMPLATES_DIR: str = str(PACKAGE_DIR / "templates")
    TEMPLATE_CACHE_SIZE: int = 100
    SCRIPT_CACHE_SIZE: int = 100

    # ==========================================
    # Security Gate
    # ==========================================
    SHELLCHECK_ENABLED: bool = True
    SHELLCHECK_PATH: str = "shellcheck"
    SHELLCHECK_TIMEOUT: int = 30

    # ==========================================
    # Orchestration
    # ==========================================
    INSTALL_RETRIES: int = 0  # Install scripts are not assumed idempotent
    RETRY_BASE_DELAY: float = 1.0
    RETRY_MAX_DELAY: float = 30.0
    VERIFY_ENABLED: bool = True
    VERIFY_RETRY_COUNT: int = 3
    VERIFY_RETRY_DELAY: float = 5.0
    VERIFY_TIMEOUT: int = 60
    ROLLBACK_ON_ERROR: bool = True
    COLLECT_DIAGNOSTICS: bool = False
    INTEGRATIONS_CONFIG: str = ""  # Empty means the packaged integrations.yml
    MAX_INTEGRATION_NAME_LENGTH: int = 64
    CALLBACK_TIMEOUT: int = 10

    @field_validator('CONTAINER_POOL_SIZE', 'INSTALL_RETRIES', 'VERIFY_RETRY_COUNT')
    @classmethod
    def validate_non_negative(cls, v: int) -> int:
        if v < 0:
            raise ValueError("must not be negative")
        return v

    class Config:
        env_file = ".env"
        case_sensitive = True
        extra = "ignore"  # Ignore extra fields in .env that aren't defined in Settings

    @property
    def CONTAINER_WARM_IMAGES(self) -> List[str]:
        """Get images to pre-warm as a list"""
        return parse_image_list(self.CONTAINER_WARM_IMAGES_STR)

    @property
    def templates_path(self) -> Path:
        return Path(self.TEMPLATES_DIR)

    @property
    def script_dir(self) -> Path:
        return Path(self.EXECUTION_SCRIPT_DIR)

    @property
    def integrations_config_path(self) -> Path:
        if self.INTEGRATIONS_CONFIG:
            return Path(self.INTEGRATIONS_CONFIG)
        return PACKAGE_DIR / "config" / "integrations.yml"

    @property
    def is_production(self) -> bool:
        return self.ENVIRONMENT == "production"


# Create settings instance
settings = Settings()
