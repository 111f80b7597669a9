"""ConfigManager — builds the immutable DeployConfig for one deployment."""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from deploykit.errors import ConfigError

logger = logging.getLogger(__name__)

# Environment keys, the DeployConfig field they set, and their defaults
_CONFIG_KEYS: dict[str, dict[str, Any]] = {
    "ENVIRONMENT": {"field": "environment", "default": "production", "description": "Deployment environment (production, staging, development)"},
    "APP_NAME": {"field": "app_name", "default": "nextjs-app", "description": "Application name"},
    "DOCKER_REGISTRY": {"field": "docker_registry", "default": "ghcr.io", "description": "Image registry"},
    "GITHUB_SHA": {"field": "git_sha", "default": "local", "description": "Commit SHA used as image tag"},
    "COMPOSE_FILE": {"field": "compose_file", "default": "docker/docker-compose.yml", "description": "Compose file, relative to the project root"},
    "COMPOSE_COMMAND": {"field": "compose_command", "default": "docker-compose", "description": "Compose invocation"},
    "MAX_RETRIES": {"field": "max_retries", "default": "3", "description": "Attempts for registry pushes"},
    "MIGRATION_RETRIES": {"field": "migration_retries", "default": "5", "description": "Attempts for database migrations"},
    "MIGRATION_RETRY_DELAY": {"field": "migration_retry_delay", "default": "5", "description": "Seconds between migration attempts"},
    "MIGRATE_COMMAND": {"field": "migrate_command", "default": "npx prisma migrate deploy", "description": "Migration command run in the app service"},
    "APP_SCALE": {"field": "app_scale", "default": "3", "description": "Number of app replicas"},
    "HEALTH_CHECK_TIMEOUT": {"field": "health_check_timeout", "default": "300", "description": "Seconds to wait for readiness"},
    "HEALTH_POLL_INTERVAL": {"field": "health_poll_interval", "default": "10", "description": "Seconds between readiness rounds"},
    "APP_URL": {"field": "app_url", "default": "http://localhost:3000", "description": "Base URL of the deployed app"},
    "HEALTH_PATH": {"field": "health_path", "default": "/api/health", "description": "Health endpoint path"},
    "BACKUP_RETENTION_DAYS": {"field": "backup_retention_days", "default": "7", "description": "Days to keep backups"},
    "BACKUP_DATABASE": {"field": "backup_database", "default": "false", "description": "Include a pg_dump in backups"},
    "LOG_RETENTION_DAYS": {"field": "log_retention_days", "default": "30", "description": "Days to keep deployment logs"},
    "LOCK_FILE": {"field": "lock_file", "default": "", "description": "Deployment lock file (default /tmp/<app>_deploy.lock)"},
    "DOCKER_USERNAME": {"field": "docker_username", "default": "", "description": "Registry username (secret)"},
    "DOCKER_PASSWORD": {"field": "docker_password", "default": "", "description": "Registry password (secret)"},
    "SLACK_WEBHOOK_URL": {"field": "slack_webhook_url", "default": "", "description": "Slack webhook URL (secret)"},
    "ALERT_EMAIL": {"field": "alert_email", "default": "", "description": "Mail recipient for failed deployments"},
    "SMTP_HOST": {"field": "smtp_host", "default": "localhost", "description": "SMTP relay for mail alerts"},
    "POSTGRES_USER": {"field": "postgres_user", "default": "postgres", "description": "Database user for readiness checks"},
    "POSTGRES_DB": {"field": "postgres_db", "default": "postgres", "description": "Database name"},
    "REDIS_PASSWORD": {"field": "redis_password", "default": "", "description": "Redis password (secret)"},
    "DISK_THRESHOLD": {"field": "disk_threshold", "default": "90", "description": "Maximum disk usage percent"},
    "MEMORY_THRESHOLD": {"field": "memory_threshold", "default": "90", "description": "Maximum memory usage percent"},
    "DOMAIN": {"field": "domain", "default": "localhost", "description": "Domain for the SSL certificate check"},
    "LOG_LEVEL": {"field": "log_level", "default": "INFO", "description": "Logging level"},
}


class DeployConfig(BaseModel):
    """Everything a deployment needs, resolved once before it starts."""

    model_config = ConfigDict(frozen=True)

    root_dir: Path = Path(".")
    environment: str = "production"
    app_name: str = "nextjs-app"
    docker_registry: str = "ghcr.io"
    git_sha: str = "local"
    compose_file: str = "docker/docker-compose.yml"
    compose_command: str = "docker-compose"
    dockerfile: str = "docker/Dockerfile"
    dev_dockerfile: str = "docker/Dockerfile.dev"
    max_retries: int = Field(default=3, ge=1)
    migration_retries: int = Field(default=5, ge=1)
    migration_retry_delay: float = Field(default=5, ge=0)
    migrate_command: str = "npx prisma migrate deploy"
    app_service: str = "app"
    db_service: str = "db"
    redis_service: str = "redis"
    app_scale: int = Field(default=3, ge=1)
    health_check_timeout: float = Field(default=300, ge=0)
    health_poll_interval: float = Field(default=10, ge=0)
    app_url: str = "http://localhost:3000"
    health_path: str = "/api/health"
    smoke_endpoints: list[str] = Field(
        default_factory=lambda: ["/api/health", "/api/status", "/", "/api/users/me"]
    )
    backup_retention_days: float = Field(default=7, ge=0)
    backup_database: bool = False
    log_retention_days: float = Field(default=30, ge=0)
    lock_file: str = ""
    docker_username: str = ""
    docker_password: str = ""
    slack_webhook_url: str = ""
    alert_email: str = ""
    smtp_host: str = "localhost"
    postgres_user: str = "postgres"
    postgres_db: str = "postgres"
    redis_password: str = ""
    disk_threshold: float = Field(default=90, gt=0, le=100)
    memory_threshold: float = Field(default=90, gt=0, le=100)
    domain: str = "localhost"
    required_tools: list[str] = Field(default_factory=lambda: ["docker", "docker-compose"])
    log_level: str = "INFO"
    skip_backup: bool = False
    skip_tests: bool = False

    @field_validator("smoke_endpoints", "required_tools", mode="before")
    @classmethod
    def _split_list(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [item.strip() for item in value.split(",") if item.strip()]
        return value

    @property
    def logs_dir(self) -> Path:
        return self.root_dir / "logs"

    @property
    def backups_dir(self) -> Path:
        return self.root_dir / "backups"

    @property
    def history_db(self) -> Path:
        return self.logs_dir / "deploy_history.db"

    @property
    def lock_path(self) -> Path:
        return Path(self.lock_file or f"/tmp/{self.app_name}_deploy.lock")

    @property
    def app_volume(self) -> str:
        return f"{self.app_name}_data"

    @property
    def health_url(self) -> str:
        return f"{self.app_url.rstrip('/')}{self.health_path}"

    @property
    def is_production(self) -> bool:
        return self.environment == "production"

    def image_ref(self, tag: str) -> str:
        return f"{self.docker_registry}/{self.app_name}:{tag}"


class ConfigManager:
    """Resolve deployment configuration across files and environment."""

    def generate_env_template(self, project_path: str | Path) -> Path:
        """Create .env.example listing every configuration key.

        Returns the path to the generated file.
        """
        root = Path(project_path)
        env_path = root / ".env.example"

        lines = [
            "# Deployment configuration template",
            "# Copy to config/environment/.env.<environment>",
            "",
        ]
        for key, info in _CONFIG_KEYS.items():
            lines.append(f"# {info['description']}")
            lines.append(f"{key}={info['default']}")
            lines.append("")

        env_path.write_text("\n".join(lines), encoding="utf-8")
        return env_path

    def load_config(
        self,
        project_path: str | Path,
        environment: str | None = None,
        overrides: dict[str, Any] | None = None,
    ) -> DeployConfig:
        """Load merged config.

        Order: defaults -> config/environment/.env.<env> ->
        config/health-config.yml -> process environment -> *overrides*
        (DeployConfig field names, e.g. from CLI flags).

        Raises
        ------
        ConfigError
            If a value fails validation or a config file is malformed.
        """
        root = Path(project_path)
        values: dict[str, Any] = {}

        # 1. Defaults
        for info in _CONFIG_KEYS.values():
            values[info["field"]] = info["default"]

        env_name = environment or os.environ.get("ENVIRONMENT") or values["environment"]
        values["environment"] = env_name

        # 2. Environment file
        env_file = root / "config" / "environment" / f".env.{env_name}"
        if env_file.is_file():
            values.update(self._read_env_file(env_file))
            logger.info("Loaded environment config: %s", env_name)
        else:
            logger.warning("No environment config found for %s", env_name)

        # 3. Health config YAML
        health_file = root / "config" / "health-config.yml"
        if health_file.is_file():
            values.update(self._read_yaml(health_file))

        # 4. Environment variables
        for key, info in _CONFIG_KEYS.items():
            env_val = os.environ.get(key)
            if env_val is not None:
                values[info["field"]] = env_val

        # 5. Explicit overrides
        for field, value in (overrides or {}).items():
            if value is not None:
                values[field] = value

        values["environment"] = environment or values["environment"]
        values["root_dir"] = root
        try:
            return DeployConfig.model_validate(values)
        except ValidationError as exc:
            raise ConfigError(f"Invalid deployment configuration: {exc}") from exc

    # -- Sources ----------------------------------------------------------------

    def _read_env_file(self, path: Path) -> dict[str, str]:
        values: dict[str, str] = {}
        try:
            lines = path.read_text(encoding="utf-8").splitlines()
        except OSError as exc:
            raise ConfigError(f"Cannot read {path}: {exc}") from exc

        for line in lines:
            line = line.strip()
            if not line or line.startswith("#") or "=" not in line:
                continue
            if line.startswith("export "):
                line = line[len("export "):]
            k, v = line.split("=", 1)
            field = self._field_for(k.strip())
            if field is None:
                logger.debug("Ignoring unknown key %s in %s", k.strip(), path)
                continue
            values[field] = v.strip().strip("'\"")
        return values

    def _read_yaml(self, path: Path) -> dict[str, Any]:
        try:
            data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
        except (yaml.YAMLError, OSError) as exc:
            raise ConfigError(f"Cannot read {path}: {exc}") from exc
        if not isinstance(data, dict):
            raise ConfigError(f"{path} must contain a mapping")

        values: dict[str, Any] = {}
        for k, v in data.items():
            field = self._field_for(str(k))
            if field is not None:
                values[field] = v
        return values

    @staticmethod
    def _field_for(key: str) -> str | None:
        if key in _CONFIG_KEYS:
            return _CONFIG_KEYS[key]["field"]
        lowered = key.lower()
        if lowered in DeployConfig.model_fields:
            return lowered
        return None
