#fleet_engine\infrastructure\config.py

from functools import lru_cache
from pathlib import Path
from typing import Optional, Tuple

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from fleet_engine.core.models import Resources


class FleetSettings(BaseSettings):
    """Fleet configuration from environment variables (FLEET_*)."""

    model_config = SettingsConfigDict(
        env_prefix="FLEET_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    # Fleet shape
    num_workers: int = Field(default=3, ge=1)
    vm_cpus: int = Field(default=8, ge=1)
    vm_memory_mb: int = Field(default=16384, ge=256)
    vm_disk_gb: int = Field(default=50, ge=1)

    # Hypervisor
    images_dir: Path = Path("/var/lib/libvirt/images")
    base_image_name: str = "jammy-server-cloudimg-amd64.img"
    base_image_url: str = "https://cloud-images.ubuntu.com/jammy/current/jammy-server-cloudimg-amd64.img"
    base_image_sha256: Optional[str] = None
    os_variant: str = "ubuntu22.04"
    network: str = "default"
    use_sudo: bool = True
    hypervisor_timeout: int = 300
    download_timeout: int = 60

    # Provisioning
    config_dir: Path = Path("~/vm-configs")
    inventory_path: Path = Path("~/vm-configs/inventory.txt")
    ssh_key_path: Path = Path("~/.ssh/id_rsa")
    address_timeout: float = 90.0
    address_poll_interval: float = 30.0
    max_parallel: int = Field(default=4, ge=1)
    continue_on_failure: bool = True

    # Remote transport
    worker_user: str = "worker"
    ssh_connect_timeout: int = 10
    ssh_command_timeout: int = 600
    transfer_timeout: int = 1800
    ssh_options: Tuple[str, ...] = ("-oStrictHostKeyChecking=accept-new",)

    # Deployment bundle
    project_dir: Path = Path("~/Crop_Detection_and_Monitoring")
    bundle_dirname: str = "cdmap"
    remote_dir: str = "cdmap"
    bundle_version: Optional[str] = None
    sync_excludes: Tuple[str, ...] = ("__pycache__", "*.pyc", "output/*", "result/*")
    credential_patterns: Tuple[str, ...] = ("service-account-key*.json", "worker*.json")
    default_credential: str = "service-account-key.json"
    worker_env_file: Optional[Path] = None
    compose_service: str = "cdmap-worker"
    container_memory_limit: str = "14G"
    restart_policy: str = "unless-stopped"
    python_image: str = "python:3.10-slim"
    worker_command: str = "python main.py"
    build_timeout: int = 1800
    deploy_settle_seconds: float = 10.0

    # Control node (broker / cache / object store live here)
    master_address: Optional[str] = None
    broker_port: int = 5672
    redis_port: int = 6379
    s3_port: int = 9000
    s3_bucket: str = "data-bank"

    # Monitor
    monitor_interval: float = 5.0
    reachability_timeout: int = 2
    container_probe_timeout: int = 5
    container_name_filter: str = "cdmap"
    broker_api_url: str = "http://localhost:15672"
    broker_vhost: str = "/"
    broker_queue: str = "cdmap_national"
    broker_timeout: float = 5.0

    # History
    history_url: Optional[str] = None

    # Logging
    log_level: str = "INFO"

    @property
    def resources(self) -> Resources:
        return Resources(cpus=self.vm_cpus, memory_mb=self.vm_memory_mb, disk_gb=self.vm_disk_gb)

    @property
    def base_image_path(self) -> Path:
        return self.images_dir / self.base_image_name

    @property
    def resolved_inventory_path(self) -> Path:
        return self.inventory_path.expanduser()

    @property
    def resolved_config_dir(self) -> Path:
        return self.config_dir.expanduser()

    @property
    def bundle_source_dir(self) -> Path:
        return self.project_dir.expanduser() / self.bundle_dirname

    @property
    def resolved_worker_env_file(self) -> Path:
        if self.worker_env_file:
            return self.worker_env_file.expanduser()
        return self.project_dir.expanduser() / ".env"

    @property
    def database_url(self) -> str:
        if self.history_url:
            return self.history_url
        return f"sqlite:///{self.resolved_config_dir / 'fleet_history.db'}"


class WorkerCredentials(BaseSettings):
    """
    Service credentials handed to workers.

    Read from the project's own .env (RABBITMQ_USER, REDIS_PASSWORD, ...),
    not from FLEET_* variables.
    """

    model_config = SettingsConfigDict(
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    rabbitmq_user: str = "guest"
    rabbitmq_password: str = "guest"
    redis_password: str = ""
    aws_access_key_id: str = ""
    aws_secret_access_key: str = ""

    @classmethod
    def from_env_file(cls, path: Path) -> "WorkerCredentials":
        if path.exists():
            return cls(_env_file=path)
        return cls()


@lru_cache(1)
def get_settings() -> FleetSettings:
    return FleetSettings()
