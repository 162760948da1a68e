# fleet_engine/deployer/bundle.py
"""Deployment bundle - everything pushed to a worker in one deploy run."""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, Optional, Sequence, Tuple

from fleet_engine.core.errors import MissingPrerequisite
from fleet_engine.infrastructure.config import FleetSettings, WorkerCredentials
from fleet_engine.templates import build_compose_spec, render_compose, render_dockerfile, render_env

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DeploymentBundle:
    """
    Immutable for the duration of one deploy run; rebuilt every run.

    Node-specific pieces (the .env and the credential choice) are derived
    from the bundle per node and never stored back into it.
    """
    version: str
    source_dir: Path
    models_dir: Optional[Path]
    remote_dir: str
    excludes: Tuple[str, ...]
    env: Dict[str, object]
    credential_pool: Tuple[Path, ...]
    default_credential: Path
    credential_target: str
    dockerfile: str
    compose: str
    compose_service: str

    def render_env(self, node_name: str) -> str:
        return render_env(node_name=node_name, version=self.version, **self.env)


def discover_credentials(source_dir: Path, patterns: Sequence[str]) -> Tuple[Path, ...]:
    """Credential files in source_dir matching any pattern, sorted, de-duplicated."""
    found = set()
    for pattern in patterns:
        found.update(p for p in source_dir.glob(pattern) if p.is_file())
    return tuple(sorted(found))


def select_credential(node_index: int, credential_pool: Sequence[Path], default: Path) -> Path:
    """
    Rotate through the pool by node index: pool[i mod k].

    An empty pool falls back to the default credential with a warning.
    """
    if not credential_pool:
        logger.warning(f"⚠️  No service account keys found, using single key {default}")
        return default
    return credential_pool[node_index % len(credential_pool)]


def assemble_bundle(
    settings: FleetSettings,
    credentials: WorkerCredentials,
    master_address: str,
    version: Optional[str] = None,
) -> DeploymentBundle:
    """
    Build the bundle for this run.

    Raises:
        MissingPrerequisite: bundle source directory does not exist
    """
    source_dir = settings.bundle_source_dir
    if not source_dir.is_dir():
        raise MissingPrerequisite(f"Bundle source directory not found: {source_dir}")

    models_dir = source_dir / "models"
    pool = discover_credentials(source_dir, settings.credential_patterns)
    logger.info(f"Found {len(pool)} service account key(s)")

    compose_spec = build_compose_spec(
        service=settings.compose_service,
        memory_limit=settings.container_memory_limit,
        restart_policy=settings.restart_policy,
        credential_file=settings.default_credential,
    )

    return DeploymentBundle(
        version=version or settings.bundle_version or datetime.now(timezone.utc).strftime("%Y%m%d%H%M%S"),
        source_dir=source_dir,
        models_dir=models_dir if models_dir.is_dir() else None,
        remote_dir=settings.remote_dir,
        excludes=tuple(settings.sync_excludes),
        env={
            "master_address": master_address,
            "broker_port": settings.broker_port,
            "redis_port": settings.redis_port,
            "s3_port": settings.s3_port,
            "s3_bucket": settings.s3_bucket,
            "credentials": credentials,
        },
        credential_pool=pool,
        default_credential=source_dir / settings.default_credential,
        credential_target=settings.default_credential,
        dockerfile=render_dockerfile(settings.python_image, settings.worker_command),
        compose=render_compose(compose_spec),
        compose_service=settings.compose_service,
    )
