# fleet_engine/templates/worker.py
"""Worker container templates - Dockerfile, compose file and .env."""

from typing import Any, Dict, Mapping

import yaml
from jinja2 import Environment, StrictUndefined


_env = Environment(undefined=StrictUndefined, keep_trailing_newline=True)


DOCKERFILE_TEMPLATE = _env.from_string("""\
FROM {{ python_image }}

WORKDIR /app

# Install system dependencies
RUN apt-get update && apt-get install -y \\
    gdal-bin \\
    libgdal-dev \\
    python3-gdal \\
    git \\
    && rm -rf /var/lib/apt/lists/*

# Set GDAL environment
ENV CPLUS_INCLUDE_PATH=/usr/include/gdal
ENV C_INCLUDE_PATH=/usr/include/gdal

# Copy requirements and install
COPY requirements.txt .
RUN pip install --no-cache-dir -r requirements.txt

# Copy application code
COPY . .

# Create output directories
RUN mkdir -p /app/output /app/result

CMD {{ command | tojson }}
""")


ENV_TEMPLATE = _env.from_string("""\
# Worker Configuration - Auto-generated ({{ node_name }}, bundle {{ version }})
RABBITMQ_HOST={{ master_address }}
RABBITMQ_PORT={{ broker_port }}
RABBITMQ_USER={{ credentials.rabbitmq_user }}
RABBITMQ_PASSWORD={{ credentials.rabbitmq_password }}

REDIS_HOST={{ master_address }}
REDIS_PORT={{ redis_port }}
REDIS_PASSWORD={{ credentials.redis_password }}

AWS_S3_ENDPOINT=http://{{ master_address }}:{{ s3_port }}
AWS_ACCESS_KEY_ID={{ credentials.aws_access_key_id }}
AWS_SECRET_ACCESS_KEY={{ credentials.aws_secret_access_key }}
S3_BUCKET={{ s3_bucket }}
""")


def render_dockerfile(python_image: str, command: str) -> str:
    return DOCKERFILE_TEMPLATE.render(python_image=python_image, command=command.split())


def build_compose_spec(
    service: str,
    memory_limit: str,
    restart_policy: str,
    credential_file: str = "service-account-key.json",
) -> Dict[str, Any]:
    """Compose spec: resource limit, restart policy, named output volumes."""
    return {
        "version": "3.8",
        "services": {
            service: {
                "build": {"context": ".", "dockerfile": "Dockerfile"},
                "env_file": ".env",
                "volumes": [
                    f"./{credential_file}:/app/{credential_file}:ro",
                    "./models:/app/models:ro",
                    "worker_output:/app/output",
                    "worker_result:/app/result",
                ],
                "restart": restart_policy,
                "deploy": {"resources": {"limits": {"memory": memory_limit}}},
            }
        },
        "volumes": {"worker_output": None, "worker_result": None},
    }


def render_compose(spec: Mapping[str, Any]) -> str:
    return yaml.safe_dump(dict(spec), sort_keys=False, default_flow_style=False)


def render_env(**values) -> str:
    return ENV_TEMPLATE.render(**values)
