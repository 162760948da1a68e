"""Provisioning and deployment templates."""

from .cloud_init import render_meta_data, render_user_data
from .worker import build_compose_spec, render_compose, render_dockerfile, render_env


__all__ = [
    "render_user_data",
    "render_meta_data",
    "build_compose_spec",
    "render_compose",
    "render_dockerfile",
    "render_env",
]
