# fleet_engine/templates/cloud_init.py
"""Cloud-init NoCloud seed templates for worker VMs."""

from jinja2 import Environment, StrictUndefined


_env = Environment(undefined=StrictUndefined, keep_trailing_newline=True)


USER_DATA_TEMPLATE = _env.from_string("""\
#cloud-config
hostname: {{ user }}
manage_etc_hosts: true

users:
  - name: {{ user }}
    sudo: ALL=(ALL) NOPASSWD:ALL
    shell: /bin/bash
    ssh_authorized_keys:
      - {{ ssh_public_key }}

packages:
{%- for package in packages %}
  - {{ package }}
{%- endfor %}

runcmd:
  - systemctl enable docker
  - systemctl start docker
  - usermod -aG docker {{ user }}
  - echo "VM setup complete" > /var/log/vm-setup-complete

final_message: "Cloud-init finished. System ready."
""")


META_DATA_TEMPLATE = _env.from_string("""\
instance-id: {{ name }}
local-hostname: {{ name }}
""")


WORKER_PACKAGES = ("docker.io", "docker-compose", "python3-pip", "git")


def render_user_data(user: str, ssh_public_key: str, packages=WORKER_PACKAGES) -> str:
    return USER_DATA_TEMPLATE.render(
        user=user,
        ssh_public_key=ssh_public_key.strip(),
        packages=packages,
    )


def render_meta_data(name: str) -> str:
    return META_DATA_TEMPLATE.render(name=name)
