"""Jinja2 templates for VM startup scripts and Kubernetes manifests."""

from __future__ import annotations

import shlex
from typing import Any

import yaml
from jinja2 import DictLoader, Environment, StrictUndefined

_DOCKER_RUN = (
    "docker run -d --network host"
    "{% if git_repository %} -e GIT_REPO={{ git_repository | shquote }}"
    " -e GIT_KEY={{ git_deploy_key | shquote }}{% endif %}"
    " {{ image }} {{ args }}"
)

_START_SCRIPT_RUN = _DOCKER_RUN.replace("{{ args }}", "bash -c {{ ('/root/res/start.sh ' ~ args) | shquote }}")

_FIREWALL = """\
{% for port in ports %}ufw allow {{ port }}/udp
ufw allow {{ port }}/tcp
{% endfor %}"""

_TEMPLATES = {
    # Plain container start, the public address is bound by the game itself.
    "docker_run": f"""\
#!/bin/bash
export LIGHTHOUSE_SERVER_ID={{{{ id }}}}

{_FIREWALL}
{_DOCKER_RUN}
""",
    # Source engine servers need +ip set to the droplet's public address.
    "docker_run_public_ip": f"""\
#!/bin/bash
export LIGHTHOUSE_SERVER_ID={{{{ id }}}}

{_FIREWALL}
IP=$(curl -s https://ipv4.icanhazip.com)
{_DOCKER_RUN} +ip "$IP"
""",
    # Images shipping their own entrypoint script that takes the game args.
    "start_script": f"""\
#!/bin/bash
export LIGHTHOUSE_SERVER_ID={{{{ id }}}}

{_FIREWALL}
{_START_SCRIPT_RUN}
""",
    "deployment": """\
apiVersion: apps/v1
kind: Deployment
metadata:
  name: {{ name }}
  labels:
    app: {{ app }}
    lighthouse/server-id: "{{ id }}"
spec:
  replicas: 1
  selector:
    matchLabels:
      app: {{ app }}
      lighthouse/server-id: "{{ id }}"
  template:
    metadata:
      labels:
        app: {{ app }}
        lighthouse/server-id: "{{ id }}"
    spec:
      hostNetwork: true
      nodeSelector:
        kubernetes.io/hostname: {{ hostname }}
      containers:
        - name: {{ app }}
          image: {{ image }}
          command: ["/bin/sh", "-c"]
          args: [{{ args | tojson }}]
{% if git_repository %}
          env:
            - name: GIT_REPO
              value: {{ git_repository | tojson }}
            - name: GIT_KEY
              value: {{ git_deploy_key | tojson }}
{% endif %}
""",
}

_env = Environment(
    loader=DictLoader(_TEMPLATES),
    undefined=StrictUndefined,
    autoescape=False,  # noqa: S701 - shell and YAML output, values are quoted explicitly
    keep_trailing_newline=True,
)
_env.filters["shquote"] = lambda value: shlex.quote(str(value))


def render_startup_script(template: str, **context: Any) -> str:  # noqa: ANN401
    """Render a VM user-data script.

    Expects ``id``, ``image``, ``args`` and ``ports``; git deploy fields
    default to empty.
    """
    context.setdefault("git_repository", "")
    context.setdefault("git_deploy_key", "")
    return _env.get_template(template).render(**context)


def render_deployment(**context: Any) -> dict[str, Any]:  # noqa: ANN401
    """Render the Kubernetes Deployment manifest as a dict ready for the API."""
    context.setdefault("git_repository", "")
    context.setdefault("git_deploy_key", "")
    return yaml.safe_load(_env.get_template("deployment").render(**context))
