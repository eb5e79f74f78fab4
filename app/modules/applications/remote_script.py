"""
Shell scripts sent to instances over SSM Run Command.

Scripts are assembled with ``ShellScript`` so every interpolated value is
quoted in one place and the output can be checked without an instance.
"""
import re
import shlex
from typing import Dict, List, Optional

ENV_NAME_PATTERN = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")
CONTAINER_NAME_PATTERN = re.compile(r"[^a-zA-Z0-9_-]")


def container_name_for(image: str) -> str:
    """``registry/ns/name:tag`` -> ``name-app``"""
    name = image.rsplit("/", 1)[-1].split("@", 1)[0].split(":", 1)[0]
    return CONTAINER_NAME_PATTERN.sub("", f"{name}-app") or "app"


class ShellScript:
    def __init__(self, strict: bool = False):
        self._lines: List[str] = ["#!/bin/bash"]
        if strict:
            self._lines.append("set -e")

    def raw(self, command: str) -> "ShellScript":
        self._lines.append(command)
        return self

    def run(self, *argv: str, allow_failure: bool = False, fallback: Optional[str] = None) -> "ShellScript":
        """Append one command with each argument quoted"""
        command = " ".join(shlex.quote(str(a)) for a in argv)
        if fallback is not None:
            command = f"{command} || {fallback}"
        elif allow_failure:
            command = f"{command} 2>/dev/null || true"
        self._lines.append(command)
        return self

    def echo(self, message: str) -> "ShellScript":
        self._lines.append(f"echo {shlex.quote(message)}")
        return self

    def comment(self, text: str) -> "ShellScript":
        self._lines.append(f"# {text}")
        return self

    def blank(self) -> "ShellScript":
        self._lines.append("")
        return self

    @property
    def commands(self) -> List[str]:
        return list(self._lines)

    def render(self) -> str:
        return "\n".join(self._lines) + "\n"


def _ensure_docker(script: ShellScript) -> None:
    script.comment("Install Docker if needed")
    script.raw("if ! command -v docker >/dev/null 2>&1; then")
    script.raw('    echo "Installing Docker..."')
    script.raw("    if command -v apt-get >/dev/null 2>&1; then")
    script.raw("        export DEBIAN_FRONTEND=noninteractive")
    script.raw("        sudo apt-get update -y")
    script.raw("        sudo apt-get install -y docker.io")
    script.raw("        sudo systemctl enable docker")
    script.raw("    elif command -v yum >/dev/null 2>&1; then")
    script.raw("        sudo yum install -y docker")
    script.raw("    fi")
    script.raw("fi")
    script.raw("sudo systemctl start docker 2>/dev/null || sudo service docker start")


def deploy_script(
    image: str,
    container_name: str,
    port: int,
    environment: Optional[Dict[str, str]] = None,
    registry: Optional[str] = None,
    region: Optional[str] = None
) -> ShellScript:
    """
    Replace the running container with a fresh one from image.

    When ``registry`` is an ECR host the instance logs in with its own role
    before pulling.
    """
    port = int(port)
    script = ShellScript(strict=True)
    script.echo("=== Docker Deployment Started ===")
    script.echo(f"Image: {image}")
    script.echo(f"Port: {port}")
    script.echo(f"Container: {container_name}")
    script.blank()
    _ensure_docker(script)
    script.blank()

    if registry and region:
        script.comment("Registry login")
        script.raw(
            f"aws ecr get-login-password --region {shlex.quote(region)} | "
            f"sudo docker login --username AWS --password-stdin {shlex.quote(registry)}"
        )
        script.blank()

    script.comment("Replace existing container")
    script.run("sudo", "docker", "stop", container_name, allow_failure=True)
    script.run("sudo", "docker", "rm", container_name, allow_failure=True)
    script.blank()

    script.echo(f"Pulling image: {image}")
    script.run("sudo", "docker", "pull", image)

    run_args = [
        "sudo", "docker", "run", "-d",
        "--name", container_name,
        "--restart", "unless-stopped",
        "-p", f"{port}:{port}",
        "-e", f"PORT={port}",
    ]
    for key, value in (environment or {}).items():
        if not ENV_NAME_PATTERN.match(key):
            raise ValueError(f"Invalid environment variable name: {key}")
        run_args.extend(["-e", f"{key}={value}"])
    run_args.append(image)
    script.echo(f"Starting container: {container_name} with port {port}:{port}")
    script.run(*run_args)
    script.blank()

    script.comment("Verify")
    script.raw("sleep 5")
    script.raw(f"if sudo docker ps --filter name={shlex.quote(container_name)} --format '{{{{.Names}}}}' | grep -qx {shlex.quote(container_name)}; then")
    script.raw(f"    echo {shlex.quote(f'SUCCESS: Container running on port {port}')}")
    script.raw("else")
    script.raw('    echo "ERROR: Container failed to start"')
    script.raw(f"    sudo docker logs --tail 50 {shlex.quote(container_name)}")
    script.raw("    exit 1")
    script.raw("fi")
    return script


def container_control_script(action: str, container_name: str) -> ShellScript:
    if action not in ("start", "stop"):
        raise ValueError(f"Unsupported container action: {action}")
    script = ShellScript(strict=True)
    script.run("sudo", "docker", action, container_name)
    script.echo(f"Container {'started' if action == 'start' else 'stopped'}")
    return script


def diagnostic_script(instance_id: str, container_name: str, port: int) -> ShellScript:
    """Read-only report on the Docker service, container and port"""
    port = int(port)
    name = shlex.quote(container_name)
    script = ShellScript()
    script.echo("=== DIAGNOSTIC REPORT ===")
    script.raw('echo "Timestamp: $(date)"')
    script.echo(f"Instance ID: {instance_id}")
    script.echo(f"Container: {container_name}")
    script.echo(f"Port: {port}")
    script.blank()
    script.echo("1. DOCKER SERVICE STATUS:")
    script.raw("sudo systemctl status docker --no-pager || sudo service docker status")
    script.echo("2. CONTAINER STATUS:")
    script.raw(f"sudo docker ps -a --filter name={name}")
    script.echo("3. CONTAINER LOGS (last 20 lines):")
    script.raw(f'sudo docker logs --tail 20 {name} 2>&1 || echo "No logs available"')
    script.echo("4. PORT LISTENING CHECK:")
    script.raw(f"(sudo ss -tlnp 2>/dev/null || sudo netstat -tlnp) | grep :{port} || echo {shlex.quote(f'Port {port} not listening')}")
    script.echo("5. CONTAINER PORT MAPPING:")
    script.raw(f'sudo docker port {name} || echo "No port mappings"')
    script.echo("6. LOCAL CONNECTIVITY TEST:")
    script.raw(f"curl -s --connect-timeout 5 http://localhost:{port} | head -5 || echo {shlex.quote(f'Cannot connect to localhost:{port}')}")
    script.echo("7. CONTAINER PROCESS CHECK:")
    script.raw(f"sudo docker inspect {name} --format='{{{{.State.Status}}}}: {{{{.State.Running}}}}' || echo \"Container not found\"")
    script.echo("=== END DIAGNOSTIC REPORT ===")
    return script
