import base64
import logging
import textwrap
from dataclasses import dataclass
from pathlib import Path

import jinja2

from runner_pool.errors import ConfigInvalid
from runner_pool.models import OS_DARWIN, OS_WINDOWS


logger = logging.getLogger(__name__)

CERT_FILES = ("ca-cert.pem", "server-cert.pem", "server-key.pem")
LINUX_CERT_DIR = "/tmp/certs"
WINDOWS_CERT_DIR = "C:/Program Files/lite-engine"


@dataclass(frozen=True)
class BootstrapParams:
    platform: str
    arch: str
    lite_engine_path: str
    public_key: str = ""
    certificate_folder: str = ""


def _read_certificates(folder: str) -> dict[str, str]:
    if not folder:
        return {}
    certs: dict[str, str] = {}
    for name in CERT_FILES:
        path = Path(folder) / name
        try:
            certs[name] = base64.b64encode(path.read_bytes()).decode("ascii")
        except OSError as exc:
            logger.warning("bootstrap certificate unreadable path=%s error=%s", path, exc)
    return certs


def _write_files_section(certs: dict[str, str], target_dir: str) -> str:
    if not certs:
        return ""
    lines = ["write_files:"]
    for name, content in certs.items():
        lines.append(f"- path: {target_dir}/{name}")
        lines.append("  permissions: '0600'")
        lines.append("  encoding: b64")
        lines.append(f"  content: {content}")
    return "\n".join(lines) + "\n"


def _engine_arch(arch: str) -> str:
    return "arm64" if arch == "arm64" else "amd64"


def linux(params: BootstrapParams) -> str:
    certs = _read_certificates(params.certificate_folder)
    engine_url = f"{params.lite_engine_path.rstrip('/')}/lite-engine-linux-{_engine_arch(params.arch)}"
    ssh_keys = ""
    if params.public_key:
        ssh_keys = f"  ssh-authorized-keys:\n  - {params.public_key.strip()}\n"
    return (
        textwrap.dedent(
            """\
            #cloud-config
            system_info:
              default_user: ~
            users:
            - default
            - name: root
              sudo: ALL=(ALL) NOPASSWD:ALL
              groups: sudo
            """
        )
        + ssh_keys
        + textwrap.dedent(
            """\
            packages:
            - docker.io
            - wget
            """
        )
        + _write_files_section(certs, LINUX_CERT_DIR)
        + textwrap.dedent(
            f"""\
            runcmd:
            - 'wget "{engine_url}" -O /usr/bin/lite-engine'
            - 'chmod 755 /usr/bin/lite-engine'
            - 'touch /root/.env'
            - '/usr/bin/lite-engine server --env-file /root/.env > /var/log/lite-engine.log 2>&1 &'
            """
        )
    )


def darwin(params: BootstrapParams) -> str:
    certs = _read_certificates(params.certificate_folder)
    engine_url = f"{params.lite_engine_path.rstrip('/')}/lite-engine-darwin-{_engine_arch(params.arch)}"
    cert_lines = "".join(
        f"echo '{content}' | base64 --decode > {LINUX_CERT_DIR}/{name}\n"
        for name, content in certs.items()
    )
    return (
        textwrap.dedent(
            f"""\
            #!/usr/bin/env bash
            set -eu
            mkdir -p {LINUX_CERT_DIR}
            """
        )
        + cert_lines
        + textwrap.dedent(
            f"""\
            curl -fsSL "{engine_url}" -o /usr/local/bin/lite-engine
            chmod 755 /usr/local/bin/lite-engine
            touch "$HOME/.env"
            nohup /usr/local/bin/lite-engine server --env-file "$HOME/.env" > /var/log/lite-engine.log 2>&1 &
            """
        )
    )


def windows(params: BootstrapParams) -> str:
    certs = _read_certificates(params.certificate_folder)
    engine_url = f"{params.lite_engine_path.rstrip('/')}/lite-engine.exe"
    cert_lines = "".join(
        f'[IO.File]::WriteAllBytes("{WINDOWS_CERT_DIR}/{name}", '
        f'[Convert]::FromBase64String("{content}"))\n'
        for name, content in certs.items()
    )
    authorized_key = ""
    if params.public_key:
        authorized_key = (
            f'"{params.public_key.strip()}" | '
            "Set-Content C:\\ProgramData\\ssh\\administrators_authorized_keys\n"
        )
    return (
        textwrap.dedent(
            f"""\
            <powershell>
            Set-ExecutionPolicy Bypass -Scope Process -Force
            Add-WindowsCapability -Online -Name OpenSSH.Server~~~~0.0.1.0
            Set-Service -Name sshd -StartupType Automatic
            Start-Service sshd
            mkdir "{WINDOWS_CERT_DIR}"
            """
        )
        + authorized_key
        + cert_lines
        + textwrap.dedent(
            f"""\
            Invoke-WebRequest -Uri "{engine_url}" -OutFile "{WINDOWS_CERT_DIR}/lite-engine.exe"
            New-NetFirewallRule -DisplayName "ALLOW TCP PORT 9079" -Direction inbound -Profile Any -Action Allow -LocalPort 9079 -Protocol TCP
            Start-Process -FilePath "{WINDOWS_CERT_DIR}/lite-engine.exe" -ArgumentList "server" -WindowStyle Hidden
            </powershell>
            """
        )
    )


def default_user_data(params: BootstrapParams) -> str:
    if params.platform == OS_WINDOWS:
        return windows(params)
    if params.platform == OS_DARWIN:
        return darwin(params)
    return linux(params)


def custom(template_text: str, params: BootstrapParams) -> str:
    try:
        template = jinja2.Template(template_text, undefined=jinja2.StrictUndefined)
        return template.render(
            platform=params.platform,
            arch=params.arch,
            lite_engine_path=params.lite_engine_path,
            public_key=params.public_key,
            certificates=_read_certificates(params.certificate_folder),
        )
    except jinja2.TemplateError as exc:
        raise ConfigInvalid(f"failed to render init script template: {exc}") from exc
