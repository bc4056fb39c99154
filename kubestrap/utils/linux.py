import base64
import datetime
import hashlib
import os
import re
import shlex
import subprocess
import uuid
from typing import List, Optional, Union

from nornir.core.exceptions import NornirSubTaskError
from nornir.core.task import Task, Result
from nornir_scrapli.tasks import send_command

from kubestrap.core.models import SubTaskResult, JoinCredential

ADMIN_KUBECONFIG = "/etc/kubernetes/admin.conf"
KUBELET_KUBECONFIG = "/etc/kubernetes/kubelet.conf"

RC_MARKER = "__RC__="
RC_MARKER_RE = re.compile(r"__RC__=(\d+)\s*$")

# Interactive shells cut canonical input lines at 4096 bytes
WRITE_CHUNK_SIZE = 2048

SHELL_CHARS = ("|", "&&", "||", ">", "<", ";", "$", "*")


# --- CORE EXECUTION ---

def run_command(task: Task, cmd: str, sudo: bool = False, timeout: Optional[int] = None) -> Result:
    """
    Unified command dispatcher.
    Handles:
    1. Platform dispatch (Local vs Remote SSH)
    2. Sudo privilege escalation (Passwordless)
    3. Real exit status for remote commands (scrapli only sees the shell output)

    Returns:
        Result: A single Nornir Result object.
    """
    if sudo:
        cmd = f"sudo -n sh -c {shlex.quote(cmd)}"

    if task.host.platform == "linux_local":
        result = _run_local_subprocess(task, cmd, timeout=timeout)
    else:
        result = _run_remote_command(task, cmd, timeout=timeout)

    if result.failed and "a password is required" in str(result.result):
        user = task.host.username
        host = task.host.hostname
        return Result(
            host=task.host,
            failed=True,
            result=f"Sudo privileges missing for user '{user}' on '{host}' (NOPASSWD required)."
        )
    return result


def _run_remote_command(task: Task, cmd: str, timeout: Optional[int] = None) -> Result:
    """Runs a command over the scrapli SSH session and recovers its exit code."""
    kwargs = {"command": f"{cmd}; echo \"{RC_MARKER}$?\""}
    if timeout:
        kwargs["timeout_ops"] = timeout

    try:
        # task.run returns a MultiResult (list-like)
        multi_result = task.run(task=send_command, **kwargs)
    except NornirSubTaskError as e:
        return Result(host=task.host, failed=True, result=f"Transport error: {e.result[0].result}")

    output = multi_result[0].result or ""
    match = RC_MARKER_RE.search(output)
    if not match:
        return Result(host=task.host, failed=True, result=f"No exit status in output: {output[-200:]}")

    rc = int(match.group(1))
    output = output[:match.start()].rstrip("\n")

    return Result(
        host=task.host,
        result=output,
        failed=rc != 0,
        stdout=output,
        stderr=output if rc != 0 else "",
    )


def _run_local_subprocess(task: Task, command: str, timeout: Optional[int] = None) -> Result:
    """Internal helper for local execution."""
    use_shell = any(token in command for token in SHELL_CHARS)

    try:
        proc = subprocess.run(
            command if use_shell else shlex.split(command),
            shell=use_shell,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            universal_newlines=True,
            timeout=timeout,
        )
    except (OSError, subprocess.SubprocessError) as e:
        return Result(
            host=task.host,
            failed=True,
            result=f"Local execution exception: {str(e)}"
        )

    output = proc.stdout
    if proc.returncode != 0:
        output += f"\nError: {proc.stderr}"

    return Result(
        host=task.host,
        result=output,
        failed=proc.returncode != 0,
        stdout=proc.stdout,
        stderr=proc.stderr,
    )


# --- FILE OPERATIONS ---

def remote_file_exists(task: Task, path: str) -> bool:
    """Checks if a remote file exists (sudo, paths under /etc/kubernetes are root-only)."""
    return not run_command(task, f"test -f {path}", sudo=True).failed


def read_file(task: Task, path: str) -> str:
    """Reads a remote or local file and returns the content ('' if missing)."""
    if not remote_file_exists(task, path):
        return ""

    res = run_command(task, f"cat {path}", sudo=True)
    if res.failed:
        return ""
    return res.result


def _digest(content: str) -> str:
    # Shell transports drop trailing newlines, compare normalized content
    return hashlib.md5(content.strip().encode('utf-8')).hexdigest()


def write_file(
        task: Task,
        path: str,
        content: str,
        owner: str = "root:root",
        permissions: str = "644",
        sudo: bool = True
) -> Result:
    """
    Writes content to a remote file through base64 chunks and a sudo move.
    Skips the write when the content is unchanged.
    Includes automatic versioned backup.
    """
    # 1. Idempotency Check
    current_content = read_file(task, path)
    if current_content and _digest(current_content) == _digest(content):
        return Result(host=task.host, changed=False, result="File is up to date")

    # 2. Stage content in /tmp (base64 avoids any shell escaping issue)
    remote_temp_path = f"/tmp/kubestrap_{uuid.uuid4().hex}"
    b64_content = base64.b64encode(content.encode('utf-8')).decode('utf-8')

    run_command(task, f": > {remote_temp_path}.b64")
    for start in range(0, len(b64_content), WRITE_CHUNK_SIZE):
        chunk = b64_content[start:start + WRITE_CHUNK_SIZE]
        res_chunk = run_command(task, f"printf '%s' '{chunk}' >> {remote_temp_path}.b64")
        if res_chunk.failed:
            run_command(task, f"rm -f {remote_temp_path}.b64")
            return Result(host=task.host, failed=True, result=f"Upload failed: {res_chunk.result}")

    res_decode = run_command(task, f"base64 -d {remote_temp_path}.b64 > {remote_temp_path} && rm -f {remote_temp_path}.b64")
    if res_decode.failed:
        return Result(host=task.host, failed=True, result=f"Decode failed: {res_decode.result}")

    # 3. Backup
    if current_content:
        backup_dir = "/var/backups/kubestrap"
        safe_filename = path.replace("/", "_")
        timestamp = datetime.datetime.now().strftime("%Y%m%d_%H%M%S")
        backup_path = f"{backup_dir}/{safe_filename}.{timestamp}.bak"

        res_bkp = run_command(task, f"mkdir -p {backup_dir} && cp {path} {backup_path}", sudo=sudo)
        if res_bkp.failed:
            run_command(task, f"rm -f {remote_temp_path}")
            return Result(host=task.host, failed=True, result=f"Backup failed: {res_bkp.result}")

    # 4. Move to Destination
    res_mv = run_command(task, f"mkdir -p {os.path.dirname(path) or '/'} && mv {remote_temp_path} {path}", sudo=sudo)
    if res_mv.failed:
        run_command(task, f"rm -f {remote_temp_path}")
        return Result(host=task.host, failed=True, result=f"Move failed: {res_mv.result}")

    # 5. Permissions
    res_perm = run_command(task, f"chown {owner} {path} && chmod {permissions} {path}", sudo=sudo)
    if res_perm.failed:
        return Result(host=task.host, failed=True, result=f"Permissions failed: {res_perm.result}")

    return Result(host=task.host, changed=True, result="File updated (Backup saved)")


def remove_file(task: Task, path: str, sudo: bool = False) -> Result:
    return run_command(task, f"rm -f {path}", sudo=sudo)


# --- PACKAGE MANAGEMENT (APT) ---

def package_installed(task: Task, package: str) -> bool:
    """True when dpkg reports the package as fully installed."""
    name = package.split("=", 1)[0]
    res = run_command(task, f"dpkg-query -W -f='${{Status}}' {name}")
    return not res.failed and "install ok installed" in res.result


def apt_install(task: Task, packages: Union[str, List[str]], update: bool = True) -> Result:
    """
    Installs packages via apt-get.
    Packages already installed are left alone, so held packages never get upgraded.
    """
    if isinstance(packages, str):
        packages = packages.split()

    missing = [pkg for pkg in packages if not package_installed(task, pkg)]
    if not missing:
        return Result(host=task.host, changed=False, result="All packages already installed")

    if update:
        res_up = run_command(task, "apt-get update", sudo=True)
        if res_up.failed:
            return Result(host=task.host, failed=True, result=f"Apt update failed: {res_up.result}")

    cmd = f"DEBIAN_FRONTEND=noninteractive apt-get install -y {' '.join(missing)}"
    res = run_command(task, cmd, sudo=True)
    if res.failed:
        return res
    return Result(host=task.host, changed=True, result=f"Installed: {' '.join(missing)}")


def apt_hold(task: Task, packages: List[str]) -> Result:
    """Prevents automatic upgrades using apt-mark hold."""
    return run_command(task, f"apt-mark hold {' '.join(packages)}", sudo=True)


def add_apt_repository(
        task: Task,
        repo_name: str,
        repo_string: str,
        gpg_key_url: str,
        gpg_key_path: str,
) -> SubTaskResult:
    """Adds an APT repository and GPG key."""
    # 1. Prepare Keyring Dir
    keyring_dir = os.path.dirname(gpg_key_path)
    run_command(task, f"mkdir -p -m 755 {keyring_dir}", sudo=True)

    # 2. Download & Dearmor Key
    key_changed = False
    if not remote_file_exists(task, gpg_key_path):
        temp_key_path = f"/tmp/{repo_name}.gpg.asc"

        res_dl = run_command(task, f"curl -fsSL {gpg_key_url} -o {temp_key_path}")
        if res_dl.failed:
            return SubTaskResult(success=False, message=f"Failed to download GPG key from {gpg_key_url}")

        res_dearmor = run_command(task, f"gpg --batch --yes --dearmor -o {gpg_key_path} {temp_key_path}", sudo=True)
        run_command(task, f"rm -f {temp_key_path}")

        if res_dearmor.failed:
            return SubTaskResult(success=False, message="Failed to dearmor GPG key")

        run_command(task, f"chmod a+r {gpg_key_path}", sudo=True)
        key_changed = True

    # 3. Write Repo File
    repo_path = f"/etc/apt/sources.list.d/{repo_name}.list"
    res_write = write_file(task, repo_path, repo_string)
    if res_write.failed:
        return SubTaskResult(success=False, message=f"Failed to write repo file: {res_write.result}")

    changed = key_changed or res_write.changed
    msg = f"APT repository '{repo_name}' configured." if changed else f"APT repository '{repo_name}' up-to-date."
    return SubTaskResult(success=True, message=msg, changed=changed)


# --- SYSTEM SERVICES ---

def systemctl(task: Task, service: str, action: str, enable: bool = False, sudo: bool = True) -> Result:
    """
    Manages systemd services.
    Actions: start, stop, restart, reload, enable
    """
    cmd = f"systemctl {action} {service}"
    if enable and action != "enable":
        cmd += f" && systemctl enable {service}"

    return run_command(task, cmd, sudo=sudo)


def service_is_active(task: Task, service: str) -> bool:
    return not run_command(task, f"systemctl is-active --quiet {service}").failed


# --- KERNEL / OS ---

def is_module_loaded(task: Task, module: str) -> bool:
    res = run_command(task, f"grep -qw '^{module}' /proc/modules")
    return not res.failed


def load_module(task: Task, module: str) -> Result:
    return run_command(task, f"modprobe {module}", sudo=True)


def reload_sysctl(task: Task) -> Result:
    # --system loads settings from all system configuration files
    return run_command(task, "sysctl --system", sudo=True)


def is_swap_active(task: Task) -> bool:
    """/proc/swaps has a header line plus one line per active device."""
    res = run_command(task, "cat /proc/swaps")
    if res.failed:
        return False
    return len([line for line in res.result.splitlines() if line.strip()]) > 1


def disable_swap(task: Task) -> Result:
    return run_command(task, "swapoff -a", sudo=True)


def ufw_is_active(task: Task) -> bool:
    res = run_command(task, "ufw status", sudo=True)
    return not res.failed and "Status: active" in res.result


def ufw_disable(task: Task) -> Result:
    return run_command(task, "ufw disable", sudo=True)


def user_in_group(task: Task, user: str, group: str) -> bool:
    res = run_command(task, f"id -nG {user}")
    return not res.failed and group in res.result.split()


def add_user_to_group(task: Task, user: str, group: str) -> Result:
    return run_command(task, f"groupadd -f {group} && usermod -aG {group} {user}", sudo=True)


# --- KUBERNETES TOOLS ---

def kubeadm_init(task: Task, config_path: str, timeout: Optional[int] = None) -> Result:
    return run_command(task, f"kubeadm init --config {config_path} --upload-certs", sudo=True, timeout=timeout)


def kubeadm_token_create(task: Task, ttl: str) -> Result:
    return run_command(task, f"kubeadm token create --print-join-command --ttl {ttl}", sudo=True)


def kubeadm_join(task: Task, credential: JoinCredential, node_name: str, timeout: Optional[int] = None) -> Result:
    cmd = f"{credential.command} --node-name {node_name}"
    return run_command(task, cmd, sudo=True, timeout=timeout)


def kubectl(task: Task, args: str, kubeconfig: str = ADMIN_KUBECONFIG, timeout: Optional[int] = None) -> Result:
    """Runs kubectl on the host with the admin kubeconfig."""
    return run_command(task, f"kubectl --kubeconfig {kubeconfig} {args}", sudo=True, timeout=timeout)


# --- TOOLS / COMMANDS ---

def command_exists(task: Task, command: str) -> bool:
    """Checks if a command exists in PATH (using 'which')."""
    return not run_command(task, f"which {command}").failed


def check_connectivity(task: Task, target: str, count: int = 2) -> Result:
    return run_command(task, f"ping -c {count} -W 2 {target}")
