#!/usr/bin/env python3
import os
import sys
import shutil
import hashlib
import subprocess
import random
import argparse
from pathlib import Path
from colorama import init as _cinit, Fore as F, Style as S
import re
from datetime import datetime

# ============================
# Paths & constants
# ============================
ROOT_DIR = Path(__file__).resolve().parent
SCRIPT_SRC = ROOT_DIR / "teamlogin.py"
REQS = ROOT_DIR / "requirements.txt"
VERSION = "1.0.0"

# System paths
SCRIPT_DST = Path("/usr/local/sbin/teamlogin.py")
CHECKER = Path("/usr/local/sbin/teamlogin_check.sh")
SERVICE = Path("/etc/systemd/system/teamlogin.service")
TIMER = Path("/etc/systemd/system/teamlogin.timer")
LOGDIR = Path("/var/log/teamlogin")
STATEDIR = Path("/var/lib/teamlogin")
ENVFILE = Path("/etc/teamlogin.env")
LOGROTATE = Path("/etc/logrotate.d/teamlogin")
SSHD_DROPIN = Path("/etc/ssh/sshd_config.d/teamlogin.conf")
ENV_ASSIGN_RE = re.compile(r"""^\s*([A-Za-z_][A-Za-z0-9_]*)\s*=\s*(?:'([^']*)'|"((?:[^"\\]|\\.)*)"|([^\s#]+))\s*(?:#.*)?$""")

TIMER_INTERVAL = "15min"

# Keys written to the env file, in order, with their defaults.
# USER_QUOTA_GB feeds the ExecStart flag; the rest are read by teamlogin.py itself.
ENV_DEFAULTS = {
    "USER_QUOTA_GB": "",
    "TEAM_URL": "https://team-api.infra.rust-lang.org/v1/permissions/dev_desktop.json",
    "KEY_DIR": "/etc/ssh/authorized_keys",
    "SSH_GROUP": "dev-desktop-allow-ssh",
    "DEFAULT_SHELL": "/usr/bin/bash",
    "QUOTA_FILESYSTEM": "/",
    "HTTP_TIMEOUT": "15",
}

BANNER = r"""
  _                       _             _
 | |_ ___  __ _ _ __ ___ | | ___   __ _(_)_ __
 | __/ _ \/ _` | '_ ` _ \| |/ _ \ / _` | | '_ \
 | ||  __/ (_| | | | | | | | (_) | (_| | | | | |
  \__\___|\__,_|_| |_| |_|_|\___/ \__, |_|_| |_|
                                  |___/
        Team list in, shell accounts out.
"""

BLURBS = [
    "Fetching keys: github.com knows your pubkeys better than you do.\n",
    "Handing out homes: one gh- prefix at a time.\n",
    "Setting quotas: the disk is shared, the patience is not.\n",
    "Revoking keys: off the list, out of authorized_keys.\n",
]

# ============================
# Colour / output helpers
# ============================
_cinit(autoreset=True)

_COLOR_MONO = False

def fncSetColorMode(monochrome: bool):
    """Call once after parsing args to disable colours when needed."""
    global _COLOR_MONO
    _COLOR_MONO = bool(monochrome)

def fncWantColor(stream=sys.stdout):
    """Decide if we should output ANSI colours."""
    if _COLOR_MONO:
        return False
    if os.environ.get("NO_COLOR"):
        return False
    if os.environ.get("FORCE_COLOR"):
        return True
    try:
        return stream.isatty()
    except Exception:
        return False

def fncColor(text: str, *styles: str) -> str:
    """fncColor('Hello', 'green', 'bold') -> styled text (or plain if disabled)."""
    if not fncWantColor() or not styles:
        return text
    m = {
        "red": F.RED, "green": F.GREEN, "yellow": F.YELLOW, "blue": F.BLUE,
        "magenta": F.MAGENTA, "cyan": F.CYAN, "white": F.WHITE, "gray": F.LIGHTBLACK_EX,
        "bold": S.BRIGHT, "dim": S.DIM,
    }
    seq = "".join(m.get(s, "") for s in styles)
    return f"{seq}{text}{S.RESET_ALL}"

def fncHeading(msg: str): print(fncColor(msg, "magenta", "bold"))
def fncInfo(msg: str):    print(fncColor("[*] ", "cyan") + msg)
def fncOk(msg: str):      print(fncColor("[+] ", "green") + msg)
def fncWarn(msg: str):    print(fncColor("[!] ", "yellow") + msg)
def fncErr(msg: str):     print(fncColor("[-] ", "red") + msg)

# ============================
# Core helpers
# ============================
def fncRequireRoot():
    if os.geteuid() != 0:
        print("[-] This script must be run as root (try sudo)")
        sys.exit(1)

def fncSha256Sum(filepath: Path) -> str:
    h = hashlib.sha256()
    with open(filepath, "rb") as f:
        for chunk in iter(lambda: f.read(8192), b""):
            h.update(chunk)
    return h.hexdigest()

def fncRun(cmd: list[str]):
    print(f"[*] Running: {' '.join(cmd)}")
    subprocess.run(cmd, check=True)

def fncInstallRequirements():
    if REQS.exists():
        print(f"[*] Found {REQS}, installing dependencies...")
        try:
            fncRun(["pip3", "install", "-r", str(REQS), "--break-system-packages"])
            print("[+] Requirements installed successfully")
        except subprocess.CalledProcessError:
            print("[-] Failed to install requirements.txt")
            sys.exit(1)
    else:
        print("[i] No requirements.txt found, skipping dependency installation.")

def fncPrintBanner():
    print(fncColor(BANNER, "cyan"))
    print(random.choice(BLURBS))

ENV_DQ_ESCAPE_RE = re.compile(r'([\\"`$])')

def fncShQuote(val: str) -> str:
    """Quote a value for env files, in a form both systemd and fncParseEnvfile read back.

    Single quotes when the value has no apostrophe, otherwise double quotes with
    backslash escapes for \\ " ` and $.
    """
    if val is None:
        val = ""
    if "'" not in val:
        return "'" + val + "'"
    return '"' + ENV_DQ_ESCAPE_RE.sub(r"\\\1", val) + '"'

def fncBackupPath(p: Path) -> Path:
    ts = datetime.now().strftime("%Y%m%d-%H%M%S")
    return p.with_suffix(p.suffix + f".bak-{ts}")

# ============================
# Env file
# ============================
def fncParseEnvfile(path: Path = ENVFILE) -> dict[str, str]:
    """Read KEY=value lines (quoted or bare); comments and junk are skipped."""
    values: dict[str, str] = {}
    if not path.exists():
        return values
    for line in path.read_text().splitlines():
        m = ENV_ASSIGN_RE.match(line)
        if not m:
            continue
        if m.group(3) is not None:
            values[m.group(1)] = re.sub(r"\\(.)", r"\1", m.group(3))
        else:
            values[m.group(1)] = m.group(2) or m.group(4) or ""
    return values

def fncRenderEnvfile(values: dict[str, str]) -> str:
    lines = [
        "# Autogenerated by teamlogin installer",
        "# Keep this file 0600, owner root",
        "",
    ]
    for key, default in ENV_DEFAULTS.items():
        lines.append(f"{key}={fncShQuote(values.get(key, default))}")
    return "\n".join(lines) + "\n"

def fncPromptEnvValues(current: dict[str, str] | None = None) -> dict[str, str]:
    """Interactive wizard; existing values (from an earlier install) become the defaults."""
    defaults = dict(ENV_DEFAULTS)
    defaults.update({k: v for k, v in (current or {}).items() if k in ENV_DEFAULTS and v})

    def ask_nonempty(q: str, default: str | None = None) -> str:
        while True:
            prompt = f"{fncColor(q, 'cyan', 'bold')}{fncColor(f' [{default}]', 'gray') if default else ''}: "
            a = input(prompt).strip()
            if a:
                return a
            if default:
                return default
            fncWarn("Value cannot be empty.")

    def ask_positive_int(q: str, default: str | None = None) -> str:
        while True:
            a = ask_nonempty(q, default)
            if a.isdigit() and int(a) > 0:
                return a
            fncWarn("Please enter a whole number greater than zero.")

    print()
    fncHeading("== teamlogin: Runtime configuration ==")
    return {
        "USER_QUOTA_GB": ask_positive_int("Disk quota for new users, GB (hard limit is +1)", defaults["USER_QUOTA_GB"]),
        "TEAM_URL": ask_nonempty("Team permissions URL", defaults["TEAM_URL"]),
        "KEY_DIR": ask_nonempty("Authorized keys directory", defaults["KEY_DIR"]),
        "SSH_GROUP": ask_nonempty("Group allowed to ssh in", defaults["SSH_GROUP"]),
        "DEFAULT_SHELL": ask_nonempty("Login shell for new users", defaults["DEFAULT_SHELL"]),
        "QUOTA_FILESYSTEM": ask_nonempty("Filesystem to apply quotas on", defaults["QUOTA_FILESYSTEM"]),
        "HTTP_TIMEOUT": ask_positive_int("HTTP timeout, seconds", defaults["HTTP_TIMEOUT"]),
    }

def fncWriteEnvfile(content: str, path: Path = ENVFILE):
    if path.exists():
        fncInfo(f"Updating {path}")
    else:
        fncOk(f"Creating {path}")
    path.write_text(content)
    os.chmod(path, 0o600)
    fncOk("Wrote config to " + fncColor(str(path), "white", "bold") + " (mode 0600)")

# ============================
# Host preparation
# ============================
def fncEnsureSshGroup(group: str):
    """Create the ssh allow group if getent doesn't know it."""
    rc = subprocess.run(["getent", "group", group], capture_output=True).returncode
    if rc == 0:
        fncInfo(f"Group {group} already present")
        return
    fncRun(["groupadd", group])
    fncOk(f"Created group {group}")

def fncEnsureKeyDir(path: Path):
    path.mkdir(mode=0o755, parents=True, exist_ok=True)
    os.chmod(path, 0o755)
    fncOk(f"Ensured key directory {path}")

def fncRenderSshdDropin(key_dir: str, group: str) -> str:
    return f"""# Autogenerated by teamlogin installer
Match Group {group}
    AuthorizedKeysFile {key_dir.rstrip('/')}/%u
"""

def fncWriteSshdDropin(key_dir: str, group: str, path: Path = SSHD_DROPIN):
    """Write the sshd drop-in and validate with `sshd -t`; roll back if sshd rejects it."""
    previous = path.read_text() if path.exists() else None
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(fncRenderSshdDropin(key_dir, group))
    os.chmod(path, 0o644)

    rc = subprocess.run(["sshd", "-t"], capture_output=True, text=True)
    if rc.returncode != 0:
        fncErr(f"sshd rejected {path}: {rc.stderr.strip()}")
        if previous is None:
            path.unlink()
        else:
            path.write_text(previous)
        return False
    fncOk(f"Wrote sshd drop-in: {path}")
    return True

# ============================
# Checker & units
# ============================
def fncRenderChecker(expected_sha: str, expected_env_sha: str = "") -> str:
    return f"""#!/bin/bash
set -euo pipefail

SCRIPT="{SCRIPT_DST}"
ENVFILE="{ENVFILE}"

EXPECTED_SHA="{expected_sha}"
EXPECTED_ENV_SHA="{expected_env_sha}"

log_warn() {{
    logger -t teamlogin_runner "$1" || true
    echo "$1" >&2
}}

fail() {{
    logger -t teamlogin_runner "$1" || true
    echo "$1" >&2
    exit 1
}}

sha256_file() {{
    /usr/bin/sha256sum "$1" | awk '{{print $1}}'
}}

# --- 1) Check main script checksum (hard fail on mismatch) ---
ACTUAL_SHA=$(sha256_file "$SCRIPT")
if [[ "$ACTUAL_SHA" != "$EXPECTED_SHA" ]]; then
    fail "Checksum mismatch! Potential tampering detected in $SCRIPT (have=$ACTUAL_SHA expect=$EXPECTED_SHA)"
fi

# --- 2) Env file must be root-owned, not a symlink, <= 0600; warn on drift ---
if [[ -e "$ENVFILE" ]]; then
    [[ -L "$ENVFILE" ]] && fail "Integrity: refusing to use symlink: $ENVFILE"
    uid=$(stat -Lc %u "$ENVFILE" 2>/dev/null || echo 99999)
    [[ "$uid" != "0" ]] && fail "Integrity: $ENVFILE not owned by root (uid=$uid)"
    mode=$(stat -Lc %a "$ENVFILE" 2>/dev/null || echo 777)
    if (( 10#"${{mode: -3}}" > 600 )); then
        fail "Integrity: $ENVFILE permissions too broad (have $mode, want <= 600)"
    fi
    if [[ -n "$EXPECTED_ENV_SHA" ]]; then
        ACTUAL_ENV_SHA=$(sha256_file "$ENVFILE")
        if [[ "$ACTUAL_ENV_SHA" != "$EXPECTED_ENV_SHA" ]]; then
            log_warn "Integrity: env checksum changed: $ENVFILE (have=$ACTUAL_ENV_SHA expect=$EXPECTED_ENV_SHA)"
        fi
    fi
else
    fail "Integrity: missing $ENVFILE (USER_QUOTA_GB lives there)"
fi

exit 0
"""

def fncWriteChecker(expected_sha: str, path: Path = CHECKER):
    try:
        expected_env_sha = fncSha256Sum(ENVFILE) if ENVFILE.exists() else ""
    except OSError:
        expected_env_sha = ""
    path.write_text(fncRenderChecker(expected_sha, expected_env_sha))
    os.chmod(path, 0o700)
    fncOk(f"Created/updated checker script at {path}")

def fncRenderServiceUnit() -> str:
    return f"""[Unit]
Description=teamlogin: sync team dev-desktop users and GitHub SSH keys
After=network-online.target
Wants=network-online.target

[Service]
Type=oneshot
EnvironmentFile={ENVFILE}
ExecCondition={CHECKER}
ExecStart=/usr/bin/python3 {SCRIPT_DST} --user-quota-gb ${{USER_QUOTA_GB}}
User=root
"""

def fncRenderTimerUnit(interval: str = TIMER_INTERVAL) -> str:
    return f"""[Unit]
Description=Run teamlogin every {interval}

[Timer]
OnBootSec=1min
OnUnitActiveSec={interval}
Unit=teamlogin.service
AccuracySec=1min
Persistent=true

[Install]
WantedBy=timers.target
"""

def fncWriteUnits(service: Path = SERVICE, timer: Path = TIMER):
    service.write_text(fncRenderServiceUnit())
    fncOk(f"Wrote service unit: {service}")
    timer.write_text(fncRenderTimerUnit())
    fncOk(f"Wrote timer unit: {timer}")

# ============================
# Actions
# ============================
def fncPrepareHost(values: dict[str, str]):
    fncEnsureSshGroup(values["SSH_GROUP"])
    fncEnsureKeyDir(Path(values["KEY_DIR"]))
    if fncWriteSshdDropin(values["KEY_DIR"], values["SSH_GROUP"]):
        try:
            fncRun(["systemctl", "reload", "ssh"])
        except subprocess.CalledProcessError:
            fncWarn("Could not reload ssh; reload it by hand to pick up the drop-in")
    else:
        fncWarn("sshd drop-in not installed; keys in the key directory will not be used until sshd is configured")

def fncDoInstall():
    fncRequireRoot()
    fncHeading("[*] Installing teamlogin...")

    fncInstallRequirements()

    shutil.copy2(SCRIPT_SRC, SCRIPT_DST)
    os.chmod(SCRIPT_DST, 0o700)
    fncOk(f"Installed script to {SCRIPT_DST}")

    LOGDIR.mkdir(mode=0o750, parents=True, exist_ok=True)
    STATEDIR.mkdir(mode=0o750, parents=True, exist_ok=True)
    fncOk(f"Ensured {LOGDIR} and {STATEDIR}")

    values = fncPromptEnvValues(fncParseEnvfile(ENVFILE))
    fncWriteEnvfile(fncRenderEnvfile(values))
    fncPrepareHost(values)

    # checker records the env hash, so it goes after the env file
    expected_sha = fncSha256Sum(SCRIPT_DST)
    fncInfo(f"Calculated SHA256: {fncColor(expected_sha, 'white', 'bold')}")
    fncWriteChecker(expected_sha)

    fncWriteUnits()
    fncRun(["systemctl", "daemon-reload"])
    fncOk("systemd daemon reloaded")
    fncRun(["systemctl", "enable", "--now", "teamlogin.timer"])
    fncOk("Enabled and started timer: teamlogin.timer")

    fncOk("Installation complete.")
    fncInfo("Check logs: " + fncColor("journalctl -u teamlogin.service -n 200 --no-pager", "white", "bold"))
    fncInfo("Edit config: " + fncColor(str(ENVFILE), "white", "bold")
            + " then: " + fncColor("installer.py update", "white", "bold"))

def fncDoUpdate(auto_restart: bool = False):
    fncRequireRoot()
    fncHeading("[*] Updating teamlogin...")

    if not SCRIPT_DST.exists():
        fncErr("Installed script not found, did you run install first?")
        sys.exit(1)
    if not SCRIPT_SRC.exists():
        fncErr(f"Local source not found: {SCRIPT_SRC}")
        sys.exit(1)

    local_sha = fncSha256Sum(SCRIPT_SRC)
    installed_sha = fncSha256Sum(SCRIPT_DST)
    fncInfo(f"Local SHA     : {fncColor(local_sha, 'white', 'bold')}")
    fncInfo(f"Installed SHA : {fncColor(installed_sha, 'white', 'bold')}")

    answer = input(f"{fncColor('Re-run config wizard?', 'cyan', 'bold')} {fncColor('[y/N]', 'gray')}: ")
    if answer.strip().lower() in ("y", "yes"):
        if ENVFILE.exists():
            backup = fncBackupPath(ENVFILE)
            try:
                shutil.copy2(ENVFILE, backup)
                fncInfo(f"Backed up existing env to {fncColor(str(backup), 'white', 'bold')}")
            except OSError as e:
                fncWarn(f"Could not backup env file ({e}); proceeding anyway.")
        values = fncPromptEnvValues(fncParseEnvfile(ENVFILE))
        fncWriteEnvfile(fncRenderEnvfile(values))
        fncPrepareHost(values)
    else:
        fncInfo("Keeping existing env file.")

    if local_sha == installed_sha:
        fncWarn("Installed script already matches local: no copy needed.")
    else:
        fncInfo("Updating installed script...")
        shutil.copy2(SCRIPT_SRC, SCRIPT_DST)
        os.chmod(SCRIPT_DST, 0o700)
        if fncSha256Sum(SCRIPT_DST) != local_sha:
            fncErr("Post-copy SHA mismatch! Aborting.")
            sys.exit(1)
        fncOk("Script updated.")

    # env may have changed even when the script didn't
    fncWriteChecker(local_sha)
    fncWriteUnits()
    fncRun(["systemctl", "daemon-reload"])

    if auto_restart:
        fncRun(["systemctl", "start", "teamlogin.service"])
        fncOk("Ran teamlogin.service once.")
    else:
        fncInfo("Trigger a run now with: "
                + fncColor("sudo systemctl start teamlogin.service", "white", "bold"))

def fncDoUninstall(purge: bool = False):
    fncRequireRoot()
    fncHeading("[*] Uninstalling teamlogin...")

    for unit in ("teamlogin.timer", "teamlogin.service"):
        try:
            fncRun(["systemctl", "disable", "--now", unit])
            fncInfo(f"Stopped and disabled {unit}")
        except subprocess.CalledProcessError:
            fncWarn(f"{unit} was not enabled")

    for p in (TIMER, SERVICE, SCRIPT_DST, CHECKER, LOGROTATE, SSHD_DROPIN):
        try:
            if p.exists():
                p.unlink()
                fncOk(f"Removed {p}")
            else:
                fncInfo(f"Not present: {p}")
        except OSError as e:
            fncWarn(f"Could not remove {p}: {e}")

    for cmd in (["systemctl", "daemon-reload"], ["systemctl", "reload", "ssh"]):
        try:
            fncRun(cmd)
        except subprocess.CalledProcessError:
            fncWarn(f"Failed: {' '.join(cmd)}")

    targets = [
        ("env file", ENVFILE),
        ("log dir", LOGDIR),
        ("state dir", STATEDIR),
    ]

    def ask(q: str) -> bool:
        a = input(fncColor(q + " [y/N]: ", "cyan")).strip().lower()
        return a in ("y", "yes")

    for label, path in targets:
        try:
            if not path.exists():
                fncInfo(f"Not present: {label} ({path})")
                continue
            if purge or ask(f"Remove {label} {path}?"):
                if path.is_file():
                    path.unlink()
                else:
                    shutil.rmtree(path, ignore_errors=True)
                fncOk(f"Removed {label}: {path}")
        except OSError as e:
            fncWarn(f"Failed to remove {label} {path}: {e}")

    fncOk("Uninstall complete.")
    fncWarn("Accounts, home directories and key files created by teamlogin were left in place.")

# ============================
# Entry point
# ============================
def fncMain(argv: list[str] | None = None):
    parser = argparse.ArgumentParser(description="Installer/Updater for teamlogin")
    parser.add_argument("action", choices=["install", "update", "uninstall"], help="Action to perform")
    parser.add_argument("--restart", action="store_true", help="Trigger a run right after update")
    parser.add_argument("--purge", action="store_true", help="Remove env, logs, and state without prompts")
    parser.add_argument("--no-color", action="store_true", help="Plain output")
    args = parser.parse_args(argv)
    fncSetColorMode(args.no_color)

    fncPrintBanner()
    if args.action == "install":
        fncDoInstall()
    elif args.action == "update":
        fncDoUpdate(auto_restart=args.restart)
    elif args.action == "uninstall":
        fncDoUninstall(purge=args.purge)

if __name__ == "__main__":
    fncMain()
