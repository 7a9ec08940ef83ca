#!/usr/bin/env python3
# Script: teamlogin.py
#
# What this does:
# - Pull the list of permitted GitHub users from the team permissions API
# - Map each GitHub login -> local login "gh-<login>" (never clashes with system users)
# - Every run: refresh /etc/ssh/authorized_keys/gh-<login> from github.com/<login>.keys
# - New users: create account + home, add to the ssh allow group, set shell, set a quota
# - Users no longer on the list: their key file is removed (account is kept)
# - Logs to /var/log/teamlogin/teamlogin.log

# ==============================
# Imports
# ==============================

# Standard library
import argparse
import fcntl
import json
import logging
import os
import re
import stat
import subprocess
import sys
import tempfile
from dataclasses import dataclass, field
from urllib import request as _urlreq
from urllib.error import HTTPError, URLError

# Third-party
from colorama import Fore, Style

#=================#
# Global Settings #
#=================#

MIN_PYTHON_VERSION = (3, 11)
ADMIN_REQUIRED = True   # Script requires root

#-----------------------------#
# Defaults (env-overridable)  #
#-----------------------------#
TEAM_URL = "https://team-api.infra.rust-lang.org/v1/permissions/dev_desktop.json"
TEAM_FIELD = "github_users"                     # List field in the team payload
KEYS_URL_TEMPLATE = "https://github.com/{}.keys"
USER_AGENT = "rust-lang/simpleinfra (infra@rust-lang.org)"
HTTP_TIMEOUT = 15                               # Seconds, per request

KEY_DIR = "/etc/ssh/authorized_keys"
KEY_FILE_MODE = 0o644                           # sshd reads it as the target user
USERNAME_PREFIX = "gh-"
LEGACY_KEY_SUFFIX = ".keys"                     # Older deployments wrote gh-<login>.keys

SSH_GROUP = "dev-desktop-allow-ssh"
DEFAULT_SHELL = "/usr/bin/bash"
QUOTA_FILESYSTEM = "/"

LOG_FILE = "/var/log/teamlogin/teamlogin.log"
STATE_DIR = "/var/lib/teamlogin"

# GitHub logins: alnum + hyphen, max 39, no leading hyphen
GITHUB_LOGIN_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9-]{0,38}$")

EXIT_OK = 0
EXIT_FATAL = 1
EXIT_PRUNE_INCOMPLETE = 3

#------------------------------#
# Pinned binaries for exec     #
#------------------------------#
BIN = {
  "id":       "/usr/bin/id",
  "useradd":  "/usr/sbin/useradd",
  "usermod":  "/usr/sbin/usermod",
  "setquota": "/usr/sbin/setquota",
}

#===========================#
# Environment Overlay Utils #
#===========================#

# Function: _env_str
# Purpose : Return stripped string from env with default fallback.
# Notes   : Blank values fall back to the default.
def _env_str(name: str, default: str) -> str:
    v = os.getenv(name)
    if v is None or not v.strip():
        return default
    return v.strip()

# Function: _env_int
# Purpose : Parse a positive integer from env with a default.
# Notes   : Returns default on junk. Runs at import, before logging is set
#           up, so the complaint is queued and flushed by fncSetupLogging.
_ENV_WARNINGS: list[str] = []

def _env_int(name: str, default: int) -> int:
    v = os.getenv(name, "").strip()
    if not v:
        return default
    try:
        n = int(v)
    except ValueError:
        _ENV_WARNINGS.append(f"Bad integer in {name}: {v!r}, using {default}")
        return default
    return n if n > 0 else default

#===========================#
# Apply Environment Overrides
#===========================#

TEAM_URL          = _env_str("TEAM_URL", TEAM_URL)
KEYS_URL_TEMPLATE = _env_str("KEYS_URL_TEMPLATE", KEYS_URL_TEMPLATE)
HTTP_TIMEOUT      = _env_int("HTTP_TIMEOUT", HTTP_TIMEOUT)

KEY_DIR           = _env_str("KEY_DIR", KEY_DIR)
USERNAME_PREFIX   = _env_str("USERNAME_PREFIX", USERNAME_PREFIX)

SSH_GROUP         = _env_str("SSH_GROUP", SSH_GROUP)
DEFAULT_SHELL     = _env_str("DEFAULT_SHELL", DEFAULT_SHELL)
QUOTA_FILESYSTEM  = _env_str("QUOTA_FILESYSTEM", QUOTA_FILESYSTEM)

LOG_FILE          = _env_str("LOG_FILE", LOG_FILE)
STATE_DIR         = _env_str("STATE_DIR", STATE_DIR)
LOCK_PATH         = os.path.join(STATE_DIR, ".lock")

#========#
# Errors #
#========#

class SyncError(Exception):
    """A fatal failure during a run, tagged with the step and identity involved."""

    step = "sync"

    def __init__(self, message: str, identity: str | None = None, step: str | None = None):
        super().__init__(message)
        self.message = message
        self.identity = identity
        if step:
            self.step = step

    def __str__(self):
        where = f" [{self.identity}]" if self.identity else ""
        return f"{self.step}{where}: {self.message}"


class NetworkError(SyncError):
    step = "fetch"


class ParseError(SyncError):
    step = "parse"


class FilesystemError(SyncError):
    step = "filesystem"


class ProvisionError(SyncError):
    step = "provision"


class CreateFailed(ProvisionError):
    step = "create account"


class GroupFailed(ProvisionError):
    step = "grant group"


class ShellFailed(ProvisionError):
    step = "set shell"


class QuotaFailed(ProvisionError):
    step = "set quota"

#===================#
# Utility / Logging #
#===================#

_LOCK_FH = None

def fncAcquireLock(lock_path: str = LOCK_PATH):
    """Take an exclusive lock so two timer runs can't interleave key writes."""
    os.makedirs(os.path.dirname(lock_path), exist_ok=True)
    global _LOCK_FH
    try:
        _LOCK_FH = open(lock_path, "w")
        os.chmod(lock_path, 0o600)
        fcntl.lockf(_LOCK_FH, fcntl.LOCK_EX | fcntl.LOCK_NB)
        logging.debug("Acquired lock: %s", lock_path)
    except BlockingIOError:
        fncPrintMessage("Another instance of teamlogin is already running.", "warning")
        sys.exit(EXIT_FATAL)
    except OSError as e:
        fncPrintMessage(f"Failed to acquire lock ({lock_path}): {e}", "error")
        sys.exit(EXIT_FATAL)

# Function: fncScriptSecurityCheck
# Purpose : Ensure script is root-owned and locked-down perms.
# Notes   : Exits non-zero with a clear message if any check fails.
def fncScriptSecurityCheck():
    script_path = os.path.realpath(__file__)
    st = os.stat(script_path)

    if st.st_uid != 0:
        fncPrintMessage("Script must be owned by root.", "error")
        sys.exit(EXIT_FATAL)

    bad_perms = stat.S_IWGRP | stat.S_IWOTH
    if st.st_mode & bad_perms:
        fncPrintMessage(
            f"Insecure permissions on {script_path}. Group/other must not be able to write it.",
            "error"
        )
        sys.exit(EXIT_FATAL)
    return True

# Function: fncBootstrapPaths
# Purpose : Create log and state directories with conservative permissions.
def fncBootstrapPaths(log_file: str = LOG_FILE):
    os.makedirs(os.path.dirname(log_file), exist_ok=True)
    os.makedirs(STATE_DIR, exist_ok=True)
    os.chmod(os.path.dirname(log_file), 0o750)
    os.chmod(STATE_DIR, 0o750)

# Function: fncEnsureLogrotate
# Purpose : Drop a logrotate file next to the other system snippets.
# Notes   : Creates once; warns only on failure.
def fncEnsureLogrotate(log_file: str = LOG_FILE):
    path = "/etc/logrotate.d/teamlogin"
    content = f"""{log_file} {{
  weekly
  rotate 8
  compress
  missingok
  notifempty
  create 0640 root root
}}
"""
    try:
        if not os.path.exists(path):
            with open(path, "w") as f:
                f.write(content)
            os.chmod(path, 0o644)
    except OSError as e:
        logging.warning("Couldn't write logrotate file (%s): %s", path, e)

# Function: fncSetupLogging
# Purpose : Configure logging to file and stdout; ensure paths & logrotate exist.
# Notes   : INFO for changes; DEBUG for no-op decisions.
def fncSetupLogging(log_file: str = LOG_FILE):
    fncBootstrapPaths(log_file)
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)s %(message)s",
        handlers=[logging.FileHandler(log_file), logging.StreamHandler(sys.stdout)],
        force=True,
    )
    logging.info("---- Script start ----")
    while _ENV_WARNINGS:
        logging.error(_ENV_WARNINGS.pop(0))
    fncEnsureLogrotate(log_file)

# Function: fncPrintMessage
# Purpose : Human-friendly colored console messages.
# Notes   : Used for important user-facing prints (not logs).
def fncPrintMessage(message, msg_type="info"):
    styles = {
        "info":    Fore.CYAN  + "{~} ",
        "warning": Fore.YELLOW + "{!} ",
        "success": Fore.GREEN + "{=]} ",
        "error":   Fore.RED   + "{!} ",
    }
    print(f"{styles.get(msg_type, Fore.WHITE)}{message}{Style.RESET_ALL}")

def fncCheckPyVersion():
    if sys.version_info < MIN_PYTHON_VERSION:
        fncPrintMessage("This script requires Python 3.11.0 or higher. Please upgrade.", "error")
        sys.exit(EXIT_FATAL)

def fncAdminCheck():
    if ADMIN_REQUIRED and os.geteuid() != 0:
        fncPrintMessage("This needs root: it creates accounts and writes into /etc/ssh.", "error")
        sys.exit(EXIT_FATAL)

# Function: fncRun
# Purpose : Execute a pinned binary by logical key; capture rc/stdout/stderr.
# Notes   : Returns (returncode, stdout, stderr). Uses BIN map for safety.
def fncRun(cmdkey: str, args: list[str] | None = None) -> tuple[int, str, str]:
    exe = BIN.get(cmdkey)
    if not exe or not os.path.exists(exe):
        return 127, "", f"binary not found: {cmdkey} -> {exe}"
    try:
        p = subprocess.run([exe] + (args or []), capture_output=True, text=True, check=False)
        return p.returncode, p.stdout.strip(), p.stderr.strip()
    except FileNotFoundError as e:
        return 127, "", str(e)

#=========================#
# Team directory (HTTP)   #
#=========================#

# Function: fncBuildOpener
# Purpose : One HTTP client for the whole run, shared by every fetch.
# Notes   : Passed explicitly to the fetch helpers so tests can swap it.
def fncBuildOpener():
    opener = _urlreq.build_opener()
    opener.addheaders = [("User-Agent", USER_AGENT)]
    return opener

def _fncHttpGet(opener, url: str, identity: str | None = None) -> bytes:
    try:
        with opener.open(url, timeout=HTTP_TIMEOUT) as resp:
            status = getattr(resp, "status", 200)
            if not 200 <= status < 300:
                raise NetworkError(f"GET {url} returned HTTP {status}", identity)
            return resp.read()
    except HTTPError as e:
        raise NetworkError(f"GET {url} returned HTTP {e.code}", identity) from e
    except URLError as e:
        raise NetworkError(f"GET {url} failed: {e.reason}", identity) from e
    except OSError as e:
        # socket timeouts and resets surface here
        raise NetworkError(f"GET {url} failed: {e}", identity) from e

# Function: fncFetchIdentities
# Purpose : Fetch the permitted GitHub logins from the team API.
# Notes   : Empty list is valid ("revoke everyone"). Anything malformed raises ParseError
#           before a single key file is touched.
def fncFetchIdentities(opener, url: str = TEAM_URL) -> set[str]:
    body = _fncHttpGet(opener, url)
    try:
        data = json.loads(body.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise ParseError(f"bad JSON from {url}: {e}") from e

    if not isinstance(data, dict):
        raise ParseError(f"expected a JSON object from {url}, got {type(data).__name__}")
    if TEAM_FIELD not in data:
        raise ParseError(f"missing field '{TEAM_FIELD}' in response from {url}")
    users = data[TEAM_FIELD]
    if not isinstance(users, list):
        raise ParseError(f"field '{TEAM_FIELD}' is not a list")

    identities = set()
    for u in users:
        if not isinstance(u, str) or not GITHUB_LOGIN_RE.match(u):
            raise ParseError(f"invalid GitHub login in '{TEAM_FIELD}': {u!r}")
        identities.add(u)

    if not identities:
        logging.warning("Team API returned an empty user list; every managed key will be revoked.")
    logging.info("Team API: %d permitted users", len(identities))
    return identities

# Function: fncFetchKeyMaterial
# Purpose : Download the public keys a user has published on GitHub.
# Notes   : Done every run so key rotation is picked up. Any failure is fatal for the
#           whole run.
def fncFetchKeyMaterial(opener, identity: str) -> str:
    url = KEYS_URL_TEMPLATE.format(identity)
    body = _fncHttpGet(opener, url, identity)
    try:
        return body.decode("utf-8")
    except UnicodeDecodeError as e:
        raise ParseError(f"key material from {url} is not UTF-8", identity) from e

#=====================#
# Key file directory  #
#=====================#

def fncLocalUsername(identity: str, prefix: str = USERNAME_PREFIX) -> str:
    return f"{prefix}{identity}"

def _assert_regular_or_missing(p: str | os.PathLike):
    try:
        st = os.lstat(p)
        if not stat.S_ISREG(st.st_mode):
            raise RuntimeError(f"{p} is not a regular file")
    except FileNotFoundError:
        return

def _safe_write_atomic(path: str, data: str, mode: int = 0o600):
    d = os.path.dirname(path)
    _assert_regular_or_missing(path)
    fd, tmp = tempfile.mkstemp(prefix=".tmp-", dir=d)
    try:
        try:
            os.write(fd, data.encode())
            os.fsync(fd)
        finally:
            os.close(fd)
        os.chmod(tmp, mode)
    except OSError:
        os.remove(tmp)
        raise
    # refuse to overwrite a symlink
    try:
        st = os.lstat(path)
        if stat.S_ISLNK(st.st_mode):
            os.remove(tmp)
            raise RuntimeError(f"Refusing to overwrite symlink: {path}")
    except FileNotFoundError:
        pass
    os.replace(tmp, path)

# Function: fncWriteKeyFile
# Purpose : Replace <key_dir>/<username> with the latest key material.
# Notes   : Unconditional overwrite, atomic swap, never follows a symlink.
def fncWriteKeyFile(key_dir: str, username: str, material: str) -> str:
    path = os.path.join(key_dir, username)
    try:
        _safe_write_atomic(path, material, KEY_FILE_MODE)
    except (OSError, RuntimeError) as e:
        raise FilesystemError(f"could not write {path}: {e}", username, step="write key file") from e
    logging.debug("Wrote key file %s (%d bytes)", path, len(material))
    return path

# Function: fncManagedUsernameForEntry
# Purpose : Map a key-dir entry name back to the managed username it belongs to.
# Notes   : None for anything we don't own. Accepts the legacy ".keys" suffix.
def fncManagedUsernameForEntry(name: str, prefix: str = USERNAME_PREFIX) -> str | None:
    if not name.startswith(prefix):
        return None
    if name.endswith(LEGACY_KEY_SUFFIX):
        name = name[: -len(LEGACY_KEY_SUFFIX)]
    if len(name) <= len(prefix):
        return None
    return name

#====================#
# Account backends   #
#====================#

class AccountProvisioner:
    """What the reconciler needs from the OS. "Does not exist" is a normal answer, not an error."""

    def exists(self, name: str) -> bool:
        raise NotImplementedError

    def create(self, name: str):
        raise NotImplementedError

    def grant_group(self, name: str, group: str):
        raise NotImplementedError

    def set_shell(self, name: str, shell: str):
        raise NotImplementedError

    def set_quota(self, name: str, soft_gb: int, hard_gb: int, path: str):
        raise NotImplementedError


class ShellProvisioner(AccountProvisioner):
    """Drives id/useradd/usermod/setquota through the pinned BIN map."""

    REQUIRED_BINS = ("id", "useradd", "usermod", "setquota")

    def preflight(self):
        missing = [f"{k} -> {BIN.get(k)}" for k in self.REQUIRED_BINS if not os.path.exists(BIN.get(k, ""))]
        if missing:
            raise ProvisionError("missing required binaries: " + ", ".join(missing), step="preflight")

    def exists(self, name: str) -> bool:
        rc, _, _ = fncRun("id", ["-u", name])
        return rc == 0

    def create(self, name: str):
        rc, _, err = fncRun("useradd", ["--create-home", name])
        if rc != 0:
            raise CreateFailed(f"useradd exited {rc}: {err}", name)
        logging.info("Created local user: %s", name)

    def grant_group(self, name: str, group: str):
        rc, _, err = fncRun("usermod", ["-a", "-G", group, name])
        if rc != 0:
            raise GroupFailed(f"usermod -a -G {group} exited {rc}: {err}", name)
        logging.info("Added %s to group %s", name, group)

    def set_shell(self, name: str, shell: str):
        rc, _, err = fncRun("usermod", ["--shell", shell, name])
        if rc != 0:
            raise ShellFailed(f"usermod --shell {shell} exited {rc}: {err}", name)
        logging.info("Set shell for %s: %s", name, shell)

    def set_quota(self, name: str, soft_gb: int, hard_gb: int, path: str):
        rc, _, err = fncRun("setquota", ["-u", name, f"{soft_gb}G", f"{hard_gb}G", "0", "0", path])
        if rc != 0:
            raise QuotaFailed(f"setquota exited {rc}: {err}", name)
        logging.info("Set quota for %s on %s: soft=%dG hard=%dG", name, path, soft_gb, hard_gb)

#====================#
# Sync logic         #
#====================#

@dataclass
class PruneReport:
    removed: list[str] = field(default_factory=list)
    failed: dict[str, str] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return not self.failed

# Function: fncProvisionAccount
# Purpose : Bring a brand-new account up: home, ssh group, shell, quota.
# Notes   : Not transactional. If quota fails the account stays created without one,
#           and the next run won't fix it because the account then exists.
def fncProvisionAccount(provisioner: AccountProvisioner, username: str, quota_gb: int,
                        ssh_group: str = SSH_GROUP, shell: str = DEFAULT_SHELL,
                        quota_path: str = QUOTA_FILESYSTEM):
    provisioner.create(username)
    provisioner.grant_group(username, ssh_group)
    provisioner.set_shell(username, shell)
    provisioner.set_quota(username, quota_gb, quota_gb + 1, quota_path)

# Function: fncReconcile
# Purpose : Per permitted identity: refresh key file, create the account if missing.
# Notes   : Sorted for stable ordering. Returns the set of managed usernames for the pruner.
#           First error propagates and stops the loop; nothing already done is undone.
def fncReconcile(identities: set[str], opener, provisioner: AccountProvisioner, quota_gb: int,
                 key_dir: str = KEY_DIR, ssh_group: str = SSH_GROUP,
                 shell: str = DEFAULT_SHELL, quota_path: str = QUOTA_FILESYSTEM) -> set[str]:
    current: set[str] = set()
    created = 0
    for identity in sorted(identities):
        username = fncLocalUsername(identity)
        current.add(username)

        material = fncFetchKeyMaterial(opener, identity)
        fncWriteKeyFile(key_dir, username, material)

        if provisioner.exists(username):
            # existing accounts are never drift-corrected (shell/group/quota)
            logging.debug("User %s already exists; keys refreshed only", username)
            continue

        fncProvisionAccount(provisioner, username, quota_gb, ssh_group, shell, quota_path)
        created += 1
        logging.info("Provisioned %s (quota %dG/%dG)", username, quota_gb, quota_gb + 1)

    logging.info("Reconciled %d users (%d new)", len(current), created)
    return current

# Function: fncPruneStaleKeys
# Purpose : Delete managed key files for users no longer on the team list.
# Notes   : Best effort: a failed delete is recorded and the sweep carries on.
#           Only regular files carrying the managed prefix are candidates.
def fncPruneStaleKeys(key_dir: str, current: set[str], prefix: str = USERNAME_PREFIX) -> PruneReport:
    report = PruneReport()
    try:
        entries = sorted(os.scandir(key_dir), key=lambda e: e.name)
    except OSError as e:
        raise FilesystemError(f"could not list {key_dir}: {e}", step="list key dir") from e

    for entry in entries:
        username = fncManagedUsernameForEntry(entry.name, prefix)
        if username is None or username in current:
            continue
        try:
            if not entry.is_file(follow_symlinks=False):
                logging.debug("Skipping non-regular entry %s", entry.path)
                continue
            os.remove(entry.path)
        except OSError as e:
            report.failed[entry.path] = str(e)
            logging.error("Failed to remove stale key file %s: %s", entry.path, e)
            continue
        report.removed.append(entry.path)
        logging.info("Removed stale key file %s", entry.path)
    return report

# Function: fncSync
# Purpose : One full run: fetch team list, reconcile, prune.
# Notes   : Fetch errors happen before any write, so a broken team API changes nothing.
def fncSync(quota_gb: int, opener, provisioner: AccountProvisioner, key_dir: str = KEY_DIR,
            team_url: str = TEAM_URL) -> PruneReport:
    identities = fncFetchIdentities(opener, team_url)
    current = fncReconcile(identities, opener, provisioner, quota_gb, key_dir)
    report = fncPruneStaleKeys(key_dir, current)
    logging.info("Sync complete. Desired=%d, Pruned=%d, PruneFailures=%d",
                 len(current), len(report.removed), len(report.failed))
    return report

#=================#
# Script harness  #
#=================#

def _positive_int(value: str) -> int:
    try:
        n = int(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"not an integer: {value!r}")
    if n <= 0:
        raise argparse.ArgumentTypeError(f"must be a positive integer: {n}")
    return n

def fncParseArgs(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Sync team dev-desktop users and their GitHub SSH keys onto this host")
    parser.add_argument("--user-quota-gb", type=_positive_int, required=True,
                        help="Soft disk quota for newly created users, in GB (hard = soft + 1)")
    return parser.parse_args(argv)

# Function: fncMain
# Purpose : Program entrypoint; preflight checks, logging, locking, sync, exit code.
# Notes   : 0 = clean, 1 = fatal, 3 = synced but some stale keys could not be removed.
#           2 is left to argparse for usage errors.
def fncMain(argv: list[str] | None = None) -> int:
    fncCheckPyVersion()
    args = fncParseArgs(argv)
    try:
        os.umask(0o077)
        fncAdminCheck()
        fncScriptSecurityCheck()
        fncSetupLogging()
        fncAcquireLock()

        provisioner = ShellProvisioner()
        provisioner.preflight()
        report = fncSync(args.user_quota_gb, fncBuildOpener(), provisioner)
    except SyncError as e:
        logging.error("Run aborted: %s", e)
        fncPrintMessage(f"Run aborted: {e}", "error")
        return EXIT_FATAL
    except KeyboardInterrupt:
        fncPrintMessage("Interrupted; changes made so far stay applied.", "error")
        return EXIT_FATAL
    except Exception as e:
        logging.exception("Unhandled exception: %s", e)
        return EXIT_FATAL

    if not report.ok:
        fncPrintMessage(f"Sync done, but {len(report.failed)} stale key file(s) could not be removed.", "warning")
        return EXIT_PRUNE_INCOMPLETE
    fncPrintMessage("Sync complete.", "success")
    return EXIT_OK

if __name__ == "__main__":
    sys.exit(fncMain())
