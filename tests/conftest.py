"""Shared fakes for the teamlogin tests: an HTTP opener and an in-memory account backend."""
import json
from urllib.error import HTTPError

import pytest

import teamlogin


class FakeResponse:
    def __init__(self, body: bytes, status: int = 200):
        self._body = body
        self.status = status

    def read(self):
        return self._body

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False


class FakeOpener:
    """Serves canned bodies by URL; records every URL requested."""

    def __init__(self, routes=None):
        self.routes = dict(routes or {})
        self.requests = []

    def open(self, url, timeout=None):
        self.requests.append(url)
        route = self.routes.get(url)
        if route is None:
            raise HTTPError(url, 404, "Not Found", None, None)
        if isinstance(route, Exception):
            raise route
        if isinstance(route, FakeResponse):
            return route
        if isinstance(route, str):
            route = route.encode()
        return FakeResponse(route)


class FakeProvisioner(teamlogin.AccountProvisioner):
    """Accounts live in a dict; optionally fails a given step for a given user."""

    def __init__(self, existing=None, fail_on=None):
        self.accounts = {name: {"groups": set(), "shell": None, "quota": None} for name in (existing or ())}
        self.calls = []
        self.fail_on = fail_on or {}

    def _maybe_fail(self, step, name, exc):
        if self.fail_on.get(name) == step:
            raise exc(f"{step} refused", name)

    def exists(self, name):
        self.calls.append(("exists", name))
        return name in self.accounts

    def create(self, name):
        self.calls.append(("create", name))
        self._maybe_fail("create", name, teamlogin.CreateFailed)
        self.accounts[name] = {"groups": set(), "shell": None, "quota": None}

    def grant_group(self, name, group):
        self.calls.append(("grant_group", name, group))
        self._maybe_fail("grant_group", name, teamlogin.GroupFailed)
        self.accounts[name]["groups"].add(group)

    def set_shell(self, name, shell):
        self.calls.append(("set_shell", name, shell))
        self._maybe_fail("set_shell", name, teamlogin.ShellFailed)
        self.accounts[name]["shell"] = shell

    def set_quota(self, name, soft_gb, hard_gb, path):
        self.calls.append(("set_quota", name, soft_gb, hard_gb, path))
        self._maybe_fail("set_quota", name, teamlogin.QuotaFailed)
        self.accounts[name]["quota"] = (soft_gb, hard_gb, path)

    def mutating_calls(self):
        return [c for c in self.calls if c[0] != "exists"]


def team_payload(users):
    return json.dumps({teamlogin.TEAM_FIELD: list(users)})


def keys_url(login):
    return teamlogin.KEYS_URL_TEMPLATE.format(login)


@pytest.fixture
def key_dir(tmp_path):
    d = tmp_path / "authorized_keys"
    d.mkdir()
    return d


@pytest.fixture
def make_opener():
    def _make(users, keys=None, extra=None):
        routes = {teamlogin.TEAM_URL: team_payload(users)}
        for login in users:
            routes[keys_url(login)] = (keys or {}).get(login, f"ssh-ed25519 AAAA{login} {login}\n")
        routes.update(extra or {})
        return FakeOpener(routes)
    return _make
