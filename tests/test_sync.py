"""End-to-end runs of fncSync against the fakes."""
import json

import pytest

import teamlogin
from conftest import FakeOpener, FakeProvisioner


def snapshot(key_dir):
    return {p.name: p.read_text() for p in key_dir.iterdir()}


def test_alice_bob_carol_scenario(make_opener, key_dir):
    (key_dir / "gh-alice").write_text("stale alice key\n")
    (key_dir / "gh-carol").write_text("carol key\n")
    prov = FakeProvisioner(existing=["gh-alice"])
    opener = make_opener(["alice", "bob"], keys={"alice": "alice v2\n", "bob": "bob v1\n"})

    report = teamlogin.fncSync(5, opener, prov, str(key_dir))

    assert report.ok
    assert report.removed == [str(key_dir / "gh-carol")]
    assert snapshot(key_dir) == {"gh-alice": "alice v2\n", "gh-bob": "bob v1\n"}
    assert prov.accounts["gh-bob"] == {
        "groups": {teamlogin.SSH_GROUP},
        "shell": teamlogin.DEFAULT_SHELL,
        "quota": (5, 6, teamlogin.QUOTA_FILESYSTEM),
    }
    assert prov.accounts["gh-alice"] == {"groups": set(), "shell": None, "quota": None}
    assert not any(c[1] == "gh-alice" for c in prov.mutating_calls())


def test_second_run_is_idempotent(make_opener, key_dir):
    prov = FakeProvisioner()
    users = ["alice", "bob"]

    teamlogin.fncSync(3, make_opener(users), prov, str(key_dir))
    first = snapshot(key_dir)
    prov.calls.clear()

    report = teamlogin.fncSync(3, make_opener(users), prov, str(key_dir))

    assert snapshot(key_dir) == first
    assert prov.mutating_calls() == []
    assert report.removed == []


def test_every_current_identity_has_exactly_one_key_file(make_opener, key_dir):
    users = ["alice", "bob", "dave"]
    keys = {u: f"ssh-ed25519 {u.upper()}\n" for u in users}
    teamlogin.fncSync(1, make_opener(users, keys=keys), FakeProvisioner(), str(key_dir))

    files = snapshot(key_dir)
    assert set(files) == {teamlogin.fncLocalUsername(u) for u in users}
    for u in users:
        assert files[teamlogin.fncLocalUsername(u)] == keys[u]


@pytest.mark.parametrize("body", ["<html>oops</html>", json.dumps({"nope": []})])
def test_malformed_team_payload_changes_nothing(key_dir, body):
    (key_dir / "gh-carol").write_text("carol key\n")
    prov = FakeProvisioner()
    opener = FakeOpener({teamlogin.TEAM_URL: body})

    with pytest.raises(teamlogin.ParseError):
        teamlogin.fncSync(5, opener, prov, str(key_dir))

    assert snapshot(key_dir) == {"gh-carol": "carol key\n"}
    assert prov.calls == []
    assert opener.requests == [teamlogin.TEAM_URL]


def test_fatal_error_skips_pruning(make_opener, key_dir):
    (key_dir / "gh-carol").write_text("carol key\n")
    prov = FakeProvisioner(fail_on={"gh-alice": "create"})

    with pytest.raises(teamlogin.CreateFailed):
        teamlogin.fncSync(5, make_opener(["alice"]), prov, str(key_dir))

    assert "gh-carol" in snapshot(key_dir)


def test_custom_team_url(make_opener, key_dir):
    opener = make_opener(["alice"], extra={"https://example.test/team.json": json.dumps({"github_users": []})})
    teamlogin.fncSync(5, opener, FakeProvisioner(), str(key_dir), team_url="https://example.test/team.json")
    assert opener.requests == ["https://example.test/team.json"]
    assert snapshot(key_dir) == {}
