"""The shell backend: which commands get run and how failures map to errors."""
import pytest

import teamlogin


@pytest.fixture
def recorder(monkeypatch):
    calls = []
    results = {}

    def fake_run(cmdkey, args=None):
        calls.append([cmdkey] + list(args or []))
        return results.get(cmdkey, (0, "", ""))

    monkeypatch.setattr(teamlogin, "fncRun", fake_run)
    return calls, results


def test_exists_maps_id_exit_code(recorder):
    calls, results = recorder
    prov = teamlogin.ShellProvisioner()
    assert prov.exists("gh-alice") is True
    results["id"] = (1, "", "id: 'gh-bob': no such user")
    assert prov.exists("gh-bob") is False
    assert calls == [["id", "-u", "gh-alice"], ["id", "-u", "gh-bob"]]


def test_provisioning_commands(recorder):
    calls, _ = recorder
    teamlogin.fncProvisionAccount(teamlogin.ShellProvisioner(), "gh-bob", 5,
                                  ssh_group="dev-desktop-allow-ssh", shell="/usr/bin/bash", quota_path="/")
    assert calls == [
        ["useradd", "--create-home", "gh-bob"],
        ["usermod", "-a", "-G", "dev-desktop-allow-ssh", "gh-bob"],
        ["usermod", "--shell", "/usr/bin/bash", "gh-bob"],
        ["setquota", "-u", "gh-bob", "5G", "6G", "0", "0", "/"],
    ]


@pytest.mark.parametrize("method, args, cmdkey, exc_type", [
    ("create", ("gh-bob",), "useradd", teamlogin.CreateFailed),
    ("grant_group", ("gh-bob", "ssh"), "usermod", teamlogin.GroupFailed),
    ("set_shell", ("gh-bob", "/bin/sh"), "usermod", teamlogin.ShellFailed),
    ("set_quota", ("gh-bob", 1, 2, "/"), "setquota", teamlogin.QuotaFailed),
])
def test_nonzero_exit_raises_typed_error(recorder, method, args, cmdkey, exc_type):
    _, results = recorder
    results[cmdkey] = (9, "", "boom")
    with pytest.raises(exc_type) as exc:
        getattr(teamlogin.ShellProvisioner(), method)(*args)
    assert exc.value.identity == "gh-bob"
    assert "boom" in str(exc.value)


def test_preflight_reports_missing_binaries(monkeypatch, tmp_path):
    present = tmp_path / "id"
    present.write_text("")
    monkeypatch.setitem(teamlogin.BIN, "id", str(present))
    monkeypatch.setitem(teamlogin.BIN, "useradd", str(tmp_path / "useradd"))
    monkeypatch.setitem(teamlogin.BIN, "usermod", str(present))
    monkeypatch.setitem(teamlogin.BIN, "setquota", str(present))

    with pytest.raises(teamlogin.ProvisionError) as exc:
        teamlogin.ShellProvisioner().preflight()
    assert exc.value.step == "preflight"
    assert "useradd" in str(exc.value)


def test_run_reports_missing_binary(monkeypatch, tmp_path):
    monkeypatch.setitem(teamlogin.BIN, "id", str(tmp_path / "no-such-id"))
    rc, out, err = teamlogin.fncRun("id", ["-u", "root"])
    assert rc == 127
    assert "binary not found" in err
