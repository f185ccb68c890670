# SPDX-License-Identifier: GPL-3.0-or-later
# Copyright (C) 2025 The proxylaunch Authors

"""
proxylaunch Update Applier Tests

Run with: pytest tests/test_applier.py -v
"""

import asyncio
import sys
from pathlib import Path

import pytest


def test_new_executable_name():
    from proxylaunch.applier import new_executable_name

    assert new_executable_name("app.exe") == "app_new.exe"
    assert new_executable_name("app") == "app_new"
    assert new_executable_name("proxy.launch.exe") == "proxy.launch_new.exe"
    assert new_executable_name(".hidden") == ".hidden_new"


def test_current_executable_from_source(monkeypatch):
    from proxylaunch.applier import current_executable

    monkeypatch.delattr(sys, "frozen", raising=False)

    assert current_executable() is None


def test_current_executable_frozen(monkeypatch, tmp_path):
    from proxylaunch.applier import current_executable

    binary = tmp_path / "proxylaunch.exe"
    binary.write_text("")
    monkeypatch.setattr(sys, "frozen", True, raising=False)
    monkeypatch.setattr(sys, "executable", str(binary))

    assert current_executable() == binary.resolve()


def test_new_executable_path_next_to_binary(tmp_path):
    from proxylaunch.applier import UpdateApplier

    applier = UpdateApplier(executable=tmp_path / "proxylaunch.exe", platform_name="windows")

    assert applier.new_executable_path() == tmp_path / "proxylaunch_new.exe"


def test_windows_script(tmp_path):
    from proxylaunch.applier import UpdateApplier

    current = tmp_path / "proxylaunch.exe"
    applier = UpdateApplier(executable=current, platform_name="windows", restart_delay=3)

    script = applier.apply(tmp_path / "proxylaunch_new.exe")

    assert script.path == tmp_path / "update_proxylaunch.bat"
    assert script.platform == "windows"
    content = script.path.read_bytes().decode("utf-8")
    assert content == script.content
    assert "\r\n" in content
    assert "ping -n 4 127.0.0.1 > nul" in content
    assert f'del "{current}"' in content
    assert f'rename "{tmp_path / "proxylaunch_new.exe"}" "proxylaunch.exe"' in content
    assert f'start "" "{current}"' in content
    assert content.rstrip().endswith('del "%~f0"')


def test_posix_script(tmp_path):
    from proxylaunch.applier import UpdateApplier

    current = tmp_path / "proxylaunch"
    applier = UpdateApplier(executable=current, platform_name="posix", restart_delay=2)

    script = applier.apply(tmp_path / "proxylaunch_new")

    assert script.path == tmp_path / "update_proxylaunch.sh"
    content = script.path.read_text()
    assert content.startswith("#!/bin/sh\n")
    assert "sleep 2" in content
    assert f"rm -f {current}" in content
    assert f"mv {tmp_path / 'proxylaunch_new'} {current}" in content
    assert f"chmod +x {current}" in content
    assert 'rm -f "$0"' in content
    if sys.platform != "win32":
        assert script.path.stat().st_mode & 0o111


def test_posix_script_quotes_paths(tmp_path):
    from proxylaunch.applier import render_posix_script

    content = render_posix_script(Path("/opt/my app/run"), Path("/opt/my app/run_new"), 3)

    assert "'/opt/my app/run'" in content


def test_apply_from_source_is_manual(tmp_path):
    from proxylaunch.applier import UpdateApplier

    applier = UpdateApplier(executable=None, platform_name="posix")

    assert applier.supports_self_replace is False
    assert applier.apply(tmp_path / "proxylaunch_new") is None
    assert list(tmp_path.iterdir()) == []


def test_apply_write_failure(tmp_path):
    from proxylaunch.applier import UpdateApplier
    from proxylaunch.errors import UpdateIOError

    current = tmp_path / "missing-dir" / "proxylaunch"
    applier = UpdateApplier(executable=current, platform_name="posix")

    with pytest.raises(UpdateIOError):
        applier.apply(tmp_path / "proxylaunch_new")


@pytest.mark.skipif(sys.platform == "win32", reason="runs a POSIX shell script")
def test_script_swaps_binaries(tmp_path):
    """Run the generated script end to end."""
    from proxylaunch.applier import UpdateApplier

    current = tmp_path / "proxylaunch"
    current.write_text("#!/bin/sh\nexit 0\n")
    new = tmp_path / "proxylaunch_new"
    new.write_text("#!/bin/sh\necho v2 > relaunched.txt\n")
    applier = UpdateApplier(executable=current, platform_name="posix", restart_delay=0)

    script = applier.apply(new)

    import subprocess
    subprocess.run(["/bin/sh", str(script.path)], cwd=tmp_path, check=True, timeout=30)

    assert current.read_text() == "#!/bin/sh\necho v2 > relaunched.txt\n"
    assert not new.exists()
    assert not script.path.exists()


def test_restart_spawns_script_then_terminates(tmp_path, monkeypatch):
    import proxylaunch.applier as applier_module
    from proxylaunch.applier import UpdateApplier

    spawned = []
    terminated = []
    monkeypatch.setattr(
        applier_module, "spawn_detached",
        lambda command, env=None, cwd=None: spawned.append((command, cwd)),
    )

    applier = UpdateApplier(
        executable=tmp_path / "proxylaunch.exe",
        platform_name="windows",
        terminate=lambda: terminated.append(True),
    )
    script = applier.apply(tmp_path / "proxylaunch_new.exe")

    asyncio.run(applier.restart(script))

    assert spawned == [(["cmd", "/c", "start", "", str(script.path)], tmp_path)]
    assert terminated == [True]


def test_restart_failure_does_not_terminate(tmp_path, monkeypatch):
    import proxylaunch.applier as applier_module
    from proxylaunch.applier import UpdateApplier
    from proxylaunch.errors import UpdateIOError

    def refuse(command, env=None, cwd=None):
        raise FileNotFoundError("cmd")

    terminated = []
    monkeypatch.setattr(applier_module, "spawn_detached", refuse)
    applier = UpdateApplier(
        executable=tmp_path / "proxylaunch",
        platform_name="posix",
        terminate=lambda: terminated.append(True),
    )
    script = applier.apply(tmp_path / "proxylaunch_new")

    with pytest.raises(UpdateIOError):
        asyncio.run(applier.restart(script))
    assert terminated == []
