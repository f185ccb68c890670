# SPDX-License-Identifier: GPL-3.0-or-later
# Copyright (C) 2025 The proxylaunch Authors

"""
proxylaunch Update Checker / Manager Tests

Manifests and payloads come from an in-process aiohttp server.
Run with: pytest tests/test_updater.py -v
"""

import asyncio
import json
import logging

import pytest
from aiohttp import web
from aiohttp.test_utils import TestServer


PAYLOAD = b"MZ" + b"\x00" * 50000


def make_app(manifest=None, manifest_status=200, manifest_body=None, payload_status=200, payload_delay=0.0):
    async def get_manifest(request):
        if manifest_body is not None:
            return web.Response(status=manifest_status, text=manifest_body)
        return web.json_response(manifest, status=manifest_status)

    async def get_payload(request):
        if payload_delay:
            await asyncio.sleep(payload_delay)
        if payload_status != 200:
            return web.Response(status=payload_status, text="server error")
        return web.Response(body=PAYLOAD)

    async def slow_manifest(request):
        await asyncio.sleep(2)
        return web.json_response(manifest)

    app = web.Application()
    app.router.add_get("/crmplus.json", get_manifest)
    app.router.add_get("/slow.json", slow_manifest)
    app.router.add_get("/proxylaunch", get_payload)
    return app


def manifest_doc(version="1.4", major=False, download_url="http://unused/", notes="Bug fixes"):
    return {
        "version": version,
        "majorUpdate": major,
        "downloadUrl": download_url,
        "patchNotes": notes,
    }


async def wait_until(predicate, timeout=10.0):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.02)


# =============================================================================
# VERSION COMPARISON
# =============================================================================

def test_parse_version():
    from proxylaunch.updater import parse_version

    assert parse_version("1.3") == (1, 3)
    assert parse_version("10.0.2") == (10, 0, 2)
    assert parse_version(" 2 ") == (2,)


@pytest.mark.parametrize("value", ["", "1.3b", "v1.3", "1..3", "1.-3", "１.3"])
def test_parse_version_rejects(value):
    from proxylaunch.updater import parse_version

    with pytest.raises(ValueError):
        parse_version(value)


def test_is_newer_version():
    from proxylaunch.updater import is_newer_version

    assert is_newer_version("1.3", "1.4") is True
    assert is_newer_version("1.3", "1.10") is True
    assert is_newer_version("1.3", "2") is True
    assert is_newer_version("1.3", "1.3") is False
    assert is_newer_version("1.3", "1.3.0") is False
    assert is_newer_version("1.3.0", "1.3") is False
    assert is_newer_version("1.3", "1.2.9") is False


def test_is_newer_version_string_fallback():
    from proxylaunch.updater import is_newer_version

    assert is_newer_version("1.3", "1.3b") is True
    assert is_newer_version("1.3b", "1.3b") is False
    assert is_newer_version("1.3-rc", "1.3") is False


def test_manifest_aliases():
    from proxylaunch.updater import UpdateManifest

    manifest = UpdateManifest.model_validate({"version": "1.4", "majorUpdate": True, "downloadUrl": "http://x/y"})

    assert manifest.major_update is True
    assert manifest.download_url == "http://x/y"
    assert manifest.patch_notes == ""


# =============================================================================
# UPDATE CHECKER
# =============================================================================

def run_check(app, path="/crmplus.json", current="1.3", **kwargs):
    from proxylaunch.updater import UpdateChecker

    async def scenario():
        async with TestServer(app) as server:
            checker = UpdateChecker(str(server.make_url(path)), current_version=current, **kwargs)
            return await checker.check_for_updates()

    return asyncio.run(scenario())


def test_check_newer_version():
    manifest = run_check(make_app(manifest_doc("1.4", notes="Faster startup")))

    assert manifest is not None
    assert manifest.version == "1.4"
    assert manifest.major_update is False
    assert manifest.patch_notes == "Faster startup"


def test_check_up_to_date_logs_once(caplog):
    with caplog.at_level(logging.INFO, logger="proxylaunch.updater"):
        manifest = run_check(make_app(manifest_doc("1.3")))

    assert manifest is None
    lines = [r for r in caplog.records if "up to date" in r.getMessage()]
    assert len(lines) == 1


def test_check_non_200_returns_none():
    assert run_check(make_app(manifest_doc(), manifest_status=404)) is None


def test_check_malformed_json():
    from proxylaunch.errors import ParseError

    with pytest.raises(ParseError):
        run_check(make_app(manifest_body="{not json"))


def test_check_invalid_utf8_body():
    from proxylaunch.errors import ParseError

    async def get_manifest(request):
        return web.Response(body=b'{"version": "\xff\xfe"}', content_type="application/json")

    app = web.Application()
    app.router.add_get("/crmplus.json", get_manifest)

    with pytest.raises(ParseError):
        run_check(app)


def test_run_check_survives_invalid_utf8_body(tmp_path):
    from proxylaunch.updater import UpdateChecker

    async def get_manifest(request):
        return web.Response(body=b'{"version": "\xff"}', content_type="application/json")

    app = web.Application()
    app.router.add_get("/crmplus.json", get_manifest)

    async def scenario():
        async with TestServer(app) as server:
            checker = UpdateChecker(str(server.make_url("/crmplus.json")), current_version="1.3")
            manager, events, _ = make_manager(tmp_path, checker)
            return await manager.run_check(), events.pending()

    result, pending = asyncio.run(scenario())

    assert result is None
    assert pending == []


def test_check_missing_field():
    from proxylaunch.errors import ParseError

    with pytest.raises(ParseError):
        run_check(make_app(manifest_body=json.dumps({"version": "1.4"})))


def test_check_timeout():
    from proxylaunch.errors import NetworkError

    with pytest.raises(NetworkError):
        run_check(make_app(manifest_doc()), path="/slow.json", read_timeout=0.2)


def test_check_connection_refused():
    from proxylaunch.errors import NetworkError
    from proxylaunch.updater import UpdateChecker

    checker = UpdateChecker("http://127.0.0.1:9/crmplus.json", current_version="1.3")

    with pytest.raises(NetworkError):
        asyncio.run(checker.check_for_updates())


# =============================================================================
# UPDATE MANAGER
# =============================================================================

class StaticChecker:
    def __init__(self, result=None, error=None):
        self.result = result
        self.error = error

    async def check_for_updates(self):
        if self.error is not None:
            raise self.error
        return self.result


def make_manager(tmp_path, checker, executable="proxylaunch", **kwargs):
    from proxylaunch.applier import UpdateApplier
    from proxylaunch.downloader import Downloader
    from proxylaunch.events import EventBus
    from proxylaunch.updater import UpdateManager

    terminated = []
    applier = UpdateApplier(
        executable=(tmp_path / executable) if executable else None,
        platform_name="posix",
        restart_delay=1,
        terminate=lambda: terminated.append(True),
    )
    events = EventBus()
    manager = UpdateManager(checker, Downloader(), applier, events, **kwargs)
    return manager, events, terminated


def test_run_check_swallows_network_errors(tmp_path):
    from proxylaunch.errors import NetworkError, ParseError

    for error in (NetworkError("offline"), ParseError("garbage")):
        manager, events, _ = make_manager(tmp_path, StaticChecker(error=error))
        assert asyncio.run(manager.run_check()) is None
        assert events.pending() == []


def test_run_check_up_to_date(tmp_path):
    manager, events, _ = make_manager(tmp_path, StaticChecker(result=None))

    assert asyncio.run(manager.run_check()) is None
    assert events.pending() == []


def test_major_update_opens_download_page(tmp_path):
    from proxylaunch.updater import UpdateManifest

    opened = []
    manifest = UpdateManifest.model_validate(manifest_doc("2.0", major=True, download_url="https://example.invalid/get"))
    manager, events, _ = make_manager(
        tmp_path, StaticChecker(result=manifest), open_browser=lambda url: opened.append(url) or True,
    )

    async def scenario():
        await manager.run_check()
        (notification,) = events.pending()
        assert notification.kind.value == "major_update"
        assert notification.actions == ["visit_download_page", "dismiss"]
        assert "Would you like to visit the download page?" in notification.message
        events.respond(notification.id, "visit_download_page")
        await wait_until(lambda: opened)
        await manager.close()

    asyncio.run(scenario())

    assert opened == ["https://example.invalid/get"]
    assert events.pending() == []


def test_major_update_browser_failure_notifies_url(tmp_path):
    from proxylaunch.updater import UpdateManifest

    manifest = UpdateManifest.model_validate(manifest_doc("2.0", major=True, download_url="https://example.invalid/get"))
    manager, events, _ = make_manager(
        tmp_path, StaticChecker(result=manifest), open_browser=lambda url: False,
    )

    async def scenario():
        await manager.run_check()
        (notification,) = events.pending()
        events.respond(notification.id, "visit_download_page")
        await wait_until(lambda: events.pending())
        await manager.close()
        return events.pending()

    (error,) = asyncio.run(scenario())

    assert error.kind.value == "error"
    assert "https://example.invalid/get" in error.message


def test_minor_update_dismissed(tmp_path):
    from proxylaunch.updater import UpdateManifest

    manifest = UpdateManifest.model_validate(manifest_doc("1.4"))
    manager, events, _ = make_manager(tmp_path, StaticChecker(result=manifest))

    async def scenario():
        await manager.run_check()
        (notification,) = events.pending()
        assert notification.kind.value == "update_available"
        events.respond(notification.id, "dismiss")
        await asyncio.sleep(0.05)
        await manager.close()

    asyncio.run(scenario())

    assert events.pending() == []
    assert not (tmp_path / "proxylaunch_new").exists()


def test_minor_update_install_and_restart(tmp_path, monkeypatch):
    import proxylaunch.applier as applier_module
    from proxylaunch.updater import UpdateManifest

    spawned = []
    monkeypatch.setattr(
        applier_module, "spawn_detached",
        lambda command, env=None, cwd=None: spawned.append(command),
    )
    stopped = []

    async def before_restart():
        stopped.append(True)

    async def scenario():
        async with TestServer(make_app()) as server:
            manifest = UpdateManifest.model_validate(
                manifest_doc("1.4", download_url=str(server.make_url("/proxylaunch")))
            )
            manager, events, terminated = make_manager(
                tmp_path, StaticChecker(result=manifest), before_restart=before_restart,
            )
            statuses = []
            events.subscribe(lambda e: statuses.append(e["text"]) if e["type"] == "status" else None)

            await manager.run_check()
            (offer,) = events.pending()
            events.respond(offer.id, "install")

            await wait_until(lambda: any(n.kind.value == "update_ready" for n in events.pending()))
            (ready,) = events.pending()
            assert ready.actions == ["restart", "later"]
            events.respond(ready.id, "restart")

            await wait_until(lambda: terminated)
            await manager.close()
            return statuses, terminated

    statuses, terminated = asyncio.run(scenario())

    assert (tmp_path / "proxylaunch_new").read_bytes() == PAYLOAD
    assert (tmp_path / "update_proxylaunch.sh").exists()
    assert spawned == [["/bin/sh", str(tmp_path / "update_proxylaunch.sh")]]
    assert stopped == [True]
    assert terminated == [True]

    assert statuses[0] == "Downloading update..."
    progress = [int(s.split(": ")[1].rstrip("%")) for s in statuses if s.startswith("Downloading: ")]
    assert progress and progress == sorted(progress) and progress[-1] == 100
    assert statuses[-1] == "Update downloaded!"


def test_install_without_self_replace_is_manual(tmp_path, monkeypatch):
    from proxylaunch.updater import UpdateManifest

    monkeypatch.chdir(tmp_path)

    async def scenario():
        async with TestServer(make_app()) as server:
            manifest = UpdateManifest.model_validate(
                manifest_doc("1.4", download_url=str(server.make_url("/proxylaunch")))
            )
            manager, events, terminated = make_manager(tmp_path, StaticChecker(), executable=None)
            await manager.install_update(manifest)
            return events.pending(), terminated

    (notification,), terminated = asyncio.run(scenario())

    assert notification.kind.value == "update_manual"
    assert "proxylaunch_new" in notification.message
    assert terminated == []


def test_install_failure_reports_error(tmp_path):
    from proxylaunch.events import StatusLevel
    from proxylaunch.updater import UpdateManifest

    async def scenario():
        async with TestServer(make_app(payload_status=500)) as server:
            manifest = UpdateManifest.model_validate(
                manifest_doc("1.4", download_url=str(server.make_url("/proxylaunch")))
            )
            manager, events, _ = make_manager(tmp_path, StaticChecker())
            # Never raises
            await manager.install_update(manifest)
            return events

    events = asyncio.run(scenario())

    assert events.status.text == "Update failed"
    assert events.status.level == StatusLevel.ERROR
    (notification,) = events.pending()
    assert notification.kind.value == "error"
    assert "500" in notification.message


def test_install_one_at_a_time(tmp_path):
    from proxylaunch.updater import UpdateManifest

    async def scenario():
        async with TestServer(make_app(payload_delay=0.5)) as server:
            manifest = UpdateManifest.model_validate(
                manifest_doc("1.4", download_url=str(server.make_url("/proxylaunch")))
            )
            manager, events, _ = make_manager(tmp_path, StaticChecker())
            first = asyncio.create_task(manager.install_update(manifest))
            await wait_until(lambda: manager.update_in_progress)
            with pytest.raises(RuntimeError):
                await manager.install_update(manifest)
            await first
            await manager.close()
            return manager.update_in_progress

    assert asyncio.run(scenario()) is False
