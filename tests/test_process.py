import asyncio
import json
import stat
import sys
from contextlib import suppress
from dataclasses import replace

import psutil
import pytest

from auditor.config import load_config
from auditor.process import LighthouseProcess, lighthouse_argv
from auditor.report import parse_report
from auditor.runner import LighthouseRunner
from auditor.utils import AuditLaunchError, AuditProcessError

posix_only = pytest.mark.skipif(sys.platform == "win32", reason="uses /bin/sh scripts as a fake lighthouse")


def _fake_bin(tmp_path, body):
    p = tmp_path / "fake-lighthouse"
    p.write_text("#!/bin/sh\n" + body + "\n", encoding="utf-8")
    p.chmod(p.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
    return str(p)


def test_argv_carries_flags_and_categories():
    cfg = replace(load_config(), lighthouse_bin="lh", chrome_flags=("--headless", "--no-sandbox"), audit_timeout_s=45.0)
    argv = lighthouse_argv("https://example.com", cfg)
    assert argv[:2] == ["lh", "https://example.com"]
    assert "--output=json" in argv
    assert "--output-path=stdout" in argv
    assert "--only-categories=performance,accessibility,best-practices,seo,pwa" in argv
    assert "--chrome-flags=--headless --no-sandbox" in argv
    assert "--max-wait-for-load=45000" in argv


@pytest.mark.asyncio
async def test_missing_binary_is_a_launch_error(tmp_path):
    cfg = replace(load_config(), lighthouse_bin=str(tmp_path / "does-not-exist"))
    proc = LighthouseProcess("https://example.com", cfg)
    with pytest.raises(AuditLaunchError):
        await proc.start()
    assert not proc.is_running()


@posix_only
@pytest.mark.asyncio
async def test_collects_json_report(tmp_path):
    report = json.dumps({"categories": {"performance": {"score": 0.5}}})
    cfg = replace(load_config(), lighthouse_bin=_fake_bin(tmp_path, f"echo '{report}'"))
    proc = LighthouseProcess("https://example.com", cfg)
    await proc.start()
    raw = await proc.collect()
    assert parse_report(raw).performance == 50
    assert not proc.is_running()


@posix_only
@pytest.mark.asyncio
async def test_nonzero_exit_carries_stderr(tmp_path):
    cfg = replace(load_config(), lighthouse_bin=_fake_bin(tmp_path, "echo 'Runtime error encountered: Target closed' >&2; exit 1"))
    proc = LighthouseProcess("https://example.com", cfg)
    await proc.start()
    with pytest.raises(AuditProcessError, match="Target closed") as ei:
        await proc.collect()
    assert ei.value.returncode == 1


@posix_only
@pytest.mark.asyncio
async def test_terminate_kills_process_tree(tmp_path):
    # the script forks a long-lived child, the way lighthouse forks chrome
    cfg = replace(load_config(), lighthouse_bin=_fake_bin(tmp_path, "sleep 30 &\nwait"))
    proc = LighthouseProcess("https://example.com", cfg)
    await proc.start()
    await asyncio.sleep(0.3)
    assert proc.is_running()

    await proc.terminate(grace_s=2.0)

    assert not proc.is_running()


def _leftovers(marker):
    out = []
    for p in psutil.process_iter(["cmdline", "status"]):
        if p.info["cmdline"] == ["sleep", marker] and p.info["status"] != psutil.STATUS_ZOMBIE:
            out.append(p)
    return out


def _runner_cfg(tmp_path, body):
    return replace(
        load_config(),
        lighthouse_bin=_fake_bin(tmp_path, body),
        max_retries=0,
        kill_grace_s=1.0,
        audit_timeout_s=10.0,
    )


@posix_only
@pytest.mark.asyncio
async def test_orphaned_child_is_killed_after_lighthouse_crashes(tmp_path):
    cfg = _runner_cfg(tmp_path, "sleep 4242 >/dev/null 2>&1 &\necho 'Runtime error: NO_FCP' >&2\nexit 1")
    try:
        result = await LighthouseRunner(cfg).run_audit("example.com")
        assert result.error
        assert _leftovers("4242") == []
    finally:
        for p in _leftovers("4242"):
            with suppress(psutil.Error):
                p.kill()


@posix_only
@pytest.mark.asyncio
async def test_orphaned_child_is_killed_after_lighthouse_succeeds(tmp_path):
    report = json.dumps({"categories": {"performance": {"score": 0.5}}})
    cfg = _runner_cfg(tmp_path, f"sleep 4243 >/dev/null 2>&1 &\necho '{report}'")
    try:
        result = await LighthouseRunner(cfg).run_audit("example.com")
        assert not result.error
        assert result.scores.performance == 50
        assert _leftovers("4243") == []
    finally:
        for p in _leftovers("4243"):
            with suppress(psutil.Error):
                p.kill()
