import json

import pytest

from autopilot import cli
from autopilot.agent.views import RunSummary, TaskResult, TaskStatus
from autopilot.browser.session import BrowserSession
from fakes import FakePlaywright


def read_single_json_line(capsys) -> dict:
    out = capsys.readouterr().out
    lines = out.splitlines()
    assert len(lines) == 1
    return json.loads(lines[0])


def test_configuration_error_prints_one_json_line(capsys):
    code = cli.main(["{not json"])

    output = read_single_json_line(capsys)
    assert code == 1
    assert output["success"] is False
    assert output["error"]["type"] == "ConfigurationError"


def test_success_output(monkeypatch, capsys):
    summary = RunSummary(
        total=1,
        elapsed_seconds=1.5,
        results=[TaskResult(index=1, status=TaskStatus.SUCCESS, attempts=1, value="Paris")],
    )

    async def _run(args):
        assert args.max_retries == 2
        return summary.to_output(), 0

    monkeypatch.setattr(cli, "run", _run)

    code = cli.main(['{"prompts": ["capital of France?"]}', "--retries", "2"])

    output = read_single_json_line(capsys)
    assert code == 0
    assert output["success"] is True
    assert output["outputs"] == {"result_p1": "Paris"}


def test_unexpected_error_still_prints_json(monkeypatch, capsys):
    async def _run(args):
        raise RuntimeError("event loop exploded")

    monkeypatch.setattr(cli, "run", _run)

    code = cli.main(['{"prompt": "x"}'])

    output = read_single_json_line(capsys)
    assert code == 1
    assert output["error"]["message"] == "event loop exploded"


def test_flags_become_overrides(tmp_path):
    path = tmp_path / "input.json"
    path.write_text(json.dumps({"prompts": ["a"], "maxRetries": 5}))
    args = cli.build_parser().parse_args(
        [str(path), "--file", "--profile", "flow", "--no-download", "--strip-audio", "--no-screenshot", "--answer-wait", "1000"]
    )

    config = cli.config_from_args(args)

    assert config.profile.name == "flow"
    assert config.max_retries == 5
    assert config.download is False
    assert config.keep_audio is False
    assert config.screenshot is False
    assert config.wait_timeout_ms == 1000


def test_session_defaults_to_env_cdp_url(monkeypatch):
    monkeypatch.setenv("AUTOPILOT_CDP_URL", "http://browser:9333")
    config = cli.load_task_config('{"prompt": "x"}')

    assert cli.session_for(config).cdp_url == "http://browser:9333"


def test_user_data_dir_launches_locally(tmp_path):
    config = cli.load_task_config(json.dumps({"prompt": "x", "userDataDir": str(tmp_path)}))

    session = cli.session_for(config)

    assert session.cdp_url is None
    assert session.user_data_dir == tmp_path


class _AnsweringOrchestrator:
    def __init__(self, session, config):
        self.session = session
        self.config = config
        self.summary = None

    async def run_queue(self):
        await self.session.ensure_live()
        self.summary = RunSummary(total=1, results=[TaskResult(index=1, status=TaskStatus.SUCCESS, attempts=1, value="ok")])
        return self.summary


@pytest.mark.asyncio
async def test_successful_run_saves_result_screenshot(monkeypatch, tmp_path):
    session = BrowserSession(cdp_url="http://127.0.0.1:9222", playwright=FakePlaywright())
    monkeypatch.setattr(cli, "session_for", lambda config: session)
    monkeypatch.setattr(cli, "TaskOrchestrator", _AnsweringOrchestrator)
    shot = tmp_path / "final.png"
    args = cli.build_parser().parse_args(['{"prompt": "x"}', "--screenshot", str(shot)])

    output, code = await cli.run(args)

    assert code == 0
    assert output["success"] is True
    assert output["screenshot"] == str(shot)
    assert shot.exists()


@pytest.mark.asyncio
async def test_no_screenshot_flag_skips_capture(monkeypatch):
    session = BrowserSession(cdp_url="http://127.0.0.1:9222", playwright=FakePlaywright())
    monkeypatch.setattr(cli, "session_for", lambda config: session)
    monkeypatch.setattr(cli, "TaskOrchestrator", _AnsweringOrchestrator)
    args = cli.build_parser().parse_args(['{"prompt": "x"}', "--no-screenshot"])

    output, code = await cli.run(args)

    assert code == 0
    assert "screenshot" not in output
