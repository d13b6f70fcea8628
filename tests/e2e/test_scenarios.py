"""
Whole-queue runs against simulated web apps.

The simulated sites keep their state across page objects, like a real server would, and react to
the clicks and keystrokes autopilot sends.
"""

import base64
import time

import pytest

from autopilot.agent.orchestrator import TaskOrchestrator
from autopilot.agent.views import TaskStatus
from autopilot.browser.session import BrowserSession
from fakes import FakeElement, FakePage, FakePlaywright, TargetClosedError, make_config

CDP_URL = "http://127.0.0.1:9222"


class ChatSite:
    """Echoes every prompt back, streaming the answer in over ``stream_s`` while a stop button shows."""

    def __init__(self, stream_s: float = 0.1, respond: bool = True, crash_during_first_answer: bool = False):
        self.stream_s = stream_s
        self.respond = respond
        self.crash_pending = crash_during_first_answer
        self.responses: list[FakeElement] = []
        self.generation_started = 0.0
        self.busy_until = 0.0
        self.pages: list[FakePage] = []

    def page_factory(self, context) -> FakePage:
        page = FakePage(context)
        textarea = FakeElement()
        send = FakeElement("Send", on_click=lambda: self._generate(page))
        stop = FakeElement("Stop")

        def _busy():
            now = time.monotonic()
            generating = self.generation_started > 0
            if self.crash_pending and generating and now - self.generation_started > self.stream_s / 2:
                self.crash_pending = False
                page.crashed = True
                raise TargetClosedError()
            return [stop] if now < self.busy_until else []

        page.dom = {
            "#prompt-textarea": [textarea],
            "#composer-submit-button": [send],
            '[data-testid="stop-button"]': _busy,
            '[data-message-author-role="assistant"]': lambda: list(self.responses),
        }
        self.pages.append(page)
        return page

    def _generate(self, page: FakePage) -> None:
        if not self.respond:
            return
        answer = f"Echo: {page.keyboard.typed[-1]}"
        started = time.monotonic()

        def _streamed() -> str:
            progress = min(1.0, (time.monotonic() - started) / self.stream_s)
            return answer[: int(len(answer) * progress)]

        self.generation_started = started
        self.busy_until = started + self.stream_s
        self.responses.append(FakeElement(_streamed))


class VideoSite:
    """Needs a "New project" click, shows a consent popup and renders one new clip per Create after ``render_s``."""

    def __init__(self, render_s: float = 0.05):
        self.render_s = render_s
        self.project_open = False
        self.consent_shown = True
        self.renders: list[tuple[float, FakeElement]] = []

    @staticmethod
    def clip(number: int) -> bytes:
        return b"\x00\x00\x00\x18ftypmp42 clip-%d" % number

    def page_factory(self, context) -> FakePage:
        page = FakePage(context)
        prompt_box = FakeElement()
        consent = FakeElement("I agree", on_click=self._accept)
        new_project = FakeElement("New project", on_click=self._open_project)
        create = FakeElement("Create", on_click=self._render)

        page.dom = {
            'button:has-text("I agree")': lambda: [consent] if self.consent_shown else [],
            'button:has-text("New project")': [new_project],
            "#PINHOLE_TEXT_AREA_ELEMENT_ID": lambda: [prompt_box] if self.project_open else [],
            'button[aria-label="作成"]': lambda: [create] if self.project_open else [],
            'button:has-text("Add to scene")': lambda: [FakeElement("Add to scene") for _ in self._rendered()],
            "video": lambda: self._rendered(),
        }
        return page

    def _accept(self) -> None:
        self.consent_shown = False

    def _open_project(self) -> None:
        self.project_open = True

    def _render(self) -> None:
        payload = self.clip(len(self.renders) + 1)
        video = FakeElement(attrs={"src": "data:video/mp4;base64," + base64.b64encode(payload).decode()})
        self.renders.append((time.monotonic(), video))

    def _rendered(self) -> list[FakeElement]:
        now = time.monotonic()
        return [video for started, video in self.renders if now - started >= self.render_s]


def make_session(site) -> BrowserSession:
    return BrowserSession(cdp_url=CDP_URL, playwright=FakePlaywright(page_factory=site.page_factory))


@pytest.mark.asyncio
async def test_three_chat_prompts_in_order():
    site = ChatSite()
    session = make_session(site)
    config = make_config(prompts=["first", "second", "third"])

    summary = await TaskOrchestrator(session, config).run_queue()
    await session.stop()

    assert summary.succeeded
    assert [r.value for r in summary.results] == ["Echo: first", "Echo: second", "Echo: third"]
    assert [r.status for r in summary.results] == [TaskStatus.SUCCESS] * 3
    assert summary.reconnects == 0
    assert site.pages[0].visits == ["https://chatgpt.com/"]


@pytest.mark.asyncio
async def test_disconnect_mid_wait_recovers_with_one_reconnect():
    site = ChatSite(stream_s=0.2, crash_during_first_answer=True)
    session = make_session(site)
    config = make_config(prompts=["hello"])

    summary = await TaskOrchestrator(session, config).run_queue()

    result = summary.results[0]
    assert result.status == TaskStatus.SUCCESS
    assert result.value == "Echo: hello"
    assert session.reconnect_count == 1
    assert summary.to_output()["reconnects"] == 1
    # the replacement page was brought back to the working context before resubmitting
    assert site.pages[1].visits == ["https://chatgpt.com/"]
    assert site.pages[1].keyboard.typed == ["hello"]


@pytest.mark.asyncio
async def test_missing_completion_times_out():
    site = ChatSite(respond=False)
    session = make_session(site)
    config = make_config(prompts=["anyone there?"], wait_timeout_ms=300, max_retries=1)

    summary = await TaskOrchestrator(session, config).run_queue()

    result = summary.results[0]
    assert result.status == TaskStatus.TIMEOUT
    assert "Timeout" in result.error
    assert 0.3 <= result.elapsed_seconds < 2.0
    output = summary.to_output()
    assert output["success"] is False
    assert output["outputs"]["result_p1"].startswith("(Error: Timeout")


@pytest.mark.asyncio
async def test_video_generation_downloads_artifact(tmp_path):
    site = VideoSite()
    session = make_session(site)
    output_path = tmp_path / "scene.mp4"
    config = make_config(profile="flow", prompts=["a cat surfing"], transcode=False, output_path=str(output_path))

    summary = await TaskOrchestrator(session, config).run_queue()

    result = summary.results[0]
    assert result.status == TaskStatus.SUCCESS
    assert result.artifact.method == "direct"
    assert output_path.read_bytes() == VideoSite.clip(1)
    assert summary.outputs() == {"result_p1": str(output_path)}
    assert site.consent_shown is False
    assert len(site.renders) == 1


@pytest.mark.asyncio
async def test_each_video_task_saves_its_own_clip(tmp_path):
    site = VideoSite()
    session = make_session(site)
    config = make_config(
        profile="flow", prompts=["a cat surfing", "a dog skiing"], transcode=False, output_path=str(tmp_path / "scene.mp4")
    )

    summary = await TaskOrchestrator(session, config).run_queue()

    assert summary.succeeded
    assert len(site.renders) == 2
    assert [r.artifact.path.name for r in summary.results] == ["scene_p1.mp4", "scene_p2.mp4"]
    assert [r.artifact.path.read_bytes() for r in summary.results] == [VideoSite.clip(1), VideoSite.clip(2)]
