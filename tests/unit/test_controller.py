import pytest

from autopilot.controller.service import Controller
from autopilot.exceptions import ApplicationError, ConfigurationError, NotLoggedInError, WaitTimeoutError
from fakes import FakeElement, FakePage, make_config


def make_controller(profile: str = "chatgpt", **overrides) -> Controller:
    config = make_config(profile=profile, **overrides)
    return Controller(config.profile, config)


class TestWorkspace:
    @pytest.mark.asyncio
    async def test_login_redirect_is_terminal(self):
        controller = make_controller()
        page = FakePage(dom={"#prompt-textarea": [FakeElement()]})
        page.redirects["https://chatgpt.com/"] = "https://auth0.openai.com/u/login"

        with pytest.raises(NotLoggedInError) as excinfo:
            await controller.open_workspace(page)

        assert "auth0" in excinfo.value.url

    @pytest.mark.asyncio
    async def test_restore_strips_scene_from_current_url(self):
        controller = make_controller("flow")
        page = FakePage(dom={"#PINHOLE_TEXT_AREA_ELEMENT_ID": [FakeElement()]})
        page.url = "https://labs.google/fx/tools/flow/project/abc/scenes/xyz"

        await controller.restore_context(page)

        assert page.visits == ["https://labs.google/fx/tools/flow/project/abc"]

    @pytest.mark.asyncio
    async def test_restore_keeps_configured_project_url(self):
        project = "https://labs.google/fx/tools/flow/project/abc"
        controller = make_controller("flow", goto_url=project)
        page = FakePage(dom={"#PINHOLE_TEXT_AREA_ELEMENT_ID": [FakeElement()]})
        page.url = project + "/scenes/xyz"

        await controller.restore_context(page)

        assert page.visits == [project]

    @pytest.mark.asyncio
    async def test_restore_keeps_custom_gpt_url(self):
        gpt = "https://chatgpt.com/g/g-abc-my-gpt"
        controller = make_controller(goto_url=gpt)
        page = FakePage(dom={"#prompt-textarea": [FakeElement()]})

        await controller.restore_context(page)

        assert page.visits == [gpt]

    @pytest.mark.asyncio
    async def test_restore_returns_to_current_conversation(self):
        controller = make_controller()
        page = FakePage(dom={"#prompt-textarea": [FakeElement()]}, url="https://chatgpt.com/c/1234")

        await controller.restore_context(page)

        assert page.visits == ["https://chatgpt.com/c/1234"]

    @pytest.mark.asyncio
    async def test_restore_blank_page_uses_profile_url(self):
        controller = make_controller()
        page = FakePage(dom={"#prompt-textarea": [FakeElement()]})

        await controller.restore_context(page)

        assert page.visits == ["https://chatgpt.com/"]

    @pytest.mark.asyncio
    async def test_first_open_strips_scene_from_configured_url(self):
        controller = make_controller("flow", goto_url="https://labs.google/fx/tools/flow/project/abc/scenes/xyz")
        page = FakePage(dom={"#PINHOLE_TEXT_AREA_ELEMENT_ID": [FakeElement()]})

        await controller.open_workspace(page)

        assert page.visits == ["https://labs.google/fx/tools/flow/project/abc"]

    @pytest.mark.asyncio
    async def test_missing_ready_element_times_out(self):
        controller = make_controller(step_timeout_ms=50)
        page = FakePage()

        with pytest.raises(WaitTimeoutError, match="workspace ready"):
            await controller.open_workspace(page)


class TestSelectMode:
    def gemini_page(self, current: str) -> tuple[FakePage, FakeElement, dict]:
        state = {"menu_open": False}
        switch = FakeElement(current, on_click=lambda: state.update(menu_open=True))

        def _choose_think():
            switch.text = "思考モード"
            state["menu_open"] = False

        option = FakeElement("Thinking", on_click=_choose_think)
        page = FakePage(
            dom={
                "button.input-area-switch": [switch],
                '[data-test-id="bard-mode-option-思考モード"]': lambda: [option] if state["menu_open"] else [],
            }
        )
        return page, switch, state

    @pytest.mark.asyncio
    async def test_switches_mode(self):
        controller = make_controller("gemini")
        page, switch, _ = self.gemini_page("高速モード")

        assert await controller.select_mode(page, "think") is True
        assert switch.text == "思考モード"
        assert switch.clicks == 1

    @pytest.mark.asyncio
    async def test_already_active_mode_is_left_alone(self):
        controller = make_controller("gemini")
        page, switch, _ = self.gemini_page("思考モード")

        assert await controller.select_mode(page, "think") is False
        assert switch.clicks == 0

    @pytest.mark.asyncio
    async def test_unknown_mode(self):
        controller = make_controller("gemini")

        with pytest.raises(ConfigurationError, match="no mode 'turbo'"):
            await controller.select_mode(FakePage(), "turbo")

    @pytest.mark.asyncio
    async def test_missing_switch_keeps_current_mode(self):
        controller = make_controller("gemini")

        assert await controller.select_mode(FakePage(), "fast") is False


class TestInputAndSubmit:
    @pytest.mark.asyncio
    async def test_type_and_click(self):
        controller = make_controller()
        box = FakeElement()
        send = FakeElement("Send")
        page = FakePage(dom={"#prompt-textarea": [box], "#composer-submit-button": [send]})

        await controller.fill_input(page, "hello")
        await controller.submit(page)

        assert page.keyboard.typed == ["hello"]
        assert box.clicks == 1
        assert send.clicks == 1

    @pytest.mark.asyncio
    async def test_fill_method(self):
        controller = make_controller("gemini")
        box = FakeElement()
        page = FakePage(dom={'div[role="textbox"]': [box]})

        await controller.fill_input(page, "hello")

        assert box.filled == ["hello"]
        assert page.keyboard.typed == []

    @pytest.mark.asyncio
    async def test_submit_waits_for_enabled(self):
        controller = make_controller()
        polls = {"n": 0}

        def _enabled():
            polls["n"] += 1
            return polls["n"] >= 3

        send = FakeElement("Send", enabled=_enabled)
        page = FakePage(dom={"#composer-submit-button": [send]})

        await controller.submit(page)

        assert send.clicks == 1
        assert polls["n"] == 3

    @pytest.mark.asyncio
    async def test_fallback_key_without_button(self):
        controller = make_controller()
        page = FakePage()

        await controller.submit(page)

        assert page.keyboard.pressed == ["Enter"]

    @pytest.mark.asyncio
    async def test_no_fallback_key_waits_for_button(self):
        controller = make_controller("flow", step_timeout_ms=50)

        with pytest.raises(WaitTimeoutError, match="submit button"):
            await controller.submit(FakePage())


class TestSignals:
    @pytest.mark.asyncio
    async def test_matching_error_text_raises(self):
        controller = make_controller()
        page = FakePage(dom={'[role="alert"]': [FakeElement("Something went wrong. Try again.")]})

        with pytest.raises(ApplicationError) as excinfo:
            await controller.check_error(page)

        assert excinfo.value.ui_text == "Something went wrong. Try again."

    @pytest.mark.asyncio
    async def test_unrelated_alert_is_ignored(self):
        controller = make_controller()
        page = FakePage(dom={'[role="alert"]': [FakeElement("Copied to clipboard")]})

        await controller.check_error(page)

    @pytest.mark.asyncio
    async def test_response_reading(self):
        controller = make_controller("gemini")
        page = FakePage(dom={".markdown": [FakeElement("one"), FakeElement("two")]})

        assert await controller.response_count(page) == 2
        assert await controller.read_last_response(page) == "two"
        assert await controller.is_busy(page) is False
