import base64
import json
import os
from pathlib import Path

import pytest

from autopilot.agent.settings import PromptItem, deep_find_prompts, load_task_config, read_input_text
from autopilot.exceptions import ConfigurationError
from autopilot.profiles import CHATGPT, FLOW, PRESETS, resolve_profile


class TestDeepFindPrompts:
    def test_top_level_list(self):
        payload = {"prompts": [{"index": 1, "text": "a"}]}
        assert deep_find_prompts(payload) == [{"index": 1, "text": "a"}]

    def test_workflow_envelopes(self):
        wrapped = [{"json": {"prompts": [{"index": 1, "text": "a"}], "outputPath": "/tmp/x.mp4"}}]
        assert deep_find_prompts(wrapped) == [{"index": 1, "text": "a"}]

        nested = {"item": {"json": {"prompts": [{"text": "b"}]}}}
        assert deep_find_prompts(nested) == [{"text": "b"}]

    def test_video_prompts_key(self):
        assert deep_find_prompts({"data": {"videoPrompts": [{"text": "c"}]}}) == [{"text": "c"}]

    def test_depth_limit(self):
        node: dict = {"prompts": [{"text": "deep"}]}
        for _ in range(20):
            node = {"wrapper": node}
        assert deep_find_prompts(node) is None


class TestLoadTaskConfig:
    def test_camel_case_options(self):
        text = json.dumps(
            {
                "prompts": [{"index": 1, "text": "a"}, {"index": 2, "text": "b", "mode": "think"}],
                "waitTimeout": 90_000,
                "retryDelay": 0,
                "maxRetries": 5,
                "outputPath": "/tmp/out.mp4",
                "profile": "gemini",
                "mode": "fast",
            }
        )

        config = load_task_config(text)

        assert config.wait_timeout_ms == 90_000
        assert config.retry_delay_ms == 0
        assert config.max_retries == 5
        assert config.profile is PRESETS["gemini"]
        assert config.mode_for(config.prompts[0]) == "fast"
        assert config.mode_for(config.prompts[1]) == "think"
        assert config.output_path_for(config.prompts[1]) == Path("/tmp/out_p2.mp4")

    def test_single_prompt_shorthand(self):
        config = load_task_config(json.dumps({"prompt": "hello"}))

        assert config.prompts == (PromptItem(index=1, text="hello"),)

    def test_overrides_win(self):
        config = load_task_config(json.dumps({"prompts": ["a"], "maxRetries": 5}), max_retries=2, mode=None)

        assert config.max_retries == 2
        assert config.prompts[0].index == 1

    def test_output_path_unchanged_for_single_prompt(self):
        config = load_task_config(json.dumps({"prompts": ["a"], "output": "/tmp/video.mp4"}))

        assert config.output_path_for(config.prompts[0]) == Path("/tmp/video.mp4")

    @pytest.mark.parametrize(
        "text, message",
        [
            ("{not json", "not valid JSON"),
            (json.dumps({"options": {}}), "Prompts not found"),
            (json.dumps({"prompts": []}), "empty"),
            (json.dumps({"prompts": ["a"], "maxRetries": 0}), "Invalid task configuration"),
            (json.dumps({"prompts": ["a"], "profile": "nope"}), "Unknown site profile"),
            (json.dumps({"prompts": [42]}), "must be an object"),
        ],
    )
    def test_invalid_input(self, text, message):
        with pytest.raises(ConfigurationError, match=message):
            load_task_config(text)


class TestReadInputText:
    def test_base64(self):
        encoded = base64.b64encode(b'{"prompts": ["a"]}').decode()
        assert read_input_text(encoded, is_base64=True) == '{"prompts": ["a"]}'

    def test_base64_file(self, tmp_path):
        path = tmp_path / "input.b64"
        path.write_text(base64.b64encode(b'{"prompt": "x"}').decode())
        assert read_input_text(str(path), from_file=True, is_base64=True) == '{"prompt": "x"}'

    def test_bad_base64(self):
        with pytest.raises(ConfigurationError):
            read_input_text("%%%", is_base64=True)

    def test_missing_file(self, tmp_path):
        with pytest.raises(ConfigurationError, match="Cannot read input file"):
            read_input_text(str(tmp_path / "missing.json"), from_file=True)


class TestProfiles:
    def test_presets_by_name(self):
        assert resolve_profile("flow") is FLOW

    def test_inline_profile(self):
        profile = resolve_profile({"name": "custom", "url": "https://app.example.com", "input": ["textarea"]})

        assert profile.input == ("textarea",)
        assert profile.completion_kind == "text"

    def test_json_file_profile(self, tmp_path):
        path = tmp_path / "site.json"
        path.write_text(json.dumps({"name": "site", "url": "https://site.example", "responses": [{"css": ".answer"}]}))

        profile = resolve_profile(str(path))

        assert profile.responses[0].to_selector() == "css=.answer"

    def test_unknown_key_is_rejected(self):
        with pytest.raises(ConfigurationError):
            resolve_profile({"name": "x", "url": "https://x", "submitt": ["button"]})

    def test_restore_url_strips_scene(self):
        url = "https://labs.google/fx/tools/flow/project/abc/scenes/xyz"
        assert FLOW.restore_url(url) == "https://labs.google/fx/tools/flow/project/abc"
        assert FLOW.restore_url(None) == FLOW.url

    def test_restore_url_keeps_urls_without_transient_parts(self):
        assert FLOW.restore_url("https://labs.google/fx/tools/flow/project/abc") == "https://labs.google/fx/tools/flow/project/abc"
        assert CHATGPT.restore_url("https://chatgpt.com/g/g-abc-my-gpt") == "https://chatgpt.com/g/g-abc-my-gpt"
        assert CHATGPT.restore_url("about:blank") == CHATGPT.url

    def test_login_and_capture_matching(self):
        assert FLOW.is_login_url("https://accounts.google.com/v3/signin")
        assert FLOW.matches_capture("https://storage.googleapis.com/b/video.mp4")
        assert not FLOW.matches_capture("https://labs.google/fx/api/trpc")


class TestProcessConfig:
    def test_download_dirs_from_env(self, monkeypatch, tmp_path):
        monkeypatch.setenv("AUTOPILOT_DOWNLOAD_DIRS", f"{tmp_path / 'a'}{os.pathsep}{tmp_path / 'b'}")

        config = load_task_config(json.dumps({"prompt": "x"}))

        assert config.download_dirs == (tmp_path / "a", tmp_path / "b")

    def test_retry_overhead(self):
        config = load_task_config(json.dumps({"prompt": "x", "maxRetries": 3, "retryDelay": 10_000}))

        assert config.max_retry_overhead_ms == 20_000
