from __future__ import annotations

import base64
import binascii
import json
from pathlib import Path
from typing import Any, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, ValidationError, field_validator

from autopilot.config import CONFIG
from autopilot.exceptions import ConfigurationError
from autopilot.profiles import SiteProfile, resolve_profile

MAX_PROMPT_SEARCH_DEPTH = 12


class PromptItem(BaseModel):
    """One unit of work: a text payload with its position in the queue."""

    model_config = ConfigDict(frozen=True)

    index: int | str
    text: str = ""
    mode: Optional[str] = None

    @property
    def output_key(self) -> str:
        return f"result_p{self.index}"

    @property
    def is_empty(self) -> bool:
        return not self.text.strip()


class TaskConfig(BaseModel):
    """Everything one invocation needs. Built once from the input record, read-only afterwards."""

    model_config = ConfigDict(frozen=True, extra="ignore", populate_by_name=True)

    prompts: tuple[PromptItem, ...] = Field(default=(), description="Queue of units of work, processed in order")
    profile: SiteProfile = Field(default="chatgpt", validate_default=True, description="Preset name, JSON path or inline profile")
    mode: Optional[str] = Field(None, description="Default mode for items that do not set their own")
    goto_url: Optional[str] = Field(
        None,
        validation_alias=AliasChoices("goto_url", "goto", "gotoUrl", "project_url", "projectUrl"),
        description="Overrides the profile's working-context URL",
    )
    output_path: Optional[Path] = Field(
        None,
        validation_alias=AliasChoices("output_path", "outputPath", "output"),
        description="Where the acquired artifact is written; suffixed with the item index when the queue has several",
    )

    # timeouts
    wait_timeout_ms: float = Field(
        600_000, gt=0, validation_alias=AliasChoices("wait_timeout_ms", "waitTimeout", "answerWait", "answer_wait"),
        description="Budget for one generation to complete",
    )
    step_timeout_ms: float = Field(
        180_000, gt=0, validation_alias=AliasChoices("step_timeout_ms", "timeout", "stepTimeout"),
        description="Budget for short UI steps (element visible, button enabled, navigation)",
    )
    stable_window_ms: float = Field(
        6_000, ge=0, validation_alias=AliasChoices("stable_window_ms", "stabilize", "stableWindow"),
    )
    poll_interval_ms: float = Field(500, gt=0, validation_alias=AliasChoices("poll_interval_ms", "pollInterval"))

    # retry / pacing
    max_retries: int = Field(3, ge=1, validation_alias=AliasChoices("max_retries", "maxRetries", "retries"))
    retry_delay_ms: float = Field(10_000, ge=0, validation_alias=AliasChoices("retry_delay_ms", "retryDelay"))
    reconnect_attempts: int = Field(2, ge=1, validation_alias=AliasChoices("reconnect_attempts", "reconnectAttempts"))
    inter_task_delay_ms: float = Field(800, ge=0, validation_alias=AliasChoices("inter_task_delay_ms", "interTaskDelay"))
    retry_on_timeout: bool = Field(True, validation_alias=AliasChoices("retry_on_timeout", "retryOnTimeout"))

    # connection
    cdp_url: Optional[str] = Field(None, validation_alias=AliasChoices("cdp_url", "cdpUrl", "cdp"))
    user_data_dir: Optional[Path] = Field(None, validation_alias=AliasChoices("user_data_dir", "userDataDir", "profileDir"))
    headless: bool = False
    reuse_page: bool = Field(False, validation_alias=AliasChoices("reuse_page", "reusePage"))

    # toggles
    keep_audio: bool = Field(True, validation_alias=AliasChoices("keep_audio", "keepAudio"))
    download: bool = Field(True, validation_alias=AliasChoices("download", "autoDownload"))
    transcode: bool = True
    skip_mode_switch: bool = Field(False, validation_alias=AliasChoices("skip_mode_switch", "noModeSwitch", "skipModeSwitch"))
    screenshot: bool = True
    screenshot_path: Optional[Path] = Field(None, validation_alias=AliasChoices("screenshot_path", "screenshotPath"))
    download_dirs: tuple[Path, ...] = Field(default_factory=lambda: tuple(CONFIG.AUTOPILOT_DOWNLOAD_DIRS))

    @field_validator("profile", mode="before")
    @classmethod
    def _resolve_profile(cls, value: Any) -> SiteProfile:
        return resolve_profile(value)

    @field_validator("prompts", mode="before")
    @classmethod
    def _normalize_prompts(cls, value: Any) -> Any:
        if value is None:
            return ()
        if isinstance(value, (list, tuple)):
            return normalize_prompts(value)
        return value

    @property
    def working_url(self) -> str:
        return self.goto_url or self.profile.url

    @property
    def max_retry_overhead_ms(self) -> float:
        """Upper bound of time spent between attempts of one task, excluding the generation waits."""
        return (self.max_retries - 1) * self.retry_delay_ms

    def mode_for(self, item: PromptItem) -> Optional[str]:
        return item.mode or self.mode

    def output_path_for(self, item: PromptItem) -> Path:
        base = self.output_path or CONFIG.AUTOPILOT_DIAGNOSTICS_DIR / f"autopilot-output{self.profile.artifact_suffix}"
        if len(self.prompts) <= 1:
            return base
        return base.with_name(f"{base.stem}_p{item.index}{base.suffix}")

    def screenshot_target(self, succeeded: bool) -> Path:
        """Where the end-of-run screenshot goes; an explicit screenshot_path is used for both outcomes."""
        outcome = "result" if succeeded else "failure"
        return self.screenshot_path or CONFIG.AUTOPILOT_DIAGNOSTICS_DIR / f"autopilot-{self.profile.name}-{outcome}.png"


def normalize_prompts(raw: list | tuple) -> list[dict[str, Any]]:
    """Give every prompt an index (position + 1 when missing) and a string text."""
    normalized = []
    for position, entry in enumerate(raw, start=1):
        if isinstance(entry, PromptItem):
            normalized.append(entry.model_dump())
            continue
        if isinstance(entry, str):
            entry = {"text": entry}
        if not isinstance(entry, dict):
            raise ConfigurationError(f"Prompt #{position} must be an object or a string, got {type(entry).__name__}")
        index = entry.get("index")
        text = entry.get("text", entry.get("prompt"))
        normalized.append(
            {
                "index": position if index is None else index,
                "text": "" if text is None else str(text),
                "mode": None if entry.get("mode") is None else str(entry["mode"]),
            }
        )
    return normalized


def _looks_like_prompt_list(value: list) -> bool:
    return bool(value) and isinstance(value[0], dict) and ("text" in value[0] or "index" in value[0])


def deep_find_prompts(node: Any, depth: int = 0) -> Optional[list]:
    """Locate the prompt list inside arbitrarily wrapped workflow payloads (n8n items, json/data envelopes)."""
    if depth > MAX_PROMPT_SEARCH_DEPTH or node is None:
        return None

    if isinstance(node, list):
        if _looks_like_prompt_list(node):
            return node
        for child in node:
            found = deep_find_prompts(child, depth + 1)
            if found is not None:
                return found
        return None

    if isinstance(node, dict):
        for key in ("prompts", "videoPrompts", "video_prompts"):
            if isinstance(node.get(key), list):
                return node[key]
        for envelope in ("json", "data"):
            inner = node.get(envelope)
            if isinstance(inner, dict) and isinstance(inner.get("prompts"), list):
                return inner["prompts"]
        item = node.get("item")
        if isinstance(item, dict) and isinstance(item.get("json"), dict) and isinstance(item["json"].get("prompts"), list):
            return item["json"]["prompts"]
        for child in node.values():
            found = deep_find_prompts(child, depth + 1)
            if found is not None:
                return found
    return None


def _find_options(node: Any) -> dict[str, Any]:
    """The object that carries the prompts is also where the run options live."""
    if isinstance(node, list) and node and isinstance(node[0], dict):
        node = node[0]
    if not isinstance(node, dict):
        return {}
    for envelope in ("json", "data"):
        if isinstance(node.get(envelope), dict) and "prompts" in node[envelope]:
            return node[envelope]
    item = node.get("item")
    if isinstance(item, dict) and isinstance(item.get("json"), dict):
        return item["json"]
    return node


def read_input_text(value: str, *, from_file: bool = False, is_base64: bool = False) -> str:
    """Resolve the raw CLI input argument into JSON text."""
    text = value
    if from_file:
        try:
            text = Path(value).expanduser().read_text(encoding="utf-8")
        except OSError as e:
            raise ConfigurationError(f"Cannot read input file {value!r}: {e}") from e
    if is_base64:
        try:
            text = base64.b64decode(text.strip(), validate=True).decode("utf-8")
        except (binascii.Error, UnicodeDecodeError) as e:
            raise ConfigurationError(f"Input is not valid base64 JSON: {e}") from e
    return text


def load_task_config(text: str, **overrides: Any) -> TaskConfig:
    """Parse the JSON input record into a TaskConfig; ``overrides`` (e.g. CLI flags) win over the payload."""
    try:
        payload = json.loads(text)
    except json.JSONDecodeError as e:
        raise ConfigurationError(f"Input is not valid JSON: {e.msg} (line {e.lineno}, column {e.colno})") from e

    options = dict(_find_options(payload))
    prompts = deep_find_prompts(payload)
    if prompts is None and isinstance(options.get("prompt"), str):
        prompts = [{"index": 1, "text": options["prompt"], "mode": options.get("mode")}]
    if prompts is None:
        raise ConfigurationError("Prompts not found in input")
    options.pop("prompt", None)
    options["prompts"] = prompts
    options.update({k: v for k, v in overrides.items() if v is not None})

    try:
        config = TaskConfig.model_validate(options)
    except ValidationError as e:
        raise ConfigurationError(f"Invalid task configuration: {e}") from e
    if not config.prompts:
        raise ConfigurationError("Prompt list is empty")
    return config
