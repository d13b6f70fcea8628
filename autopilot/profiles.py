"""
Selector tables for the web apps autopilot knows how to drive.

A SiteProfile is pure data: every UI element is an ordered SelectorSet, so adapting to a redesigned
page means editing a profile (or passing one inline / from a JSON file), never code.
"""

from __future__ import annotations

import json
import re
from pathlib import Path
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from autopilot.browser.selectors import StructuredQuery
from autopilot.exceptions import ConfigurationError

SelectorTuple = tuple[str | StructuredQuery, ...]


class SiteProfile(BaseModel):
	model_config = ConfigDict(frozen=True, extra='forbid')

	name: str
	url: str = Field(description='Working-context URL opened before the first task and after every failed attempt')
	login_url_markers: tuple[str, ...] = Field(default=(), description='URL fragments that mean we landed on a login page')

	ready: SelectorTuple = Field(default=(), description='Element proving the working context is loaded and logged in')
	workspace_entry: SelectorTuple = Field(default=(), description='Clicked when ready is not visible, e.g. "new project"')
	dismiss: SelectorTuple = Field(default=(), description='Consent popups / notifications closed before work')

	mode_switch: SelectorTuple = Field(default=(), description='Opens the mode/variant menu')
	mode_options: dict[str, SelectorTuple] = Field(default_factory=dict)
	mode_labels: dict[str, str] = Field(default_factory=dict, description='Text shown on mode_switch when a mode is active')

	input: SelectorTuple = ()
	input_method: Literal['fill', 'type'] = 'fill'
	submit: SelectorTuple = ()
	submit_fallback_key: str | None = Field(default='Enter', description='Pressed when no submit element is visible')

	busy: SelectorTuple = Field(default=(), description='In-progress indicators (stop buttons, spinners)')
	error: SelectorTuple = Field(default=(), description='Elements the app uses to report a failed generation')
	error_texts: tuple[str, ...] = Field(default=(), description='Only error elements containing one of these count; empty means any')

	completion_kind: Literal['text', 'element'] = 'text'
	responses: SelectorTuple = Field(default=(), description='Text completion: one element per answer, last one is read')
	completion: SelectorTuple = Field(default=(), description='Element completion: appears (one more of it) when done')

	artifact: SelectorTuple = Field(default=(), description='Element carrying href/src of the result')
	download_trigger: SelectorTuple = Field(default=(), description='Clicked to make the browser emit a download event')
	capture_url_patterns: tuple[str, ...] = Field(default=(), description='Regexes for result URLs seen on the network')
	artifact_suffix: str = '.mp4'
	artifact_name_hints: tuple[str, ...] = Field(default=(), description='Regexes matched against file names in a download dir')

	restore_url_strip: str | None = Field(default=None, description='Regex removed from the current URL before re-opening it')

	@field_validator('capture_url_patterns', 'artifact_name_hints')
	@classmethod
	def _patterns_compile(cls, value: tuple[str, ...]) -> tuple[str, ...]:
		for pattern in value:
			try:
				re.compile(pattern)
			except re.error as e:
				raise ValueError(f'invalid pattern {pattern!r}: {e}') from e
		return value

	def matches_capture(self, url: str) -> bool:
		return any(re.search(pattern, url) for pattern in self.capture_url_patterns)

	def is_login_url(self, url: str) -> bool:
		return any(marker in url for marker in self.login_url_markers)

	def restore_url(self, url: str | None) -> str:
		"""Where to go to re-establish the working context: ``url`` minus transient sub-paths, or the profile URL"""
		if not url or not url.startswith(('http://', 'https://')):
			return self.url
		if self.restore_url_strip:
			return re.sub(self.restore_url_strip, '', url) or self.url
		return url


CHATGPT = SiteProfile(
	name='chatgpt',
	url='https://chatgpt.com/',
	login_url_markers=('auth0', 'login', 'auth/'),
	ready=('#prompt-textarea',),
	input=('#prompt-textarea', 'div[contenteditable="true"][role="textbox"]'),
	input_method='type',
	submit=('#composer-submit-button', 'button[data-testid="send-button"]'),
	busy=('[data-testid="stop-button"]',),
	responses=('[data-message-author-role="assistant"]',),
	error=('[role="alert"]', 'div.text-token-text-error'),
	error_texts=('Something went wrong', 'Network error'),
)

GEMINI = SiteProfile(
	name='gemini',
	url='https://gemini.google.com/app',
	login_url_markers=('accounts.google.com',),
	ready=('div[role="textbox"]',),
	dismiss=('button[aria-label="閉じる"]', 'button[aria-label="Close"]'),
	mode_switch=('button.input-area-switch', '.input-area-switch'),
	mode_options={
		'fast': ('[data-test-id="bard-mode-option-高速モード"]', 'text=Fast'),
		'think': ('[data-test-id="bard-mode-option-思考モード"]', 'text=Thinking'),
	},
	mode_labels={'fast': '高速モード', 'think': '思考モード'},
	input=('div[role="textbox"]', 'rich-textarea .ql-editor'),
	input_method='fill',
	submit=('button[aria-label="送信"]', 'button[aria-label="Send message"]'),
	busy=('button[aria-label*="停止"]', 'button[aria-label*="Stop"]', '.avatar_spinner_animation'),
	responses=('.markdown',),
)

FLOW = SiteProfile(
	name='flow',
	url='https://labs.google/fx/tools/flow',
	login_url_markers=('accounts.google.com',),
	ready=('#PINHOLE_TEXT_AREA_ELEMENT_ID',),
	workspace_entry=('button:has-text("新しいプロジェクト")', 'button:has-text("New project")', 'button:has(i:text("add_2"))'),
	dismiss=('button:has-text("同意する")', 'button:has-text("I agree")', 'button:has-text("閉じる")'),
	input=('#PINHOLE_TEXT_AREA_ELEMENT_ID', 'textarea'),
	input_method='fill',
	submit=('button[aria-label="作成"]', 'button:has(i:text("arrow_forward"))'),
	submit_fallback_key=None,
	error=('[role="alertdialog"]', '[role="alert"]', '.error-message'),
	error_texts=('生成できませんでした', 'Could not generate'),
	completion_kind='element',
	completion=('button:has-text("シーンに追加")', 'button:has-text("Add to scene")'),
	artifact=('video',),
	download_trigger=('button:has(i:text("download"))', 'a:has-text("ダウンロード")', 'a:has-text("Download")'),
	capture_url_patterns=(
		r'(storage\.googleapis\.com|googleusercontent\.com).*(\.mp4|video|download)',
	),
	artifact_suffix='.mp4',
	artifact_name_hints=(r'(?i)flow', r'(?i)video', r'(?i)scene', r'(?i)export', r'^\d{4}-\d{2}'),
	restore_url_strip=r'/scenes/.*$',
)

PRESETS: dict[str, SiteProfile] = {p.name: p for p in (CHATGPT, GEMINI, FLOW)}


def resolve_profile(value: str | dict | SiteProfile) -> SiteProfile:
	"""Turn a preset name, a JSON file path or an inline mapping into a SiteProfile"""
	if isinstance(value, SiteProfile):
		return value
	try:
		if isinstance(value, dict):
			return SiteProfile.model_validate(value)
		if value in PRESETS:
			return PRESETS[value]
		path = Path(value).expanduser()
		if path.suffix == '.json' and path.is_file():
			return SiteProfile.model_validate(json.loads(path.read_text(encoding='utf-8')))
	except (ValidationError, json.JSONDecodeError, OSError) as e:
		raise ConfigurationError(f'Invalid site profile {value!r}: {e}') from e
	raise ConfigurationError(f'Unknown site profile {value!r} (presets: {", ".join(sorted(PRESETS))})')
