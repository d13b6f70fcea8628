"""
Ordered selector fallback chains.

Target web apps drift, so every UI element is described by several candidate selectors tried in
priority order. A candidate is either a raw Playwright selector string or a StructuredQuery.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Sequence
from typing import TYPE_CHECKING, Union

from pydantic import BaseModel, ConfigDict, model_validator

from autopilot.agent.waiting import DEFAULT_INTERVAL_MS, wait_until
from autopilot.exceptions import TransientSessionError, is_disconnect_error

if TYPE_CHECKING:
	from autopilot.browser.types import ElementHandle, Scope

logger = logging.getLogger(__name__)


class StructuredQuery(BaseModel):
	"""A selector described by accessible role, label, test id or text instead of raw CSS"""

	model_config = ConfigDict(frozen=True, extra='forbid')

	role: str | None = None
	name: str | None = None
	text: str | None = None
	test_id: str | None = None
	test_id_attribute: str = 'data-testid'
	placeholder: str | None = None
	css: str | None = None
	exact: bool = False

	@model_validator(mode='after')
	def _require_target(self) -> StructuredQuery:
		if not any((self.role, self.text, self.test_id, self.placeholder, self.css)):
			raise ValueError('StructuredQuery needs at least one of role, text, test_id, placeholder or css')
		if self.name and not self.role:
			raise ValueError('StructuredQuery.name is only meaningful together with role')
		return self

	def to_selector(self) -> str:
		"""Render as a Playwright selector string"""
		parts: list[str] = []
		if self.role:
			role = f'role={self.role}'
			if self.name:
				role += f'[name={json.dumps(self.name)}{" s" if self.exact else ""}]'
			parts.append(role)
		if self.css:
			parts.append(f'css={self.css}')
		if self.test_id:
			parts.append(f'css=[{self.test_id_attribute}={json.dumps(self.test_id)}]')
		if self.placeholder:
			parts.append(f'css=[placeholder={json.dumps(self.placeholder)}]')
		if self.text:
			parts.append(f'text={json.dumps(self.text)}' if self.exact else f'text={self.text}')
		# chained parts narrow the match left to right
		return ' >> '.join(parts)


Selector = Union[str, StructuredQuery]
SelectorSet = Sequence[Selector]


def selector_string(selector: Selector) -> str:
	if isinstance(selector, StructuredQuery):
		return selector.to_selector()
	return selector


async def is_visible(element: ElementHandle) -> bool:
	"""
	Checks if an element is visible on the page.
	Playwright's is_hidden() alone misses elements hidden through zero-size boxes (e.g. Tailwind's
	'hidden' utility reporting an empty display), so the bounding box must also have area.
	"""
	is_hidden = await element.is_hidden()
	bbox = await element.bounding_box()

	return not is_hidden and bbox is not None and bbox['width'] > 0 and bbox['height'] > 0


async def _query_all(scope: Scope, selector: Selector) -> list[ElementHandle]:
	"""All matches for one candidate; an unusable candidate yields no matches"""
	raw = selector_string(selector)
	try:
		return await scope.query_selector_all(raw)
	except Exception as e:
		if is_disconnect_error(e):
			raise TransientSessionError(f'query {raw!r} failed: {e}') from e
		logger.debug(f'🔎 Skipping selector {raw!r}: {type(e).__name__}: {e}')
		return []


async def find_visible(selectors: SelectorSet, scope: Scope) -> ElementHandle | None:
	"""Return the first visible element of the first candidate that has one, or None"""
	for selector in selectors:
		for element in await _query_all(scope, selector):
			try:
				if await is_visible(element):
					return element
			except Exception as e:
				if is_disconnect_error(e):
					raise TransientSessionError(f'visibility check failed: {e}') from e
				# element detached between query and check
				continue
	return None


async def find_last_visible(selectors: SelectorSet, scope: Scope) -> ElementHandle | None:
	"""Like find_visible but returns the last visible match, i.e. the newest item of a growing list"""
	for selector in selectors:
		for element in reversed(await _query_all(scope, selector)):
			try:
				if await is_visible(element):
					return element
			except Exception as e:
				if is_disconnect_error(e):
					raise TransientSessionError(f'visibility check failed: {e}') from e
				continue
	return None


async def wait_visible(
	selectors: SelectorSet,
	scope: Scope,
	timeout_ms: float,
	interval_ms: float = DEFAULT_INTERVAL_MS,
	label: str | None = None,
) -> ElementHandle:
	"""Poll find_visible at a fixed cadence until it succeeds, raising WaitTimeoutError otherwise"""
	return await wait_until(
		lambda: find_visible(selectors, scope),
		timeout_ms=timeout_ms,
		interval_ms=interval_ms,
		label=label or f'visible {describe(selectors)}',
	)


async def any_visible(selectors: SelectorSet, scope: Scope) -> bool:
	return await find_visible(selectors, scope) is not None


async def count_matching(selectors: SelectorSet, scope: Scope) -> int:
	"""Number of elements matched by the first candidate that matches anything"""
	for selector in selectors:
		elements = await _query_all(scope, selector)
		if elements:
			return len(elements)
	return 0


async def last_text(selectors: SelectorSet, scope: Scope) -> str | None:
	"""Inner text of the last element matched by the first candidate that matches anything"""
	for selector in selectors:
		elements = await _query_all(scope, selector)
		if elements:
			return await elements[-1].inner_text()
	return None


def describe(selectors: SelectorSet) -> str:
	"""Short, log-friendly rendering of a selector chain"""
	rendered = [selector_string(s) for s in selectors]
	if len(rendered) > 2:
		return f'{rendered[0]!r} (+{len(rendered) - 1} fallbacks)'
	return ' | '.join(repr(r) for r in rendered) or '<no selectors>'
