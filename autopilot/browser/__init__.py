from typing import TYPE_CHECKING

if TYPE_CHECKING:
	from .selectors import StructuredQuery, find_visible, wait_visible
	from .session import BrowserSession, SessionState

# Lazy imports mapping so importing the package does not pull in playwright
_LAZY_IMPORTS = {
	'BrowserSession': ('.session', 'BrowserSession'),
	'SessionState': ('.session', 'SessionState'),
	'StructuredQuery': ('.selectors', 'StructuredQuery'),
	'find_visible': ('.selectors', 'find_visible'),
	'wait_visible': ('.selectors', 'wait_visible'),
}


def __getattr__(name: str):
	"""Lazy import mechanism for browser components."""
	if name in _LAZY_IMPORTS:
		module_path, attr_name = _LAZY_IMPORTS[name]
		from importlib import import_module

		module = import_module(f'autopilot.browser{module_path}')
		attr = getattr(module, attr_name)
		globals()[name] = attr
		return attr

	raise AttributeError(f"module '{__name__}' has no attribute '{name}'")


__all__ = ['BrowserSession', 'SessionState', 'StructuredQuery', 'find_visible', 'wait_visible']
