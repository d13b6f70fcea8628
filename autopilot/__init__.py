from autopilot.config import CONFIG
from autopilot.logging_config import setup_logging

# Only set up logging if not explicitly disabled (embedding applications configure their own)
if CONFIG.AUTOPILOT_SETUP_LOGGING:
	logger = setup_logging()
else:
	import logging

	logger = logging.getLogger('autopilot')


# --- Lightweight, lazy re-exports ---
# Avoid importing playwright/httpx at package import time so `autopilot --help` stays fast.

_LAZY_EXPORTS = {
	'BrowserSession': ('autopilot.browser.session', 'BrowserSession'),
	'find_visible': ('autopilot.browser.selectors', 'find_visible'),
	'wait_visible': ('autopilot.browser.selectors', 'wait_visible'),
	'wait_until': ('autopilot.agent.waiting', 'wait_until'),
	'wait_for_stable': ('autopilot.agent.waiting', 'wait_for_stable'),
	'TaskConfig': ('autopilot.agent.settings', 'TaskConfig'),
	'PromptItem': ('autopilot.agent.settings', 'PromptItem'),
	'TaskOrchestrator': ('autopilot.agent.orchestrator', 'TaskOrchestrator'),
	'TaskResult': ('autopilot.agent.views', 'TaskResult'),
	'RunSummary': ('autopilot.agent.views', 'RunSummary'),
	'Controller': ('autopilot.controller.service', 'Controller'),
	'ArtifactAcquirer': ('autopilot.artifacts.service', 'ArtifactAcquirer'),
	'SiteProfile': ('autopilot.profiles', 'SiteProfile'),
}


def __getattr__(name: str):
	entry = _LAZY_EXPORTS.get(name)
	if not entry:
		raise AttributeError(f"module '{__name__}' has no attribute '{name}'")
	module_path, attr_name = entry
	from importlib import import_module

	attr = getattr(import_module(module_path), attr_name)
	globals()[name] = attr
	return attr


__all__ = ['CONFIG', 'setup_logging', *_LAZY_EXPORTS]
