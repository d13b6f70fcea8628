class AutopilotError(Exception):
	"""Base class for every error raised deliberately by autopilot"""


class ConfigurationError(AutopilotError):
	"""Malformed or missing input, raised before any browser interaction"""


class WaitTimeoutError(AutopilotError, TimeoutError):
	"""A bounded wait ran out of budget before its condition held"""

	def __init__(self, label: str, timeout_ms: float, last_error: BaseException | None = None):
		self.label = label
		self.timeout_ms = timeout_ms
		self.last_error = last_error
		super().__init__(f'Timeout waiting for {label} ({int(timeout_ms)}ms)')


class FatalSignal(AutopilotError):
	"""Errors that polling predicates must never swallow"""


class TransientSessionError(FatalSignal):
	"""The browser, context or page went away underneath an operation"""


class ApplicationError(FatalSignal):
	"""The target web app surfaced its own error indicator"""

	def __init__(self, message: str, ui_text: str | None = None):
		self.ui_text = ui_text
		super().__init__(message)


class NotLoggedInError(AutopilotError):
	"""The working context requires a login that the attached browser does not have"""

	def __init__(self, url: str):
		self.url = url
		super().__init__(f'Not logged in (url={url})')


class AcquisitionError(AutopilotError):
	"""Every artifact acquisition strategy failed"""

	def __init__(self, message: str, attempts: list[str] | None = None):
		self.attempts = attempts or []
		super().__init__(message)


class TranscodeError(AutopilotError):
	"""The external media tool exited with a failure"""

	def __init__(self, returncode: int, stderr_tail: str = ''):
		self.returncode = returncode
		self.stderr_tail = stderr_tail
		super().__init__(f'ffmpeg exited with code {returncode}: {stderr_tail}'.strip())


DISCONNECT_SIGNATURES = (
	'target page, context or browser has been closed',
	'target closed',
	'has been closed',
	'browser has been closed',
	'browser disconnected',
	'connection closed',
)


def is_disconnect_error(error: BaseException) -> bool:
	"""True when the error means the remote browser, context or page is gone"""
	if isinstance(error, TransientSessionError):
		return True
	if 'TargetClosedError' in str(type(error)):
		return True
	message = str(error).lower()
	return any(signature in message for signature in DISCONNECT_SIGNATURES)
