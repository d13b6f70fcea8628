import locale
import logging
import sys

from autopilot.config import CONFIG
from autopilot.timing import now_utc_iso, process_start_utc_iso, uptime_seconds

# above WARNING, below ERROR: the one-line run summary
RESULT_LEVEL = 35


def addLoggingLevel(levelName, levelNum, methodName=None):
	"""
	Adds a new logging level to the `logging` module and the currently configured logging class.

	`levelName` becomes an attribute of the `logging` module with the value
	`levelNum`. `methodName` becomes a convenience method for both `logging`
	itself and the class returned by `logging.getLoggerClass()`. If `methodName`
	is not specified, `levelName.lower()` is used.

	Raises `AttributeError` if the level name or method name is already defined.

	Example
	-------
	>>> addLoggingLevel('RESULT', 35)
	>>> logging.getLogger(__name__).result('3/3 tasks succeeded')
	"""
	if not methodName:
		methodName = levelName.lower()

	if hasattr(logging, levelName):
		raise AttributeError(f'{levelName} already defined in logging module')
	if hasattr(logging, methodName):
		raise AttributeError(f'{methodName} already defined in logging module')
	if hasattr(logging.getLoggerClass(), methodName):
		raise AttributeError(f'{methodName} already defined in logger class')

	def logForLevel(self, message, *args, **kwargs):
		if self.isEnabledFor(levelNum):
			self._log(levelNum, message, args, **kwargs)

	def logToRoot(message, *args, **kwargs):
		logging.log(levelNum, message, *args, **kwargs)

	logging.addLevelName(levelNum, levelName)
	setattr(logging, levelName, levelNum)
	setattr(logging.getLoggerClass(), methodName, logForLevel)
	setattr(logging, methodName, logToRoot)


class SafeStreamHandler(logging.StreamHandler):
	"""A logging handler that gracefully handles consoles that can't encode emojis."""

	def emit(self, record):  # type: ignore[override]
		try:
			msg = self.format(record)
			stream = self.stream
			try:
				stream.write(msg + self.terminator)
			except UnicodeEncodeError:
				enc = getattr(stream, 'encoding', None) or locale.getpreferredencoding(False) or 'utf-8'
				sanitized = msg.encode(enc, errors='replace').decode(enc, errors='replace')
				stream.write(sanitized + self.terminator)
			self.flush()
		except Exception:
			self.handleError(record)


class AutopilotFormatter(logging.Formatter):
	def format(self, record):
		record.utc = now_utc_iso()
		record.uptime = f'{uptime_seconds():.3f}s'
		return super().format(record)


def setup_logging(stream=None, log_level=None, force_setup=False):
	"""Setup logging configuration for autopilot.

	Args:
		stream: Output stream for logs (default: sys.stderr). stdout is reserved for the JSON result.
		log_level: Override log level (default: uses CONFIG.AUTOPILOT_LOGGING_LEVEL)
		force_setup: Force reconfiguration even if handlers already exist
	"""
	try:
		addLoggingLevel('RESULT', RESULT_LEVEL)  # This allows ERROR, FATAL and CRITICAL
	except AttributeError:
		pass  # Level already exists, which is fine

	log_type = log_level or CONFIG.AUTOPILOT_LOGGING_LEVEL

	if logging.getLogger().hasHandlers() and not force_setup:
		return logging.getLogger('autopilot')

	root = logging.getLogger()
	root.handlers = []

	console = SafeStreamHandler(stream or sys.stderr)

	if log_type == 'result':
		console.setLevel('RESULT')
		console.setFormatter(AutopilotFormatter('%(message)s'))
	else:
		console.setFormatter(AutopilotFormatter('%(levelname)-8s [%(name)s] %(utc)s (+%(uptime)s) %(message)s'))

	root.addHandler(console)

	if log_type == 'result':
		root.setLevel('RESULT')
	elif log_type == 'debug':
		root.setLevel(logging.DEBUG)
	else:
		root.setLevel(logging.INFO)

	autopilot_logger = logging.getLogger('autopilot')
	autopilot_logger.propagate = False  # Don't propagate to root logger
	autopilot_logger.handlers = [console]
	autopilot_logger.setLevel(root.level)

	autopilot_logger.debug(f'Logging initialized at {now_utc_iso()} (process_start={process_start_utc_iso()})')

	# Silence or adjust third-party loggers
	third_party_loggers = [
		'httpx',
		'httpcore',
		'playwright',
		'urllib3',
		'asyncio',
		'charset_normalizer',
	]
	for logger_name in third_party_loggers:
		third_party = logging.getLogger(logger_name)
		third_party.setLevel(logging.ERROR)
		third_party.propagate = False

	return autopilot_logger
