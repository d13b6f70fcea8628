"""Process-level configuration for autopilot, read lazily from the environment"""

import os
import tempfile
from pathlib import Path

from dotenv import load_dotenv

load_dotenv()

DEFAULT_CDP_URL = 'http://127.0.0.1:9222'


def is_running_in_docker() -> bool:
	"""Detect if we are running in a docker container, the default download dirs differ there"""
	try:
		return Path('/.dockerenv').exists() or 'docker' in Path('/proc/1/cgroup').read_text().lower()
	except OSError:
		return False


class Config:
	"""Env-backed settings. Every access re-reads os.environ so tests can monkeypatch freely."""

	@property
	def AUTOPILOT_LOGGING_LEVEL(self) -> str:
		return os.getenv('AUTOPILOT_LOGGING_LEVEL', 'info').lower()

	@property
	def AUTOPILOT_SETUP_LOGGING(self) -> bool:
		return os.getenv('AUTOPILOT_SETUP_LOGGING', 'true').lower()[:1] in 'ty1'

	@property
	def AUTOPILOT_CDP_URL(self) -> str:
		return os.getenv('AUTOPILOT_CDP_URL', DEFAULT_CDP_URL)

	@property
	def AUTOPILOT_DOWNLOAD_DIRS(self) -> list[Path]:
		raw = os.getenv('AUTOPILOT_DOWNLOAD_DIRS', '')
		if raw.strip():
			return [Path(p).expanduser() for p in raw.split(os.pathsep) if p.strip()]
		if self.IN_DOCKER:
			return [Path('/mnt/downloads')]
		return [Path('~/Downloads').expanduser(), Path('/mnt/downloads')]

	@property
	def AUTOPILOT_FFMPEG_BIN(self) -> str:
		return os.getenv('AUTOPILOT_FFMPEG_BIN', 'ffmpeg')

	@property
	def AUTOPILOT_DIAGNOSTICS_DIR(self) -> Path:
		return Path(os.getenv('AUTOPILOT_DIAGNOSTICS_DIR', tempfile.gettempdir())).expanduser()

	@property
	def IN_DOCKER(self) -> bool:
		return os.getenv('IN_DOCKER', 'false').lower()[:1] in 'ty1' or is_running_in_docker()


CONFIG = Config()
