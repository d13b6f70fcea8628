import asyncio
import logging
import shutil
from pathlib import Path

from autopilot.config import CONFIG
from autopilot.exceptions import TranscodeError

logger = logging.getLogger(__name__)

STDERR_TAIL_CHARS = 500


def build_ffmpeg_args(source: Path, target: Path, keep_audio: bool, binary: str | None = None) -> list[str]:
    """Container re-mux: copy the video stream, copy or drop the audio track."""
    audio = ["-c:a", "copy"] if keep_audio else ["-an"]
    return [binary or CONFIG.AUTOPILOT_FFMPEG_BIN, "-y", "-i", str(source), *audio, "-c:v", "copy", str(target)]


async def transcode(source: Path, target: Path, keep_audio: bool = True, binary: str | None = None) -> Path:
    """Run ffmpeg and wait for it; raises TranscodeError on a non-zero exit."""
    args = build_ffmpeg_args(source, target, keep_audio, binary)
    target.parent.mkdir(parents=True, exist_ok=True)
    logger.info(f"🎞️ Re-muxing {source.name} -> {target} ({'keep' if keep_audio else 'strip'} audio)")
    try:
        process = await asyncio.create_subprocess_exec(
            *args,
            stdout=asyncio.subprocess.DEVNULL,
            stderr=asyncio.subprocess.PIPE,
        )
    except FileNotFoundError as e:
        raise TranscodeError(127, f"{args[0]} not found") from e
    _, stderr = await process.communicate()
    if process.returncode != 0:
        tail = stderr.decode("utf-8", errors="replace")[-STDERR_TAIL_CHARS:]
        raise TranscodeError(process.returncode, tail)
    return target


async def finalize(source: Path, target: Path, *, transcode_enabled: bool, keep_audio: bool) -> Path:
    """Move the acquired temp file into place, re-muxing it on the way when enabled.

    A failed re-mux keeps the downloaded bytes: the original container is moved to ``target`` instead.
    """
    if source.resolve() == target.resolve():
        return target
    if transcode_enabled:
        try:
            await transcode(source, target, keep_audio=keep_audio)
        except TranscodeError as e:
            logger.warning(f"⚠️ Re-mux failed, keeping the downloaded file as is: {e}")
        else:
            source.unlink(missing_ok=True)
            return target
    target.parent.mkdir(parents=True, exist_ok=True)
    shutil.move(str(source), str(target))
    return target
