"""
Command line entry point.

stdout carries exactly one JSON line, whatever happens; logs go to stderr.
Exit status is 0 only when every task succeeded (or was skipped as empty).
"""
import argparse
import asyncio
import json
import logging
import sys
from typing import Any, Optional

from autopilot.agent.orchestrator import TaskOrchestrator
from autopilot.agent.settings import TaskConfig, load_task_config, read_input_text
from autopilot.agent.views import failure_output
from autopilot.browser.session import BrowserSession
from autopilot.config import CONFIG
from autopilot.exceptions import ConfigurationError
from autopilot.logging_config import setup_logging

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="autopilot",
        description="Submit prompts to a web app in an already running Chromium and collect the results.",
    )
    parser.add_argument("input", help="JSON input, a path with --file, or base64 JSON with --base64")
    parser.add_argument("--file", action="store_true", help="treat INPUT as a path to a JSON file")
    parser.add_argument("--base64", action="store_true", help="INPUT (or the file content) is base64-encoded JSON")
    parser.add_argument("--cdp", dest="cdp_url", help=f"CDP endpoint (default: $AUTOPILOT_CDP_URL or {CONFIG.AUTOPILOT_CDP_URL})")
    parser.add_argument("--user-data-dir", dest="user_data_dir", help="launch a local browser with this profile instead of CDP")
    parser.add_argument("--profile", help="site profile: preset name (chatgpt, gemini, flow) or path to a JSON profile")
    parser.add_argument("--goto", dest="goto_url", help="working-context URL (default: the profile's URL)")
    parser.add_argument("--mode", help="mode to switch to before each prompt")
    parser.add_argument("--no-mode-switch", dest="skip_mode_switch", action="store_const", const=True)
    parser.add_argument("--timeout", dest="step_timeout_ms", type=int, help="budget for short UI steps, ms")
    parser.add_argument("--answer-wait", dest="wait_timeout_ms", type=int, help="budget for one generation, ms")
    parser.add_argument("--stabilize", dest="stable_window_ms", type=int, help="stability window, ms")
    parser.add_argument("--retries", dest="max_retries", type=int, help="attempts per task")
    parser.add_argument("--retry-delay", dest="retry_delay_ms", type=int, help="pause between attempts, ms")
    parser.add_argument("--output", dest="output_path", help="artifact output path")
    parser.add_argument("--no-download", dest="download", action="store_const", const=False)
    parser.add_argument("--strip-audio", dest="keep_audio", action="store_const", const=False)
    parser.add_argument("--no-transcode", dest="transcode", action="store_const", const=False)
    shots = parser.add_mutually_exclusive_group()
    shots.add_argument("--screenshot", dest="screenshot_path", help="where to save the end-of-run screenshot")
    shots.add_argument("--no-screenshot", dest="screenshot", action="store_const", const=False)
    parser.add_argument("--log-level", choices=["debug", "info", "result"], help="stderr log verbosity")
    return parser


CONFIG_OVERRIDES = (
    "cdp_url",
    "user_data_dir",
    "profile",
    "goto_url",
    "mode",
    "skip_mode_switch",
    "step_timeout_ms",
    "wait_timeout_ms",
    "stable_window_ms",
    "max_retries",
    "retry_delay_ms",
    "output_path",
    "download",
    "keep_audio",
    "transcode",
    "screenshot_path",
    "screenshot",
)


def config_from_args(args: argparse.Namespace) -> TaskConfig:
    text = read_input_text(args.input, from_file=args.file, is_base64=args.base64)
    overrides = {name: getattr(args, name, None) for name in CONFIG_OVERRIDES}
    return load_task_config(text, **overrides)


def session_for(config: TaskConfig) -> BrowserSession:
    cdp_url = config.cdp_url or (None if config.user_data_dir else CONFIG.AUTOPILOT_CDP_URL)
    return BrowserSession(
        cdp_url=cdp_url,
        user_data_dir=config.user_data_dir,
        headless=config.headless,
        reuse_page=config.reuse_page,
    )


async def run(args: argparse.Namespace) -> tuple[dict[str, Any], int]:
    try:
        config = config_from_args(args)
    except ConfigurationError as e:
        logger.error(f"❌ {e}")
        return failure_output(e), 1

    logger.info(f"📋 {len(config.prompts)} task(s) for profile {config.profile.name!r}")
    session = session_for(config)
    orchestrator = TaskOrchestrator(session, config)
    try:
        summary = await orchestrator.run_queue()
        if config.screenshot:
            summary.screenshot = await session.capture_diagnostics(config.screenshot_target(summary.succeeded))
        return summary.to_output(), 0 if summary.succeeded else 1
    except Exception as e:
        logger.exception(f"💥 Unexpected failure: {type(e).__name__}: {e}")
        output = failure_output(e, orchestrator.summary)
        if config.screenshot:
            shot = await session.capture_diagnostics(config.screenshot_target(succeeded=False))
            if shot is not None:
                output["screenshot"] = str(shot)
        return output, 1
    finally:
        await session.stop()


def emit(output: dict[str, Any]) -> None:
    sys.stdout.write(json.dumps(output, ensure_ascii=False) + "\n")
    sys.stdout.flush()


def main(argv: Optional[list[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    if args.log_level:
        setup_logging(log_level=args.log_level, force_setup=True)
    try:
        output, code = asyncio.run(run(args))
    except KeyboardInterrupt as e:
        logger.warning("🛑 Interrupted")
        output, code = failure_output(e), 130
    except Exception as e:
        logger.exception(f"💥 Fatal error outside the task loop: {type(e).__name__}: {e}")
        output, code = failure_output(e), 1
    emit(output)
    return code


if __name__ == "__main__":
    sys.exit(main())
