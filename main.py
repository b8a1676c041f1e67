#!/usr/bin/env python3
"""
video-subtitler v1.0.0 — Main entry point.

    python main.py run movie.mp4 --source-language zh --stop-after translation
    python main.py translate <job_id>
    python main.py retry <job_id>
    python main.py status [<job_id>]
    python main.py text <job_id>
    python main.py diagnostics
    python main.py config set translation_target_language de
"""

import sys
import argparse
import json
import logging
import traceback
from pathlib import Path
from datetime import datetime

# ── Determine project root ────────────────────────────────────────────
PROJECT_ROOT = Path(__file__).resolve().parent

if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from subtitler.core.constants import APP_NAME, APP_VERSION, LOG_DIR, JobStatus
from subtitler.core.config import AppConfig
from subtitler.core.db_sqlite import Database
from subtitler.core.diagnostics import get_diagnostics, missing_tools
from subtitler.core.error_codes import JobError
from subtitler.core.job_queue import TaskQueue
from subtitler.core.pipeline import PipelineOrchestrator
from subtitler.core.storage import LocalStorage
from subtitler.core.security_utils import safe_join
from subtitler.core.subtitle_parse import parse_vtt_to_text

# ── Logging setup (writes to ~/.local/share/video-subtitler/logs/) ────
LOG_DIR.mkdir(parents=True, exist_ok=True)
LOG_FILE = LOG_DIR / "app.log"

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    handlers=[
        logging.FileHandler(LOG_FILE, encoding="utf-8"),
    ],
)
logger = logging.getLogger("video-subtitler")


def check_prerequisites(settings):
    """Exit when a required binary is missing."""
    missing = missing_tools(settings)
    if missing:
        logger.error("Missing tools: %s", ", ".join(missing))
        print("Missing required tools:\n  " + "\n  ".join(missing), file=sys.stderr)
        sys.exit(1)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="video-subtitler",
                                     description="Turn a video into translated SRT/VTT subtitles.")
    parser.add_argument("--config", type=Path, default=None,
                        help="Path to config.json (default: $SUBTITLER_CONFIG or app data dir)")
    sub = parser.add_subparsers(dest="command", required=True)

    run = sub.add_parser("run", help="Upload a video and run the pipeline")
    run.add_argument("video", type=Path)
    run.add_argument("--source-language", default=None)
    run.add_argument("--subtitle-source", choices=["auto", "ocr", "embedded", "audio"], default=None)
    run.add_argument("--stop-after", default=None,
                     help="transcription | translation (provider names accepted)")
    run.add_argument("--target-language", default=None)

    translate = sub.add_parser("translate", help="Translate a job awaiting translation")
    translate.add_argument("job_id")
    translate.add_argument("--target-language", default=None)

    retry = sub.add_parser("retry", help="Retry a failed job from the start")
    retry.add_argument("job_id")

    status = sub.add_parser("status", help="Show one job or all jobs")
    status.add_argument("job_id", nargs="?")

    config_cmd = sub.add_parser("config", help="Show or change saved settings")
    config_cmd.add_argument("action", choices=["show", "set"])
    config_cmd.add_argument("key", nargs="?")
    config_cmd.add_argument("value", nargs="?")

    text = sub.add_parser("text", help="Print a finished job's subtitles as plain text")
    text.add_argument("job_id")

    diagnostics = sub.add_parser("diagnostics", help="Show tool versions and provider checks")
    diagnostics.add_argument("--verify", action="store_true",
                             help="Send a test request to the speech-to-text API")
    return parser


def print_job(job):
    print(f"{job.id}  {job.status:<22} {job.original_filename or ''}")
    if job.error_message:
        print(f"    error: {job.error_message}")
    if job.srt_path:
        print(f"    srt:   {job.srt_path}")
        print(f"    vtt:   {job.vtt_path}")


def run_until_idle(pipeline: PipelineOrchestrator, queue: TaskQueue, job_id: str):
    queue.start()
    try:
        queue.join()
    finally:
        queue.stop()
    print_job(pipeline.db.get_job(job_id))


def run_config_command(config: AppConfig, args) -> int:
    if args.action == "show":
        print(json.dumps(config.as_dict(), indent=2, ensure_ascii=False))
        return 0
    if not args.key or args.value is None:
        print("Usage: config set <key> <value>", file=sys.stderr)
        return 1
    try:
        value = json.loads(args.value)
    except ValueError:
        value = args.value
    config.set(args.key, value)
    logger.info("Config: %s updated", args.key)
    print(f"{args.key} = {json.dumps(config.as_dict().get(args.key))}")
    return 0


def main(argv=None):
    args = build_parser().parse_args(argv)

    logger.info("=" * 60)
    logger.info("%s v%s starting at %s", APP_NAME, APP_VERSION, datetime.now().isoformat())
    logger.info("Python: %s", sys.executable)
    logger.info("Command: %s", args.command)
    logger.info("=" * 60)

    config = AppConfig(args.config)

    if args.command == "config":
        return run_config_command(config, args)

    settings = config.settings()

    if args.command == "diagnostics":
        print(json.dumps(get_diagnostics(settings, verify=args.verify), indent=2))
        return 0

    db = Database(settings.db_path)
    try:
        if args.command == "status":
            jobs = [db.get_job(args.job_id)] if args.job_id else db.get_all_jobs()
            for job in jobs:
                if job is None:
                    print(f"Unknown job {args.job_id}", file=sys.stderr)
                    return 1
                print_job(job)
            return 0

        if args.command == "text":
            job = db.get_job(args.job_id)
            if job is None or not job.vtt_path:
                print(f"Job {args.job_id} has no subtitles yet", file=sys.stderr)
                return 1
            print(parse_vtt_to_text(safe_join(settings.storage_root, job.vtt_path)))
            return 0

        check_prerequisites(settings)
        queue = TaskQueue(settings.queue)
        pipeline = PipelineOrchestrator(settings, db, LocalStorage(settings.storage_root), queue)

        if args.command == "run":
            meta = {k: v for k, v in {
                'source_language': args.source_language,
                'subtitle_source': args.subtitle_source,
                'stop_after': args.stop_after,
                'target_language': args.target_language,
            }.items() if v}
            job = pipeline.submit_job(args.video, meta=meta)
            run_until_idle(pipeline, queue, job.id)
            job = db.get_job(job.id)
            return 0 if job.status in (JobStatus.COMPLETED, JobStatus.AWAITING_TRANSLATION) else 2

        if args.command == "translate":
            if not pipeline.request_translation(args.job_id, args.target_language):
                print(f"Job {args.job_id} is not awaiting translation", file=sys.stderr)
                return 1
            run_until_idle(pipeline, queue, args.job_id)
            return 0 if db.get_job(args.job_id).status == JobStatus.COMPLETED else 2

        if args.command == "retry":
            if not pipeline.retry_job(args.job_id):
                print(f"Job {args.job_id} is not failed", file=sys.stderr)
                return 1
            run_until_idle(pipeline, queue, args.job_id)
            return 0
    except JobError as e:
        logger.error("Configuration error: %s", e)
        print(f"Error: {e.message}", file=sys.stderr)
        return 1
    except Exception as e:
        logger.critical("Fatal error: %s\n%s", e, traceback.format_exc())
        print(f"Fatal error: {type(e).__name__}: {e} (see {LOG_FILE})", file=sys.stderr)
        return 1
    finally:
        db.close()
    return 0


if __name__ == "__main__":
    sys.exit(main())
