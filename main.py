# main.py
import os
import sys
import time
import signal
import logging
import threading
import argparse
from datetime import datetime
from pathlib import Path
from tqdm import tqdm

import remote_paths
from auth import TokenCache
from graph_client import GraphClient, RetryPolicy
from settings import Settings, load_env
from upload_pool import UploadPool
from upload_sessions import SessionManager, SessionStore, UploadTarget
from uploader import ChunkUploader

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(message)s"
DATE_FORMAT = "%Y-%m-%dT%H:%M:%S"
RUN_TIMESTAMP_FORMAT = "%Y%m%d_%H%M%S"

log = logging.getLogger("sp_migrate")


def build_logger(log_dir: Path, timestamp: str) -> logging.Logger:
    """Console at INFO, one file per run at DEBUG; module loggers propagate here too."""
    log_dir.mkdir(parents=True, exist_ok=True)
    root = logging.getLogger()
    root.setLevel(logging.DEBUG)
    root.handlers.clear()

    console = logging.StreamHandler(sys.stdout)
    console.setLevel(logging.INFO)
    console.setFormatter(logging.Formatter(LOG_FORMAT, datefmt=DATE_FORMAT))

    fh = logging.FileHandler(log_dir / f"upload_{timestamp}.log", encoding="utf-8")
    fh.setLevel(logging.DEBUG)
    fh.setFormatter(logging.Formatter(LOG_FORMAT, datefmt=DATE_FORMAT))

    root.addHandler(console)
    root.addHandler(fh)
    # urllib3 is chatty at DEBUG about every pooled connection
    logging.getLogger("urllib3").setLevel(logging.INFO)
    return log


def format_size(bytes_value):
    if bytes_value < 1024:
        return f"{bytes_value:.1f} B"
    kb = bytes_value / 1024
    if kb < 1024:
        return f"{kb:.1f} KB"
    mb = kb / 1024
    if mb < 1024:
        return f"{mb:.1f} MB"
    gb = mb / 1024
    return f"{gb:.2f} GB"


def collect_files(root):
    """Walk ``root`` and return (abs_path, size) for every non-empty, non-hidden file."""
    found = []
    for dirpath, dirnames, filenames in os.walk(root):
        dirnames[:] = [d for d in dirnames if not d.startswith(".")]
        for name in sorted(filenames):
            if name.startswith(".") or name == "Icon\r":
                continue
            abs_path = os.path.join(dirpath, name)
            try:
                size = os.path.getsize(abs_path)
            except OSError as ex:
                log.warning("Access error: %s (%s)", abs_path, ex)
                continue
            if size == 0:
                log.info("Skipping empty file %s", abs_path)
                continue
            found.append((abs_path, size))
    return found


def folder_targets(root, remote_root, timestamp):
    """Map each file under ``root`` to <remote_root>/<timestamp>/<relative path>."""
    targets = []
    base = os.path.abspath(root)
    for abs_path, size in collect_files(base):
        rel = os.path.relpath(abs_path, base).replace(os.sep, "/")
        head, _, name = rel.rpartition("/")
        rel = f"{head}/{remote_paths.sanitize_file_name(name)}" if head else remote_paths.sanitize_file_name(name)
        rp = remote_paths.build_remote_path(f"{remote_root}/{timestamp}", rel)
        targets.append(UploadTarget(abs_path, rp, size=size))
    return targets


def file_target(path, remote_root, dest=None):
    if dest:
        rp = remote_paths.build_remote_path("", dest)
    else:
        rp = remote_paths.build_remote_path(remote_root, remote_paths.sanitize_file_name(os.path.basename(path)))
    return UploadTarget(path, rp)


def build_pool(settings, log_fn=None, on_result=None):
    # every backoff waits on the run's stop event so a stop request wakes it
    stop = threading.Event()
    tokens = TokenCache.from_settings(settings)
    client = GraphClient.from_settings(settings, tokens, retry=RetryPolicy.from_settings(settings, sleep=stop.wait))
    sessions = SessionManager(client, SessionStore(settings.session_dir),
                              conflict_behavior=settings.conflict_behavior, log_fn=log_fn)
    uploader = ChunkUploader(client, sessions, chunk_size=settings.chunk_size, sleep=stop.wait, log_fn=log_fn)
    return UploadPool(uploader, workers=settings.workers, file_retries=settings.file_retries,
                      retry_wait=settings.retry_wait, on_result=on_result, log_fn=log_fn,
                      stop_event=stop)


def _parse_args(argv=None):
    parser = argparse.ArgumentParser(
        prog="sp-migrate",
        description="Resumable chunked upload of local files to a SharePoint / OneDrive drive.",
    )
    mode = parser.add_mutually_exclusive_group(required=True)
    mode.add_argument("--file", help="upload a single file")
    mode.add_argument("--folder", help="upload every file under a folder, preserving its structure")
    mode.add_argument("--clear-sessions", action="store_true", help="delete all saved resume sessions")
    parser.add_argument("--dest", help="remote path for --file (default: <remote root>/<file name>)")
    parser.add_argument("-e", "--env", default="", help="environment: dev, prod, or empty for .env")
    parser.add_argument("--config", help="path to a config.json")
    parser.add_argument("--remote-root", help="remote folder uploads go under")
    parser.add_argument("--workers", type=int, help="concurrent uploads")
    parser.add_argument("--chunk-size-mb", type=float, help="upload fragment size (multiple of 0.3125)")
    parser.add_argument("--addressing", choices=("site", "drive"), help="address items via site or drive id")
    parser.add_argument("--no-replace", action="store_true", help="do not overwrite files that already exist")
    return parser.parse_args(argv)


def main(argv=None) -> int:
    args = _parse_args(argv)
    env_file = load_env(args.env)
    settings = Settings.load(args.config, overrides={
        "remote_root": args.remote_root,
        "workers": args.workers,
        "chunk_size_mb": args.chunk_size_mb,
        "addressing": args.addressing,
        "conflict_behavior": "fail" if args.no_replace else None,
    })

    timestamp = datetime.now().strftime(RUN_TIMESTAMP_FORMAT)
    build_logger(settings.log_dir, timestamp)
    if env_file:
        log.info("Environment loaded: %s", env_file)
    elif args.env:
        log.warning("Env file for %r not found, using system environment", args.env)

    if args.clear_sessions:
        removed = SessionStore(settings.session_dir).clear()
        log.info("Removed %d saved upload sessions", removed)
        return 0

    if args.file and not os.path.isfile(args.file):
        log.error("File not found: %s", args.file)
        return 2
    if args.folder and not os.path.isdir(args.folder):
        log.error("Folder not found: %s", args.folder)
        return 2

    if args.file:
        targets = [file_target(args.file, settings.remote_root, args.dest)]
    else:
        targets = folder_targets(args.folder, settings.remote_root, timestamp)

    log.info("Remote root: %s", settings.remote_root)
    log.info("Workers    : %d", settings.workers)
    log.info("Found %d files, total %s", len(targets), format_size(sum(t.size for t in targets)))

    bar = tqdm(total=len(targets), unit="file", desc="Uploading")

    def on_result(target, outcome):
        if isinstance(outcome, str):
            log.info("Uploaded %s (%s)", os.path.basename(target.local_path), format_size(target.size))
        bar.update(1)

    pool = build_pool(settings, on_result=on_result)

    def _handle_interrupt(signum, frame):
        log.warning("Stop requested; waiting for in-flight chunks to finish")
        pool.request_stop()

    signal.signal(signal.SIGINT, _handle_interrupt)
    signal.signal(signal.SIGTERM, _handle_interrupt)

    start = time.time()
    stats = pool.run(targets)
    bar.close()

    for path, error in stats.failures:
        log.debug("Failure detail %s: %r", path, error)
    if stats.write_failed("failed.txt"):
        log.info("Failed paths written to failed.txt")
    log.info("================================")
    log.info("Success : %d", stats.success)
    log.info("Failed  : %d", stats.failed)
    log.info("Exists  : %d", stats.exists)
    log.info("Time    : %.1fs", time.time() - start)
    return 1 if stats.failed else 0


if __name__ == "__main__":
    sys.exit(main())
