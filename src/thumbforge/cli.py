import argparse
import mimetypes
import sys
import time
from pathlib import Path

from tqdm import tqdm

from .config import resolve_config
from .errors import ThumbforgeError, ValidationError
from .ffmpeg_runner import FfmpegRunner
from .logging_config import configure_logging
from .service import ThumbnailService


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="thumbforge", description="Asynchronous image and video thumbnail jobs"
    )
    parser.add_argument("--config", dest="config_path", type=str, help="Override config YAML")
    parser.add_argument("--data-dir", type=str, help="Root for uploads, thumbnails and databases")
    parser.add_argument(
        "--log-level", choices=["DEBUG", "INFO", "WARNING", "ERROR"], help="Override log level"
    )
    subparsers = parser.add_subparsers(dest="command", help="Subcommands")

    # SUBMIT
    submit_parser = subparsers.add_parser("submit", help="Create thumbnail jobs for files")
    submit_parser.add_argument("files", nargs="+", help="Image or video files")
    submit_parser.add_argument("--owner", required=True, help="Owner id for the jobs")
    submit_parser.add_argument("--max-attempts", type=int, help="Attempts before permanent failure")

    # JOBS
    jobs_parser = subparsers.add_parser("jobs", help="List an owner's jobs, newest first")
    jobs_parser.add_argument("--owner", required=True, help="Owner id")

    # WORKER
    worker_parser = subparsers.add_parser("worker", help="Run the worker pool")
    worker_parser.add_argument("--workers", "-w", type=int, help="Number of executor threads")
    worker_parser.add_argument(
        "--drain", action="store_true", help="Exit once the queue is empty"
    )

    # SERVE
    serve_parser = subparsers.add_parser("serve", help="Run the HTTP/WebSocket API")
    serve_parser.add_argument("--host", type=str, help="Bind address")
    serve_parser.add_argument("--port", type=int, help="Bind port")
    serve_parser.add_argument(
        "--workers", "-w", type=int, help="Worker threads embedded in the API process"
    )

    # QUEUE
    queue_parser = subparsers.add_parser("queue", help="Inspect the task queue")
    queue_subparsers = queue_parser.add_subparsers(
        dest="queue_command", required=True, help="Queue commands"
    )
    queue_subparsers.add_parser("status", help="Show queue status")

    # CHECK
    subparsers.add_parser("check", help="Verify dependencies")

    return parser


def main(argv=None):
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        return 0

    cli_dict = {k: v for k, v in vars(args).items() if v is not None}
    # --workers on `serve` sizes the embedded pool, not the standalone one
    if args.command == "serve":
        cli_dict.pop("workers", None)
    config = resolve_config(cli_dict)
    configure_logging(config.logging)

    if args.command == "check":
        return run_check(config)

    service = ThumbnailService.from_config(config)
    try:
        if args.command == "submit":
            return run_submit(service, args.files, args.owner)
        if args.command == "jobs":
            return run_jobs(service, args.owner)
        if args.command == "worker":
            return run_worker(service, args.workers, args.drain)
        if args.command == "serve":
            return run_serve(service, config, args.workers)
        if args.command == "queue":
            return run_queue_status(service)
        return 0
    finally:
        service.close()


def run_check(config) -> int:
    print("Checking dependencies...")
    runner = FfmpegRunner(ffmpeg_path=config.ffmpeg.ffmpeg_path)
    if runner.check():
        print("✅ ffmpeg found.")
        return 0
    print("❌ ffmpeg NOT found.")
    return 1


def run_submit(service: ThumbnailService, files, owner_id: str) -> int:
    rejected = 0
    for name in tqdm(files, desc="Submitting", unit="file", disable=len(files) < 2):
        path = Path(name)
        if not path.is_file():
            tqdm.write(f"❌ {name}: not a file")
            rejected += 1
            continue
        mime_type, _ = mimetypes.guess_type(path.name)
        try:
            job = service.submit(
                owner_id,
                str(path.resolve()),
                path.name,
                mime_type or "application/octet-stream",
                path.stat().st_size,
            )
        except ValidationError as e:
            tqdm.write(f"❌ {name}: {e}")
            rejected += 1
            continue
        tqdm.write(f"{job.id}  {job.status:<10}  {path.name}")
    return 1 if rejected else 0


def run_jobs(service: ThumbnailService, owner_id: str) -> int:
    jobs = service.list_by_owner(owner_id)
    if not jobs:
        print(f"No jobs for owner {owner_id}")
        return 0
    for job in jobs:
        detail = job.thumbnail_file or job.error_message or ""
        print(f"{job.id}  {job.status:<10}  {job.original_name:<30}  {detail}")
    return 0


def run_worker(service: ThumbnailService, n_workers, drain: bool) -> int:
    pool = service.worker_pool(n_workers)
    try:
        with pool:
            if drain:
                _drain_with_progress(service, pool)
            else:
                print(f"Worker pool running with {pool.n_workers} thread(s). Ctrl+C to stop.")
                while True:
                    time.sleep(1)
    except KeyboardInterrupt:
        print("\nShutting down after running tasks finish...")
    return 0


def _drain_with_progress(service: ThumbnailService, pool) -> None:
    counts = service.queue.counts()
    finished_before = counts["completed"] + counts["failed"]
    total = counts["waiting"] + counts["active"]

    with tqdm(total=total, desc="Processing", unit="task") as bar:
        while not pool.wait_until_idle(timeout=0.5):
            counts = service.queue.counts()
            done = counts["completed"] + counts["failed"] - finished_before
            bar.total = max(bar.total, done + counts["waiting"] + counts["active"])
            bar.update(done - bar.n)
        counts = service.queue.counts()
        bar.update(counts["completed"] + counts["failed"] - finished_before - bar.n)

    print_queue_status(counts)


def run_serve(service: ThumbnailService, config, embedded_workers) -> int:
    import uvicorn

    from .api.main import create_app

    n_workers = embedded_workers if embedded_workers is not None else config.api.embedded_workers
    pool = service.worker_pool(n_workers) if n_workers else None
    app = create_app(
        service, upload_dir=config.storage.upload_dir, pool=pool, api_config=config.api
    )
    uvicorn.run(app, host=config.api.host, port=config.api.port, log_config=None)
    return 0


def run_queue_status(service: ThumbnailService) -> int:
    print_queue_status(service.queue.counts())
    return 0


def print_queue_status(counts) -> None:
    print("\n" + "=" * 60)
    print("QUEUE STATUS")
    print("=" * 60)
    print(f"Waiting:              {counts.get('waiting', 0)}")
    print(f"Active:               {counts.get('active', 0)}")
    print(f"Completed:            {counts.get('completed', 0)}")
    print(f"Failed:               {counts.get('failed', 0)}")
    print(f"Total:                {sum(counts.values())}")
    print("=" * 60)


def entrypoint():
    try:
        sys.exit(main())
    except ThumbforgeError as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    entrypoint()
