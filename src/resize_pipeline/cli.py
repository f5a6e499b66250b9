import argparse
import sys

from loguru import logger
from tqdm import tqdm

from . import config as config_lib
from . import pipeline, producer, scanner
from .errors import PipelineError, RecordNotFound
from .logging_utils import setup_logging


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="resize-pipeline", description="Asynchronous image resize pipeline"
    )
    parser.add_argument("--config", "-c", type=str, help="YAML config (overrides config/local.yaml)")
    parser.add_argument("--log-level", type=str, help="Override logging level")
    parser.add_argument("--db", type=str, help="SQLite database path")
    subparsers = parser.add_subparsers(dest="command", help="Subcommands")

    # WORKER
    worker_parser = subparsers.add_parser("worker", help="Run resize worker loops")
    worker_parser.add_argument("--workers", "-w", type=int, help="Number of worker loops")
    worker_parser.add_argument("--max-jobs", type=int, help="Stop each loop after N jobs")
    worker_parser.add_argument("--poll-interval", type=float, help="Idle poll interval (s)")
    worker_parser.add_argument(
        "--drain", action="store_true", help="Exit once the queue is empty"
    )

    # ENQUEUE
    enqueue_parser = subparsers.add_parser("enqueue", help="Upload images and queue them")
    enqueue_parser.add_argument("--input", "-i", type=str, required=True, help="File or folder")
    enqueue_parser.add_argument("--user-id", "-u", type=str, required=True, help="Owner id")
    enqueue_parser.add_argument("--recursive", "-r", action="store_true", help="Recursive scan")
    enqueue_parser.add_argument("--ext", type=str, help="Comma-separated extensions (jpg,png)")
    enqueue_parser.add_argument("--limit", type=int, help="Max images to enqueue")
    enqueue_parser.add_argument("--bucket", type=str, help="Override storage bucket")

    # STATUS
    status_parser = subparsers.add_parser("status", help="Read image record or job status")
    status_parser.set_defaults(help_parser=status_parser)
    status_subparsers = status_parser.add_subparsers(dest="status_command", help="Status commands")
    image_parser = status_subparsers.add_parser("image", help="Show an image record")
    image_parser.add_argument("image_id", type=str)
    image_parser.add_argument(
        "--transitions", action="store_true", help="Also show the state transition log"
    )
    job_parser = status_subparsers.add_parser("job", help="Show a job status")
    job_parser.add_argument("job_id", type=str)

    # QUEUE
    queue_parser = subparsers.add_parser("queue", help="Manage job queue")
    queue_parser.set_defaults(help_parser=queue_parser)
    queue_subparsers = queue_parser.add_subparsers(dest="queue_command", help="Queue commands")
    queue_subparsers.add_parser("stats", help="Show queue and record counts")
    queue_subparsers.add_parser("requeue", help="Requeue claims past their visibility timeout")
    recover_parser = queue_subparsers.add_parser(
        "recover",
        help="Requeue expired claims, fail records stuck in processing, purge expired statuses",
    )
    recover_parser.add_argument(
        "--stale-after",
        type=float,
        help="Seconds in processing before a record is failed (default: job timeout)",
    )

    # CHECK
    subparsers.add_parser("check", help="Verify queue, stores and bucket are reachable")

    return parser


def _print_banner(title: str) -> None:
    print("\n" + "=" * 60)
    print(title)
    print("=" * 60)


def cmd_worker(args, conf) -> int:
    components = pipeline.build_components(conf)
    try:
        pipeline.check_components(components)
        handled = pipeline.run_workers(
            conf,
            n_workers=conf.worker.workers,
            max_jobs=args.max_jobs,
            exit_when_empty=args.drain,
            shared=components,
        )
    finally:
        components.close()
    _print_banner("WORKER SUMMARY")
    print(f"Jobs handled:         {handled}")
    print("=" * 60)
    return 0


def cmd_enqueue(args, conf) -> int:
    exts = [e.strip() for e in args.ext.split(",")] if args.ext else None
    files, skipped = scanner.scan_input(
        args.input, recursive=args.recursive, limit=args.limit, extensions=exts
    )
    print(f"Found {len(files)} images.")
    if skipped:
        print(f"Skipped {len(skipped)} unreadable file(s).")
    if not files:
        return 0

    components = pipeline.build_components(conf)
    stats = {"enqueued": 0, "failed": 0}
    try:
        for path in tqdm(files, desc="Enqueueing", unit="image"):
            try:
                image_id, job_id = producer.submit_image(
                    components, args.user_id, path.name, path.read_bytes()
                )
                tqdm.write(f"  + {path.name}: image_id={image_id} job_id={job_id}")
                stats["enqueued"] += 1
            except (PipelineError, OSError) as e:
                tqdm.write(f"  x {path.name}: {e}")
                stats["failed"] += 1
    finally:
        components.close()

    _print_banner("ENQUEUE SUMMARY")
    print(f"Total images:         {len(files)}")
    print(f"Enqueued:             {stats['enqueued']}")
    print(f"Failed:               {stats['failed']}")
    print("=" * 60)
    return 1 if stats["failed"] else 0


def cmd_status(args, conf) -> int:
    components = pipeline.build_components(conf)
    try:
        if args.status_command == "image":
            try:
                record = pipeline.get_image_record(components, args.image_id)
            except RecordNotFound as e:
                print(str(e))
                return 1
            print(record.model_dump_json(indent=2))
            if args.transitions:
                for t in components.record_store.get_transitions(args.image_id):
                    from_state = t.from_state.value if t.from_state else "-"
                    print(
                        f"{t.timestamp.isoformat()}  {from_state:>10} -> {t.to_state.value:<10} "
                        f"{t.worker_id or ''} {t.error_snippet or ''}".rstrip()
                    )
            return 0

        if args.status_command == "job":
            status = pipeline.get_job_status(components, args.job_id)
            if status is None:
                print(f"Job {args.job_id}: unknown or expired")
                return 1
            print(f"Job {args.job_id}: {status.value}")
            return 0
    finally:
        components.close()

    args.help_parser.print_help()
    return 1


def cmd_queue(args, conf) -> int:
    components = pipeline.build_components(conf)
    try:
        if args.queue_command == "stats":
            stats = pipeline.get_queue_stats(components)
            _print_banner("QUEUE STATUS")
            print(f"Pending jobs:         {stats['pending']}")
            print(f"In flight:            {stats['in_flight']}")
            print(f"Records pending:      {stats['records_pending']}")
            print(f"Records processing:   {stats['records_processing']}")
            print(f"Records complete:     {stats['records_complete']}")
            print(f"Records failed:       {stats['records_failed']}")
            print(f"Total records:        {stats['records_total']}")
            print("=" * 60)
            return 0

        if args.queue_command == "requeue":
            print(f"Requeued {components.queue.requeue_expired()} expired claim(s)")
            return 0

        if args.queue_command == "recover":
            result = pipeline.recover_stale(components, stale_after_s=args.stale_after)
            print(f"Requeued {result['requeued']} expired claim(s)")
            print(f"Failed {len(result['failed'])} stale record(s)")
            for image_id in result["failed"]:
                print(f"  x {image_id}")
            print(f"Purged {result['purged']} expired job status(es)")
            return 0
    finally:
        components.close()

    args.help_parser.print_help()
    return 1


def cmd_check(conf) -> int:
    print("Checking pipeline components...")
    try:
        components = pipeline.build_components(conf)
        try:
            pipeline.check_components(components)
        finally:
            components.close()
    except PipelineError as e:
        print(f"❌ {e.describe()}")
        return 1
    print(f"✅ queue ({conf.queue.backend}) reachable")
    print(f"✅ status store ({conf.status.backend}) reachable")
    print(f"✅ record store ({conf.records.backend}) reachable")
    print(f"✅ bucket {conf.storage.bucket} ({conf.storage.backend}) reachable")
    return 0


def main(argv=None):
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        return

    # Convert args to dict, filtering None
    cli_dict = {k: v for k, v in vars(args).items() if v is not None}
    try:
        conf = config_lib.resolve_config(cli_dict, config_path=args.config)
    except PipelineError as e:
        print(f"❌ {e.describe()}")
        sys.exit(2)

    setup_logging(conf.logging.level, conf.logging.file, conf.logging.serialize)

    try:
        if args.command == "worker":
            code = cmd_worker(args, conf)
        elif args.command == "enqueue":
            code = cmd_enqueue(args, conf)
        elif args.command == "status":
            code = cmd_status(args, conf)
        elif args.command == "queue":
            code = cmd_queue(args, conf)
        elif args.command == "check":
            code = cmd_check(conf)
        else:
            parser.print_help()
            code = 0
    except FileNotFoundError as e:
        print(f"❌ {e}")
        code = 1
    except PipelineError as e:
        # Startup failures (unreachable queue/store) end the process for the orchestrator
        logger.bind(event="fatal").error("{}", e.describe())
        code = 1

    if code:
        sys.exit(code)


if __name__ == "__main__":
    main()
