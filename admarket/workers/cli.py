"""Start a worker for one queue with that queue's concurrency cap.

Usage:
    admarket-worker posting
    admarket-worker default
    admarket-worker beat
"""

import sys

from admarket.workers import DEFAULT_QUEUE, QUEUE_CONCURRENCY, celery_app


def worker_argv(queue: str) -> list[str]:
    if queue == "beat":
        return ["beat", "--loglevel=INFO"]
    if queue not in QUEUE_CONCURRENCY:
        raise SystemExit(f"Unknown queue {queue!r}, expected one of {sorted(QUEUE_CONCURRENCY)} or 'beat'")
    return [
        "worker",
        "--loglevel=INFO",
        "-Q", queue,
        "-c", str(QUEUE_CONCURRENCY[queue]),
        "-n", f"{queue}@%h",
    ]


def main(argv: list[str] | None = None) -> None:
    args = sys.argv[1:] if argv is None else argv
    queue = args[0] if args else DEFAULT_QUEUE
    celery_app.start(worker_argv(queue))


if __name__ == "__main__":
    main()
