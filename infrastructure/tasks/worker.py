"""Convenience entry point for running the purchases Celery worker.

Equivalent to ``celery -A infrastructure.tasks worker -Q high,default,low``;
kept as a script for Procfile-style runners.
"""
from __future__ import annotations

import sys

from .config.celery import celery_app


def main(argv: list[str] | None = None) -> None:
    args = [
        "worker",
        "--loglevel=INFO",
        "--queues=high,default,low",
        "--hostname=purchases@%h",
    ]
    celery_app.worker_main(argv=args + list(argv if argv is not None else sys.argv[1:]))


if __name__ == "__main__":
    main()
