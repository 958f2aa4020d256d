import sys
from typing import List, Optional

from pgqconsumer.adapters.postgres.db import PostgresConnection
from pgqconsumer.cli import run_cli
from pgqconsumer.config.settings import Settings
from pgqconsumer.consumers.engine import Consumer
from pgqconsumer.consumers.factory import build_consumer
from pgqconsumer.pipelines.replica_pipeline import ReplicaPipeline


def build_replica_consumer(settings: Settings) -> Consumer:
    if not settings.dst_dsn:
        raise ValueError("the replica consumer needs PGQ_DST_DSN")
    destination = PostgresConnection(settings.dst_dsn, "destination")
    pipeline = ReplicaPipeline(settings, destination)
    return build_consumer(settings, pipeline.handle_event, destination)


def main(argv: Optional[List[str]] = None) -> int:
    return run_cli(build_replica_consumer, argv)


if __name__ == "__main__":
    sys.exit(main())
