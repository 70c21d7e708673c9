"""Publish one appointment lifecycle event to Kafka.

Useful for exercising the dispatcher's lifecycle consumer and for duplicate
event testing (re-publish the same --event-id).
"""

import argparse
import asyncio
import json
from datetime import datetime, timezone
from pathlib import Path
from uuid import uuid4

from aiokafka import AIOKafkaProducer


EVENT_TYPES = ("appointment.created", "appointment.rescheduled", "appointment.cancelled")


async def publish(bootstrap_servers: str, topic: str, envelope: dict) -> None:
    """Open producer, publish one message, close producer."""

    producer = AIOKafkaProducer(bootstrap_servers=bootstrap_servers)
    await producer.start()
    try:
        await producer.send_and_wait(topic, json.dumps(envelope).encode("utf-8"))
    finally:
        await producer.stop()


def build_envelope(args: argparse.Namespace) -> dict:
    recipients = {}
    for item in args.recipient:
        channel, sep, address = item.partition("=")
        if not sep:
            raise SystemExit(f"--recipient must look like channel=address, got {item!r}")
        recipients[channel] = address

    variables = {}
    if args.variables_file:
        variables = json.loads(Path(args.variables_file).read_text())

    return {
        "event_id": args.event_id or str(uuid4()),
        "event_type": args.event_type,
        "aggregate_id": args.appointment_id,
        "tenant_id": args.tenant_id,
        "occurred_at": datetime.now(timezone.utc).isoformat(),
        "trace_id": str(uuid4()),
        "payload": {
            "appointment_at": args.appointment_at,
            "recipients": recipients,
            "variables": variables,
        },
    }


def main() -> None:
    parser = argparse.ArgumentParser(description="Publish an appointment lifecycle event.")
    parser.add_argument("--bootstrap-servers", default="localhost:9092")
    parser.add_argument("--topic", default="appointments.lifecycle")
    parser.add_argument("--event-type", choices=EVENT_TYPES, required=True)
    parser.add_argument("--event-id", default=None)
    parser.add_argument("--tenant-id", required=True)
    parser.add_argument("--appointment-id", required=True)
    parser.add_argument("--appointment-at", default=None, help="ISO-8601 appointment start")
    parser.add_argument("--recipient", action="append", default=[], help="channel=address, repeatable")
    parser.add_argument("--variables-file", default=None, help="JSON file with template variables")
    args = parser.parse_args()

    envelope = build_envelope(args)
    asyncio.run(publish(args.bootstrap_servers, args.topic, envelope))
    print(f"Published {envelope['event_type']} event_id={envelope['event_id']} to topic={args.topic}")


if __name__ == "__main__":
    main()
