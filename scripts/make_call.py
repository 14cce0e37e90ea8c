"""
CLI tool to place an immediate companion call.

Usage:
    python scripts/make_call.py <user_id> --phone <number> [--name NAME]

Examples:
    # Call a registered user right away
    python scripts/make_call.py 42 --phone 5512345678

    # Already-normalized number
    python scripts/make_call.py 42 --phone +525512345678 --name "Doña Rosa"
"""

import argparse
import asyncio
import os
import sys

sys.path.append(os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))

from dotenv import load_dotenv
load_dotenv(".env.local")

from carecall.logging_config import setup_logging, get_logger
from carecall.schemas.call import UserData, utcnow
from carecall.services.container import build_services

setup_logging()
logger = get_logger(__name__)


async def make_call(user_id: str, phone: str, name: str | None = None) -> None:
    """Schedule a zero-delay call and wait for its first attempt."""
    services = build_services()

    try:
        call = await services.scheduler.schedule_call(
            UserData(user_id=user_id, phone=phone, user_name=name, registered_at=utcnow()),
            delay_minutes=0,
        )
        if call is None:
            print(f"Invalid Mexican phone number: {phone}")
            return

        print(f"Call scheduled: {call.id} at {call.scheduled_for.isoformat()}")
        await services.scheduler.wait_idle()

        result = await services.scheduler.get_call_status(call.id)
        if result is None:
            print("Call record disappeared from the store")
        elif result.external_call_id:
            print(f"Call placed! Voice Platform id: {result.external_call_id}")
        else:
            print(f"Call not placed ({result.status.value}): {result.last_error}")
    finally:
        await services.close()


def main() -> None:
    parser = argparse.ArgumentParser(description="Place an outbound companion call")
    parser.add_argument("user_id", help="User id from the registrations table")
    parser.add_argument("--phone", required=True, help="Mexican phone number, any common format")
    parser.add_argument("--name", default=None, help="User name for logs")

    args = parser.parse_args()

    asyncio.run(make_call(
        user_id=args.user_id,
        phone=args.phone,
        name=args.name,
    ))


if __name__ == "__main__":
    main()
