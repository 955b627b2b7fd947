import argparse
import asyncio
import json
import logging
from typing import Any, Dict

from xyz.ffxiv.resonance.app.cli import configure_logging
from xyz.ffxiv.resonance.app.config import Settings
from xyz.ffxiv.resonance.app.server import create_core, create_http_session
from xyz.ffxiv.resonance.atproto.accounts import parse_credentials
from xyz.ffxiv.resonance.atproto.errors import ResonanceException

logger = logging.getLogger(__name__)


def load_record(value: str) -> Dict[str, Any]:
    """Read a record from inline JSON or, with a leading ``@``, from a file."""
    if value.startswith("@"):
        with open(value[1:]) as fd:
            record = json.load(fd)
    else:
        record = json.loads(value)
    if not isinstance(record, dict):
        raise ValueError("record must be a JSON object")
    return record


async def realMain() -> int:
    parser = argparse.ArgumentParser(
        prog="resonance-util", description="Resonance AT Protocol utilities"
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    check_handle = subparsers.add_parser(
        "check-handle", help="Check whether a handle is available"
    )
    check_handle.add_argument("handle", help="The full handle to check.")

    _ = subparsers.add_parser(
        "create-auto", help="Create an account under a generated handle"
    )

    create_custom = subparsers.add_parser(
        "create-custom", help="Create an account for a chosen handle label"
    )
    create_custom.add_argument("label", help="The handle label, e.g. 'My Character'.")
    create_custom.add_argument("--email", default=None, help="Optional account email.")

    publish = subparsers.add_parser("publish", help="Authenticate and publish a record")
    publish.add_argument("credentials", help="Credentials as 'handle:password'.")
    publish.add_argument("record", help="Record as JSON, or @path to a JSON file.")

    args = vars(parser.parse_args())
    command = args.get("command", None)

    settings = Settings()  # type: ignore

    async with create_http_session(settings) as http_session:
        core = create_core(settings, http_session)

        if command == "check-handle":
            availability = await core.account_provisioner.check_availability(
                args["handle"]
            )
            print(availability.model_dump_json(indent=2))
            return 0 if availability.available else 1

        elif command == "create-auto":
            account = await core.account_provisioner.create_auto_account()
            print(account.model_dump_json(indent=2))
            return 0 if account.success else 1

        elif command == "create-custom":
            account = await core.account_provisioner.create_custom_account(
                args["label"], args.get("email")
            )
            print(account.model_dump_json(indent=2))
            return 0 if account.success else 1

        elif command == "publish":
            try:
                credentials = parse_credentials(args["credentials"])
                record = load_record(args["record"])
            except (ResonanceException, ValueError, OSError) as e:
                logger.error("Invalid publish input: %s", e)
                return 2

            authenticated = await core.session_manager.authenticate(
                credentials.handle, credentials.password
            )
            if not authenticated.success:
                print(authenticated.model_dump_json(indent=2))
                return 1

            published = await core.record_publisher.publish(record)
            print(published.model_dump_json(indent=2))
            return 0 if published.success else 1

    return 2


def main() -> None:
    configure_logging()
    raise SystemExit(asyncio.run(realMain()))


if __name__ == "__main__":
    main()
