from __future__ import annotations

import argparse

from backend.curator.config import load_settings
from backend.curator.repositories.caller_key_repository import CallerKeyRepository
from backend.curator.repositories.database import Database
from backend.curator.repositories.quality_score_repository import QualityScoreRepository
from backend.curator.repositories.secret_cipher import cipher_from_settings
from backend.curator.services.key_pool import PROVIDERS, KeyPool


def _parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Manage caller-owned API keys, inspect the shared key pool and load quality scores.",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    add_parser = subparsers.add_parser("add", help="Store (or replace) a caller's API key.")
    add_parser.add_argument("--caller-id", required=True, help="Caller identity.")
    add_parser.add_argument("--provider", required=True, choices=PROVIDERS)
    add_parser.add_argument("--api-key", required=True, help="Secret value to store.")

    list_parser = subparsers.add_parser("list", help="List stored caller keys.")
    list_parser.add_argument("--caller-id", help="Only show keys for this caller.")

    invalidate_parser = subparsers.add_parser("invalidate", help="Mark a caller key unusable.")
    invalidate_parser.add_argument("--key-id", required=True, help="Caller key id (ckey_...).")
    invalidate_parser.add_argument(
        "--status",
        choices=("invalid", "quota_exceeded"),
        default="invalid",
    )

    delete_parser = subparsers.add_parser("delete", help="Delete a caller key.")
    delete_parser.add_argument("--caller-id", required=True)
    delete_parser.add_argument("--key-id", required=True)

    pool_parser = subparsers.add_parser(
        "pool",
        help="Show which shared pool keys are configured in the environment.",
    )
    pool_parser.add_argument("--provider", choices=PROVIDERS)

    score_parser = subparsers.add_parser(
        "score",
        help="Store (or replace) a video's transcript quality score.",
    )
    score_parser.add_argument("--video-id", required=True, help="YouTube video id.")
    score_parser.add_argument("--tqs", required=True, type=float, help="Score within 0..100.")

    return parser.parse_args()


def _print_key_list(repository: CallerKeyRepository, *, caller_id: str | None) -> None:
    keys = repository.list_keys(caller_id=caller_id)
    if not keys:
        print("No caller API keys found.")
        return

    print("key_id\tcaller_id\tprovider\tis_valid\tquota_status\tcreated_at")
    for key in keys:
        print(
            "\t".join(
                [
                    key.key_id,
                    key.caller_id,
                    key.provider,
                    "yes" if key.is_valid else "no",
                    key.quota_status or "-",
                    key.created_at,
                ]
            )
        )


def _print_pool(provider: str | None) -> None:
    key_pool = KeyPool()
    providers = [provider] if provider else list(PROVIDERS)
    for name in providers:
        count = key_pool.initialize(name)
        print(f"{name}: {count} key(s)")
        for status in key_pool.pool_status(name):
            print(f"  {status.credential_id}")


def main() -> None:
    args = _parse_args()
    if args.command == "pool":
        _print_pool(args.provider)
        return

    settings = load_settings()
    database = Database(settings.db_path)
    database.initialize()
    if args.command == "score":
        QualityScoreRepository(database).upsert_quality_score(args.video_id, args.tqs)
        print(f"Stored quality score {args.tqs:g} for video {args.video_id}")
        return

    repository = CallerKeyRepository(database, cipher=cipher_from_settings(settings))

    if args.command == "add":
        record = repository.put_key(
            caller_id=args.caller_id,
            provider=args.provider,
            secret_value=args.api_key,
        )
        print(f"Stored {record.provider} key {record.key_id} for caller {record.caller_id}")
        return

    if args.command == "list":
        _print_key_list(repository, caller_id=args.caller_id)
        return

    if args.command == "invalidate":
        if repository.invalidate_key(args.key_id, quota_status=args.status):
            print(f"Marked caller key {args.key_id} as {args.status}")
        else:
            print(f"No caller key found for: {args.key_id}")
        return

    if args.command == "delete":
        if repository.delete_key(caller_id=args.caller_id, key_id=args.key_id):
            print(f"Deleted caller key: {args.key_id}")
        else:
            print(f"No caller key {args.key_id} found for caller {args.caller_id}")
        return

    raise RuntimeError(f"Unhandled command: {args.command}")


if __name__ == "__main__":
    main()
