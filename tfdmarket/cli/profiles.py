from __future__ import annotations

import argparse
from pathlib import Path

from ..db import SqliteKeyValueStore
from ..facets import Mode
from ..profiles import FilterProfileStore, ProfileError


def add_parser(subparsers: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
    parser = subparsers.add_parser(
        "profiles",
        help="Manage saved filter profiles",
        description="List, rename, delete or pick the default filter profile for a mode.",
    )
    parser.add_argument(
        "--mode",
        choices=[m.value for m in Mode],
        default=Mode.ANCESTOR.value,
        help="Profile collection to operate on (default: ancestor).",
    )
    parser.add_argument("--db", type=Path, default=None, help="SQLite database path.")
    actions = parser.add_subparsers(dest="action", required=True)

    actions.add_parser("list", help="List saved profiles")
    show = actions.add_parser("show", help="Print a profile's saved filter state as JSON")
    show.add_argument("name")
    delete = actions.add_parser("delete", help="Delete a profile")
    delete.add_argument("name")
    rename = actions.add_parser("rename", help="Rename a profile")
    rename.add_argument("old")
    rename.add_argument("new")
    set_default = actions.add_parser("set-default", help="Load this profile on startup")
    set_default.add_argument("name")
    actions.add_parser("clear-default", help="Start from an empty filter state")

    parser.set_defaults(func=run)
    return parser


def run(args: argparse.Namespace) -> int:
    store = FilterProfileStore(SqliteKeyValueStore(args.db), Mode(args.mode))
    try:
        if args.action == "list":
            default = store.default_name()
            names = store.names()
            if not names:
                print(f"No {store.mode.value} profiles saved.")
            for name in names:
                marker = "*" if name == default else " "
                print(f"{marker} {name}")
        elif args.action == "show":
            print(store.get(args.name).model_dump_json(indent=2))
        elif args.action == "delete":
            store.delete(args.name)
            print(f"Deleted {args.name}")
        elif args.action == "rename":
            store.rename(args.old, args.new)
            print(f"Renamed {args.old} to {args.new}")
        elif args.action == "set-default":
            store.set_default(args.name)
            print(f"Default {store.mode.value} profile is now {args.name}")
        elif args.action == "clear-default":
            store.clear_default()
            print(f"Cleared default {store.mode.value} profile")
    except ProfileError as exc:
        print(f"{type(exc).__name__}: {exc}")
        return 1
    except ValueError as exc:
        print(f"Invalid profile name: {exc}")
        return 1
    return 0
