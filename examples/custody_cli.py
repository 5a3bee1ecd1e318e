from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path

if __package__ in (None, ""):
    repo_src = Path(__file__).resolve().parents[1] / "src"
    if str(repo_src) not in sys.path:
        sys.path.insert(0, str(repo_src))

try:
    from hsm_custody import (
        HsmConfig,
        HsmCustodyError,
        Pkcs11Custodian,
        configure_logging,
    )
except ModuleNotFoundError as exc:
    if exc.name == "pkcs11":
        raise SystemExit(
            "Missing dependency: python-pkcs11\n"
            "Install it with:\n"
            "  python3 -m pip install -e .\n"
            "or:\n"
            "  python3 -m pip install python-pkcs11"
        ) from exc
    raise


class _HelpFormatter(
    argparse.RawTextHelpFormatter,
    argparse.ArgumentDefaultsHelpFormatter,
):
    """Readable help with examples and defaults."""


HELP_EPILOG = """Examples:
  export HSM_PKCS11_MODULE=/usr/lib/softhsm/libsofthsm2.so
  export HSM_TOKEN_LABEL=custody-token
  export HSM_USER_PIN=123456

  python3 examples/custody_cli.py slots
  python3 examples/custody_cli.py generate
  python3 examples/custody_cli.py list
  python3 examples/custody_cli.py contains 0x7E5F4552091A69125d5DfCb7b8C2659029395Bdf
  python3 examples/custody_cli.py delete 0x7E5F4552091A69125d5DfCb7b8C2659029395Bdf
  python3 examples/custody_cli.py orphans --reconcile
"""


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description=(
            "Account key custody on a PKCS#11 token. "
            "Keys are secp256k1 pairs named by their checksummed address."
        ),
        formatter_class=_HelpFormatter,
        epilog=HELP_EPILOG,
    )
    parser.add_argument(
        "--slot",
        type=int,
        help="Slot id to use. Defaults to HSM_SLOT, then the slot holding HSM_TOKEN_LABEL.",
    )
    parser.add_argument(
        "--verbose",
        action="store_true",
        help="Mirror log records to stderr.",
    )

    commands = parser.add_subparsers(dest="command", required=True)
    commands.add_parser("slots", help="List slots that hold a token.")
    commands.add_parser("generate", help="Generate a key pair and print its address.")
    commands.add_parser("list", help="List addresses held on the slot.")

    delete = commands.add_parser("delete", help="Delete the key pair for an address.")
    delete.add_argument("address")

    contains = commands.add_parser("contains", help="Check whether an address is held.")
    contains.add_argument("address")

    orphans = commands.add_parser(
        "orphans",
        help="Show key pairs left unlabeled by an interrupted generation.",
    )
    orphans.add_argument(
        "--reconcile",
        action="store_true",
        help="Label complete orphan pairs with their derived address.",
    )
    return parser


def _run_slots(custodian: Pkcs11Custodian) -> int:
    payload = [{"slot_id": info.slot_id, "label": info.label} for info in custodian.slots()]
    print(json.dumps(payload, indent=2))
    return 0


def _run_with_login(
    custodian: Pkcs11Custodian,
    config: HsmConfig,
    args: argparse.Namespace,
) -> int:
    slot_id = args.slot if args.slot is not None else custodian.default_slot()
    custodian.login(slot_id, config.user_pin())
    try:
        if args.command == "generate":
            print(custodian.generate_ec_keypair(slot_id))
            return 0

        if args.command == "list":
            for address in custodian.get_addresses(slot_id):
                print(address)
            return 0

        if args.command == "delete":
            custodian.delete_ec_keypair(slot_id, args.address)
            print(f"Deleted key pair: {args.address}")
            return 0

        if args.command == "contains":
            found = custodian.contains_address(slot_id, args.address)
            print("present" if found else "absent")
            return 0 if found else 2

        if args.command == "orphans":
            if args.reconcile:
                for address in custodian.reconcile_orphans(slot_id):
                    print(f"Recovered: {address}")
            for orphan in custodian.find_orphans(slot_id):
                if orphan.shared_id:
                    state = "shared-id"
                else:
                    state = "complete" if orphan.complete else "partial"
                print(f"{orphan.key_id.hex()} {state}")
            return 0

        raise ValueError("Unsupported command.")
    finally:
        custodian.logout(slot_id)


def main(argv: list[str] | None = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(argv)
    try:
        configure_logging(console=args.verbose)
        config = HsmConfig.from_env()
        with Pkcs11Custodian(config) as custodian:
            if args.command == "slots":
                return _run_slots(custodian)
            return _run_with_login(custodian, config, args)
    except (HsmCustodyError, ValueError) as exc:
        print(f"Custody CLI error: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
